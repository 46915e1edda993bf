from __future__ import annotations

from dataclasses import dataclass

from .exceptions import ApiError
from .identifiers import MutationMeta
from .models import CustomerTab, TableOrder


@dataclass(frozen=True)
class MutationResult:
    """Outcome of one engine mutation; never raised, always returned."""

    ok: bool
    message: str
    table_order: TableOrder | None = None
    tab: CustomerTab | None = None
    original_tab: CustomerTab | None = None
    new_tab: CustomerTab | None = None
    source_tab: CustomerTab | None = None
    target_tab: CustomerTab | None = None
    error: ApiError | None = None
    meta: MutationMeta | None = None

    def __bool__(self) -> bool:
        return self.ok

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None

    @classmethod
    def failure(cls, error: ApiError, meta: MutationMeta | None = None) -> "MutationResult":
        return cls(ok=False, message=error.message, error=error, meta=meta)
