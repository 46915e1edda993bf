from __future__ import annotations

import uuid
from dataclasses import dataclass

PENDING_TAB_PREFIX = "pending-"
TRACE_HEADER = "X-Trace-ID"
IDEMPOTENCY_HEADER = "Idempotency-Key"


@dataclass(frozen=True)
class MutationMeta:
    transaction_id: str
    idempotency_key: str


def new_mutation_meta() -> MutationMeta:
    return MutationMeta(transaction_id=str(uuid.uuid4()), idempotency_key=str(uuid.uuid4()))


def new_correlation_token() -> str:
    """Local placeholder id for a tab the server has not assigned an id to yet."""
    return f"{PENDING_TAB_PREFIX}{uuid.uuid4().hex}"


def is_pending_tab_id(tab_id: str | None) -> bool:
    return bool(tab_id) and str(tab_id).startswith(PENDING_TAB_PREFIX)


def new_trace_id() -> str:
    return str(uuid.uuid4())
