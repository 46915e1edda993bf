from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ApiError(Exception):
    code: str
    message: str
    details: object | None = None
    trace_id: str | None = None
    status_code: int = 0
    raw_payload: object | None = None

    def __str__(self) -> str:
        trace = f" trace_id={self.trace_id}" if self.trace_id else ""
        return f"[{self.status_code}] {self.code}: {self.message}{trace}"


class ValidationError(ApiError):
    """Caller supplied arguments that can never succeed."""


class NotFoundError(ApiError):
    """Referenced table order or customer tab is not in the cache."""


class RemoteFailure(ApiError):
    """Persistence API rejected the request or could not be reached."""


class TransportError(RemoteFailure):
    """Network/transport failure before an HTTP response was returned."""


class ServerError(RemoteFailure):
    """5xx server-side failures."""


class ConflictError(RemoteFailure):
    """409 or conflict-style errors."""


class RateLimitError(RemoteFailure):
    """429 throttling error."""


class RemoteRejectedError(RemoteFailure):
    """Response arrived but reported success=false or omitted the entity."""


class ConsistencyWarning(UserWarning):
    """Optimistic and confirmed views disagree; observational only."""

    def __init__(self, table_number: int, kind: str, detail: str) -> None:
        self.table_number = table_number
        self.kind = kind
        self.detail = detail
        super().__init__(f"table {table_number} {kind}: {detail}")


def validation_error(message: str, *, code: str = "VALIDATION_ERROR", details: object | None = None) -> ValidationError:
    return ValidationError(code=code, message=message, details=details)


def not_found(message: str, *, code: str = "NOT_FOUND", details: object | None = None) -> NotFoundError:
    return NotFoundError(code=code, message=message, details=details)
