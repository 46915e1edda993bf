from __future__ import annotations

from typing import Mapping

from .exceptions import (
    ApiError,
    ConflictError,
    RateLimitError,
    RemoteFailure,
    RemoteRejectedError,
    ServerError,
    TransportError,
)


def map_error(status_code: int, payload: Mapping[str, object] | None, trace_id: str | None) -> RemoteFailure:
    payload = payload or {}
    code = str(payload.get("code") or "HTTP_ERROR")
    message = str(payload.get("message") or payload.get("detail") or "Request failed")
    details = payload.get("details")
    payload_trace_id = payload.get("trace_id")
    resolved_trace_id = str(payload_trace_id) if payload_trace_id is not None else trace_id
    mapped: type[RemoteFailure]
    if status_code == 409:
        mapped = ConflictError
    elif status_code == 429:
        mapped = RateLimitError
    elif status_code >= 500:
        mapped = ServerError
    elif status_code <= 0:
        mapped = TransportError
    else:
        mapped = RemoteRejectedError
    return mapped(
        code=code,
        message=message,
        details=details,
        trace_id=resolved_trace_id,
        status_code=status_code,
        raw_payload=dict(payload),
    )


def as_remote_failure(exc: Exception, fallback_message: str) -> RemoteFailure:
    """Normalize anything raised by a gateway call into a RemoteFailure."""
    if isinstance(exc, RemoteFailure):
        return exc
    if isinstance(exc, ApiError):
        return RemoteFailure(
            code=exc.code,
            message=exc.message,
            details=exc.details,
            trace_id=exc.trace_id,
            status_code=exc.status_code,
            raw_payload=exc.raw_payload,
        )
    return TransportError(
        code="TRANSPORT_ERROR",
        message=str(exc) or fallback_message,
        details={"type": type(exc).__name__},
    )


def rejected(message: str | None, fallback_message: str) -> RemoteRejectedError:
    return RemoteRejectedError(code="REMOTE_REJECTED", message=message or fallback_message, status_code=200)
