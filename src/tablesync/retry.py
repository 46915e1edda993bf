from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .exceptions import NotFoundError, RemoteFailure, ValidationError
from .logger import get_logger
from .results import MutationResult

MutationCommand = Callable[[], Awaitable[MutationResult]]
Sleep = Callable[[float], Awaitable[None]]

_logger = get_logger("tablesync.retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based attempt: base, 2*base, 4*base, ..."""
        return self.base_delay_seconds * (2 ** (attempt - 1))


def _is_retryable(result: MutationResult) -> bool:
    if result.ok:
        return False
    if isinstance(result.error, (ValidationError, NotFoundError)):
        return False
    return result.error is None or isinstance(result.error, RemoteFailure)


async def retry_operation(
    command: MutationCommand,
    policy: RetryPolicy,
    *,
    name: str = "mutation",
    sleep: Sleep = asyncio.sleep,
    logger: logging.Logger | None = None,
    on_exhausted: Callable[[MutationResult], None] | None = None,
) -> MutationResult:
    """Re-run a mutation until it succeeds, fails permanently, or attempts run out."""
    log = logger or _logger
    attempts = max(1, policy.max_attempts)
    result: MutationResult | None = None
    for attempt in range(1, attempts + 1):
        result = await command()
        if not _is_retryable(result):
            return result
        if attempt >= attempts:
            break
        delay = policy.delay_for(attempt)
        log.warning(
            "Retry attempt %s/%s failed for %s (%s); next try in %.2fs",
            attempt,
            attempts,
            name,
            result.error_code,
            delay,
        )
        await sleep(delay)
    assert result is not None
    log.error("%s failed after %s attempts", name, attempts)
    exhausted = MutationResult(
        ok=False,
        message=f"Failed to {name} after {attempts} attempts",
        error=result.error,
        meta=result.meta,
    )
    if on_exhausted is not None:
        on_exhausted(exhausted)
    return exhausted
