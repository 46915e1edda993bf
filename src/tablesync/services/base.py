from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from ..cache import OptimisticCache, TabListCache
from ..config import EngineConfig
from ..error_mapper import as_remote_failure, rejected
from ..error_state import ErrorState
from ..exceptions import ApiError, RemoteFailure
from ..gateway import PersistenceGateway
from ..identifiers import MutationMeta
from ..locks import KeyedLocks
from ..logger import get_logger, log_action
from ..models import TableOrder
from ..models_api import AckEnvelope
from ..notifications import LoggingNotifier, Notifier, to_user_facing_error
from ..results import MutationResult
from ..telemetry import TelemetryLogger, build_event

E = TypeVar("E", bound=AckEnvelope)
T = TypeVar("T")

# Set while the engine retries a command; the retry reports the final failure itself.
retrying: ContextVar[bool] = ContextVar("tablesync_retrying", default=False)


def _table_measure(order: TableOrder) -> int:
    return len(order.order_items)


@dataclass
class EngineState:
    """Everything the services share: the gateway, both caches, error maps and locks."""

    gateway: PersistenceGateway
    config: EngineConfig = field(default_factory=EngineConfig)
    notifier: Notifier = field(default_factory=LoggingNotifier)
    telemetry: TelemetryLogger = field(default_factory=TelemetryLogger)
    logger: logging.Logger = field(default_factory=lambda: get_logger("tablesync.engine"))
    tables: OptimisticCache[int, TableOrder] = field(init=False)
    tabs: TabListCache = field(init=False)
    errors: ErrorState = field(default_factory=ErrorState)
    locks: KeyedLocks = field(default_factory=KeyedLocks)

    def __post_init__(self) -> None:
        self.tables = OptimisticCache(name="table_orders", measure=_table_measure, logger=self.logger)
        self.tabs = TabListCache(logger=self.logger)

    @property
    def prefer_optimistic(self) -> bool:
        return self.config.enable_optimistic_updates


class ServiceBase:
    module = "engine"

    def __init__(self, state: EngineState) -> None:
        self.state = state

    @property
    def gateway(self) -> PersistenceGateway:
        return self.state.gateway

    async def _call(self, remote: Callable[[], Awaitable[E]], fallback_message: str) -> E:
        """Await a gateway call; raise RemoteFailure for thrown errors and success=false bodies."""
        try:
            envelope = await remote()
        except Exception as exc:
            raise as_remote_failure(exc, fallback_message) from exc
        if not envelope.success:
            raise rejected(envelope.message, fallback_message)
        return envelope

    @staticmethod
    def _require(entity: T | None, envelope: AckEnvelope, fallback_message: str) -> T:
        if entity is None:
            raise rejected(envelope.message, fallback_message)
        return entity

    def _succeed(
        self,
        action: str,
        message: str,
        *,
        meta: MutationMeta,
        started: float,
        table_number: int | None = None,
        tab_id: str | None = None,
        notify: bool = True,
        **entities,
    ) -> MutationResult:
        if tab_id:
            self.state.errors.clear_tab_error(tab_id)
        elif table_number is not None:
            self.state.errors.clear_table_error(table_number)
        if notify:
            self.state.notifier.success(message)
        log_action(self.state.logger, self.module, action, table_number, tab_id, meta.transaction_id, "success")
        self._emit(action, started, table_number=table_number, success=True)
        return MutationResult(ok=True, message=message, meta=meta, **entities)

    def _reject(
        self,
        action: str,
        error: ApiError,
        *,
        meta: MutationMeta,
        started: float,
        table_number: int | None = None,
        tab_id: str | None = None,
    ) -> MutationResult:
        """Report a failure found before anything was mutated; no error is recorded."""
        self.state.notifier.error(to_user_facing_error(error).message)
        log_action(
            self.state.logger,
            self.module,
            action,
            table_number,
            tab_id,
            meta.transaction_id,
            f"rejected:{error.code}",
            level=logging.WARNING,
        )
        self._emit(action, started, table_number=table_number, success=False, error_code=error.code)
        return MutationResult.failure(error, meta)

    def _fail(
        self,
        action: str,
        error: RemoteFailure,
        *,
        meta: MutationMeta,
        started: float,
        table_number: int | None = None,
        tab_id: str | None = None,
    ) -> MutationResult:
        """Record a remote failure against exactly one scope after the rollback ran."""
        if tab_id:
            self.state.errors.record_tab_error(tab_id, error.message)
        elif table_number is not None:
            self.state.errors.record_table_error(table_number, error.message)
        if not retrying.get():
            self.state.notifier.error(to_user_facing_error(error).message)
        log_action(
            self.state.logger,
            self.module,
            action,
            table_number,
            tab_id,
            error.trace_id or meta.transaction_id,
            f"failed:{error.code}",
            level=logging.ERROR,
        )
        self._emit(action, started, table_number=table_number, success=False, error_code=error.code)
        return MutationResult.failure(error, meta)

    def _emit(
        self,
        action: str,
        started: float,
        *,
        table_number: int | None,
        success: bool,
        error_code: str | None = None,
    ) -> None:
        event = build_event(
            category="mutation" if success else "error",
            name=f"{self.module}.{action}",
            action=action,
            table_number=table_number,
            duration_ms=int((time.monotonic() - started) * 1000),
            success=success,
            error_code=error_code,
        )
        self.state.telemetry.emit(event)
