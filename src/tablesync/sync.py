from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .exceptions import RemoteFailure
from .logger import log_action
from .services.base import EngineState, ServiceBase
from .telemetry import build_event

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class SyncLoop(ServiceBase):
    """Pulls authoritative state into the confirmed cache layer on a timer and on demand."""

    module = "sync"

    def __init__(
        self,
        state: EngineState,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(state)
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.initialized = False
        self.sync_in_progress = False
        self.last_sync: float | None = None

    @property
    def interval_seconds(self) -> float:
        return self.state.config.sync_interval_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run_forever(), name="tablesync-sync-loop")
        self.state.logger.info("Sync loop started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.state.logger.info("Sync loop stopped")

    async def _run_forever(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            await self.run_cycle()

    def tables_to_sync(self) -> list[int]:
        tabs = self.state.tabs
        return sorted(
            number
            for number in tabs.keys(optimistic=False)
            if any(tab.is_active for tab in tabs.get_confirmed(number) or ())
        )

    async def run_cycle(self) -> int:
        """Refresh every table holding active tabs; skipped while another cycle is running."""
        if self.sync_in_progress:
            self.state.logger.info("Sync cycle skipped: previous cycle still running")
            return 0
        self.sync_in_progress = True
        synced = 0
        try:
            for table_number in self.tables_to_sync():
                if await self.sync_customer_tabs_from_server(table_number):
                    synced += 1
        finally:
            self.sync_in_progress = False
        self.check_staleness()
        return synced

    async def load_table_orders(self) -> bool:
        """Initial load of every table order; later calls are no-ops until force_refresh."""
        if self.initialized:
            self.state.logger.info("Table orders already loaded, skipping")
            return True
        started = time.monotonic()
        try:
            envelope = await self._call(self.gateway.list_table_orders, "Failed to load table orders")
        except RemoteFailure as exc:
            self.state.errors.record_global_error(exc.message)
            self._report("load_table_orders", started, None, exc)
            return False
        orders = {order.table_number: order for order in envelope.table_orders}
        self.state.tables.replace_all(orders)
        self.state.errors.global_error = None
        self.initialized = True
        self._mark_synced()
        self._report("load_table_orders", started, None, None, context={"tables": len(orders)})
        for table_number in orders:
            self._check_drift(table_number)
        return True

    async def force_refresh(self) -> bool:
        """Reload all table orders now, then the tab lists of every table with cached tabs."""
        self.initialized = False
        loaded = await self.load_table_orders()
        for table_number in sorted(self.state.tabs.keys(optimistic=False)):
            loaded = await self.sync_customer_tabs_from_server(table_number) and loaded
        return loaded

    async def load_customer_tabs_for_table(self, table_number: int) -> bool:
        return await self._pull_tabs(table_number, "load_customer_tabs", "Failed to load customer tabs")

    async def sync_customer_tabs_from_server(self, table_number: int) -> bool:
        return await self._pull_tabs(
            table_number, "sync_customer_tabs", "Failed to sync customer tabs from server"
        )

    def is_stale(self) -> bool:
        if self.last_sync is None:
            return False
        return self._clock() - self.last_sync > self.state.config.stale_after_seconds

    def check_staleness(self) -> bool:
        stale = self.is_stale()
        if stale:
            self.state.logger.warning("Customer tabs may be out of sync with server")
            self.state.telemetry.emit(
                build_event(category="sync", name="sync.stale", action="check_staleness", success=False)
            )
        return stale

    async def _pull_tabs(self, table_number: int, action: str, fallback: str) -> bool:
        started = time.monotonic()
        try:
            envelope = await self._call(
                lambda: self.gateway.list_customer_tabs_for_table(table_number),
                fallback,
            )
        except RemoteFailure as exc:
            self.state.errors.record_table_error(table_number, fallback)
            self._report(action, started, table_number, exc)
            return False
        self.state.tabs.refresh(table_number, tuple(envelope.customer_tabs))
        self._mark_synced()
        self._report(action, started, table_number, None, context={"tabs": len(envelope.customer_tabs)})
        self._check_drift(table_number)
        return True

    def _check_drift(self, table_number: int) -> None:
        consistent = self.state.tables.validate_consistency(table_number)
        if table_number in self.state.tabs.keys(optimistic=False) or self.state.tabs.has_divergence(table_number):
            consistent = self.state.tabs.validate_consistency(table_number) and consistent
        if not consistent:
            self.state.telemetry.emit(
                build_event(
                    category="consistency",
                    name="sync.drift",
                    action="validate_consistency",
                    table_number=table_number,
                    success=False,
                )
            )

    def _mark_synced(self) -> None:
        self.last_sync = self._clock()

    def _report(
        self,
        action: str,
        started: float,
        table_number: int | None,
        error: RemoteFailure | None,
        *,
        context: dict[str, int] | None = None,
    ) -> None:
        log_action(
            self.state.logger,
            self.module,
            action,
            table_number,
            None,
            error.trace_id if error else None,
            f"failed:{error.code}" if error else "success",
            level=logging.ERROR if error else logging.INFO,
        )
        self.state.telemetry.emit(
            build_event(
                category="sync" if error is None else "error",
                name=f"sync.{action}",
                action=action,
                table_number=table_number,
                duration_ms=int((time.monotonic() - started) * 1000),
                success=error is None,
                error_code=error.code if error else None,
                context=context,
            )
        )
