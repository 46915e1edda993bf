from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable

from .config import EngineConfig
from .gateway import PersistenceGateway
from .models import (
    TABLE_AVAILABLE,
    CustomerTab,
    LinkedTableGroup,
    OrderItem,
    TableOrder,
    TableStatus,
    TableWithTabs,
)
from .notifications import Notifier
from .results import MutationResult
from .retry import MutationCommand, RetryPolicy, Sleep, retry_operation
from .services.base import EngineState, retrying
from .services.customer_tabs import CustomerTabService
from .services.table_orders import TableOrderService
from .sync import Clock, SyncLoop
from .telemetry import TelemetryLogger
from .validation import ItemInput


class TableSyncEngine:
    """Order and customer-tab state for every table on this terminal.

    Mutations update the optimistic view at once, call the persistence
    gateway, then commit the server's entities or roll back. Reads prefer the
    optimistic view unless optimistic updates are disabled in the config.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        config: EngineConfig | None = None,
        notifier: Notifier | None = None,
        telemetry: TelemetryLogger | None = None,
        clock: Clock | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        state = EngineState(gateway=gateway, config=config or EngineConfig())
        if notifier is not None:
            state.notifier = notifier
        if telemetry is not None:
            state.telemetry = telemetry
        self.state = state
        self.tables = TableOrderService(state)
        self.tabs = CustomerTabService(state)
        self.sync = SyncLoop(state, clock=clock or time.monotonic, sleep=sleep)
        self._sleep = sleep

    @property
    def config(self) -> EngineConfig:
        return self.state.config

    async def __aenter__(self) -> "TableSyncEngine":
        await self.sync.load_table_orders()
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def start(self) -> None:
        self.sync.start()

    async def stop(self) -> None:
        await self.sync.stop()

    # Table orders

    async def create_table_order(
        self, table_number: int, guest_count: int, linked_tables: Iterable[int] | None = None
    ) -> MutationResult:
        return await self.tables.create_table_order(table_number, guest_count, linked_tables)

    async def update_table_items(self, table_number: int, items: Iterable[ItemInput]) -> MutationResult:
        return await self.tables.update_table_items(table_number, items)

    async def add_items_to_table(self, table_number: int, items: Iterable[ItemInput]) -> MutationResult:
        return await self.tables.add_items_to_table(table_number, items)

    async def remove_item_from_table(self, table_number: int, index: int) -> MutationResult:
        return await self.tables.remove_item_from_table(table_number, index)

    async def complete_table_order(self, table_number: int) -> MutationResult:
        return await self.tables.complete_table_order(table_number)

    async def reset_table_to_available(self, table_number: int) -> MutationResult:
        return await self.tables.reset_table_to_available(table_number)

    # Customer tabs

    async def create_customer_tab(
        self, table_number: int, tab_name: str, guest_id: str | None = None
    ) -> MutationResult:
        return await self.tabs.create_customer_tab(table_number, tab_name, guest_id)

    async def update_customer_tab(
        self,
        tab_id: str,
        *,
        tab_name: str | None = None,
        order_items: Iterable[ItemInput] | None = None,
        status: str | None = None,
    ) -> MutationResult:
        return await self.tabs.update_customer_tab(tab_id, tab_name=tab_name, order_items=order_items, status=status)

    async def rename_customer_tab(self, tab_id: str, new_name: str) -> MutationResult:
        return await self.tabs.rename_customer_tab(tab_id, new_name)

    async def complete_customer_tab(self, tab_id: str) -> MutationResult:
        return await self.tabs.complete_customer_tab(tab_id)

    async def add_items_to_customer_tab(self, tab_id: str, items: Iterable[ItemInput]) -> MutationResult:
        return await self.tabs.add_items_to_customer_tab(tab_id, items)

    async def remove_item_from_customer_tab(self, tab_id: str, index: int) -> MutationResult:
        return await self.tabs.remove_item_from_customer_tab(tab_id, index)

    async def replace_customer_tab_items(self, tab_id: str, items: Iterable[ItemInput]) -> MutationResult:
        return await self.tabs.replace_customer_tab_items(tab_id, items)

    async def close_customer_tab(self, tab_id: str) -> MutationResult:
        return await self.tabs.close_customer_tab(tab_id)

    async def delete_customer_tab(self, tab_id: str) -> MutationResult:
        return await self.tabs.delete_customer_tab(tab_id)

    async def split_customer_tab(
        self,
        source_tab_id: str,
        new_tab_name: str,
        item_indices: Iterable[int],
        guest_id: str | None = None,
    ) -> MutationResult:
        return await self.tabs.split_customer_tab(source_tab_id, new_tab_name, item_indices, guest_id)

    async def merge_customer_tabs(self, source_tab_id: str, target_tab_id: str) -> MutationResult:
        return await self.tabs.merge_customer_tabs(source_tab_id, target_tab_id)

    async def move_items_between_tabs(
        self, source_tab_id: str, target_tab_id: str, item_indices: Iterable[int]
    ) -> MutationResult:
        return await self.tabs.move_items_between_tabs(source_tab_id, target_tab_id, item_indices)

    def set_active_customer_tab(self, table_number: int, tab_id: str | None) -> MutationResult:
        return self.tabs.set_active_customer_tab(table_number, tab_id)

    # Sync

    async def load_table_orders(self) -> bool:
        return await self.sync.load_table_orders()

    async def force_refresh(self) -> bool:
        return await self.sync.force_refresh()

    async def load_customer_tabs_for_table(self, table_number: int) -> bool:
        return await self.sync.load_customer_tabs_for_table(table_number)

    async def sync_customer_tabs_from_server(self, table_number: int) -> bool:
        return await self.sync.sync_customer_tabs_from_server(table_number)

    def validate_customer_tab_state(self, table_number: int) -> bool:
        return self.state.tabs.validate_consistency(table_number)

    @property
    def last_sync(self) -> float | None:
        return self.sync.last_sync

    def is_stale(self) -> bool:
        return self.sync.is_stale()

    # Retry

    async def retry(self, command: MutationCommand, name: str) -> MutationResult:
        """Re-run ``command`` with exponential backoff using the configured attempt budget."""
        policy = RetryPolicy(
            max_attempts=self.config.max_retries,
            base_delay_seconds=self.config.retry_base_delay_seconds,
        )
        token = retrying.set(True)
        try:
            return await retry_operation(
                command,
                policy,
                name=name,
                sleep=self._sleep,
                logger=self.state.logger,
                on_exhausted=lambda result: self.state.notifier.error(result.message),
            )
        finally:
            retrying.reset(token)

    # Reads

    def get_table_order(self, table_number: int) -> TableOrder | None:
        return self.state.tables.get(table_number, optimistic=self.state.prefer_optimistic)

    def get_table_orders(self, table_number: int) -> tuple[OrderItem, ...]:
        order = self.get_table_order(table_number)
        return order.order_items if order else ()

    def get_table_status(self, table_number: int) -> TableStatus:
        order = self.get_table_order(table_number)
        return order.status if order else TABLE_AVAILABLE

    def get_seated_tables(self) -> list[int]:
        return sorted(self.state.tables.keys(optimistic=self.state.prefer_optimistic))

    def has_existing_orders(self, table_number: int) -> bool:
        order = self.get_table_order(table_number)
        if order is not None and (order.is_seated or order.order_items):
            return True
        return bool(self.get_customer_tabs_for_table(table_number))

    def get_customer_tabs_for_table(self, table_number: int) -> tuple[CustomerTab, ...]:
        return self.state.tabs.get(table_number, optimistic=self.state.prefer_optimistic) or ()

    def get_customer_tab_by_id(self, tab_id: str) -> CustomerTab | None:
        tabs = self.state.tabs
        if self.state.prefer_optimistic:
            return tabs.find_tab(tab_id, optimistic=True) or tabs.find_tab(tab_id, optimistic=False)
        return tabs.find_tab(tab_id, optimistic=False)

    def get_active_customer_tab(self, table_number: int) -> CustomerTab | None:
        active_id = self.state.tabs.get_active_tab_id(table_number)
        if not active_id:
            return None
        for tab in self.get_customer_tabs_for_table(table_number):
            if tab.id == active_id:
                return tab
        return None

    def has_active_customer_tabs(self, table_number: int) -> bool:
        return any(tab.is_active for tab in self.get_customer_tabs_for_table(table_number))

    def get_linked_table_customer_tabs(self, table_numbers: Iterable[int]) -> dict[int, tuple[CustomerTab, ...]]:
        return {number: self.get_customer_tabs_for_table(number) for number in table_numbers}

    def get_linked_table_group(self, table_number: int) -> LinkedTableGroup | None:
        """Group a table with the tables seated alongside it, or None if it is not linked."""
        primary = self._primary_table_of(table_number)
        if primary is None:
            return None
        primary_order = self.state.tables.get_confirmed(primary)
        members = [primary, *(primary_order.linked_tables if primary_order else ())]
        members.extend(
            number
            for number in self.state.tables.keys(optimistic=False)
            if number not in members and self._confirmed_primary(number) == primary
        )
        tables: list[TableWithTabs] = []
        for number in members:
            order = self.state.tables.get_confirmed(number)
            if order is None:
                continue
            tables.append(
                TableWithTabs(
                    table_number=number,
                    guest_count=order.guest_count,
                    status=order.status,
                    customer_tabs=self.get_customer_tabs_for_table(number),
                    linked_tables=order.linked_tables,
                )
            )
        if not tables:
            return None
        return LinkedTableGroup(
            primary_table=primary,
            tables=tuple(tables),
            guest_count=sum(table.guest_count for table in tables),
        )

    def get_total_orders_for_linked_tables(self, table_numbers: Iterable[int]) -> list[OrderItem]:
        numbers = list(table_numbers)
        items: list[OrderItem] = []
        for number in numbers:
            items.extend(self.get_table_orders(number))
        for number in numbers:
            for tab in self.get_customer_tabs_for_table(number):
                items.extend(tab.order_items)
        return items

    def _confirmed_primary(self, table_number: int) -> int | None:
        order = self.state.tables.get_confirmed(table_number)
        return order.primary_table if order else None

    def _primary_table_of(self, table_number: int) -> int | None:
        order = self.state.tables.get_confirmed(table_number)
        if order is None:
            return None
        if order.primary_table is not None and order.primary_table != table_number:
            return order.primary_table
        if order.linked_tables:
            return table_number
        for number in self.state.tables.keys(optimistic=False):
            other = self.state.tables.get_confirmed(number)
            if other is not None and table_number in other.linked_tables:
                return number
        return None

    # Errors

    @property
    def table_errors(self) -> dict[int, str]:
        return dict(self.state.errors.table_errors)

    @property
    def customer_tab_errors(self) -> dict[str, str]:
        return dict(self.state.errors.customer_tab_errors)

    @property
    def global_error(self) -> str | None:
        return self.state.errors.global_error

    def get_table_error(self, table_number: int) -> str | None:
        return self.state.errors.table_errors.get(table_number)

    def get_customer_tab_error(self, tab_id: str) -> str | None:
        return self.state.errors.customer_tab_errors.get(self.state.tabs.resolve_tab_id(tab_id))

    def clear_table_error(self, table_number: int) -> None:
        self.state.errors.clear_table_error(table_number)

    def clear_customer_tab_error(self, tab_id: str) -> None:
        self.state.errors.clear_tab_error(self.state.tabs.resolve_tab_id(tab_id))

    def clear_errors(self) -> None:
        self.state.errors.clear()
