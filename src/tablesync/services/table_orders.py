from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable

from ..exceptions import NotFoundError, RemoteFailure, ValidationError, not_found, validation_error
from ..identifiers import MutationMeta, new_mutation_meta
from ..locks import tab_list_key, table_key
from ..models import OrderItem, TableOrder
from ..models_api import CreateTableOrderRequest, UpdateTableOrderRequest
from ..results import MutationResult
from ..validation import (
    ItemInput,
    coerce_items,
    remove_item_at,
    validate_guest_count,
    validate_linked_tables,
    validate_table_number,
)
from .base import ServiceBase

ItemsTransform = Callable[[tuple[OrderItem, ...]], tuple[OrderItem, ...]]


class TableOrderService(ServiceBase):
    module = "table_orders"

    async def create_table_order(
        self,
        table_number: int,
        guest_count: int,
        linked_tables: Iterable[int] | None = None,
    ) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        try:
            validate_table_number(table_number)
            validate_guest_count(guest_count)
            linked = validate_linked_tables(table_number, linked_tables)
        except ValidationError as exc:
            return self._reject("create", exc, meta=meta, started=started, table_number=table_number)

        tables = self.state.tables
        async with self.state.locks.hold(table_key(table_number)):
            existing = tables.get_optimistic(table_number)
            if existing is not None and existing.is_seated:
                error = validation_error(f"Table {table_number} is already seated", code="TABLE_ALREADY_SEATED")
                return self._reject("create", error, meta=meta, started=started, table_number=table_number)

            projected = TableOrder(table_number=table_number, guest_count=guest_count, linked_tables=linked)
            snapshot = tables.begin_optimistic_mutation(table_number, lambda _current: projected)
            fallback = "Failed to seat guests at table"
            request = CreateTableOrderRequest(
                table_number=table_number,
                guest_count=guest_count,
                linked_tables=list(linked),
            )
            try:
                envelope = await self._call(
                    lambda: self.gateway.create_table_order(request, idempotency_key=meta.idempotency_key),
                    fallback,
                )
                confirmed = self._require(envelope.table_order, envelope, fallback)
            except RemoteFailure as exc:
                tables.rollback(table_number, snapshot)
                return self._fail("create", exc, meta=meta, started=started, table_number=table_number)
            except asyncio.CancelledError:
                tables.rollback(table_number, snapshot)
                raise
            tables.commit(table_number, confirmed)

        return self._succeed(
            "create",
            f"Table {table_number} seated with {guest_count} guests",
            meta=meta,
            started=started,
            table_number=table_number,
            table_order=confirmed,
        )

    async def update_table_items(self, table_number: int, items: Iterable[ItemInput]) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        try:
            replacement = coerce_items(items)
        except ValidationError as exc:
            return self._reject("update_items", exc, meta=meta, started=started, table_number=table_number)
        return await self._mutate_items(
            "update_items",
            table_number,
            lambda _current: replacement,
            f"Table {table_number} order updated",
            meta=meta,
            started=started,
        )

    async def add_items_to_table(self, table_number: int, items: Iterable[ItemInput]) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        try:
            additions = coerce_items(items)
        except ValidationError as exc:
            return self._reject("add_items", exc, meta=meta, started=started, table_number=table_number)
        if not additions:
            return self._succeed(
                "add_items",
                "No items to add",
                meta=meta,
                started=started,
                table_number=table_number,
                notify=False,
                table_order=self.state.tables.get_optimistic(table_number),
            )
        return await self._mutate_items(
            "add_items",
            table_number,
            lambda current: (*current, *additions),
            f"Added {len(additions)} item(s) to table {table_number}",
            meta=meta,
            started=started,
        )

    async def remove_item_from_table(self, table_number: int, index: int) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        return await self._mutate_items(
            "remove_item",
            table_number,
            lambda current: remove_item_at(current, index),
            f"Item removed from table {table_number}",
            meta=meta,
            started=started,
        )

    async def complete_table_order(self, table_number: int) -> MutationResult:
        """Settle the bill: drop the order and its tabs from both cache layers."""
        meta, started = new_mutation_meta(), time.monotonic()
        async with self.state.locks.hold(table_key(table_number), tab_list_key(table_number)):
            if self.state.tables.get_optimistic(table_number) is None:
                return self._succeed(
                    "complete",
                    f"Table {table_number} already completed",
                    meta=meta,
                    started=started,
                    table_number=table_number,
                    notify=False,
                )
            return await self._release_table(
                "complete",
                table_number,
                lambda: self.gateway.complete_table_order(table_number, idempotency_key=meta.idempotency_key),
                "Failed to complete table order",
                f"Table {table_number} completed",
                meta=meta,
                started=started,
            )

    async def reset_table_to_available(self, table_number: int) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        async with self.state.locks.hold(table_key(table_number), tab_list_key(table_number)):
            return await self._release_table(
                "reset",
                table_number,
                lambda: self.gateway.reset_table_to_available(table_number, idempotency_key=meta.idempotency_key),
                "Failed to reset table",
                f"Table {table_number} is available",
                meta=meta,
                started=started,
            )

    async def _mutate_items(
        self,
        action: str,
        table_number: int,
        transform: ItemsTransform,
        success_message: str,
        *,
        meta: MutationMeta,
        started: float,
    ) -> MutationResult:
        tables = self.state.tables
        async with self.state.locks.hold(table_key(table_number)):
            current = tables.get_optimistic(table_number)
            try:
                if current is None:
                    raise not_found(f"No order for table {table_number}", code="TABLE_NOT_FOUND")
                items = transform(current.order_items)
            except (ValidationError, NotFoundError) as exc:
                return self._reject(action, exc, meta=meta, started=started, table_number=table_number)

            snapshot = tables.begin_optimistic_mutation(
                table_number, lambda order: order.model_copy(update={"order_items": items})
            )
            fallback = f"Failed to update table {table_number}"
            request = UpdateTableOrderRequest(order_items=list(items))
            try:
                envelope = await self._call(
                    lambda: self.gateway.update_table_order(
                        table_number, request, idempotency_key=meta.idempotency_key
                    ),
                    fallback,
                )
                confirmed = self._require(envelope.table_order, envelope, fallback)
            except RemoteFailure as exc:
                tables.rollback(table_number, snapshot)
                return self._fail(action, exc, meta=meta, started=started, table_number=table_number)
            except asyncio.CancelledError:
                tables.rollback(table_number, snapshot)
                raise
            tables.commit(table_number, confirmed)

        return self._succeed(
            action,
            success_message,
            meta=meta,
            started=started,
            table_number=table_number,
            table_order=confirmed,
        )

    async def _release_table(
        self,
        action: str,
        table_number: int,
        remote,
        fallback: str,
        success_message: str,
        *,
        meta: MutationMeta,
        started: float,
    ) -> MutationResult:
        # Caller holds the table and tab-list locks.
        tables, tabs = self.state.tables, self.state.tabs
        previous_active = tabs.get_active_tab_id(table_number)
        table_snapshot = tables.begin_optimistic_mutation(table_number, lambda _current: None)
        tabs_snapshot = tabs.begin_optimistic_mutation(table_number, lambda _current: None)
        try:
            await self._call(remote, fallback)
        except RemoteFailure as exc:
            tables.rollback(table_number, table_snapshot)
            tabs.rollback(table_number, tabs_snapshot)
            tabs.set_active_tab_id(table_number, previous_active)
            return self._fail(action, exc, meta=meta, started=started, table_number=table_number)
        except asyncio.CancelledError:
            tables.rollback(table_number, table_snapshot)
            tabs.rollback(table_number, tabs_snapshot)
            raise
        tables.commit(table_number, None)
        tabs.commit(table_number, None)
        tabs.forget_table(table_number)
        return self._succeed(action, success_message, meta=meta, started=started, table_number=table_number)
