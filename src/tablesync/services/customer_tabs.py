from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Hashable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ..cache import Snapshot, TabList
from ..exceptions import NotFoundError, RemoteFailure, ValidationError, not_found, validation_error
from ..identifiers import MutationMeta, new_correlation_token, new_mutation_meta
from ..locks import tab_key, tab_list_key
from ..logger import log_action
from ..models import CustomerTab
from ..models_api import (
    AckEnvelope,
    AddItemsRequest,
    CreateCustomerTabRequest,
    MergeTabsRequest,
    MoveItemsRequest,
    SplitTabRequest,
    UpdateCustomerTabRequest,
)
from ..results import MutationResult
from ..validation import (
    ItemInput,
    coerce_items,
    partition_items,
    remove_item_at,
    validate_tab_name,
    validate_tab_status,
    validate_table_number,
)
from .base import ServiceBase

ListEdit = Callable[[TabList], TabList]
# Maps the envelope to (tab id -> authoritative tab to swap in, entities for the result).
Settle = Callable[[Any], tuple[dict[str, CustomerTab], dict[str, CustomerTab]]]


@dataclass
class _PendingTabMutation:
    edits: Mapping[int, ListEdit]
    snapshots: dict[int, Snapshot[int, TabList]]
    active_before: dict[int, str | None]


def _replace_tab(tabs: TabList, tab_id: str, replacement: CustomerTab) -> TabList:
    return tuple(replacement if tab.id == tab_id else tab for tab in tabs)


def _drop_tab(tabs: TabList, tab_id: str) -> TabList:
    return tuple(tab for tab in tabs if tab.id != tab_id)


def _settled_list(table_number: int, projected: TabList, swaps: dict[str, CustomerTab]) -> TabList:
    settled: dict[str, CustomerTab] = {}
    for tab in projected:
        tab = swaps.get(tab.id, tab)
        settled[tab.id] = tab
    for durable in swaps.values():
        if durable.table_number == table_number and durable.id not in settled:
            settled[durable.id] = durable
    return tuple(settled.values())


class CustomerTabService(ServiceBase):
    module = "customer_tabs"

    async def create_customer_tab(
        self, table_number: int, tab_name: str, guest_id: str | None = None
    ) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        try:
            validate_table_number(table_number)
            name = validate_tab_name(tab_name)
        except ValidationError as exc:
            return self._reject("create_tab", exc, meta=meta, started=started, table_number=table_number)

        token = new_correlation_token()
        placeholder = CustomerTab(id=token, table_number=table_number, tab_name=name, guest_id=guest_id)
        async with self.state.locks.hold(tab_list_key(table_number), tab_key(token)):
            if self.state.tables.get_optimistic(table_number) is None:
                error = not_found(f"No order for table {table_number}", code="TABLE_NOT_FOUND")
                return self._reject("create_tab", error, meta=meta, started=started, table_number=table_number)

            request = CreateCustomerTabRequest(table_number=table_number, tab_name=name, guest_id=guest_id)
            fallback = "Failed to create customer tab"

            def settle(envelope):
                created = self._require(envelope.customer_tab, envelope, fallback)
                return {token: created}, {"tab": created}

            return await self._run(
                "create_tab",
                meta=meta,
                started=started,
                table_number=table_number,
                tab_id=None,
                edits={table_number: lambda current: (*current, placeholder)},
                remote=lambda: self.gateway.create_customer_tab(request, idempotency_key=meta.idempotency_key),
                settle=settle,
                fallback=fallback,
                message=lambda entities: f'Customer tab "{entities["tab"].tab_name}" created successfully',
            )

    async def update_customer_tab(
        self,
        tab_id: str,
        *,
        tab_name: str | None = None,
        order_items: Iterable[ItemInput] | None = None,
        status: str | None = None,
    ) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        try:
            if tab_name is None and order_items is None and status is None:
                raise validation_error("Nothing to update", code="EMPTY_UPDATE")
            changes: dict[str, Any] = {}
            if tab_name is not None:
                changes["tab_name"] = validate_tab_name(tab_name)
            if order_items is not None:
                changes["order_items"] = coerce_items(order_items)
            if status is not None:
                changes["status"] = validate_tab_status(status)
        except ValidationError as exc:
            return self._reject("update_tab", exc, meta=meta, started=started, tab_id=tab_id)
        request = UpdateCustomerTabRequest(
            **{key: list(value) if key == "order_items" else value for key, value in changes.items()}
        )
        return await self._update_tab(
            "update_tab",
            tab_id,
            lambda tab: tab.model_copy(update=changes),
            "Customer tab updated",
            meta=meta,
            started=started,
            remote=lambda durable_id, _projected: self.gateway.update_customer_tab(
                durable_id, request, idempotency_key=meta.idempotency_key
            ),
        )

    async def rename_customer_tab(self, tab_id: str, new_name: str) -> MutationResult:
        return await self.update_customer_tab(tab_id, tab_name=new_name)

    async def complete_customer_tab(self, tab_id: str) -> MutationResult:
        """Mark the tab paid; it stays listed under its table."""
        return await self.update_customer_tab(tab_id, status="paid")

    async def replace_customer_tab_items(self, tab_id: str, items: Iterable[ItemInput]) -> MutationResult:
        return await self.update_customer_tab(tab_id, order_items=items)

    async def remove_item_from_customer_tab(self, tab_id: str, index: int) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        return await self._update_tab(
            "remove_tab_item",
            tab_id,
            lambda tab: tab.model_copy(update={"order_items": remove_item_at(tab.order_items, index)}),
            "Item removed from tab",
            meta=meta,
            started=started,
            remote=lambda durable_id, projected: self.gateway.update_customer_tab(
                durable_id,
                UpdateCustomerTabRequest(order_items=list(projected.order_items)),
                idempotency_key=meta.idempotency_key,
            ),
        )

    async def add_items_to_customer_tab(self, tab_id: str, items: Iterable[ItemInput]) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        try:
            additions = coerce_items(items)
        except ValidationError as exc:
            return self._reject("add_tab_items", exc, meta=meta, started=started, tab_id=tab_id)
        if not additions:
            return self._succeed(
                "add_tab_items",
                "No items to add",
                meta=meta,
                started=started,
                tab_id=tab_id,
                notify=False,
                tab=self.state.tabs.find_tab(tab_id),
            )
        request = AddItemsRequest(items=list(additions))
        return await self._update_tab(
            "add_tab_items",
            tab_id,
            lambda tab: tab.model_copy(update={"order_items": (*tab.order_items, *additions)}),
            f"Added {len(additions)} item(s) to tab",
            meta=meta,
            started=started,
            remote=lambda durable_id, _projected: self.gateway.add_items_to_customer_tab(
                durable_id, request, idempotency_key=meta.idempotency_key
            ),
        )

    async def close_customer_tab(self, tab_id: str) -> MutationResult:
        return await self._remove_tab(
            "close_tab",
            tab_id,
            lambda durable_id, idempotency_key: self.gateway.close_customer_tab(
                durable_id, idempotency_key=idempotency_key
            ),
            "Failed to close customer tab",
            "Customer tab closed",
        )

    async def delete_customer_tab(self, tab_id: str) -> MutationResult:
        return await self._remove_tab(
            "delete_tab",
            tab_id,
            lambda durable_id, idempotency_key: self.gateway.delete_customer_tab(
                durable_id, idempotency_key=idempotency_key
            ),
            "Failed to delete customer tab",
            "Customer tab deleted",
        )

    async def split_customer_tab(
        self,
        source_tab_id: str,
        new_tab_name: str,
        item_indices: Iterable[int],
        guest_id: str | None = None,
    ) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        indices = list(item_indices)
        token = new_correlation_token()
        async with self.state.locks.hold(tab_key(token), *self._lock_keys(source_tab_id)):
            try:
                name = validate_tab_name(new_tab_name)
                table_number, source = self._locate(source_tab_id)
                selected, remaining = partition_items(source.order_items, indices)
            except (ValidationError, NotFoundError) as exc:
                return self._reject("split_tab", exc, meta=meta, started=started, tab_id=source_tab_id)

            projected_source = source.model_copy(update={"order_items": remaining})
            projected_new = CustomerTab(
                id=token,
                table_number=table_number,
                tab_name=name,
                order_items=selected,
                guest_id=guest_id,
            )
            request = SplitTabRequest(
                source_tab_id=source.id,
                new_tab_name=name,
                item_indices=sorted(set(indices)),
                guest_id=guest_id,
            )
            fallback = "Failed to split tab"

            def settle(envelope):
                original = self._require(envelope.original_tab, envelope, fallback)
                created = self._require(envelope.new_tab, envelope, fallback)
                return {source.id: original, token: created}, {"original_tab": original, "new_tab": created}

            return await self._run(
                "split_tab",
                meta=meta,
                started=started,
                table_number=table_number,
                tab_id=source.id,
                edits={
                    table_number: lambda current: (*_replace_tab(current, source.id, projected_source), projected_new)
                },
                remote=lambda: self.gateway.split_tab(request, idempotency_key=meta.idempotency_key),
                settle=settle,
                fallback=fallback,
                message=lambda entities: f'Split {len(selected)} item(s) into "{entities["new_tab"].tab_name}"',
            )

    async def merge_customer_tabs(self, source_tab_id: str, target_tab_id: str) -> MutationResult:
        """Append the source tab's items to the target tab and remove the source tab."""
        meta, started = new_mutation_meta(), time.monotonic()
        async with self.state.locks.hold(*self._lock_keys(source_tab_id, target_tab_id)):
            try:
                source_table, source, target_table, target = self._locate_pair(source_tab_id, target_tab_id)
            except (ValidationError, NotFoundError) as exc:
                return self._reject("merge_tabs", exc, meta=meta, started=started, tab_id=source_tab_id)

            merged = target.model_copy(update={"order_items": (*target.order_items, *source.order_items)})
            edits: dict[int, ListEdit] = {}
            if source_table == target_table:
                edits[source_table] = lambda current: _replace_tab(_drop_tab(current, source.id), target.id, merged)
            else:
                edits[source_table] = lambda current: _drop_tab(current, source.id)
                edits[target_table] = lambda current: _replace_tab(current, target.id, merged)
            request = MergeTabsRequest(source_tab_id=source.id, target_tab_id=target.id)
            fallback = "Failed to merge tabs"

            def settle(envelope):
                absorbed = self._require(envelope.target_tab, envelope, fallback)
                return {target.id: absorbed}, {"target_tab": absorbed}

            return await self._run(
                "merge_tabs",
                meta=meta,
                started=started,
                table_number=target_table,
                tab_id=target.id,
                edits=edits,
                remote=lambda: self.gateway.merge_tabs(request, idempotency_key=meta.idempotency_key),
                settle=settle,
                fallback=fallback,
                message=lambda entities: f'Merged "{source.tab_name}" into "{entities["target_tab"].tab_name}"',
                removed=(source_table, source.id, target.id if source_table == target_table else None),
            )

    async def move_items_between_tabs(
        self, source_tab_id: str, target_tab_id: str, item_indices: Iterable[int]
    ) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        indices = list(item_indices)
        async with self.state.locks.hold(*self._lock_keys(source_tab_id, target_tab_id)):
            try:
                source_table, source, target_table, target = self._locate_pair(source_tab_id, target_tab_id)
                moved, kept = partition_items(source.order_items, indices)
            except (ValidationError, NotFoundError) as exc:
                return self._reject("move_items", exc, meta=meta, started=started, tab_id=source_tab_id)

            projected_source = source.model_copy(update={"order_items": kept})
            projected_target = target.model_copy(update={"order_items": (*target.order_items, *moved)})
            edits: dict[int, ListEdit] = {}
            if source_table == target_table:
                edits[source_table] = lambda current: _replace_tab(
                    _replace_tab(current, source.id, projected_source), target.id, projected_target
                )
            else:
                edits[source_table] = lambda current: _replace_tab(current, source.id, projected_source)
                edits[target_table] = lambda current: _replace_tab(current, target.id, projected_target)
            request = MoveItemsRequest(
                source_tab_id=source.id,
                target_tab_id=target.id,
                item_indices=sorted(set(indices)),
            )
            fallback = "Failed to move items"

            def settle(envelope):
                new_source = self._require(envelope.source_tab, envelope, fallback)
                new_target = self._require(envelope.target_tab, envelope, fallback)
                return (
                    {source.id: new_source, target.id: new_target},
                    {"source_tab": new_source, "target_tab": new_target},
                )

            return await self._run(
                "move_items",
                meta=meta,
                started=started,
                table_number=source_table,
                tab_id=source.id,
                edits=edits,
                remote=lambda: self.gateway.move_items_between_tabs(request, idempotency_key=meta.idempotency_key),
                settle=settle,
                fallback=fallback,
                message=lambda entities: f'Moved {len(moved)} item(s) to "{entities["target_tab"].tab_name}"',
            )

    def set_active_customer_tab(self, table_number: int, tab_id: str | None) -> MutationResult:
        """Select the tab staff are working on; local state only."""
        meta, started = new_mutation_meta(), time.monotonic()
        tabs = self.state.tabs
        tab = tabs.find_tab(tab_id) if tab_id is not None else None
        if tab_id is not None and (tab is None or tabs.owner_of(tab_id) != table_number):
            error = not_found(f"Customer tab {tab_id} not found at table {table_number}", code="TAB_NOT_FOUND")
            return self._reject("set_active_tab", error, meta=meta, started=started, table_number=table_number)
        tabs.set_active_tab_id(table_number, tab.id if tab else None)
        log_action(
            self.state.logger, self.module, "set_active_tab", table_number, tab_id, meta.transaction_id, "success"
        )
        message = f'Active tab is now "{tab.tab_name}"' if tab else "Active tab cleared"
        return MutationResult(ok=True, message=message, tab=tab, meta=meta)

    async def _update_tab(
        self,
        action: str,
        tab_id: str,
        transform: Callable[[CustomerTab], CustomerTab],
        success_message: str,
        *,
        meta: MutationMeta,
        started: float,
        remote: Callable[[str, CustomerTab], Awaitable[Any]],
    ) -> MutationResult:
        async with self.state.locks.hold(*self._lock_keys(tab_id)):
            try:
                table_number, tab = self._locate(tab_id)
                projected = transform(tab)
            except (ValidationError, NotFoundError) as exc:
                return self._reject(action, exc, meta=meta, started=started, tab_id=tab_id)

            fallback = "Failed to update customer tab"

            def settle(envelope):
                updated = self._require(envelope.customer_tab, envelope, fallback)
                return {tab.id: updated}, {"tab": updated}

            return await self._run(
                action,
                meta=meta,
                started=started,
                table_number=table_number,
                tab_id=tab.id,
                edits={table_number: lambda current: _replace_tab(current, tab.id, projected)},
                remote=lambda: remote(tab.id, projected),
                settle=settle,
                fallback=fallback,
                message=lambda _entities: success_message,
            )

    async def _remove_tab(
        self,
        action: str,
        tab_id: str,
        remote: Callable[[str, str], Awaitable[AckEnvelope]],
        fallback: str,
        success_message: str,
    ) -> MutationResult:
        meta, started = new_mutation_meta(), time.monotonic()
        async with self.state.locks.hold(*self._lock_keys(tab_id)):
            try:
                table_number, tab = self._locate(tab_id)
            except NotFoundError as exc:
                return self._reject(action, exc, meta=meta, started=started, tab_id=tab_id)
            return await self._run(
                action,
                meta=meta,
                started=started,
                table_number=table_number,
                tab_id=tab.id,
                edits={table_number: lambda current: _drop_tab(current, tab.id)},
                remote=lambda: remote(tab.id, meta.idempotency_key),
                settle=lambda _envelope: ({}, {}),
                fallback=fallback,
                message=lambda _entities: success_message,
                removed=(table_number, tab.id, None),
            )

    async def _run(
        self,
        action: str,
        *,
        meta: MutationMeta,
        started: float,
        table_number: int,
        tab_id: str | None,
        edits: Mapping[int, ListEdit],
        remote: Callable[[], Awaitable[Any]],
        settle: Settle,
        fallback: str,
        message: Callable[[dict[str, CustomerTab]], str],
        removed: tuple[int, str, str | None] | None = None,
    ) -> MutationResult:
        """Project the edits, call the gateway, then commit the server's tabs or roll back.

        Callers hold the tab-list locks of every table in ``edits``. ``removed`` names a
        tab that leaves its table as (table, tab id, preferred replacement for the
        active pointer).
        """
        pending = self._begin(edits)
        if removed is not None:
            self._repoint_active(*removed)
        try:
            envelope = await self._call(remote, fallback)
            swaps, entities = settle(envelope)
        except RemoteFailure as exc:
            self._rollback(pending)
            return self._fail(action, exc, meta=meta, started=started, table_number=table_number, tab_id=tab_id)
        except asyncio.CancelledError:
            self._rollback(pending)
            raise
        self._commit(pending, swaps)
        return self._succeed(
            action,
            message(entities),
            meta=meta,
            started=started,
            table_number=table_number,
            tab_id=tab_id,
            **entities,
        )

    def _begin(self, edits: Mapping[int, ListEdit]) -> _PendingTabMutation:
        tabs = self.state.tabs
        active_before = {number: tabs.get_active_tab_id(number) for number in edits}
        snapshots = {
            number: tabs.begin_optimistic_mutation(number, lambda current, edit=edit: edit(current or ()))
            for number, edit in edits.items()
        }
        return _PendingTabMutation(edits=edits, snapshots=snapshots, active_before=active_before)

    def _rollback(self, pending: _PendingTabMutation) -> None:
        tabs = self.state.tabs
        for number, snapshot in pending.snapshots.items():
            tabs.rollback(number, snapshot)
            tabs.set_active_tab_id(number, pending.active_before[number])

    def _commit(self, pending: _PendingTabMutation, swaps: dict[str, CustomerTab]) -> None:
        tabs = self.state.tabs
        for number, edit in pending.edits.items():
            # Rebase on the confirmed list so tabs a sync pulled in meanwhile survive.
            tabs.commit(number, _settled_list(number, edit(tabs.get_confirmed(number) or ()), swaps))
        for old_id, durable in swaps.items():
            if old_id != durable.id:
                tabs.resolve_pending(old_id, durable.id)

    def _repoint_active(self, table_number: int, removed_id: str, preferred: str | None) -> None:
        tabs = self.state.tabs
        if tabs.get_active_tab_id(table_number) != removed_id:
            return
        if preferred is not None:
            tabs.set_active_tab_id(table_number, preferred)
            return
        remaining = tabs.get_optimistic(table_number) or ()
        tabs.set_active_tab_id(table_number, remaining[0].id if remaining else None)

    def _lock_keys(self, *tab_ids: str) -> list[Hashable]:
        tabs = self.state.tabs
        keys: list[Hashable] = []
        for tab_id in tab_ids:
            resolved = tabs.resolve_tab_id(tab_id)
            keys.append(tab_key(resolved))
            owner = tabs.owner_of(resolved)
            if owner is not None:
                keys.append(tab_list_key(owner))
        return keys

    def _locate(self, tab_id: str) -> tuple[int, CustomerTab]:
        tabs = self.state.tabs
        table_number = tabs.owner_of(tab_id)
        tab = tabs.find_tab(tab_id) if table_number is not None else None
        if table_number is None or tab is None:
            raise not_found(f"Customer tab {tab_id} not found", code="TAB_NOT_FOUND", details={"tab_id": tab_id})
        return table_number, tab

    def _locate_pair(
        self, source_tab_id: str, target_tab_id: str
    ) -> tuple[int, CustomerTab, int, CustomerTab]:
        tabs = self.state.tabs
        if tabs.resolve_tab_id(source_tab_id) == tabs.resolve_tab_id(target_tab_id):
            raise validation_error("Source and target tab must differ", code="SAME_TAB")
        source_table, source = self._locate(source_tab_id)
        target_table, target = self._locate(target_tab_id)
        return source_table, source, target_table, target

