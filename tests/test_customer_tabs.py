from __future__ import annotations

import asyncio
from collections import Counter
from decimal import Decimal

import pytest

from fakes import FakeGateway, item, make_engine
from tablesync.exceptions import ConflictError


async def _seated_with_tabs(*names: str):
    engine, gateway, notifier = make_engine()
    await engine.create_table_order(5, 4)
    tabs = []
    for name in names:
        result = await engine.create_customer_tab(5, name)
        assert result.ok
        tabs.append(result.tab)
    return engine, gateway, notifier, tabs


def _names(items) -> list[str]:
    return [entry.name for entry in items]


def test_table_five_walkthrough() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        created = await engine.create_table_order(5, 4)
        assert created.ok
        assert engine.get_table_status(5) == "SEATED"
        assert engine.get_table_orders(5) == ()

        guest_a = (await engine.create_customer_tab(5, "Guest A")).tab
        guest_b = (await engine.create_customer_tab(5, "Guest B")).tab
        assert len(engine.get_customer_tabs_for_table(5)) == 2

        added = await engine.add_items_to_customer_tab(guest_a.id, [item("Samosa", "5.00"), item("Pakora", "5.00")])
        assert len(added.tab.order_items) == 2
        assert added.tab.total == Decimal("10.00")

        split = await engine.split_customer_tab(guest_a.id, "Guest A2", [1])
        assert len(split.original_tab.order_items) == 1
        assert len(split.new_tab.order_items) == 1
        assert split.original_tab.total + split.new_tab.total == Decimal("10.00")

        merged = await engine.merge_customer_tabs(split.new_tab.id, guest_b.id)
        assert merged.ok
        assert len(merged.target_tab.order_items) == 1
        assert engine.get_customer_tab_by_id(split.new_tab.id) is None
        remaining = engine.get_customer_tabs_for_table(5)
        assert [tab.id for tab in remaining] == [guest_a.id, guest_b.id]
        assert gateway.count("merge_tabs") == 1

    asyncio.run(scenario())


def test_create_tab_shows_placeholder_until_server_answers() -> None:
    async def scenario() -> None:
        engine, gateway, _, _ = await _seated_with_tabs()
        gateway.hold = asyncio.Event()

        pending = asyncio.create_task(engine.create_customer_tab(5, "Guest A"))
        await asyncio.sleep(0)
        placeholder = engine.get_customer_tabs_for_table(5)[0]
        assert placeholder.is_pending
        engine.set_active_customer_tab(5, placeholder.id)

        gateway.hold.set()
        result = await pending

        tabs = engine.get_customer_tabs_for_table(5)
        assert [tab.id for tab in tabs] == [result.tab.id]
        assert not result.tab.is_pending
        # The selection made against the placeholder now follows the durable id.
        assert engine.get_active_customer_tab(5).id == result.tab.id
        assert engine.get_customer_tab_by_id(placeholder.id).id == result.tab.id

    asyncio.run(scenario())


def test_create_tab_swaps_placeholder_in_place() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A", "Guest B")
        await engine.load_customer_tabs_for_table(5)
        created = await engine.create_customer_tab(5, "Guest C")

        assert [tab.tab_name for tab in engine.get_customer_tabs_for_table(5)] == ["Guest A", "Guest B", "Guest C"]
        assert created.tab.id == list(gateway.tabs)[-1]

    asyncio.run(scenario())


def test_create_tab_failure_removes_placeholder_and_records_table_error() -> None:
    async def scenario() -> None:
        engine, gateway, notifier, _ = await _seated_with_tabs()
        gateway.fail("create_customer_tab")
        result = await engine.create_customer_tab(5, "Guest A")

        assert not result.ok
        assert engine.get_customer_tabs_for_table(5) == ()
        assert engine.get_table_error(5) == "Service unavailable"
        assert notifier.errors[-1] == "Service unavailable"

    asyncio.run(scenario())


def test_create_tab_requires_seated_table() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        result = await engine.create_customer_tab(9, "Guest A")

        assert result.error_code == "TABLE_NOT_FOUND"
        assert gateway.calls == []

    asyncio.run(scenario())


def test_update_tab_merges_partial_fields() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A")
        await engine.replace_customer_tab_items(tabs[0].id, [item("Naan")])
        renamed = await engine.rename_customer_tab(tabs[0].id, "Window seat")

        assert renamed.tab.tab_name == "Window seat"
        assert _names(renamed.tab.order_items) == ["Naan"]
        assert gateway.tabs[tabs[0].id].tab_name == "Window seat"

    asyncio.run(scenario())


def test_update_tab_rejects_unknown_status_and_empty_update() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A")
        bad_status = await engine.update_customer_tab(tabs[0].id, status="refunded")
        nothing = await engine.update_customer_tab(tabs[0].id)

        assert bad_status.error_code == "INVALID_TAB_STATUS"
        assert nothing.error_code == "EMPTY_UPDATE"
        assert gateway.count("update_customer_tab") == 0

    asyncio.run(scenario())


def test_complete_tab_marks_paid_and_keeps_it_listed() -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A")
        result = await engine.complete_customer_tab(tabs[0].id)

        assert result.tab.status == "paid"
        assert engine.get_customer_tab_by_id(tabs[0].id).status == "paid"
        assert not engine.has_active_customer_tabs(5)

    asyncio.run(scenario())


def test_tab_failure_is_recorded_against_the_tab_only() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan")])
        before = engine.state.tabs.get_optimistic(5)
        gateway.fail("add_items_to_customer_tab", ConflictError(code="CONFLICT", message="Stale tab", status_code=409))

        result = await engine.add_items_to_customer_tab(tabs[0].id, [item("Rice")])

        assert not result.ok
        assert engine.state.tabs.get_optimistic(5) == before
        assert engine.get_customer_tab_error(tabs[0].id) == "Stale tab"
        assert engine.get_table_error(5) is None

    asyncio.run(scenario())


def test_remove_item_from_tab_out_of_range() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan"), item("Rice")])
        missing = await engine.remove_item_from_customer_tab(tabs[0].id, 5)
        removed = await engine.remove_item_from_customer_tab(tabs[0].id, 0)

        assert missing.error_code == "ITEM_NOT_FOUND"
        assert _names(removed.tab.order_items) == ["Rice"]
        assert gateway.count("update_customer_tab") == 1

    asyncio.run(scenario())


def test_unknown_tab_is_not_found_without_remote_call() -> None:
    async def scenario() -> None:
        engine, gateway, _, _ = await _seated_with_tabs()
        calls_before = list(gateway.calls)
        result = await engine.close_customer_tab("tab-missing")

        assert result.error_code == "TAB_NOT_FOUND"
        assert gateway.calls == calls_before

    asyncio.run(scenario())


@pytest.mark.parametrize("operation", ["close_customer_tab", "delete_customer_tab"])
def test_removing_active_tab_moves_selection_to_first_remaining(operation: str) -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A", "Guest B", "Guest C")
        engine.set_active_customer_tab(5, tabs[1].id)

        result = await getattr(engine, operation)(tabs[1].id)

        assert result.ok
        assert engine.get_active_customer_tab(5).id == tabs[0].id
        assert tabs[1].id not in [tab.id for tab in engine.get_customer_tabs_for_table(5)]

    asyncio.run(scenario())


def test_removing_last_tab_clears_selection() -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A")
        engine.set_active_customer_tab(5, tabs[0].id)
        await engine.delete_customer_tab(tabs[0].id)

        assert engine.get_active_customer_tab(5) is None
        assert engine.get_table_status(5) == "SEATED"

    asyncio.run(scenario())


def test_close_failure_restores_tab_and_selection() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A", "Guest B")
        engine.set_active_customer_tab(5, tabs[0].id)
        before = engine.state.tabs.get_optimistic(5)
        gateway.fail("close_customer_tab")

        result = await engine.close_customer_tab(tabs[0].id)

        assert not result.ok
        assert engine.state.tabs.get_optimistic(5) == before
        assert engine.get_active_customer_tab(5).id == tabs[0].id
        assert engine.get_customer_tab_error(tabs[0].id)

    asyncio.run(scenario())


def test_split_rejects_empty_and_out_of_range_selection() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan"), item("Rice")])

        empty = await engine.split_customer_tab(tabs[0].id, "Guest A2", [])
        out_of_range = await engine.split_customer_tab(tabs[0].id, "Guest A2", [0, 4])

        assert empty.error_code == "EMPTY_SELECTION"
        assert out_of_range.error_code == "INVALID_ITEM_INDEX"
        assert gateway.count("split_tab") == 0
        assert len(engine.get_customer_tabs_for_table(5)) == 1

    asyncio.run(scenario())


def test_split_keeps_order_and_complement() -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A")
        await engine.add_items_to_customer_tab(
            tabs[0].id, [item("Naan"), item("Rice"), item("Dal"), item("Lassi")]
        )
        result = await engine.split_customer_tab(tabs[0].id, "Guest A2", [3, 1])

        assert _names(result.new_tab.order_items) == ["Rice", "Lassi"]
        assert _names(result.original_tab.order_items) == ["Naan", "Dal"]
        assert [tab.tab_name for tab in engine.get_customer_tabs_for_table(5)] == ["Guest A", "Guest A2"]

    asyncio.run(scenario())


def test_split_of_every_item_leaves_empty_source_tab() -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan"), item("Rice")])
        result = await engine.split_customer_tab(tabs[0].id, "Guest A2", [0, 1])

        assert result.ok
        assert result.original_tab.order_items == ()
        assert engine.get_customer_tab_by_id(tabs[0].id) is not None

    asyncio.run(scenario())


def test_split_failure_restores_source_exactly() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan"), item("Rice")])
        before = engine.state.tabs.get_optimistic(5)
        gateway.reject("split_tab", "Tab locked by another terminal")

        result = await engine.split_customer_tab(tabs[0].id, "Guest A2", [1])

        assert result.error_code == "REMOTE_REJECTED"
        assert engine.state.tabs.get_optimistic(5) == before
        assert engine.get_customer_tab_error(tabs[0].id) == "Tab locked by another terminal"

    asyncio.run(scenario())


@pytest.mark.parametrize("indices", [[0], [1, 2], [0, 2, 3], [0, 1, 2, 3]])
def test_split_then_merge_restores_item_multiset(indices: list[int]) -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A")
        original = [item("Naan"), item("Rice"), item("Dal", "7.00"), item("Naan")]
        await engine.add_items_to_customer_tab(tabs[0].id, original)

        split = await engine.split_customer_tab(tabs[0].id, "new", indices)
        merged = await engine.merge_customer_tabs(split.new_tab.id, split.original_tab.id)

        assert Counter(merged.target_tab.order_items) == Counter(original)

    asyncio.run(scenario())


def test_merge_moves_selection_from_source_to_target() -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A", "Guest B")
        engine.set_active_customer_tab(5, tabs[0].id)

        await engine.merge_customer_tabs(tabs[0].id, tabs[1].id)

        assert engine.get_active_customer_tab(5).id == tabs[1].id

    asyncio.run(scenario())


def test_merge_into_itself_is_rejected() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A")
        result = await engine.merge_customer_tabs(tabs[0].id, tabs[0].id)

        assert result.error_code == "SAME_TAB"
        assert gateway.count("merge_tabs") == 0

    asyncio.run(scenario())


def test_merge_failure_restores_both_tabs_and_selection() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A", "Guest B")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan")])
        engine.set_active_customer_tab(5, tabs[0].id)
        before = engine.state.tabs.get_optimistic(5)
        gateway.fail("merge_tabs")

        result = await engine.merge_customer_tabs(tabs[0].id, tabs[1].id)

        assert not result.ok
        assert engine.state.tabs.get_optimistic(5) == before
        assert engine.get_active_customer_tab(5).id == tabs[0].id
        assert engine.get_customer_tab_error(tabs[1].id)
        assert engine.get_customer_tab_error(tabs[0].id) is None

    asyncio.run(scenario())


def test_merge_across_linked_tables() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 4, linked_tables=[6])
        await engine.force_refresh()
        source = (await engine.create_customer_tab(6, "Bar stool")).tab
        target = (await engine.create_customer_tab(5, "Host")).tab
        await engine.add_items_to_customer_tab(source.id, [item("Beer")])
        engine.set_active_customer_tab(6, source.id)

        result = await engine.merge_customer_tabs(source.id, target.id)

        assert result.ok
        assert engine.get_customer_tabs_for_table(6) == ()
        assert _names(engine.get_customer_tab_by_id(target.id).order_items) == ["Beer"]
        assert engine.get_active_customer_tab(6) is None

    asyncio.run(scenario())


@pytest.mark.parametrize("indices", [[0], [0, 2], [1, 2]])
def test_move_items_conserves_combined_count(indices: list[int]) -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A", "Guest B")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan"), item("Rice"), item("Dal")])
        await engine.add_items_to_customer_tab(tabs[1].id, [item("Lassi")])

        result = await engine.move_items_between_tabs(tabs[0].id, tabs[1].id, indices)

        assert result.ok
        assert len(result.source_tab.order_items) + len(result.target_tab.order_items) == 4
        assert result.target_tab.order_items[0].name == "Lassi"
        assert len(result.target_tab.order_items) == 1 + len(indices)

    asyncio.run(scenario())


def test_move_items_by_position_not_by_value() -> None:
    async def scenario() -> None:
        engine, _, _, tabs = await _seated_with_tabs("Guest A", "Guest B")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan"), item("Naan"), item("Rice")])

        result = await engine.move_items_between_tabs(tabs[0].id, tabs[1].id, [1])

        assert _names(result.source_tab.order_items) == ["Naan", "Rice"]
        assert _names(result.target_tab.order_items) == ["Naan"]

    asyncio.run(scenario())


def test_move_failure_rolls_back_both_tabs() -> None:
    async def scenario() -> None:
        engine, gateway, _, tabs = await _seated_with_tabs("Guest A", "Guest B")
        await engine.add_items_to_customer_tab(tabs[0].id, [item("Naan"), item("Rice")])
        before = engine.state.tabs.get_optimistic(5)
        gateway.fail("move_items_between_tabs")

        result = await engine.move_items_between_tabs(tabs[0].id, tabs[1].id, [0])

        assert not result.ok
        assert engine.state.tabs.get_optimistic(5) == before

    asyncio.run(scenario())


def test_set_active_tab_rejects_tab_from_another_table() -> None:
    async def scenario() -> None:
        gateway = FakeGateway()
        engine, _, _ = make_engine(gateway)
        await engine.create_table_order(5, 2)
        await engine.create_table_order(6, 2)
        other = (await engine.create_customer_tab(6, "Guest")).tab

        result = engine.set_active_customer_tab(5, other.id)

        assert result.error_code == "TAB_NOT_FOUND"
        assert engine.get_active_customer_tab(5) is None

    asyncio.run(scenario())
