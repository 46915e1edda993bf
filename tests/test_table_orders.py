from __future__ import annotations

import asyncio
from decimal import Decimal

from fakes import FakeGateway, item, make_engine
from tablesync.exceptions import ServerError, TransportError


def test_create_table_order_seats_guests_with_empty_items() -> None:
    async def scenario() -> None:
        engine, gateway, notifier = make_engine()
        result = await engine.create_table_order(5, 4)

        assert result.ok
        assert result.table_order.table_number == 5
        assert engine.get_table_status(5) == "SEATED"
        assert engine.get_table_orders(5) == ()
        assert engine.get_table_order(5).guest_count == 4
        assert gateway.count("create_table_order") == 1
        assert gateway.idempotency_keys[-1] == result.meta.idempotency_key
        assert notifier.successes == ["Table 5 seated with 4 guests"]

    asyncio.run(scenario())


def test_create_rejects_non_positive_guest_count_without_remote_call() -> None:
    async def scenario() -> None:
        engine, gateway, notifier = make_engine()
        result = await engine.create_table_order(5, 0)

        assert not result
        assert result.error_code == "INVALID_GUEST_COUNT"
        assert gateway.calls == []
        assert engine.get_table_status(5) == "AVAILABLE"
        assert engine.table_errors == {}
        assert notifier.errors

    asyncio.run(scenario())


def test_create_rejects_already_seated_table() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        result = await engine.create_table_order(5, 3)

        assert result.error_code == "TABLE_ALREADY_SEATED"
        assert gateway.count("create_table_order") == 1
        assert engine.get_table_order(5).guest_count == 2

    asyncio.run(scenario())


def test_create_failure_leaves_table_available_and_records_error() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        gateway.fail("create_table_order", TransportError(code="TRANSPORT_ERROR", message="offline"))
        result = await engine.create_table_order(5, 4)

        assert not result.ok
        assert engine.get_table_status(5) == "AVAILABLE"
        assert engine.get_table_order(5) is None
        assert engine.get_table_error(5) == "offline"

    asyncio.run(scenario())


def test_create_treats_unsuccessful_body_as_failure() -> None:
    async def scenario() -> None:
        engine, gateway, notifier = make_engine()
        gateway.reject("create_table_order", "Table is reserved")
        result = await engine.create_table_order(5, 4)

        assert result.error_code == "REMOTE_REJECTED"
        assert engine.get_table_order(5) is None
        assert notifier.errors == ["Table is reserved"]

    asyncio.run(scenario())


def test_add_items_appends_and_reconciles_with_server() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        await engine.add_items_to_table(5, [item("Naan", "2.50")])
        result = await engine.add_items_to_table(5, [{"name": "Lassi", "price": "3.00", "quantity": 2}])

        assert result.ok
        names = [entry.name for entry in engine.get_table_orders(5)]
        assert names == ["Naan", "Lassi"]
        assert result.table_order.total == Decimal("8.50")
        assert engine.state.tables.get_confirmed(5) == engine.state.tables.get_optimistic(5)
        assert [entry.name for entry in gateway.table_orders[5].order_items] == names

    asyncio.run(scenario())


def test_add_items_with_empty_input_is_a_noop_success() -> None:
    async def scenario() -> None:
        engine, gateway, notifier = make_engine()
        await engine.create_table_order(5, 2)
        result = await engine.add_items_to_table(5, [])

        assert result.ok
        assert gateway.count("update_table_order") == 0
        assert notifier.successes == ["Table 5 seated with 2 guests"]

    asyncio.run(scenario())


def test_add_items_rejects_malformed_rows() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        result = await engine.add_items_to_table(5, [{"name": "Naan", "quantity": 0}])

        assert result.error_code == "INVALID_ORDER_ITEM"
        assert gateway.count("update_table_order") == 0

    asyncio.run(scenario())


def test_remove_item_out_of_range_fails_and_keeps_items() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        await engine.update_table_items(5, [item("Naan"), item("Rice")])
        result = await engine.remove_item_from_table(5, 99)

        assert not result
        assert result.error_code == "ITEM_NOT_FOUND"
        assert len(engine.get_table_orders(5)) == 2
        assert gateway.count("update_table_order") == 1

    asyncio.run(scenario())


def test_remove_item_without_order_is_not_found() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        result = await engine.remove_item_from_table(7, 0)

        assert result.error_code == "TABLE_NOT_FOUND"
        assert gateway.calls == []

    asyncio.run(scenario())


def test_remove_item_by_position() -> None:
    async def scenario() -> None:
        engine, _, _ = make_engine()
        await engine.create_table_order(5, 2)
        await engine.update_table_items(5, [item("Naan"), item("Rice"), item("Dal")])
        result = await engine.remove_item_from_table(5, 1)

        assert result.ok
        assert [entry.name for entry in engine.get_table_orders(5)] == ["Naan", "Dal"]

    asyncio.run(scenario())


def test_update_items_failure_reverts_and_records_table_error() -> None:
    async def scenario() -> None:
        engine, gateway, notifier = make_engine()
        await engine.create_table_order(5, 2)
        await engine.update_table_items(5, [item("Naan")])
        before = engine.state.tables.get_optimistic(5)

        gateway.fail("update_table_order")
        result = await engine.update_table_items(5, [item("Biryani"), item("Raita")])

        assert not result.ok
        assert isinstance(result.error, ServerError)
        assert engine.state.tables.get_optimistic(5) == before
        assert [entry.name for entry in engine.get_table_orders(5)] == ["Naan"]
        assert engine.get_table_error(5) == "Service unavailable"
        assert engine.customer_tab_errors == {}
        assert notifier.errors == ["Service unavailable"]

    asyncio.run(scenario())


def test_successful_mutation_clears_previous_table_error() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        gateway.fail("update_table_order")
        await engine.update_table_items(5, [item("Naan")])
        assert engine.get_table_error(5)

        await engine.update_table_items(5, [item("Naan")])
        assert engine.get_table_error(5) is None

    asyncio.run(scenario())


def test_optimistic_items_visible_while_remote_call_in_flight() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        gateway.hold = asyncio.Event()

        pending = asyncio.create_task(engine.update_table_items(5, [item("Naan")]))
        await asyncio.sleep(0)
        assert [entry.name for entry in engine.get_table_orders(5)] == ["Naan"]
        assert engine.state.tables.get_confirmed(5).order_items == ()

        gateway.hold.set()
        assert (await pending).ok
        assert engine.state.tables.get_confirmed(5).order_items[0].name == "Naan"

    asyncio.run(scenario())


def test_disabled_optimistic_mode_reads_confirmed_state() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine(enable_optimistic_updates=False)
        await engine.create_table_order(5, 2)
        gateway.hold = asyncio.Event()

        pending = asyncio.create_task(engine.update_table_items(5, [item("Naan")]))
        await asyncio.sleep(0)
        assert engine.get_table_orders(5) == ()

        gateway.hold.set()
        await pending
        assert [entry.name for entry in engine.get_table_orders(5)] == ["Naan"]

    asyncio.run(scenario())


def test_same_table_mutations_run_one_after_another() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        gateway.hold = asyncio.Event()

        first = asyncio.create_task(engine.add_items_to_table(5, [item("Naan")]))
        second = asyncio.create_task(engine.add_items_to_table(5, [item("Rice")]))
        await asyncio.sleep(0)
        assert gateway.count("update_table_order") == 1

        gateway.hold.set()
        await asyncio.gather(first, second)
        assert [entry.name for entry in engine.get_table_orders(5)] == ["Naan", "Rice"]

    asyncio.run(scenario())


def test_complete_removes_order_and_tabs() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        created = await engine.create_customer_tab(5, "Guest A")
        engine.set_active_customer_tab(5, created.tab.id)

        result = await engine.complete_table_order(5)

        assert result.ok
        assert engine.get_table_status(5) == "AVAILABLE"
        assert engine.get_table_order(5) is None
        assert engine.get_customer_tabs_for_table(5) == ()
        assert engine.get_active_customer_tab(5) is None
        assert 5 not in gateway.table_orders

    asyncio.run(scenario())


def test_complete_is_idempotent_when_already_removed() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        assert (await engine.complete_table_order(5)).ok
        assert (await engine.complete_table_order(5)).ok
        assert gateway.count("complete_table_order") == 1

    asyncio.run(scenario())


def test_complete_failure_restores_table_and_tabs() -> None:
    async def scenario() -> None:
        engine, gateway, _ = make_engine()
        await engine.create_table_order(5, 2)
        created = await engine.create_customer_tab(5, "Guest A")
        engine.set_active_customer_tab(5, created.tab.id)
        gateway.fail("complete_table_order")

        result = await engine.complete_table_order(5)

        assert not result.ok
        assert engine.get_table_status(5) == "SEATED"
        assert engine.get_active_customer_tab(5).id == created.tab.id
        assert engine.get_table_error(5)

    asyncio.run(scenario())


def test_reset_to_available_without_prior_complete() -> None:
    async def scenario() -> None:
        gateway = FakeGateway()
        gateway.seed_table(8, items=[item("Naan")])
        engine, _, _ = make_engine(gateway)
        await engine.load_table_orders()

        result = await engine.reset_table_to_available(8)

        assert result.ok
        assert engine.get_table_status(8) == "AVAILABLE"
        assert gateway.count("reset_table_to_available") == 1

    asyncio.run(scenario())
