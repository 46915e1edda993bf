from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

from pydantic import ValidationError as PydanticValidationError

from .exceptions import not_found, validation_error
from .models import TAB_STATUSES, OrderItem

ItemInput = OrderItem | Mapping[str, Any]


def coerce_items(items: Iterable[ItemInput] | None) -> tuple[OrderItem, ...]:
    if items is None:
        return ()
    coerced: list[OrderItem] = []
    for row_index, item in enumerate(items):
        if isinstance(item, OrderItem):
            coerced.append(item)
            continue
        try:
            coerced.append(OrderItem.model_validate(item))
        except PydanticValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {"loc": (), "msg": str(exc)}
            field = ".".join(str(part) for part in first.get("loc", ())) or "item"
            raise validation_error(
                f"row {row_index} {field}: {first.get('msg')}",
                code="INVALID_ORDER_ITEM",
                details={"row_index": row_index, "field": field},
            ) from exc
    return tuple(coerced)


def validate_table_number(table_number: int) -> int:
    if isinstance(table_number, bool) or not isinstance(table_number, int) or table_number < 1:
        raise validation_error(f"Invalid table number: {table_number!r}", code="INVALID_TABLE_NUMBER")
    return table_number


def validate_guest_count(guest_count: int) -> int:
    if isinstance(guest_count, bool) or not isinstance(guest_count, int) or guest_count < 1:
        raise validation_error(
            f"Guest count must be at least 1, got {guest_count!r}",
            code="INVALID_GUEST_COUNT",
        )
    return guest_count


def validate_linked_tables(table_number: int, linked_tables: Iterable[int] | None) -> tuple[int, ...]:
    linked: list[int] = []
    for candidate in linked_tables or ():
        validate_table_number(candidate)
        if candidate == table_number:
            raise validation_error(
                f"Table {table_number} cannot be linked to itself",
                code="INVALID_LINKED_TABLES",
            )
        if candidate not in linked:
            linked.append(candidate)
    return tuple(linked)


def validate_tab_name(tab_name: str) -> str:
    name = (tab_name or "").strip()
    if not name:
        raise validation_error("Tab name is required", code="INVALID_TAB_NAME")
    return name


def validate_tab_status(status: str) -> str:
    if status not in TAB_STATUSES:
        raise validation_error(
            f"Unsupported tab status {status!r}; expected one of {', '.join(TAB_STATUSES)}",
            code="INVALID_TAB_STATUS",
        )
    return status


def validate_item_index(items: Sequence[OrderItem], index: int) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or index < 0 or index >= len(items):
        raise not_found(
            f"No item at position {index} (order has {len(items)} items)",
            code="ITEM_NOT_FOUND",
            details={"index": index, "item_count": len(items)},
        )
    return index


def validate_item_indices(items: Sequence[OrderItem], indices: Iterable[int]) -> tuple[int, ...]:
    """Return the selected positions in list order, rejecting empty or out-of-range selections."""
    selected: set[int] = set()
    for index in indices:
        if isinstance(index, bool) or not isinstance(index, int) or index < 0 or index >= len(items):
            raise validation_error(
                f"Item index {index!r} is out of range (tab has {len(items)} items)",
                code="INVALID_ITEM_INDEX",
                details={"index": index, "item_count": len(items)},
            )
        selected.add(index)
    if not selected:
        raise validation_error("Select at least one item", code="EMPTY_SELECTION")
    return tuple(sorted(selected))


def partition_items(
    items: Sequence[OrderItem], indices: Iterable[int]
) -> tuple[tuple[OrderItem, ...], tuple[OrderItem, ...]]:
    """Split items into (selected, remaining) by position; both keep their original order."""
    chosen = set(validate_item_indices(items, indices))
    selected = tuple(item for position, item in enumerate(items) if position in chosen)
    remaining = tuple(item for position, item in enumerate(items) if position not in chosen)
    return selected, remaining


def remove_item_at(items: Sequence[OrderItem], index: int) -> tuple[OrderItem, ...]:
    validate_item_index(items, index)
    return tuple(item for position, item in enumerate(items) if position != index)
