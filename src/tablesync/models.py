from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .identifiers import is_pending_tab_id

TableStatus = Literal["AVAILABLE", "SEATED"]
TabStatus = Literal["active", "paid", "cancelled"]

TABLE_AVAILABLE: TableStatus = "AVAILABLE"
TABLE_SEATED: TableStatus = "SEATED"
TAB_STATUSES: tuple[TabStatus, ...] = ("active", "paid", "cancelled")


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    id: str | None = None
    menu_item_id: str | None = None
    variant_id: str | None = None
    name: str
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Decimal("0")
    variant_name: str | None = None
    notes: str | None = None
    protein_type: str | None = None
    image_url: str | None = None
    customizations: tuple[Any, ...] = ()

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


def items_total(items: tuple[OrderItem, ...] | list[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


class TableOrder(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    id: str | None = None
    table_number: int = Field(ge=1)
    order_items: tuple[OrderItem, ...] = ()
    status: TableStatus = TABLE_SEATED
    guest_count: int = Field(default=0, ge=0)
    linked_tables: tuple[int, ...] = ()
    primary_table: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_seated(self) -> bool:
        return self.status == TABLE_SEATED

    @property
    def total(self) -> Decimal:
        return items_total(self.order_items)


class CustomerTab(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    id: str
    table_number: int = Field(ge=1)
    tab_name: str
    order_items: tuple[OrderItem, ...] = ()
    status: TabStatus = "active"
    guest_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return is_pending_tab_id(self.id)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def total(self) -> Decimal:
        return items_total(self.order_items)


class TableWithTabs(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_number: int
    guest_count: int
    status: TableStatus
    customer_tabs: tuple[CustomerTab, ...] = ()
    linked_tables: tuple[int, ...] = ()


class LinkedTableGroup(BaseModel):
    """Derived view over a primary table and the tables seated with it."""

    model_config = ConfigDict(frozen=True)

    primary_table: int
    tables: tuple[TableWithTabs, ...]
    guest_count: int

    @property
    def member_tables(self) -> tuple[int, ...]:
        return tuple(table.table_number for table in self.tables)
