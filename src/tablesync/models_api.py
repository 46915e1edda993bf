from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .models import CustomerTab, OrderItem, TableOrder, TabStatus


class CreateTableOrderRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    table_number: int
    guest_count: int
    linked_tables: list[int] = Field(default_factory=list)


class UpdateTableOrderRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_items: list[OrderItem]


class CreateCustomerTabRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    table_number: int
    tab_name: str
    guest_id: str | None = None


class UpdateCustomerTabRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    tab_name: str | None = None
    order_items: list[OrderItem] | None = None
    status: TabStatus | None = None


class AddItemsRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    items: list[OrderItem]


class SplitTabRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    source_tab_id: str
    new_tab_name: str
    item_indices: list[int]
    guest_id: str | None = None


class MergeTabsRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    source_tab_id: str
    target_tab_id: str


class MoveItemsRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    source_tab_id: str
    target_tab_id: str
    item_indices: list[int]


class AckEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool = False
    message: str | None = None


class TableOrderEnvelope(AckEnvelope):
    table_order: TableOrder | None = None


class TableOrderListEnvelope(AckEnvelope):
    success: bool = True
    table_orders: list[TableOrder] = Field(default_factory=list)


class CustomerTabEnvelope(AckEnvelope):
    customer_tab: CustomerTab | None = None


class CustomerTabListEnvelope(AckEnvelope):
    customer_tabs: list[CustomerTab] = Field(default_factory=list)


class SplitTabEnvelope(AckEnvelope):
    original_tab: CustomerTab | None = None
    new_tab: CustomerTab | None = None


class MergeTabsEnvelope(AckEnvelope):
    target_tab: CustomerTab | None = None


class MoveItemsEnvelope(AckEnvelope):
    source_tab: CustomerTab | None = None
    target_tab: CustomerTab | None = None
