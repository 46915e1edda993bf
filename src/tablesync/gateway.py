from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from .config import GatewayConfig
from .error_mapper import map_error
from .exceptions import TransportError
from .identifiers import IDEMPOTENCY_HEADER, TRACE_HEADER, new_trace_id
from .models_api import (
    AckEnvelope,
    AddItemsRequest,
    CreateCustomerTabRequest,
    CreateTableOrderRequest,
    CustomerTabEnvelope,
    CustomerTabListEnvelope,
    MergeTabsEnvelope,
    MergeTabsRequest,
    MoveItemsEnvelope,
    MoveItemsRequest,
    SplitTabEnvelope,
    SplitTabRequest,
    TableOrderEnvelope,
    TableOrderListEnvelope,
    UpdateCustomerTabRequest,
    UpdateTableOrderRequest,
)


class PersistenceGateway(Protocol):
    """Remote store for table orders and customer tabs; each call returns a whole-entity envelope."""

    async def list_table_orders(self) -> TableOrderListEnvelope: ...

    async def create_table_order(
        self, request: CreateTableOrderRequest, *, idempotency_key: str | None = None
    ) -> TableOrderEnvelope: ...

    async def update_table_order(
        self, table_number: int, request: UpdateTableOrderRequest, *, idempotency_key: str | None = None
    ) -> TableOrderEnvelope: ...

    async def complete_table_order(
        self, table_number: int, *, idempotency_key: str | None = None
    ) -> AckEnvelope: ...

    async def reset_table_to_available(
        self, table_number: int, *, idempotency_key: str | None = None
    ) -> AckEnvelope: ...

    async def list_customer_tabs_for_table(self, table_number: int) -> CustomerTabListEnvelope: ...

    async def create_customer_tab(
        self, request: CreateCustomerTabRequest, *, idempotency_key: str | None = None
    ) -> CustomerTabEnvelope: ...

    async def update_customer_tab(
        self, tab_id: str, request: UpdateCustomerTabRequest, *, idempotency_key: str | None = None
    ) -> CustomerTabEnvelope: ...

    async def add_items_to_customer_tab(
        self, tab_id: str, request: AddItemsRequest, *, idempotency_key: str | None = None
    ) -> CustomerTabEnvelope: ...

    async def close_customer_tab(self, tab_id: str, *, idempotency_key: str | None = None) -> AckEnvelope: ...

    async def delete_customer_tab(self, tab_id: str, *, idempotency_key: str | None = None) -> AckEnvelope: ...

    async def split_tab(
        self, request: SplitTabRequest, *, idempotency_key: str | None = None
    ) -> SplitTabEnvelope: ...

    async def merge_tabs(
        self, request: MergeTabsRequest, *, idempotency_key: str | None = None
    ) -> MergeTabsEnvelope: ...

    async def move_items_between_tabs(
        self, request: MoveItemsRequest, *, idempotency_key: str | None = None
    ) -> MoveItemsEnvelope: ...


@dataclass
class LastOperation:
    operation: str
    duration_ms: int
    result: str
    trace_id: str | None


Sleep = Callable[[float], Awaitable[None]]


@dataclass
class HttpPersistenceGateway:
    config: GatewayConfig
    client: httpx.AsyncClient | None = None
    sleep: Sleep = asyncio.sleep
    last_operation: LastOperation | None = None
    _owns_client: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.config.api_base_url,
                timeout=self.config.timeout_seconds,
                verify=self.config.verify_ssl,
            )
            self._owns_client = True

    async def aclose(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "HttpPersistenceGateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def list_table_orders(self) -> TableOrderListEnvelope:
        data = await self._request("GET", "/table-orders", operation="list_table_orders")
        return TableOrderListEnvelope.model_validate(data)

    async def create_table_order(
        self, request: CreateTableOrderRequest, *, idempotency_key: str | None = None
    ) -> TableOrderEnvelope:
        data = await self._request(
            "POST",
            "/table-orders",
            json_body=request.model_dump(mode="json"),
            idempotency_key=idempotency_key,
            operation="create_table_order",
        )
        return TableOrderEnvelope.model_validate(data)

    async def update_table_order(
        self, table_number: int, request: UpdateTableOrderRequest, *, idempotency_key: str | None = None
    ) -> TableOrderEnvelope:
        data = await self._request(
            "PUT",
            f"/table-orders/{table_number}",
            json_body=request.model_dump(mode="json"),
            idempotency_key=idempotency_key,
            operation="update_table_order",
        )
        return TableOrderEnvelope.model_validate(data)

    async def complete_table_order(self, table_number: int, *, idempotency_key: str | None = None) -> AckEnvelope:
        data = await self._request(
            "POST",
            f"/table-orders/{table_number}/complete",
            idempotency_key=idempotency_key,
            operation="complete_table_order",
        )
        return AckEnvelope.model_validate(data)

    async def reset_table_to_available(
        self, table_number: int, *, idempotency_key: str | None = None
    ) -> AckEnvelope:
        data = await self._request(
            "POST",
            f"/table-orders/{table_number}/reset",
            idempotency_key=idempotency_key,
            operation="reset_table_to_available",
        )
        # The reset endpoint answers with an empty body on success.
        return AckEnvelope.model_validate(data or {"success": True})

    async def list_customer_tabs_for_table(self, table_number: int) -> CustomerTabListEnvelope:
        data = await self._request(
            "GET",
            f"/customer-tabs/table/{table_number}",
            operation="list_customer_tabs_for_table",
        )
        return CustomerTabListEnvelope.model_validate(data)

    async def create_customer_tab(
        self, request: CreateCustomerTabRequest, *, idempotency_key: str | None = None
    ) -> CustomerTabEnvelope:
        data = await self._request(
            "POST",
            "/customer-tabs",
            json_body=request.model_dump(mode="json"),
            idempotency_key=idempotency_key,
            operation="create_customer_tab",
        )
        return CustomerTabEnvelope.model_validate(data)

    async def update_customer_tab(
        self, tab_id: str, request: UpdateCustomerTabRequest, *, idempotency_key: str | None = None
    ) -> CustomerTabEnvelope:
        data = await self._request(
            "PATCH",
            f"/customer-tabs/{quote(tab_id, safe='')}",
            json_body=request.model_dump(mode="json", exclude_none=True),
            idempotency_key=idempotency_key,
            operation="update_customer_tab",
        )
        return CustomerTabEnvelope.model_validate(data)

    async def add_items_to_customer_tab(
        self, tab_id: str, request: AddItemsRequest, *, idempotency_key: str | None = None
    ) -> CustomerTabEnvelope:
        data = await self._request(
            "POST",
            f"/customer-tabs/{quote(tab_id, safe='')}/items",
            json_body=request.model_dump(mode="json"),
            idempotency_key=idempotency_key,
            operation="add_items_to_customer_tab",
        )
        return CustomerTabEnvelope.model_validate(data)

    async def close_customer_tab(self, tab_id: str, *, idempotency_key: str | None = None) -> AckEnvelope:
        data = await self._request(
            "POST",
            f"/customer-tabs/{quote(tab_id, safe='')}/close",
            idempotency_key=idempotency_key,
            operation="close_customer_tab",
        )
        return AckEnvelope.model_validate(data)

    async def delete_customer_tab(self, tab_id: str, *, idempotency_key: str | None = None) -> AckEnvelope:
        data = await self._request(
            "DELETE",
            f"/customer-tabs/{quote(tab_id, safe='')}",
            idempotency_key=idempotency_key,
            operation="delete_customer_tab",
        )
        return AckEnvelope.model_validate(data)

    async def split_tab(self, request: SplitTabRequest, *, idempotency_key: str | None = None) -> SplitTabEnvelope:
        data = await self._request(
            "POST",
            "/customer-tabs/split",
            json_body=request.model_dump(mode="json"),
            idempotency_key=idempotency_key,
            operation="split_tab",
        )
        return SplitTabEnvelope.model_validate(data)

    async def merge_tabs(self, request: MergeTabsRequest, *, idempotency_key: str | None = None) -> MergeTabsEnvelope:
        data = await self._request(
            "POST",
            "/customer-tabs/merge",
            json_body=request.model_dump(mode="json"),
            idempotency_key=idempotency_key,
            operation="merge_tabs",
        )
        return MergeTabsEnvelope.model_validate(data)

    async def move_items_between_tabs(
        self, request: MoveItemsRequest, *, idempotency_key: str | None = None
    ) -> MoveItemsEnvelope:
        data = await self._request(
            "POST",
            "/customer-tabs/move-items",
            json_body=request.model_dump(mode="json"),
            idempotency_key=idempotency_key,
            operation="move_items_between_tabs",
        )
        return MoveItemsEnvelope.model_validate(data)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        operation: str = "unknown",
    ) -> dict[str, Any]:
        if self.client is None:
            raise RuntimeError("HTTP client not initialized")
        trace_id = new_trace_id()
        headers = {"Accept": "application/json", TRACE_HEADER: trace_id}
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        normalized_method = method.upper()
        # Mutations are sent once; the engine decides whether to retry them.
        attempts = self.config.get_retries + 1 if normalized_method == "GET" else 1
        started = time.monotonic()
        response: httpx.Response | None = None
        for attempt in range(attempts):
            try:
                response = await self.client.request(normalized_method, path, headers=headers, json=json_body)
            except httpx.HTTPError as exc:
                if attempt >= attempts - 1:
                    self._record(operation, started, "error", trace_id)
                    raise TransportError(
                        code="TRANSPORT_ERROR",
                        message=str(exc) or "Could not reach the order service",
                        details={"type": type(exc).__name__},
                        trace_id=trace_id,
                        status_code=0,
                    ) from exc
            else:
                if response.status_code < 500 or attempt >= attempts - 1:
                    break
            await self.sleep(self.config.retry_backoff_seconds * (2**attempt))

        if response is None:
            raise RuntimeError(f"HTTP request failed without response: {operation}")
        trace_id = response.headers.get(TRACE_HEADER) or trace_id

        if response.is_success:
            self._record(operation, started, "success", trace_id)
            if not response.content:
                return {}
            body = response.json()
            return body if isinstance(body, dict) else {"items": body}

        payload: Any
        try:
            payload = response.json()
        except json.JSONDecodeError:
            payload = {"message": response.text}
        self._record(operation, started, "error", trace_id)
        raise map_error(response.status_code, payload if isinstance(payload, dict) else None, trace_id)

    def _record(self, operation: str, started: float, result: str, trace_id: str | None) -> None:
        self.last_operation = LastOperation(
            operation=operation,
            duration_ms=int((time.monotonic() - started) * 1000),
            result=result,
            trace_id=trace_id,
        )
