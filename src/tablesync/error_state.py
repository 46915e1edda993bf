from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ErrorState:
    table_errors: dict[int, str] = field(default_factory=dict)
    customer_tab_errors: dict[str, str] = field(default_factory=dict)
    global_error: str | None = None

    def record_table_error(self, table_number: int, message: str) -> None:
        self.table_errors[table_number] = message

    def record_tab_error(self, tab_id: str, message: str) -> None:
        self.customer_tab_errors[tab_id] = message

    def record_global_error(self, message: str) -> None:
        self.global_error = message

    def clear_table_error(self, table_number: int) -> None:
        self.table_errors.pop(table_number, None)

    def clear_tab_error(self, tab_id: str) -> None:
        self.customer_tab_errors.pop(tab_id, None)

    def clear(self) -> None:
        self.table_errors = {}
        self.customer_tab_errors = {}
        self.global_error = None

    def has_errors(self) -> bool:
        return bool(self.table_errors or self.customer_tab_errors or self.global_error)
