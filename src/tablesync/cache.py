from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass
from typing import Generic, TypeVar

from .exceptions import ConsistencyWarning
from .logger import get_logger
from .models import CustomerTab

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _Removed:
    def __repr__(self) -> str:
        return "<removed>"


REMOVED = _Removed()


@dataclass(frozen=True)
class Snapshot(Generic[K, V]):
    """Optimistic-layer state captured before a mutation, used to roll it back."""

    key: K
    value: V | None
    diverged: bool
    removed: bool = False


class OptimisticCache(Generic[K, V]):
    """Two views per key: confirmed (last server answer) and optimistic (local projection).

    The optimistic layer only stores keys that diverge from the confirmed layer.
    A divergence may be a removal, recorded with the REMOVED marker. The cache
    counts in-flight mutations per key so that a background refresh can update
    the confirmed layer without discarding a projection that is still waiting
    for its remote call.
    """

    def __init__(
        self,
        *,
        name: str = "cache",
        measure: Callable[[V], int] | None = None,
        logger: logging.Logger | None = None,
        max_warnings: int = 50,
    ) -> None:
        self.name = name
        self._measure = measure or (lambda value: 1)
        self._logger = logger or get_logger(f"tablesync.cache.{name}")
        self._confirmed: dict[K, V] = {}
        self._optimistic: dict[K, V | _Removed] = {}
        self._in_flight: dict[K, int] = {}
        self.warnings: deque[ConsistencyWarning] = deque(maxlen=max_warnings)

    def get_confirmed(self, key: K) -> V | None:
        return self._confirmed.get(key)

    def get_optimistic(self, key: K) -> V | None:
        if key in self._optimistic:
            value = self._optimistic[key]
            return None if value is REMOVED else value  # type: ignore[return-value]
        return self._confirmed.get(key)

    def get(self, key: K, *, optimistic: bool = True) -> V | None:
        return self.get_optimistic(key) if optimistic else self.get_confirmed(key)

    def has_divergence(self, key: K) -> bool:
        return key in self._optimistic

    def is_in_flight(self, key: K) -> bool:
        return self._in_flight.get(key, 0) > 0

    def begin_optimistic_mutation(self, key: K, transform: Callable[[V | None], V | None]) -> Snapshot[K, V]:
        snapshot = self._capture(key)
        projected = transform(self.get_optimistic(key))
        self._optimistic[key] = REMOVED if projected is None else projected
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        self._changed(key)
        return snapshot

    def commit(self, key: K, server_entity: V | None) -> None:
        """Replace both layers with the authoritative value; None means the entity is gone."""
        if server_entity is None:
            self._confirmed.pop(key, None)
        else:
            self._confirmed[key] = server_entity
        self._optimistic.pop(key, None)
        self._finish(key)
        self._changed(key)

    def rollback(self, key: K, snapshot: Snapshot[K, V]) -> None:
        if not snapshot.diverged:
            self._optimistic.pop(key, None)
        elif snapshot.removed:
            self._optimistic[key] = REMOVED
        else:
            self._optimistic[key] = snapshot.value  # type: ignore[assignment]
        self._finish(key)
        self._changed(key)

    def refresh(self, key: K, server_entity: V | None) -> None:
        """Update the confirmed layer from a sync pull, keeping in-flight projections."""
        if server_entity is None:
            self._confirmed.pop(key, None)
        else:
            self._confirmed[key] = server_entity
        if not self.is_in_flight(key):
            self._optimistic.pop(key, None)
        self._changed(key)

    def replace_all(self, entities: Mapping[K, V]) -> None:
        stale = [key for key in self._confirmed if key not in entities]
        for key in stale:
            self.refresh(key, None)
        for key, value in entities.items():
            self.refresh(key, value)

    def keys(self, *, optimistic: bool = True) -> list[K]:
        if not optimistic:
            return list(self._confirmed)
        merged = list(self._confirmed)
        merged.extend(key for key in self._optimistic if key not in self._confirmed)
        return [key for key in merged if self.get_optimistic(key) is not None]

    def clear(self) -> None:
        touched = set(self._confirmed) | set(self._optimistic)
        self._confirmed.clear()
        self._optimistic.clear()
        self._in_flight.clear()
        for key in touched:
            self._changed(key)

    def validate_consistency(self, key: K) -> bool:
        confirmed = self.get_confirmed(key)
        optimistic = self.get_optimistic(key)
        confirmed_size = self._measure(confirmed) if confirmed is not None else 0
        optimistic_size = self._measure(optimistic) if optimistic is not None else 0
        if confirmed_size != optimistic_size:
            self._warn(
                key,
                "drift",
                f"{self.name} optimistic={optimistic_size}, confirmed={confirmed_size}",
            )
            return False
        return True

    def _capture(self, key: K) -> Snapshot[K, V]:
        if key not in self._optimistic:
            return Snapshot(key=key, value=None, diverged=False)
        value = self._optimistic[key]
        if value is REMOVED:
            return Snapshot(key=key, value=None, diverged=True, removed=True)
        return Snapshot(key=key, value=value, diverged=True)  # type: ignore[arg-type]

    def _finish(self, key: K) -> None:
        remaining = self._in_flight.get(key, 0) - 1
        if remaining > 0:
            self._in_flight[key] = remaining
        else:
            self._in_flight.pop(key, None)

    def _warn(self, key: K, kind: str, detail: str) -> ConsistencyWarning:
        warning = ConsistencyWarning(table_number=key, kind=kind, detail=detail)  # type: ignore[arg-type]
        self.warnings.append(warning)
        self._logger.warning(str(warning))
        return warning

    def _changed(self, key: K) -> None:
        return None


TabList = tuple[CustomerTab, ...]


class TabListCache(OptimisticCache[int, TabList]):
    """Per-table customer tab lists plus the active-tab pointers and a tab-id index."""

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        super().__init__(name="customer_tabs", measure=len, logger=logger)
        self._owner: dict[str, int] = {}
        self._members: dict[int, set[str]] = {}
        self._aliases: dict[str, str] = {}
        self._active: dict[int, str | None] = {}

    def resolve_tab_id(self, tab_id: str) -> str:
        return self._aliases.get(tab_id, tab_id)

    def owner_of(self, tab_id: str) -> int | None:
        return self._owner.get(self.resolve_tab_id(tab_id))

    def find_tab(self, tab_id: str, *, optimistic: bool = True) -> CustomerTab | None:
        resolved = self.resolve_tab_id(tab_id)
        table_number = self._owner.get(resolved)
        if table_number is None:
            return None
        for tab in self.get(table_number, optimistic=optimistic) or ():
            if tab.id == resolved:
                return tab
        return None

    def get_active_tab_id(self, table_number: int) -> str | None:
        active = self._active.get(table_number)
        return self.resolve_tab_id(active) if active else None

    def set_active_tab_id(self, table_number: int, tab_id: str | None) -> None:
        self._active[table_number] = tab_id

    def resolve_pending(self, token: str, durable_id: str) -> None:
        """Point every reference held under a correlation token at the durable tab id."""
        self._aliases[token] = durable_id
        for table_number, active in list(self._active.items()):
            if active == token:
                self._active[table_number] = durable_id

    def forget_table(self, table_number: int) -> None:
        self._active.pop(table_number, None)

    def validate_consistency(self, key: int) -> bool:
        consistent = True
        active_id = self.get_active_tab_id(key)
        if active_id:
            optimistic_tabs = self.get_optimistic(key) or ()
            confirmed_tabs = self.get_confirmed(key) or ()
            known = {tab.id for tab in optimistic_tabs} | {tab.id for tab in confirmed_tabs}
            if active_id not in known:
                fallback_tabs = optimistic_tabs or confirmed_tabs
                replacement = fallback_tabs[0].id if fallback_tabs else None
                self._warn(key, "dangling_active_tab", f"active tab {active_id} not found, now {replacement}")
                self.set_active_tab_id(key, replacement)
                consistent = False
        return super().validate_consistency(key) and consistent

    def clear(self) -> None:
        super().clear()
        self._aliases.clear()
        self._active.clear()

    def _changed(self, key: int) -> None:
        previous = self._members.pop(key, set())
        for tab_id in previous:
            if self._owner.get(tab_id) == key:
                self._owner.pop(tab_id, None)
        members: set[str] = set()
        for tabs in (self.get_confirmed(key), self.get_optimistic(key)):
            for tab in tabs or ():
                members.add(tab.id)
                self._owner[tab.id] = key
        if members:
            self._members[key] = members
        gone = {tab_id for tab_id in previous if tab_id not in self._owner}
        if gone:
            self._aliases = {token: durable for token, durable in self._aliases.items() if durable not in gone}
