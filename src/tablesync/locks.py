from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


def table_key(table_number: int) -> tuple[str, int]:
    return ("table", table_number)


def tab_list_key(table_number: int) -> tuple[str, int]:
    return ("tabs", table_number)


def tab_key(tab_id: str) -> tuple[str, str]:
    return ("tab", tab_id)


class KeyedLocks:
    """In-memory mutex per key so same-key mutations run one after another."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *keys: Hashable) -> AsyncIterator[None]:
        # Stable ordering keeps two multi-key holders from deadlocking each other.
        ordered = sorted(set(keys), key=repr)
        acquired: list[Hashable] = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._holders[key] = self._holders.get(key, 0) + 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_holder(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_holder(key)

    def _release_holder(self, key: Hashable) -> None:
        remaining = self._holders.get(key, 0) - 1
        if remaining > 0:
            self._holders[key] = remaining
            return
        self._holders.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
