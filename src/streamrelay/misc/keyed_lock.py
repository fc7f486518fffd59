from __future__ import annotations
from asyncio import Lock
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from typing import Generic, TypeVar


_K = TypeVar("_K", bound=Hashable)


class KeyedLock(Generic[_K]):
    """
    Lazily created `asyncio.Lock` per key.

    A lock is discarded again as soon as nobody holds or waits for it,
    so the number of locks kept is bounded by the number of keys in use.

    Usage:
        async with keyed_lock(key):
            ...
    """
    _locks: dict[_K, Lock]
    _users: dict[_K, int]

    def __init__(self) -> None:
        self._locks = {}
        self._users = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: _K) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def __call__(self, key: _K) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
