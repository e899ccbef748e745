"""Keyed in-memory locks for concurrency control.

Each manager owns one ``KeyedLock`` so that operations on the same key
(playground id, terminal session id) are serialized, preventing races
such as:
- Two concurrent creates producing two containers
- Create and remove interleaving into a dangling handle
- The janitor closing a session while it is being replaced

Note: These locks only work within a single process. Registries are
in-memory too, so a multi-process deployment needs sticky routing by
playground id.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLock:
    """A map of ``asyncio.Lock`` objects created on demand per key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        # key -> tasks holding or waiting on the lock
        self._users: dict[str, int] = {}
        self._guard = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        async with self._guard:
            lock = self._locks.setdefault(key, asyncio.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]

    async def discard(self, key: str) -> None:
        """Drop the lock for a key that no longer has a resource behind it.

        A lock that is currently held or awaited is kept, so a waiter never
        ends up serialized on a different lock object than the holder.
        """
        async with self._guard:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked() and key not in self._users:
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        """Whether the lock for ``key`` is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        """Number of tracked locks (for testing/metrics)."""
        return len(self._locks)
