"""Keyed locks — one asyncio writer lock per project.

WHY
───
Two orchestration operations against the same project (delete racing
resume, restore racing pause) must never interleave, while operations on
different projects must proceed independently.  A single global lock would
serialize the whole fleet; one lock per key keeps contention local.

ARCHITECTURE
────────────
::

    KeyedLocks
      ├── _guard: asyncio.Lock        ─ protects the lock table itself
      ├── _locks: dict[key, Lock]     ─ created on first use
      ├── _users: dict[key, int]      ─ holders plus waiters per key
      ├── .locked(key)                ─ async context manager
      └── .is_locked(key)             ─ check without acquiring

    A key's lock is dropped from the table when its last holder or waiter
    leaves, so deleted projects leave nothing behind.

    Lock order: per-project lock, then the registry membership lock
    (``ProjectRegistry.insert`` / ``remove``). Never the reverse.

Example::

    locks = KeyedLocks()
    async with locks.locked("p1"):
        await stop_containers("p1")
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Lazily created ``asyncio.Lock`` per key."""

    def __init__(self) -> None:
        self._guard = asyncio.Lock()
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    async def _acquire_ref(self, key: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _release_ref(self, key: str) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
            return
        del self._users[key]
        del self._locks[key]

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[None]:
        lock = await self._acquire_ref(key)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(key)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
