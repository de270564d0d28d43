"""
Per-key async locks.

Wallet and billing-cycle mutations must be serialized per merchant while
unrelated merchants proceed in parallel. ``KeyedLock`` hands out one
``asyncio.Lock`` per key, re-entrant for the task that holds it so that a
composite operation (debit + cycle update) can call into services that
lock the same merchant again.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "owner", "depth", "waiters")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.owner: Optional[asyncio.Task] = None
        self.depth = 0
        self.waiters = 0


class KeyedLock:
    """Map of re-entrant asyncio locks, created on demand and dropped when idle."""

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        task = asyncio.current_task()
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()

        if entry.owner is task and task is not None:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        entry.waiters += 1
        try:
            await entry.lock.acquire()
        finally:
            entry.waiters -= 1

        entry.owner = task
        entry.depth = 1
        try:
            yield
        finally:
            entry.depth = 0
            entry.owner = None
            entry.lock.release()
            if entry.waiters == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


# Shared by every service instance in the process
merchant_locks = KeyedLock()
