"""Utility functions shared by the services."""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Hashable

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """
    Get current UTC time.

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


class KeyedLocks:
    """Registry of asyncio locks, one per key (usually a user id).

    Operations on the same key are linearized; different keys never
    contend with each other.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for `key` for the duration of the block."""
        self._waiters[key] += 1
        lock = self._locks[key]
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Nobody else is waiting on this key, drop the lock
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
