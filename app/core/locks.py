"""Keyed asyncio locks for serialising work per tenant within one process."""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict


class KeyedLockRegistry:
    """
    One asyncio.Lock per key, created on first use and dropped when idle.
    """

    def __init__(self):
        self._locks: Dict[Any, asyncio.Lock] = {}
        self._waiters: Dict[Any, int] = {}

    @asynccontextmanager
    async def hold(self, key: Any) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, key: Any) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


tenant_locks = KeyedLockRegistry()
