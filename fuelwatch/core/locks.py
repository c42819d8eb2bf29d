import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

# one pass of each kind at a time within this process
INGESTION_LOCK = asyncio.Lock()
ALERT_LOCK = asyncio.Lock()


class KeyedLock:
    """
    Single-writer-per-key lock.

    Locks are created on demand and dropped once nobody holds or waits on them,
    so the map only grows with the number of keys in flight.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
