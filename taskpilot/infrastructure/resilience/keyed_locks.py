from typing import AsyncIterator, Dict, Hashable
from contextlib import asynccontextmanager
import asyncio


class KeyedLocks:
    """
    One asyncio lock per key, created on first use.
    A key's lock is dropped as soon as no task holds it or waits on it, so idle keys cost nothing.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # also reached when a waiter is cancelled before acquiring
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
