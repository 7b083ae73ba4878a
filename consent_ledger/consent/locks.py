"""
Per-key locks for consent operations

Serializes check-and-write sequences on one (user, controller hash, purpose
hash) key inside a process. Unrelated keys never contend, and a key's lock
is dropped once nobody holds or waits for it. Cross-process safety comes
from the store's compare-and-swap writes, not from these locks.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLocks:
    """Registry of reference-counted asyncio locks"""

    def __init__(self):
        self._locks: Dict[Hashable, _KeyLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: Hashable) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]
