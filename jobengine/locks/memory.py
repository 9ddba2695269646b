"""
In-process lock manager.
"""

import asyncio

from jobengine.locks.base import LockManager, new_owner_token
from jobengine.types.lock import Lock


class MemoryLockManager(LockManager):
    """Locks kept in a dictionary, guarded by an asyncio.Lock."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._guard = asyncio.Lock()
        self._locks: dict[str, Lock] = {}

    async def acquire(self, key: str, ttl: float) -> Lock | None:
        async with self._guard:
            now = self.now()
            current = self._locks.get(key)
            if current is not None and not current.is_expired(now):
                return None
            lock = Lock(key=key, owner_token=new_owner_token(), expires_at=now + ttl)
            self._locks[key] = lock
            return lock

    async def release(self, lock: Lock) -> bool:
        async with self._guard:
            current = self._locks.get(lock.key)
            if current is None or current.owner_token != lock.owner_token:
                return False
            del self._locks[lock.key]
            return True

    async def force_release(self, key: str) -> bool:
        async with self._guard:
            return self._locks.pop(key, None) is not None

    async def get(self, key: str) -> Lock | None:
        async with self._guard:
            current = self._locks.get(key)
            if current is None or current.is_expired(self.now()):
                return None
            return current

    async def purge_expired(self) -> int:
        async with self._guard:
            now = self.now()
            expired = [key for key, lock in self._locks.items() if lock.is_expired(now)]
            for key in expired:
                del self._locks[key]
            return len(expired)
