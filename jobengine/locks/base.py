"""
Lease-based distributed mutual exclusion.
"""

import asyncio
import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from jobengine.backends.base import Clock
from jobengine.exceptions import LockUnavailable
from jobengine.types.lock import Lock

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 0.25


def new_owner_token() -> str:
    """Random token proving lock ownership."""
    return secrets.token_hex(16)


class LockManager(ABC):
    """
    Abstract lock manager.

    At most one live (unexpired) lock exists per key at any instant.
    Implementations raise `BackendUnavailable` on transport errors.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock or time.time
        self.poll_interval = poll_interval
        self._sleep = sleep

    def now(self) -> float:
        return self._clock()

    @abstractmethod
    async def acquire(self, key: str, ttl: float) -> Lock | None:
        """Take the lock if no live lock exists for `key`."""

    @abstractmethod
    async def release(self, lock: Lock) -> bool:
        """Delete the lock only if the stored owner token still matches."""

    @abstractmethod
    async def force_release(self, key: str) -> bool:
        """Delete the lock on `key` regardless of owner."""

    @abstractmethod
    async def get(self, key: str) -> Lock | None:
        """Return the live lock on `key`, if any."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete expired locks. Returns the number removed."""

    async def block(self, key: str, ttl: float, max_wait: float) -> Lock | None:
        """
        Poll `acquire` until it succeeds or `max_wait` seconds have passed.

        The wait is measured on the monotonic clock, not the lease clock.
        """
        deadline = time.monotonic() + max_wait
        while True:
            lock = await self.acquire(key, ttl)
            if lock is not None:
                return lock
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug("Gave up waiting for lock", extra={"lock_key": key, "max_wait": max_wait})
                return None
            await self._sleep(min(self.poll_interval, remaining))

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl: float,
        release_on_exit: bool = True,
    ) -> AsyncGenerator[Lock]:
        """
        Hold `key` for the duration of the block.

        Raises:
            LockUnavailable: If the lock is held elsewhere.
        """
        lock = await self.acquire(key, ttl)
        if lock is None:
            raise LockUnavailable(key)
        try:
            yield lock
        finally:
            if release_on_exit:
                await self.release(lock)

    async def close(self) -> None:
        return None
