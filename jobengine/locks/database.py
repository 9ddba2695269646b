"""
Lock manager on the `cache_locks` table.

A lock is a row keyed by the lock key. Acquisition deletes an expired row
for the key and inserts a new one in the same transaction; the primary key
makes concurrent inserts fail for everyone but one caller.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import and_, delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.backends.database import TRANSPORT_ERRORS
from jobengine.db.connection import session_scope
from jobengine.db.models import CacheLock
from jobengine.exceptions import BackendUnavailable
from jobengine.locks.base import LockManager, new_owner_token
from jobengine.types.lock import Lock

logger = logging.getLogger(__name__)


class DatabaseLockManager(LockManager):
    """Lease locks stored in SQL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except TRANSPORT_ERRORS as e:
            raise BackendUnavailable(str(e)) from e

    async def acquire(self, key: str, ttl: float) -> Lock | None:
        now = self.now()
        lock = Lock(key=key, owner_token=new_owner_token(), expires_at=now + ttl)
        try:
            async with self._session() as session:
                await session.execute(
                    delete(CacheLock)
                    .where(and_(CacheLock.key == key, CacheLock.expires_at <= now))
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    insert(CacheLock).values(
                        key=key,
                        owner=lock.owner_token,
                        expires_at=lock.expires_at,
                    )
                )
        except IntegrityError:
            logger.debug("Lock is held", extra={"lock_key": key})
            return None
        return lock

    async def release(self, lock: Lock) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(CacheLock)
                .where(and_(CacheLock.key == lock.key, CacheLock.owner == lock.owner_token))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def force_release(self, key: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(CacheLock)
                .where(CacheLock.key == key)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def get(self, key: str) -> Lock | None:
        async with self._session() as session:
            row = (
                await session.execute(select(CacheLock).where(CacheLock.key == key))
            ).scalar_one_or_none()
            if row is None or row.expires_at <= self.now():
                return None
            return Lock(key=row.key, owner_token=row.owner, expires_at=row.expires_at)

    async def purge_expired(self) -> int:
        """Delete expired lock rows, e.g. the per-interval keys of `on_one_server`."""
        async with self._session() as session:
            result = await session.execute(
                delete(CacheLock)
                .where(CacheLock.expires_at <= self.now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
