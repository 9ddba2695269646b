"""
Named backend connections.

A connection name selects a concrete backend; queues map to connections
through configuration, falling back to the default connection.
"""

import logging
from collections.abc import Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.backends.base import Backend, Clock
from jobengine.backends.database import DatabaseBackend
from jobengine.backends.memory import MemoryBackend
from jobengine.config import Settings
from jobengine.constants import BackendName, DEFAULT_QUEUE

logger = logging.getLogger(__name__)


class BackendManager:
    """Resolves connection names and queue names to backends."""

    def __init__(
        self,
        backends: Mapping[str, Backend],
        default: str | None = None,
        queue_connections: Mapping[str, str] | None = None,
        default_queue: str = DEFAULT_QUEUE,
    ):
        if not backends:
            raise ValueError("At least one backend connection is required")
        self._backends = dict(backends)
        self.default = default or next(iter(self._backends))
        if self.default not in self._backends:
            raise ValueError(f"Unknown default queue connection: {self.default}")
        self._queue_connections = dict(queue_connections or {})
        self.default_queue = default_queue

    @classmethod
    def single(cls, backend: Backend, default_queue: str = DEFAULT_QUEUE) -> "BackendManager":
        """Wrap one backend as the only connection."""
        return cls({backend.connection_name: backend}, default_queue=default_queue)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ) -> "BackendManager":
        """
        Build every connection named in settings.

        Args:
            settings: Application settings.
            session_factory: Required when any connection uses the database backend.
            clock: Optional time source shared by all backends.
        """
        names = {settings.queue_default_connection, *settings.queue_connections.values()}
        backends: dict[str, Backend] = {}
        for name in names:
            if name == BackendName.DATABASE:
                if session_factory is None:
                    raise ValueError("The database connection needs a session factory")
                backends[name] = DatabaseBackend(session_factory, clock=clock, connection_name=name)
            elif name == BackendName.MEMORY:
                backends[name] = MemoryBackend(clock=clock, connection_name=name)
            else:
                raise ValueError(f"Unsupported queue connection: {name}")

        logger.info("Queue connections configured", extra={"connections": sorted(backends)})
        return cls(
            backends,
            default=settings.queue_default_connection,
            queue_connections=settings.queue_connections,
            default_queue=settings.queue_default_queue,
        )

    @property
    def names(self) -> list[str]:
        return list(self._backends)

    def connection(self, name: str | None = None) -> Backend:
        """Get a backend by connection name, or the default one."""
        key = name or self.default
        try:
            return self._backends[key]
        except KeyError:
            raise ValueError(f"Unknown queue connection: {key}") from None

    def connection_name_for(self, queue: str | None, explicit: str | None = None) -> str:
        """Connection used for `queue` unless one is given explicitly."""
        if explicit:
            return explicit
        return self._queue_connections.get(queue or self.default_queue, self.default)

    def for_queue(self, queue: str | None, explicit: str | None = None) -> Backend:
        return self.connection(self.connection_name_for(queue, explicit))

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()
