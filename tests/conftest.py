"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobengine.backends import Backend, DatabaseBackend, MemoryBackend
from jobengine.bus import Dispatcher
from jobengine.db import Base, get_test_engine, make_session_factory
from jobengine.locks import DatabaseLockManager, LockManager, MemoryLockManager
from jobengine.registry import Registry
from jobengine.worker import Worker, WorkerOptions


class FakeClock:
    """Manually advanced unix-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine]:
    """
    Engine on TEST_DATABASE_URL, or a throwaway SQLite file.

    Tables are recreated for every test.
    """
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'jobengine.db'}"
    engine = get_test_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def memory_backend(clock: FakeClock) -> MemoryBackend:
    return MemoryBackend(clock=clock)


@pytest.fixture
def database_backend(session_factory, clock: FakeClock) -> DatabaseBackend:
    return DatabaseBackend(session_factory, clock=clock)


@pytest.fixture(params=["memory", "database"])
def backend(request) -> Backend:
    """Every backend implementation, so contract tests run against both."""
    return request.getfixturevalue(f"{request.param}_backend")


@pytest.fixture
def memory_locks(clock: FakeClock) -> MemoryLockManager:
    return MemoryLockManager(clock=clock, poll_interval=0.01)


@pytest.fixture
def database_locks(session_factory, clock: FakeClock) -> DatabaseLockManager:
    return DatabaseLockManager(session_factory, clock=clock, poll_interval=0.01)


@pytest.fixture(params=["memory", "database"])
def locks(request) -> LockManager:
    return request.getfixturevalue(f"{request.param}_locks")


@pytest.fixture
def dispatcher(backend: Backend, registry: Registry, memory_locks: MemoryLockManager) -> Dispatcher:
    return Dispatcher(backend, registry, locks=memory_locks)


@pytest.fixture
def make_worker(backend: Backend, registry: Registry, dispatcher: Dispatcher, memory_locks):
    """Build a worker that drains its queues and exits."""

    def factory(**options) -> Worker:
        options.setdefault("stop_when_empty", True)
        options.setdefault("sleep", 0.0)
        options.setdefault("heartbeat_interval", 30.0)
        return Worker(
            backend,
            registry,
            options=WorkerOptions(**options),
            dispatcher=dispatcher,
            locks=memory_locks,
            worker_id="test-worker",
            sleep=no_sleep,
        )

    return factory
