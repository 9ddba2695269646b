"""
Integration tests for the recurring job scheduler.
"""

import pytest
from sqlalchemy import func, select

from jobengine.bus import Job
from jobengine.db.models import CacheLock
from jobengine.exceptions import BackendUnavailable
from jobengine.locks.guards import overlap_key
from jobengine.scheduler.main import Scheduler


@pytest.fixture
def scheduler(dispatcher, memory_locks, clock) -> Scheduler:
    return Scheduler(dispatcher, memory_locks, tick_seconds=1, clock=clock)


class TestScheduler:
    """Tests for due checks and dispatch."""

    async def test_dispatches_once_per_interval(self, scheduler, backend, clock):
        task = scheduler.every(60, Job.of("report"), name="report")

        assert await scheduler.run_due() == ["report"]
        assert await scheduler.run_due() == []
        assert task.runs == 1
        assert task.next_run_at == (int(clock() // 60) + 1) * 60

        clock.advance(task.next_run_at - clock())
        assert await scheduler.run_due() == ["report"]
        assert await backend.count_pending("default") == 2

    async def test_task_name_defaults_to_job_type(self, scheduler):
        task = scheduler.every(10, Job.of("cleanup"))

        assert task.name == "cleanup"
        assert scheduler.tasks == [task]

    async def test_rejects_duplicates_and_bad_intervals(self, scheduler):
        scheduler.every(10, Job.of("cleanup"))

        with pytest.raises(ValueError):
            scheduler.every(20, Job.of("cleanup"))
        with pytest.raises(ValueError):
            scheduler.every(0, Job.of("other"))

    async def test_on_one_server(self, dispatcher, memory_locks, backend, clock):
        first = Scheduler(dispatcher, memory_locks, tick_seconds=1, clock=clock)
        second = Scheduler(dispatcher, memory_locks, tick_seconds=1, clock=clock)
        for scheduler in (first, second):
            scheduler.every(60, Job.of("report"), name="report").on_one_server()

        assert await first.run_due() == ["report"]
        assert await second.run_due() == []
        assert await backend.count_pending("default") == 1

        # The next slot is open to whichever server gets there first
        clock.advance(60)
        assert await second.run_due() == ["report"]
        assert await first.run_due() == []

    async def test_when_pending(self, scheduler, dispatcher, backend):
        scheduler.every(60, Job.of("scale_up").with_options(queue="control"), name="scale").when_pending("work")

        assert await scheduler.run_due() == []

        await dispatcher.dispatch(Job.of("item")).on_queue("work")
        scheduler.tasks[0].next_run_at = 0
        assert await scheduler.run_due() == ["scale"]
        assert await backend.count_pending("control") == 1

    async def test_backend_errors_skip_the_run(self, scheduler, backend, monkeypatch):
        async def unavailable(envelope):
            raise BackendUnavailable("connection refused")

        monkeypatch.setattr(backend, "enqueue", unavailable)
        scheduler.every(60, Job.of("report"))

        assert await scheduler.run_due() == []

    async def test_without_overlapping_guards_execution(
        self, scheduler, registry, backend, memory_locks, make_worker
    ):
        runs = []

        @registry.handler("sync")
        async def sync(context):
            runs.append(context.job_id)

        task = scheduler.every(60, Job.of("sync"), name="sync").without_overlapping()
        assert task.job.middleware[0].options["key"] == "schedule:sync"

        await scheduler.run_due()
        lock = await memory_locks.acquire(overlap_key("schedule:sync"), ttl=600)

        # A run that finds the previous one still going is dropped
        await make_worker().start()
        assert runs == []
        assert await backend.count_pending("default") == 0

        await memory_locks.release(lock)
        scheduler.tasks[0].next_run_at = 0
        await scheduler.run_due()
        await make_worker().start()
        assert len(runs) == 1

    async def test_expired_slot_locks_are_purged(self, dispatcher, database_locks, session_factory, clock):
        scheduler = Scheduler(dispatcher, database_locks, tick_seconds=1, clock=clock, lock_purge_seconds=300)
        scheduler.every(60, Job.of("report"), name="report").on_one_server()

        async def lock_rows() -> int:
            async with session_factory() as session:
                return (await session.execute(select(func.count()).select_from(CacheLock))).scalar()

        assert await scheduler.run_due() == ["report"]
        clock.advance(120)
        assert await scheduler.run_due() == ["report"]

        # Each interval leaves its own slot lock behind
        assert await lock_rows() == 2

        clock.advance(300)
        assert await scheduler.run_due() == ["report"]

        assert await lock_rows() == 1
        assert await scheduler.purge_locks(clock()) == 0
