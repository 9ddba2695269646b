"""
Tests for the batch coordinator.
"""

import asyncio

from jobengine.bus import BatchCoordinator, Job
from jobengine.constants import BatchCallback
from jobengine.exceptions import TerminalFailure


class Recorder:
    """Registers batch callbacks that record how they were called."""

    def __init__(self, registry):
        self.calls: list[tuple[str, str, TerminalFailure | None]] = []
        for name in ("then", "catch", "finally"):
            registry.callback(name)(self._make(name))

    def _make(self, name):
        async def callback(batch, error):
            self.calls.append((name, batch.id, error))

        return callback

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.calls]


async def dispatch_batch(dispatcher, size: int, allow_failures: bool = False) -> str:
    pending = (
        dispatcher.batch([Job.of("echo", n=i) for i in range(size)])
        .then("then")
        .catch("catch")
        .finally_("finally")
        .allow_failures(allow_failures)
    )
    return await pending.dispatch()


def failure(job_id: str = "job") -> TerminalFailure:
    return TerminalFailure(job_id, "RuntimeError: boom")


class TestBatchCoordinator:
    """Tests for counter updates and callback firing."""

    async def test_all_success_fires_then_and_finally(self, dispatcher, backend, registry):
        recorder = Recorder(registry)
        batch_id = await dispatch_batch(dispatcher, 2)
        coordinator = BatchCoordinator(backend, registry)

        await coordinator.record_success(batch_id)
        assert recorder.calls == []

        await coordinator.record_success(batch_id)
        assert recorder.names == ["then", "finally"]
        assert await coordinator.progress(batch_id) == 1.0

    async def test_failure_fires_catch_and_cancels(self, dispatcher, backend, registry):
        recorder = Recorder(registry)
        batch_id = await dispatch_batch(dispatcher, 3)
        coordinator = BatchCoordinator(backend, registry)
        error = failure()

        await coordinator.record_success(batch_id)
        await coordinator.record_failure(batch_id, "job-2", error)

        assert recorder.calls == [("catch", batch_id, error)]
        assert await coordinator.is_cancelled(batch_id)

        await coordinator.record_skipped(batch_id)

        assert recorder.names == ["catch", "finally"]
        batch = await coordinator.find(batch_id)
        assert batch.failed_jobs == 1
        assert batch.failed_job_ids == ["job-2"]
        assert batch.finished

    async def test_catch_fires_once_with_allowed_failures(self, dispatcher, backend, registry):
        recorder = Recorder(registry)
        batch_id = await dispatch_batch(dispatcher, 3, allow_failures=True)
        coordinator = BatchCoordinator(backend, registry)

        await coordinator.record_failure(batch_id, "job-1", failure("job-1"))
        await coordinator.record_failure(batch_id, "job-2", failure("job-2"))
        assert not await coordinator.is_cancelled(batch_id)

        await coordinator.record_success(batch_id)

        assert recorder.names == ["catch", "finally"]

    async def test_then_fires_after_manual_cancel_without_failures(self, dispatcher, backend, registry):
        recorder = Recorder(registry)
        batch_id = await dispatch_batch(dispatcher, 2)
        coordinator = BatchCoordinator(backend, registry)

        assert await coordinator.cancel(batch_id)
        await coordinator.record_skipped(batch_id)
        await coordinator.record_skipped(batch_id)

        assert recorder.names == ["then", "finally"]

    async def test_extra_updates_after_finish_are_ignored(self, dispatcher, backend, registry):
        recorder = Recorder(registry)
        batch_id = await dispatch_batch(dispatcher, 1)
        coordinator = BatchCoordinator(backend, registry)

        await coordinator.record_success(batch_id)
        assert await coordinator.record_success(batch_id) is None
        assert await coordinator.record_failure(batch_id, "late", failure()) is None

        assert recorder.names == ["then", "finally"]

    async def test_concurrent_completions_fire_callbacks_once(self, memory_backend, registry):
        from jobengine.bus import Dispatcher

        recorder = Recorder(registry)
        dispatcher = Dispatcher(memory_backend, registry)
        batch_id = await dispatch_batch(dispatcher, 20)
        coordinator = BatchCoordinator(memory_backend, registry)

        await asyncio.gather(*(coordinator.record_success(batch_id) for _ in range(20)))

        assert recorder.names == ["then", "finally"]

    async def test_callback_errors_do_not_propagate(self, dispatcher, backend, registry):
        @registry.callback("then")
        async def broken(batch, error):
            raise RuntimeError("callback bug")

        batch_id = await dispatcher.batch([Job.of("echo")]).then("then").dispatch()
        coordinator = BatchCoordinator(backend, registry)

        await coordinator.record_success(batch_id)

        batch = await coordinator.find(batch_id)
        assert BatchCallback.THEN in batch.fired

    async def test_unknown_batch(self, backend, registry):
        coordinator = BatchCoordinator(backend, registry)

        assert await coordinator.progress("missing") is None
        assert await coordinator.record_success("missing") is None
        assert not await coordinator.is_cancelled("missing")
