"""
Dispatcher: turns jobs into envelopes on the right backend.
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from jobengine.backends.base import Backend
from jobengine.backends.manager import BackendManager
from jobengine.bus.batches import BatchCoordinator
from jobengine.bus.job import Job
from jobengine.bus.pending import PendingBatch, PendingChain, PendingDispatch
from jobengine.constants import SPAN_DISPATCH, BatchCallback
from jobengine.locks.base import LockManager
from jobengine.observability.metrics import MetricsCollector, get_metrics
from jobengine.observability.tracing import start_span
from jobengine.pipeline import run_pipeline
from jobengine.registry import Registry
from jobengine.types.batch import Batch
from jobengine.types.envelope import JobEnvelope, new_id
from jobengine.types.job import JobContext

logger = logging.getLogger(__name__)

Condition = bool | Callable[[], bool]


class Dispatcher:
    """
    Entry point for producers.

    Queue and connection resolve in order: explicit builder option, the
    job's own option, then the configured defaults.

    Example:
        dispatcher = Dispatcher(BackendManager.from_settings(settings, factory), registry)
        await dispatcher.dispatch(Job.of("send_email", to="a@example.com")).delay(60)
    """

    def __init__(
        self,
        backends: BackendManager | Backend,
        registry: Registry | None = None,
        locks: LockManager | None = None,
        metrics: MetricsCollector | None = None,
    ):
        if isinstance(backends, Backend):
            backends = BackendManager.single(backends)
        self.backends = backends
        self.registry = registry or Registry()
        self.locks = locks
        self.metrics = metrics or get_metrics()

    # Producer API

    def dispatch(self, job: Job) -> PendingDispatch:
        """Builder that enqueues `job` when awaited."""
        return PendingDispatch(self, job)

    def dispatch_after(self, seconds: float, job: Job) -> PendingDispatch:
        return PendingDispatch(self, job).delay(seconds)

    def dispatch_if(self, condition: Condition, job: Job) -> PendingDispatch | None:
        """Builder for `job` if `condition` holds, otherwise None."""
        if _evaluate(condition):
            return PendingDispatch(self, job)
        return None

    def dispatch_unless(self, condition: Condition, job: Job) -> PendingDispatch | None:
        if _evaluate(condition):
            return None
        return PendingDispatch(self, job)

    async def dispatch_many(
        self,
        jobs: Sequence[Job],
        queue: str | None = None,
    ) -> list[JobEnvelope]:
        """Enqueue several independent jobs."""
        envelopes = []
        for job in jobs:
            if queue is not None:
                job = job.with_options(queue=queue)
            envelopes.append(await self.enqueue_job(job))
        return envelopes

    async def dispatch_sync(self, job: Job) -> Any:
        """
        Run `job` in the calling task without touching a backend.

        Middleware runs as it would on a worker. Handler exceptions
        propagate to the caller.
        """
        queue = job.queue or self.backends.default_queue
        envelope = job.to_envelope(0.0, queue=queue, connection="sync")
        context = JobContext(envelope=envelope, worker_id="sync", locks=self.locks)
        result = await run_pipeline(self.registry, context)
        if context.is_released:
            logger.warning(
                "Synchronous job asked to be released, ignoring",
                extra={"job_type": job.type},
            )
        return result

    def chain(self, jobs: Sequence[Job]) -> PendingChain:
        return PendingChain(self, jobs)

    def with_chain(self, jobs: Sequence[Job]) -> PendingChain:
        """Chain whose head is given later to `dispatch(head)`."""
        return PendingChain(self, jobs)

    def batch(self, jobs: Sequence[Job]) -> PendingBatch:
        return PendingBatch(self, jobs)

    # Batch inspection

    def coordinator(self, connection: str | None = None) -> BatchCoordinator:
        return BatchCoordinator(self.backends.connection(connection), self.registry, self.metrics)

    async def find_batch(self, batch_id: str, connection: str | None = None) -> Batch | None:
        return await self.backends.connection(connection).get_batch(batch_id)

    async def cancel_batch(self, batch_id: str, connection: str | None = None) -> bool:
        return await self.coordinator(connection).cancel(batch_id)

    # Enqueue primitives used by the builders and the worker

    async def enqueue_job(self, job: Job, delay: float = 0.0) -> JobEnvelope:
        queue = job.queue or self.backends.default_queue
        connection = self.backends.connection_name_for(queue, job.connection)
        backend = self.backends.connection(connection)
        envelope = job.to_envelope(backend.now(), queue=queue, connection=connection, delay=delay)
        return await self._enqueue(backend, envelope)

    async def enqueue_chain(
        self,
        jobs: Sequence[Job],
        queue: str | None = None,
        connection: str | None = None,
        delay: float = 0.0,
        catch: str | None = None,
    ) -> JobEnvelope:
        self._check_callback(catch)
        head_job = jobs[0]
        head_queue = queue or head_job.queue or self.backends.default_queue
        connection_name = self.backends.connection_name_for(head_queue, connection or head_job.connection)
        backend = self.backends.connection(connection_name)
        now = backend.now()

        links = [
            job.to_envelope(
                now,
                queue=queue or job.queue or self.backends.default_queue,
                connection=connection_name,
            )
            for job in jobs[1:]
        ]
        head = head_job.to_envelope(now, queue=head_queue, connection=connection_name, delay=delay)
        head.chain_remainder = links
        head.chain_catch = catch
        logger.debug("Dispatching chain", extra={"job_id": head.id, "links": len(jobs)})
        return await self._enqueue(backend, head)

    async def enqueue_next_link(self, finished: JobEnvelope) -> JobEnvelope | None:
        """
        Enqueue the link following `finished`, carrying the rest of the chain.

        Returns:
            The new envelope, or None when `finished` was the last link.
        """
        if not finished.chain_remainder:
            return None
        head, *rest = finished.chain_remainder
        backend = self.backends.connection(finished.connection or head.connection)
        now = backend.now()
        link = head.model_copy(
            update={
                "connection": backend.connection_name,
                "created_at": now,
                "available_at": now,
                "reserved_until": None,
                "chain_remainder": rest,
                "chain_catch": finished.chain_catch,
            }
        )
        return await self._enqueue(backend, link)

    async def enqueue_batch(
        self,
        jobs: Sequence[Job],
        name: str = "",
        queue: str | None = None,
        connection: str | None = None,
        allow_failures: bool = False,
        callbacks: Mapping[BatchCallback, str] | None = None,
    ) -> Batch:
        """
        Store the batch record and its members on one backend in a single
        atomic write.
        """
        callbacks = dict(callbacks or {})
        for callback in callbacks.values():
            self._check_callback(callback)

        connection_name = self.backends.connection_name_for(queue, connection)
        backend = self.backends.connection(connection_name)
        batch_id = new_id()
        batch = Batch(
            id=batch_id,
            name=name or f"batch-{batch_id}",
            queue=queue,
            connection=connection_name,
            total_jobs=len(jobs),
            pending_jobs=len(jobs),
            allow_failures=allow_failures,
            callbacks=callbacks,
            created_at=backend.now_datetime(),
        )
        now = backend.now()
        envelopes = []
        for job in jobs:
            envelope = job.to_envelope(
                now,
                queue=queue or job.queue or self.backends.default_queue,
                connection=connection_name,
            )
            envelope.batch_id = batch.id
            envelopes.append(envelope)

        with start_span(
            SPAN_DISPATCH,
            batch_id=batch.id,
            total_jobs=len(envelopes),
            connection=backend.connection_name,
        ):
            await backend.enqueue_batch(batch, envelopes)
        for envelope in envelopes:
            self.metrics.record_job_dispatched(backend.connection_name, envelope.queue)

        logger.info(
            "Batch dispatched",
            extra={"batch_id": batch.id, "batch_name": name, "total_jobs": len(jobs)},
        )
        if not jobs:
            await self.coordinator(connection_name).finish_empty(batch.id)
        return batch

    async def _enqueue(self, backend: Backend, envelope: JobEnvelope) -> JobEnvelope:
        with start_span(
            SPAN_DISPATCH,
            job_id=envelope.id,
            job_type=envelope.command_type,
            queue=envelope.queue,
            connection=backend.connection_name,
        ):
            stored = await backend.enqueue(envelope)
        self.metrics.record_job_dispatched(backend.connection_name, envelope.queue)
        logger.debug(
            "Job dispatched",
            extra={
                "job_id": stored.id,
                "job_type": stored.command_type,
                "queue": stored.queue,
                "available_at": stored.available_at,
            },
        )
        return stored

    def _check_callback(self, name: str | None) -> None:
        if name is not None and not self.registry.has_callback(name):
            raise ValueError(f"Callback is not registered: {name}")


def _evaluate(condition: Condition) -> bool:
    return bool(condition() if callable(condition) else condition)
