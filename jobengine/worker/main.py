"""
Worker process for executing jobs.

The worker reserves envelopes from its queues, runs them through their
middleware and handler, and settles each one: ack on success, release
with backoff on a retryable error, or move to the failed store once its
attempts or exceptions are exhausted.
"""

import asyncio
import logging
import os
import signal
import time
import traceback
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from jobengine.backends.base import Backend
from jobengine.backends.manager import BackendManager
from jobengine.bus.batches import BatchCoordinator
from jobengine.bus.dispatcher import Dispatcher
from jobengine.config import Settings, get_settings
from jobengine.constants import (
    DEFAULT_QUEUE,
    SPAN_ACK,
    SPAN_EXECUTE,
    SPAN_RESERVE,
    EnvelopeState,
)
from jobengine.db import close_db, init_db
from jobengine.exceptions import BackendUnavailable, TerminalFailure, TimeoutExceeded
from jobengine.locks.base import LockManager
from jobengine.locks.database import DatabaseLockManager
from jobengine.observability.logging import job_log_context, setup_logging
from jobengine.observability.metrics import MetricsCollector, get_metrics
from jobengine.observability.tracing import setup_tracing, start_span
from jobengine.pipeline import run_pipeline
from jobengine.ratelimit import RateLimiter
from jobengine.registry import Registry
from jobengine.types.envelope import JobEnvelope
from jobengine.types.job import JobContext
from jobengine.worker.backoff import compute_backoff

logger = logging.getLogger(__name__)


@dataclass
class WorkerOptions:
    """Tunables for one worker; zero means unbounded for limits."""

    queues: list[str] = field(default_factory=lambda: [DEFAULT_QUEUE])
    tries: int = 0
    timeout: float = 60.0
    sleep: float = 3.0
    visibility_timeout: float = 90.0
    heartbeat_interval: float = 10.0
    backend_retry: float = 1.0
    concurrency: int = 1
    max_jobs: int = 0
    once: bool = False
    stop_when_empty: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, queues: Sequence[str] | None = None, **overrides) -> "WorkerOptions":
        options = cls(
            queues=list(queues or [settings.queue_default_queue]),
            tries=settings.worker_tries,
            timeout=settings.worker_timeout_seconds,
            sleep=settings.worker_sleep_seconds,
            visibility_timeout=settings.worker_visibility_timeout_seconds,
            heartbeat_interval=settings.worker_heartbeat_interval_seconds,
            backend_retry=settings.worker_backend_retry_seconds,
            concurrency=settings.worker_concurrency,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


class Worker:
    """
    Job worker that reserves and executes envelopes from one backend.

    Features:
    - Atomic reservation with a visibility timeout
    - Heartbeat to extend the reservation of long-running jobs
    - Timeout watchdog per execution
    - Retry with backoff, failed store on exhaustion
    - Chain advance and batch counter updates
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        backend: Backend,
        registry: Registry,
        options: WorkerOptions | None = None,
        dispatcher: Dispatcher | None = None,
        locks: LockManager | None = None,
        metrics: MetricsCollector | None = None,
        worker_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the worker.

        Args:
            backend: Backend the worker reserves from.
            registry: Handlers, hooks, callbacks and middleware.
            options: Worker tunables. Defaults to WorkerOptions().
            dispatcher: Used to enqueue the next link of a chain.
            locks: Lock manager exposed to middleware.
            metrics: Metrics collector. Defaults to the process collector.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            sleep: Awaitable sleep used between polls.
        """
        self.backend = backend
        self.registry = registry
        self.options = options or WorkerOptions()
        self.locks = locks
        self.metrics = metrics or get_metrics()
        self.dispatcher = dispatcher or Dispatcher(backend, registry, locks=locks, metrics=self.metrics)
        self.coordinator = BatchCoordinator(backend, registry, self.metrics)
        self.rate_limiter = RateLimiter(clock=backend.now)
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"

        self._sleep = sleep
        self._running = False
        self._processed = 0
        # Envelopes claimed by the loops, counted before reserving
        self._claimed = 0

    @property
    def processed(self) -> int:
        """Number of envelopes this worker has settled."""
        return self._processed

    async def start(self) -> None:
        """Run the polling loops until stopped."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "connection": self.backend.connection_name,
                "queues": self.options.queues,
                "concurrency": self.options.concurrency,
            },
        )
        self._running = True
        loops = [asyncio.create_task(self._loop()) for _ in range(max(1, self.options.concurrency))]
        try:
            await asyncio.gather(*loops)
        finally:
            for task in loops:
                task.cancel()
        logger.info(
            "Worker stopped",
            extra={"worker_id": self.worker_id, "processed": self._processed},
        )

    async def stop(self) -> None:
        """Stop after the jobs currently executing are settled."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    @property
    def job_budget(self) -> int:
        """Envelopes this worker may process before stopping; 0 is unbounded."""
        return 1 if self.options.once else self.options.max_jobs

    async def _loop(self) -> None:
        budget = self.job_budget
        while self._running:
            if budget and self._claimed >= budget:
                break
            self._claimed += 1
            processed = False
            try:
                processed = await self.run_once()
            except BackendUnavailable as e:
                logger.warning(
                    "Backend unavailable, retrying",
                    extra={"worker_id": self.worker_id, "error": str(e)},
                )
                self.metrics.record_backend_error(self.backend.connection_name)
                await self._sleep(self.options.backend_retry)
                continue
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await self._sleep(self.options.sleep)
                continue
            finally:
                if not processed:
                    self._claimed -= 1

            if processed:
                if budget and self._processed >= budget:
                    self._running = False
                continue

            if self.options.once or self.options.stop_when_empty:
                self._running = False
                break
            await self._sleep(self.options.sleep)

    async def run_once(self) -> bool:
        """
        Reserve and process at most one envelope, trying queues in priority order.

        Returns:
            True if an envelope was processed.
        """
        for queue in self.options.queues:
            with start_span(SPAN_RESERVE, queue=queue, connection=self.backend.connection_name):
                envelope = await self.backend.reserve(queue, self.options.visibility_timeout)
            if envelope is not None:
                await self.process(envelope)
                return True
        return False

    async def process(self, envelope: JobEnvelope) -> EnvelopeState:
        """
        Execute one reserved envelope and settle it.

        Returns:
            The state the envelope was left in.

        Raises:
            BackendUnavailable: If the backend failed mid-way. The reservation
                is left to expire so the envelope is redelivered.
        """
        context = JobContext(
            envelope=envelope,
            worker_id=self.worker_id,
            default_tries=self.options.tries or None,
            locks=self.locks,
            rate_limiter=self.rate_limiter,
        )
        start_time = time.monotonic()
        with job_log_context(envelope.id, envelope.queue, context.attempt):
            outcome = await self._process(context)

        self._processed += 1
        self.metrics.record_job_processed(
            queue=envelope.queue,
            outcome=str(outcome),
            duration_seconds=time.monotonic() - start_time,
        )
        return outcome

    async def _process(self, context: JobContext) -> EnvelopeState:
        envelope = context.envelope

        if envelope.batch_id and await self.coordinator.is_cancelled(envelope.batch_id):
            return await self._skip(envelope)

        logger.info(
            "Processing job",
            extra={"job_type": envelope.command_type, "worker_id": self.worker_id},
        )

        error: Exception | None = None
        heartbeat = asyncio.create_task(self._heartbeat_loop(envelope))
        try:
            with start_span(
                SPAN_EXECUTE,
                job_id=envelope.id,
                job_type=envelope.command_type,
                attempt=context.attempt,
            ):
                await self._execute(context)
        except BackendUnavailable:
            raise
        except Exception as e:
            error = e
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        if error is not None:
            return await self._handle_exception(context, error)
        if context.is_failed:
            return await self._fail(context, context.failure_reason or "Job marked as failed", None)
        if context.is_released:
            return await self._release(context, context.released_delay or 0.0)
        return await self._complete(context)

    async def _execute(self, context: JobContext) -> None:
        timeout = context.envelope.timeout or self.options.timeout
        if not timeout:
            await run_pipeline(self.registry, context)
            return
        try:
            await asyncio.wait_for(run_pipeline(self.registry, context), timeout)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(context.job_id, timeout) from None

    async def _complete(self, context: JobContext) -> EnvelopeState:
        envelope = context.envelope
        with start_span(SPAN_ACK, job_id=envelope.id):
            acked = await self.backend.ack(envelope.id)
        if not acked:
            logger.warning("Envelope was already settled, skipping follow-ups")
            return EnvelopeState.ACKED

        logger.info("Job completed successfully", extra={"job_type": envelope.command_type})

        if envelope.chain_remainder:
            await self.dispatcher.enqueue_next_link(envelope)
        if envelope.batch_id:
            await self.coordinator.record_success(envelope.batch_id)
        return EnvelopeState.ACKED

    async def _release(self, context: JobContext, delay: float) -> EnvelopeState:
        """Put the envelope back at the handler's or a middleware's request."""
        if context.is_last_attempt:
            reason = f"{context.command_type} has been attempted too many times"
            return await self._fail(context, reason, None)

        released = await self.backend.release(
            context.job_id,
            delay,
            reserved_until=context.envelope.reserved_until,
        )
        if released:
            logger.info("Job released", extra={"delay": delay})
        else:
            logger.warning("Reservation was lost before release")
        return EnvelopeState.RELEASED

    async def _handle_exception(self, context: JobContext, error: Exception) -> EnvelopeState:
        envelope = context.envelope
        exceptions = envelope.exceptions + 1
        exceptions_exhausted = (
            envelope.max_exceptions is not None and exceptions >= envelope.max_exceptions
        )

        if context.is_last_attempt or exceptions_exhausted:
            return await self._fail(context, _describe(error), error)

        delay = compute_backoff(envelope.backoff, envelope.attempts)
        released = await self.backend.release(
            envelope.id,
            delay,
            count_exception=True,
            reserved_until=envelope.reserved_until,
        )
        if not released:
            logger.warning("Reservation was lost before release", extra={"error": str(error)})
            return EnvelopeState.RELEASED
        logger.warning(
            "Job failed, will retry",
            extra={
                "error": str(error),
                "error_type": type(error).__name__,
                "delay": delay,
                "remaining_attempts": context.remaining_attempts,
            },
        )
        return EnvelopeState.RELEASED

    async def _fail(
        self,
        context: JobContext,
        reason: str,
        error: Exception | None,
    ) -> EnvelopeState:
        envelope = context.envelope
        failure = TerminalFailure(envelope.id, _summarize(reason))
        failure.__cause__ = error

        failed = await self.backend.fail(envelope.id, reason, reserved_until=envelope.reserved_until)
        if failed is None:
            logger.warning("Envelope was already settled or reserved again, skipping failure handling")
            return EnvelopeState.FAILED

        logger.error(
            "Job failed permanently",
            extra={"job_type": envelope.command_type, "failed_id": failed.id, "reason": failure.reason},
        )

        hook = self.registry.get_failure_hook(envelope.command_type)
        if hook is not None:
            try:
                await hook(context, failure)
            except Exception:
                logger.exception("Failure hook raised")

        if envelope.batch_id:
            await self.coordinator.record_failure(envelope.batch_id, envelope.id, failure)

        if envelope.chain_remainder or envelope.chain_catch:
            await self._halt_chain(envelope, failure)
        return EnvelopeState.FAILED

    async def _halt_chain(self, envelope: JobEnvelope, failure: TerminalFailure) -> None:
        logger.warning("Chain halted", extra={"remaining_links": len(envelope.chain_remainder)})
        if not envelope.chain_catch:
            return
        callback = self.registry.get_callback(envelope.chain_catch)
        if callback is None:
            logger.error("Chain catch callback is not registered", extra={"callback": envelope.chain_catch})
            return
        try:
            await callback(envelope, failure)
        except Exception:
            logger.exception("Chain catch callback raised")

    async def _skip(self, envelope: JobEnvelope) -> EnvelopeState:
        """Drop a member of a cancelled batch without running it."""
        if await self.backend.ack(envelope.id):
            logger.info("Skipping job of cancelled batch", extra={"batch_id": envelope.batch_id})
            await self.coordinator.record_skipped(envelope.batch_id)
        return EnvelopeState.SKIPPED

    async def _heartbeat_loop(self, envelope: JobEnvelope) -> None:
        """
        Periodically extend the reservation of the executing envelope.

        This keeps other workers from redelivering a job that is still
        running past the visibility timeout. Each extension replaces
        `envelope.reserved_until`, the token settlement is guarded on.
        """
        while True:
            await asyncio.sleep(self.options.heartbeat_interval)
            try:
                extended_until = await self.backend.extend(
                    envelope.id,
                    self.options.visibility_timeout,
                    reserved_until=envelope.reserved_until,
                )
            except BackendUnavailable as e:
                logger.warning("Could not extend reservation", extra={"error": str(e)})
                continue
            if extended_until is None:
                logger.warning("Reservation was lost, another worker may hold the job")
                return
            envelope.reserved_until = extended_until
            logger.debug("Extended reservation", extra={"job_id": envelope.id})


def _describe(error: BaseException) -> str:
    """Exception text stored in the failed store."""
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def _summarize(reason: str) -> str:
    """Last line of a stored exception text, e.g. "ValueError: boom"."""
    lines = reason.strip().splitlines()
    return lines[-1] if lines else reason


async def run_async(
    registry: Registry,
    connection: str | None = None,
    queues: Sequence[str] | None = None,
    **overrides,
) -> None:
    """Run a worker against the configured backends until signalled."""
    settings = get_settings()
    setup_logging(role="worker")
    if settings.tracing_enabled:
        setup_tracing()

    session_factory = await init_db()
    manager = BackendManager.from_settings(settings, session_factory)
    backend = manager.connection(connection)
    locks = DatabaseLockManager(session_factory, poll_interval=settings.lock_block_poll_seconds)
    dispatcher = Dispatcher(manager, registry, locks=locks)

    worker = Worker(
        backend,
        registry,
        options=WorkerOptions.from_settings(settings, queues, **overrides),
        dispatcher=dispatcher,
        locks=locks,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await manager.close()
        await close_db()


def run(registry: Registry, **kwargs) -> None:
    """Run the worker."""
    asyncio.run(run_async(registry, **kwargs))
