"""
Scheduler for recurring jobs.

Every tick the scheduler dispatches the tasks that are due. Tasks can be
restricted to one server per run, guarded against overlapping runs of
the same job, or run only while a queue has pending work.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from jobengine.backends.base import Clock
from jobengine.backends.manager import BackendManager
from jobengine.bus.dispatcher import Dispatcher
from jobengine.bus.job import Job
from jobengine.config import get_settings
from jobengine.db import close_db, init_db
from jobengine.exceptions import BackendUnavailable, LockUnavailable
from jobengine.locks.base import LockManager
from jobengine.locks.database import DatabaseLockManager
from jobengine.locks.guards import on_one_server
from jobengine.observability.logging import setup_logging
from jobengine.observability.metrics import MetricsCollector, get_metrics
from jobengine.registry import Registry

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    """A job dispatched every `interval` seconds."""

    name: str
    job: Job
    interval: float
    one_server: bool = False
    pending_queue: str | None = None
    next_run_at: float = 0.0
    last_run_at: float | None = None
    runs: int = field(default=0)

    def on_one_server(self) -> "ScheduledTask":
        """Dispatch on a single server per run across the fleet."""
        self.one_server = True
        return self

    def without_overlapping(
        self,
        expires_after: float = 3600.0,
        release_after: float | None = None,
    ) -> "ScheduledTask":
        """
        Keep two runs of this job from executing at the same time.

        The guard sits on the job itself, so it holds while workers run it.
        """
        self.job = self.job.through(
            "without_overlapping",
            key=f"schedule:{self.name}",
            expires_after=expires_after,
            release_after=release_after,
        )
        return self

    def when_pending(self, queue: str | None = None) -> "ScheduledTask":
        """Dispatch only while `queue` holds envelopes waiting for a worker."""
        self.pending_queue = queue or self.job.queue or ""
        return self

    @property
    def queue(self) -> str:
        return self.job.queue or ""

    def slot(self, now: float) -> int:
        """Index of the interval `now` falls into; shared by every server."""
        return int(now // self.interval)

    def is_due(self, now: float) -> bool:
        return now >= self.next_run_at


class Scheduler:
    """
    Dispatches recurring jobs.

    Example:
        scheduler = Scheduler(dispatcher, locks)
        scheduler.every(300, Job.of("sync_inventory"), name="inventory").on_one_server()
        await scheduler.start()
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        locks: LockManager,
        tick_seconds: float | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        lock_purge_seconds: float | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            dispatcher: Dispatcher used to enqueue due jobs.
            locks: Lock manager shared by every server running a scheduler.
            tick_seconds: Seconds between checks for due tasks.
            clock: Time source for due checks and slots.
            lock_purge_seconds: Seconds between sweeps of expired locks.
        """
        self.dispatcher = dispatcher
        self.locks = locks
        self.tick = tick_seconds or get_settings().scheduler_tick_seconds
        self.lock_purge_seconds = lock_purge_seconds or get_settings().scheduler_lock_purge_seconds
        self._next_purge_at = 0.0
        self._clock = clock or time.time
        self._metrics = metrics or get_metrics()
        self._sleep = sleep
        self._tasks: dict[str, ScheduledTask] = {}
        self._running = False

    @property
    def tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def every(self, seconds: float, job: Job, name: str | None = None) -> ScheduledTask:
        """Register `job` to be dispatched every `seconds`."""
        if seconds <= 0:
            raise ValueError("interval must be > 0")
        task = ScheduledTask(name=name or job.type, job=job, interval=float(seconds))
        if task.name in self._tasks:
            raise ValueError(f"Scheduled task already registered: {task.name}")
        self._tasks[task.name] = task
        return task

    async def start(self) -> None:
        """Start the scheduler loop."""
        logger.info(f"Scheduler starting with tick {self.tick}s", extra={"tasks": list(self._tasks)})
        self._running = True

        while self._running:
            try:
                dispatched = await self.run_due()
                if dispatched:
                    logger.info(f"Dispatched {len(dispatched)} scheduled jobs")
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            await self._sleep(self.tick)

        logger.info("Scheduler stopped")

    async def stop(self) -> None:
        """Stop the scheduler."""
        logger.info("Scheduler stopping")
        self._running = False

    async def run_due(self) -> list[str]:
        """
        Dispatch every task that is due now.

        Returns:
            Names of the tasks dispatched by this server.
        """
        now = self._clock()
        await self.purge_locks(now)
        dispatched = []
        for task in self._tasks.values():
            if not task.is_due(now):
                continue
            task.next_run_at = (task.slot(now) + 1) * task.interval
            try:
                if await self.run_task(task, now):
                    dispatched.append(task.name)
            except BackendUnavailable as e:
                logger.warning(
                    "Backend unavailable, scheduled task skipped",
                    extra={"task": task.name, "error": str(e)},
                )
        return dispatched

    async def purge_locks(self, now: float) -> int:
        """
        Sweep expired locks once every `lock_purge_seconds`.

        Slot locks are keyed per interval and never reacquired, so their
        rows would otherwise stay in the lock table.
        """
        if now < self._next_purge_at:
            return 0
        self._next_purge_at = now + self.lock_purge_seconds
        try:
            purged = await self.locks.purge_expired()
        except BackendUnavailable as e:
            logger.warning("Backend unavailable, lock purge skipped", extra={"error": str(e)})
            return 0
        if purged:
            logger.debug(f"Purged {purged} expired locks")
        return purged

    async def run_task(self, task: ScheduledTask, now: float) -> bool:
        """
        Dispatch one task unless a guard says otherwise.

        Returns:
            True if the job was dispatched.
        """
        if task.pending_queue is not None:
            queue = task.pending_queue or self.dispatcher.backends.default_queue
            pending = await self.dispatcher.backends.for_queue(queue).count_pending(queue)
            if pending == 0:
                logger.debug("Skipped, no pending work", extra={"task": task.name, "pending": pending})
                return False

        if not task.one_server:
            await self._dispatch(task, now)
            return True

        try:
            async with on_one_server(
                self.locks,
                task.queue or self.dispatcher.backends.default_queue,
                task.name,
                estimated_duration=task.interval,
                slot=task.slot(now),
            ):
                self._metrics.record_lock("one_server", acquired=True)
                await self._dispatch(task, now)
        except LockUnavailable:
            self._metrics.record_lock("one_server", acquired=False)
            return False
        return True

    async def _dispatch(self, task: ScheduledTask, now: float) -> None:
        envelope = await self.dispatcher.dispatch(task.job)
        task.last_run_at = now
        task.runs += 1
        logger.info("Scheduled job dispatched", extra={"task": task.name, "job_id": envelope.id})


async def run_async(registry: Registry, configure: Callable[[Scheduler], None]) -> None:
    """
    Run a scheduler until signalled.

    Args:
        registry: Registry whose callbacks the scheduled jobs reference.
        configure: Registers tasks on the scheduler.
    """
    settings = get_settings()
    setup_logging(role="scheduler")
    session_factory = await init_db()

    manager = BackendManager.from_settings(settings, session_factory)
    locks = DatabaseLockManager(session_factory, poll_interval=settings.lock_block_poll_seconds)
    scheduler = Scheduler(Dispatcher(manager, registry, locks=locks), locks)
    configure(scheduler)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(scheduler.stop()))

    try:
        await scheduler.start()
    finally:
        await manager.close()
        await close_db()
