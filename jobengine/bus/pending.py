"""
Fluent builders returned by the dispatcher.

Each builder collects options and enqueues when awaited (or when
`dispatch()` is called). A builder enqueues at most once.
"""

from collections.abc import Generator, Sequence
from typing import TYPE_CHECKING, Any

from jobengine.bus.job import Job
from jobengine.constants import BatchCallback
from jobengine.types.envelope import JobEnvelope

if TYPE_CHECKING:
    from jobengine.bus.dispatcher import Dispatcher


class PendingDispatch:
    """
    A single job waiting to be enqueued.

    Example:
        envelope = await dispatcher.dispatch(job).on_queue("emails").delay(30)
    """

    def __init__(self, dispatcher: "Dispatcher", job: Job):
        self._dispatcher = dispatcher
        self._job = job
        self._delay = 0.0
        self._chain: list[Job] = []
        self._envelope: JobEnvelope | None = None

    def on_queue(self, queue: str) -> "PendingDispatch":
        self._job = self._job.with_options(queue=queue)
        return self

    def on_connection(self, connection: str) -> "PendingDispatch":
        self._job = self._job.with_options(connection=connection)
        return self

    def delay(self, seconds: float) -> "PendingDispatch":
        """Make the job invisible to workers for `seconds`."""
        if seconds < 0:
            raise ValueError("delay must be >= 0")
        self._delay = float(seconds)
        return self

    def through(self, name: str, **options: Any) -> "PendingDispatch":
        self._job = self._job.through(name, **options)
        return self

    def chain(self, jobs: Sequence[Job]) -> "PendingDispatch":
        """Run `jobs` one after another once this job succeeds."""
        self._chain.extend(jobs)
        return self

    async def dispatch(self) -> JobEnvelope:
        if self._envelope is None:
            if self._chain:
                pending = PendingChain(self._dispatcher, [self._job, *self._chain])
                pending.delay(self._delay)
                self._envelope = await pending.dispatch()
            else:
                self._envelope = await self._dispatcher.enqueue_job(self._job, delay=self._delay)
        return self._envelope

    def __await__(self) -> Generator[Any, None, JobEnvelope]:
        return self.dispatch().__await__()


class PendingChain:
    """
    An ordered chain of jobs. Only the head is enqueued; each following
    link is enqueued by the worker after the previous one is acked.

    Example:
        await dispatcher.chain([fetch, resize, publish]).catch("chain_failed").dispatch()
    """

    def __init__(self, dispatcher: "Dispatcher", jobs: Sequence[Job]):
        self._dispatcher = dispatcher
        self._jobs = list(jobs)
        self._queue: str | None = None
        self._connection: str | None = None
        self._delay = 0.0
        self._catch: str | None = None
        self._envelope: JobEnvelope | None = None

    def on_queue(self, queue: str) -> "PendingChain":
        self._queue = queue
        return self

    def on_connection(self, connection: str) -> "PendingChain":
        self._connection = connection
        return self

    def delay(self, seconds: float) -> "PendingChain":
        """Delay the head of the chain."""
        if seconds < 0:
            raise ValueError("delay must be >= 0")
        self._delay = float(seconds)
        return self

    def catch(self, callback: str) -> "PendingChain":
        """Callback run with (envelope, error) when a link fails permanently."""
        self._catch = callback
        return self

    async def dispatch(self, head: Job | None = None) -> JobEnvelope:
        """
        Enqueue the chain.

        Args:
            head: Optional job to run before the jobs given to the builder.
        """
        if self._envelope is not None:
            return self._envelope
        jobs = [head, *self._jobs] if head is not None else list(self._jobs)
        if not jobs:
            raise ValueError("A chain needs at least one job")
        self._envelope = await self._dispatcher.enqueue_chain(
            jobs,
            queue=self._queue,
            connection=self._connection,
            delay=self._delay,
            catch=self._catch,
        )
        return self._envelope

    def __await__(self) -> Generator[Any, None, JobEnvelope]:
        return self.dispatch().__await__()


class PendingBatch:
    """
    A group of jobs tracked as one batch.

    Example:
        batch_id = await (
            dispatcher.batch(jobs)
            .name("import")
            .then("import_done")
            .catch("import_failed")
            .finally_("import_cleanup")
            .dispatch()
        )
    """

    def __init__(self, dispatcher: "Dispatcher", jobs: Sequence[Job]):
        self._dispatcher = dispatcher
        self._jobs = list(jobs)
        self._name = ""
        self._queue: str | None = None
        self._connection: str | None = None
        self._allow_failures = False
        self._callbacks: dict[BatchCallback, str] = {}
        self._batch_id: str | None = None

    def name(self, name: str) -> "PendingBatch":
        self._name = name
        return self

    def on_queue(self, queue: str) -> "PendingBatch":
        self._queue = queue
        return self

    def on_connection(self, connection: str) -> "PendingBatch":
        self._connection = connection
        return self

    def allow_failures(self, allow: bool = True) -> "PendingBatch":
        """Keep running remaining members after a member fails."""
        self._allow_failures = allow
        return self

    def then(self, callback: str) -> "PendingBatch":
        """Run once every member succeeded."""
        self._callbacks[BatchCallback.THEN] = callback
        return self

    def catch(self, callback: str) -> "PendingBatch":
        """Run once, on the first member failure."""
        self._callbacks[BatchCallback.CATCH] = callback
        return self

    def finally_(self, callback: str) -> "PendingBatch":
        """Run once when no member is pending, whatever the outcome."""
        self._callbacks[BatchCallback.FINALLY] = callback
        return self

    def add(self, jobs: Sequence[Job]) -> "PendingBatch":
        self._jobs.extend(jobs)
        return self

    async def dispatch(self) -> str:
        """Enqueue every member and return the batch id."""
        if self._batch_id is None:
            batch = await self._dispatcher.enqueue_batch(
                self._jobs,
                name=self._name,
                queue=self._queue,
                connection=self._connection,
                allow_failures=self._allow_failures,
                callbacks=self._callbacks,
            )
            self._batch_id = batch.id
        return self._batch_id

    def __await__(self) -> Generator[Any, None, str]:
        return self.dispatch().__await__()
