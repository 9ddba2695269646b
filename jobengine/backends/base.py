"""
Backend contract shared by every concrete transport.

A backend stores envelopes and provides atomic reserve/ack/release/fail
primitives over them, the atomic counter operations batches rely on, and
the failed job store.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from jobengine.constants import BatchCallback
from jobengine.exceptions import FailedJobNotFound
from jobengine.types.batch import Batch, BatchCounts
from jobengine.types.envelope import JobEnvelope, new_id
from jobengine.types.failed import FailedJob

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Failed jobs loaded per round by retry_all_failed
RETRY_PAGE_SIZE = 500


class Backend(ABC):
    """
    Abstract queue backend.

    Every operation raises `BackendUnavailable` when the transport cannot
    be reached. Implementations must make `reserve`, the batch counter
    updates and `claim_batch_callback` atomic across processes.
    """

    name: str = "abstract"

    def __init__(self, clock: Clock | None = None, connection_name: str | None = None):
        self._clock = clock or time.time
        self.connection_name = connection_name or self.name

    def now(self) -> float:
        """Current time in unix seconds according to this backend."""
        return self._clock()

    def now_datetime(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=UTC)

    # ------------------------------------------------------------------
    # Envelopes
    # ------------------------------------------------------------------

    @abstractmethod
    async def enqueue(self, envelope: JobEnvelope) -> JobEnvelope:
        """Store an envelope. It becomes reservable once now >= available_at."""

    @abstractmethod
    async def reserve(self, queue: str, visibility_timeout: float) -> JobEnvelope | None:
        """
        Atomically reserve the oldest visible envelope on `queue`.

        Ordering is by `available_at`, then insertion order. The envelope
        stays invisible until `now + visibility_timeout` unless acked,
        released or failed first. Returns None when nothing is visible.
        """

    @abstractmethod
    async def ack(self, envelope_id: str) -> bool:
        """Remove an envelope. Returns False if it was already gone."""

    @abstractmethod
    async def release(
        self,
        envelope_id: str,
        delay: float,
        count_exception: bool = False,
        reserved_until: float | None = None,
    ) -> bool:
        """
        Clear the reservation, increment attempts and make the envelope
        available again after `delay` seconds.

        When `reserved_until` is given the update only applies while the
        envelope still carries that reservation, so a worker whose lease
        expired cannot settle a later reservation. Returns False if the
        envelope is gone or held under another reservation.
        """

    @abstractmethod
    async def fail(
        self,
        envelope_id: str,
        reason: str,
        reserved_until: float | None = None,
    ) -> FailedJob | None:
        """
        Move an envelope to the failed store.

        `reserved_until` guards the move like it does for `release`.
        Returns the failed record, or None if the envelope was already gone
        or is held under another reservation.
        """

    @abstractmethod
    async def extend(
        self,
        envelope_id: str,
        visibility_timeout: float,
        reserved_until: float | None = None,
    ) -> float | None:
        """
        Push a live reservation out to `now + visibility_timeout`.

        Returns the new `reserved_until`, which replaces the caller's token
        for later guarded calls, or None if the reservation was lost.
        """

    @abstractmethod
    async def delete(self, envelope_id: str) -> bool:
        """Cancel an envelope that is not currently reserved."""

    @abstractmethod
    async def count_pending(self, queue: str) -> int:
        """Count envelopes on `queue` that are not under a live reservation."""

    @abstractmethod
    async def get(self, envelope_id: str) -> JobEnvelope | None:
        """Fetch an envelope by id."""

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_batch(self, batch: Batch) -> Batch:
        """Persist a new batch record."""

    @abstractmethod
    async def enqueue_batch(self, batch: Batch, envelopes: Sequence[JobEnvelope]) -> list[JobEnvelope]:
        """
        Persist a batch record and all of its member envelopes atomically.

        Either the batch and every member are stored or none of them are,
        so `pending_jobs` always matches the members that exist.
        """

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Batch | None:
        """Fetch a batch snapshot."""

    @abstractmethod
    async def batch_job_finished(self, batch_id: str) -> BatchCounts | None:
        """
        Atomically decrement `pending_jobs` for a member that succeeded or
        was skipped. Returns the counters after the update, or None if the
        batch is missing or has nothing pending.
        """

    @abstractmethod
    async def batch_job_failed(self, batch_id: str, job_id: str) -> BatchCounts | None:
        """
        Atomically increment `failed_jobs` and decrement `pending_jobs` for
        a member that failed permanently.
        """

    @abstractmethod
    async def cancel_batch(self, batch_id: str) -> bool:
        """Set the cancelled flag. Returns False if already cancelled or missing."""

    @abstractmethod
    async def claim_batch_callback(self, batch_id: str, slot: BatchCallback) -> bool:
        """
        Compare-and-swap the fired flag of one callback slot.

        Exactly one caller gets True per batch and slot.
        """

    # ------------------------------------------------------------------
    # Failed job store
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_failed(self, queue: str | None = None, limit: int = 100) -> list[FailedJob]:
        """List failed jobs, newest first."""

    @abstractmethod
    async def get_failed(self, failed_id: str) -> FailedJob | None:
        """Fetch a failed job by its failed-store id or original envelope id."""

    @abstractmethod
    async def forget_failed(self, failed_id: str) -> bool:
        """Delete one failed job."""

    @abstractmethod
    async def flush_failed(self) -> int:
        """Delete every failed job. Returns the number removed."""

    @abstractmethod
    async def prune_failed(self, before: datetime) -> int:
        """Delete failed jobs recorded before `before`."""

    async def retry_failed(self, failed_id: str) -> JobEnvelope:
        """
        Re-enqueue a failed job as a fresh envelope and drop the failed record.

        Raises:
            FailedJobNotFound: If no failed job matches `failed_id`.
        """
        failed = await self.get_failed(failed_id)
        if failed is None:
            raise FailedJobNotFound(failed_id)

        now = self.now()
        envelope = failed.envelope.model_copy(
            update={
                "id": new_id(),
                "attempts": 0,
                "exceptions": 0,
                "created_at": now,
                "available_at": now,
                "reserved_until": None,
                "batch_id": None,
            }
        )
        stored = await self.enqueue(envelope)
        await self.forget_failed(failed.id)

        logger.info(
            "Failed job pushed back onto queue",
            extra={"failed_id": failed.id, "job_id": stored.id, "queue": stored.queue},
        )
        return stored

    async def retry_all_failed(self, page_size: int = RETRY_PAGE_SIZE) -> list[JobEnvelope]:
        """
        Retry every failed job recorded before the call, a page at a time.

        Jobs that fail again while this runs are left in the store.
        """
        started = self.now_datetime()
        retried = []
        while True:
            page = [
                failed
                for failed in await self.list_failed(limit=page_size)
                if failed.failed_at <= started
            ]
            if not page:
                return retried
            for failed in page:
                retried.append(await self.retry_failed(failed.id))

    async def close(self) -> None:
        """Release transport resources."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(connection={self.connection_name})"
