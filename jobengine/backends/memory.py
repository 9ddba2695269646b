"""
In-process backend.

Stores envelopes, batches and failed jobs in dictionaries guarded by one
asyncio.Lock. Safe for any number of workers sharing one event loop; not
shared between processes. Used for tests, local development and queues
that do not need durability.
"""

import asyncio
import itertools
import logging
from collections.abc import Sequence
from datetime import datetime

from jobengine.backends.base import Backend, Clock
from jobengine.constants import BackendName, BatchCallback
from jobengine.types.batch import Batch, BatchCounts
from jobengine.types.envelope import JobEnvelope
from jobengine.types.failed import FailedJob

logger = logging.getLogger(__name__)


class MemoryBackend(Backend):
    """In-memory implementation of the backend contract."""

    name = BackendName.MEMORY

    def __init__(self, clock: Clock | None = None, connection_name: str | None = None):
        super().__init__(clock=clock, connection_name=connection_name)
        self._lock = asyncio.Lock()
        self._seq = itertools.count()
        # id -> (insertion seq, envelope)
        self._jobs: dict[str, tuple[int, JobEnvelope]] = {}
        self._batches: dict[str, Batch] = {}
        self._failed: dict[str, FailedJob] = {}

    def _prepare(self, envelope: JobEnvelope) -> JobEnvelope:
        stored = envelope.model_copy(deep=True)
        if stored.connection is None:
            stored.connection = self.connection_name
        return stored

    async def enqueue(self, envelope: JobEnvelope) -> JobEnvelope:
        stored = self._prepare(envelope)
        async with self._lock:
            self._jobs[stored.id] = (next(self._seq), stored)
        logger.debug(
            "Envelope stored",
            extra={"job_id": stored.id, "queue": stored.queue, "available_at": stored.available_at},
        )
        return stored.model_copy(deep=True)

    async def reserve(self, queue: str, visibility_timeout: float) -> JobEnvelope | None:
        async with self._lock:
            now = self.now()
            candidates = [
                (env.available_at, seq, env)
                for seq, env in self._jobs.values()
                if env.queue == queue and env.is_visible(now)
            ]
            if not candidates:
                return None
            _, _, envelope = min(candidates, key=lambda c: (c[0], c[1]))
            envelope.reserved_until = now + visibility_timeout
            return envelope.model_copy(deep=True)

    async def ack(self, envelope_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(envelope_id, None) is not None

    def _held(self, envelope_id: str, reserved_until: float | None) -> JobEnvelope | None:
        # Caller holds self._lock
        entry = self._jobs.get(envelope_id)
        if entry is None:
            return None
        if reserved_until is not None and entry[1].reserved_until != reserved_until:
            return None
        return entry[1]

    async def release(
        self,
        envelope_id: str,
        delay: float,
        count_exception: bool = False,
        reserved_until: float | None = None,
    ) -> bool:
        async with self._lock:
            envelope = self._held(envelope_id, reserved_until)
            if envelope is None:
                return False
            envelope.reserved_until = None
            envelope.attempts += 1
            if count_exception:
                envelope.exceptions += 1
            envelope.available_at = self.now() + delay
            return True

    async def fail(
        self,
        envelope_id: str,
        reason: str,
        reserved_until: float | None = None,
    ) -> FailedJob | None:
        async with self._lock:
            envelope = self._held(envelope_id, reserved_until)
            if envelope is None:
                return None
            del self._jobs[envelope_id]
            envelope.reserved_until = None
            failed = FailedJob(
                original_id=envelope.id,
                connection=envelope.connection,
                queue=envelope.queue,
                payload=envelope.payload,
                exception=reason,
                failed_at=self.now_datetime(),
                envelope=envelope,
            )
            self._failed[failed.id] = failed
            return failed.model_copy(deep=True)

    async def extend(
        self,
        envelope_id: str,
        visibility_timeout: float,
        reserved_until: float | None = None,
    ) -> float | None:
        async with self._lock:
            envelope = self._held(envelope_id, reserved_until)
            if envelope is None or envelope.reserved_until is None:
                return None
            envelope.reserved_until = self.now() + visibility_timeout
            return envelope.reserved_until

    async def delete(self, envelope_id: str) -> bool:
        async with self._lock:
            entry = self._jobs.get(envelope_id)
            if entry is None:
                return False
            reserved_until = entry[1].reserved_until
            if reserved_until is not None and reserved_until > self.now():
                return False
            del self._jobs[envelope_id]
            return True

    async def count_pending(self, queue: str) -> int:
        async with self._lock:
            now = self.now()
            return sum(
                1
                for _, env in self._jobs.values()
                if env.queue == queue and (env.reserved_until is None or env.reserved_until <= now)
            )

    async def get(self, envelope_id: str) -> JobEnvelope | None:
        async with self._lock:
            entry = self._jobs.get(envelope_id)
            return entry[1].model_copy(deep=True) if entry else None

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def create_batch(self, batch: Batch) -> Batch:
        async with self._lock:
            self._batches[batch.id] = batch.model_copy(deep=True)
        return batch

    async def enqueue_batch(self, batch: Batch, envelopes: Sequence[JobEnvelope]) -> list[JobEnvelope]:
        stored = [self._prepare(envelope) for envelope in envelopes]
        async with self._lock:
            self._batches[batch.id] = batch.model_copy(deep=True)
            for envelope in stored:
                self._jobs[envelope.id] = (next(self._seq), envelope)
        logger.debug("Batch stored", extra={"batch_id": batch.id, "total_jobs": len(stored)})
        return [envelope.model_copy(deep=True) for envelope in stored]

    async def get_batch(self, batch_id: str) -> Batch | None:
        async with self._lock:
            batch = self._batches.get(batch_id)
            return batch.model_copy(deep=True) if batch else None

    async def batch_job_finished(self, batch_id: str) -> BatchCounts | None:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.pending_jobs == 0:
                return None
            batch.pending_jobs -= 1
            self._mark_finished(batch)
            return self._counts(batch)

    async def batch_job_failed(self, batch_id: str, job_id: str) -> BatchCounts | None:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.pending_jobs == 0:
                return None
            batch.pending_jobs -= 1
            batch.failed_jobs += 1
            batch.failed_job_ids.append(job_id)
            self._mark_finished(batch)
            return self._counts(batch)

    async def cancel_batch(self, batch_id: str) -> bool:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.cancelled_at is not None:
                return False
            batch.cancelled_at = self.now_datetime()
            return True

    async def claim_batch_callback(self, batch_id: str, slot: BatchCallback) -> bool:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or slot in batch.fired:
                return False
            batch.fired.append(slot)
            return True

    def _mark_finished(self, batch: Batch) -> None:
        if batch.pending_jobs == 0 and batch.finished_at is None:
            batch.finished_at = self.now_datetime()

    @staticmethod
    def _counts(batch: Batch) -> BatchCounts:
        return BatchCounts(
            total_jobs=batch.total_jobs,
            pending_jobs=batch.pending_jobs,
            failed_jobs=batch.failed_jobs,
            allow_failures=batch.allow_failures,
        )

    # ------------------------------------------------------------------
    # Failed job store
    # ------------------------------------------------------------------

    async def list_failed(self, queue: str | None = None, limit: int = 100) -> list[FailedJob]:
        async with self._lock:
            records = [
                f for f in self._failed.values() if queue is None or f.queue == queue
            ]
        records.sort(key=lambda f: f.failed_at, reverse=True)
        return [f.model_copy(deep=True) for f in records[:limit]]

    async def get_failed(self, failed_id: str) -> FailedJob | None:
        async with self._lock:
            failed = self._failed.get(failed_id)
            if failed is None:
                failed = next(
                    (f for f in self._failed.values() if f.original_id == failed_id),
                    None,
                )
            return failed.model_copy(deep=True) if failed else None

    async def forget_failed(self, failed_id: str) -> bool:
        async with self._lock:
            if self._failed.pop(failed_id, None) is not None:
                return True
            for key, failed in list(self._failed.items()):
                if failed.original_id == failed_id:
                    del self._failed[key]
                    return True
            return False

    async def flush_failed(self) -> int:
        async with self._lock:
            count = len(self._failed)
            self._failed.clear()
            return count

    async def prune_failed(self, before: datetime) -> int:
        async with self._lock:
            stale = [k for k, f in self._failed.items() if f.failed_at < before]
            for key in stale:
                del self._failed[key]
            return len(stale)
