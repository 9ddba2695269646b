"""
Batch coordination: counter updates and exactly-once callbacks.
"""

import logging

from jobengine.backends.base import Backend
from jobengine.constants import SPAN_BATCH_CALLBACK, BatchCallback
from jobengine.exceptions import TerminalFailure
from jobengine.observability.metrics import MetricsCollector, get_metrics
from jobengine.observability.tracing import start_span
from jobengine.registry import Registry
from jobengine.types.batch import Batch, BatchCounts

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """
    Applies member outcomes to a batch and fires its callbacks.

    Counters move only through the backend's atomic primitives. Each
    callback slot is claimed with compare-and-set before it runs, so
    concurrent workers finishing the last members fire it once.
    """

    def __init__(
        self,
        backend: Backend,
        registry: Registry,
        metrics: MetricsCollector | None = None,
    ):
        self.backend = backend
        self.registry = registry
        self.metrics = metrics or get_metrics()

    async def find(self, batch_id: str) -> Batch | None:
        return await self.backend.get_batch(batch_id)

    async def progress(self, batch_id: str) -> float | None:
        """Fraction of members processed, None for an unknown batch."""
        batch = await self.backend.get_batch(batch_id)
        return batch.progress() if batch else None

    async def is_cancelled(self, batch_id: str) -> bool:
        batch = await self.backend.get_batch(batch_id)
        return batch is not None and batch.cancelled

    async def cancel(self, batch_id: str) -> bool:
        """
        Cancel a batch. Members not yet started are skipped by workers;
        members already executing run to completion.
        """
        cancelled = await self.backend.cancel_batch(batch_id)
        if cancelled:
            logger.info("Batch cancelled", extra={"batch_id": batch_id})
        return cancelled

    async def record_success(self, batch_id: str) -> BatchCounts | None:
        counts = await self.backend.batch_job_finished(batch_id)
        if counts is not None and counts.finished:
            await self._finish(batch_id, counts)
        return counts

    async def record_skipped(self, batch_id: str) -> BatchCounts | None:
        """A member dropped because its batch was cancelled."""
        return await self.record_success(batch_id)

    async def record_failure(
        self,
        batch_id: str,
        job_id: str,
        error: TerminalFailure,
    ) -> BatchCounts | None:
        """
        Count a permanently failed member.

        The first failure fires `catch` and, unless the batch allows
        failures, cancels the remaining members.
        """
        counts = await self.backend.batch_job_failed(batch_id, job_id)
        if counts is None:
            return None

        await self._fire(batch_id, BatchCallback.CATCH, error)

        if not counts.allow_failures and not counts.finished:
            await self.cancel(batch_id)

        if counts.finished:
            await self._finish(batch_id, counts)
        return counts

    async def finish_empty(self, batch_id: str) -> None:
        """Fire completion callbacks for a batch dispatched with no members."""
        await self._finish(batch_id, BatchCounts(total_jobs=0, pending_jobs=0, failed_jobs=0))

    async def _finish(self, batch_id: str, counts: BatchCounts) -> None:
        logger.info(
            "Batch finished",
            extra={
                "batch_id": batch_id,
                "total_jobs": counts.total_jobs,
                "failed_jobs": counts.failed_jobs,
            },
        )
        if counts.failed_jobs == 0:
            await self._fire(batch_id, BatchCallback.THEN, None)
        await self._fire(batch_id, BatchCallback.FINALLY, None)

    async def _fire(
        self,
        batch_id: str,
        slot: BatchCallback,
        error: TerminalFailure | None,
    ) -> bool:
        """
        Claim and run one callback slot.

        Returns:
            True if this call ran the callback.
        """
        batch = await self.backend.get_batch(batch_id)
        if batch is None:
            return False
        name = batch.callbacks.get(slot)
        if not name:
            return False
        if not await self.backend.claim_batch_callback(batch_id, slot):
            return False

        callback = self.registry.get_callback(name)
        if callback is None:
            logger.error(
                "Batch callback is not registered",
                extra={"batch_id": batch_id, "slot": str(slot), "callback": name},
            )
            return False

        # Re-read so the callback sees the claimed slot
        batch = await self.backend.get_batch(batch_id) or batch
        with start_span(SPAN_BATCH_CALLBACK, batch_id=batch_id, slot=str(slot)):
            try:
                await callback(batch, error)
            except Exception:
                logger.exception(
                    "Batch callback raised",
                    extra={"batch_id": batch_id, "slot": str(slot), "callback": name},
                )
        self.metrics.record_batch_callback(str(slot))
        return True
