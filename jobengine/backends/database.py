"""
SQL backend on SQLAlchemy async sessions.

Reservation selects candidates with FOR UPDATE SKIP LOCKED (rendered on
PostgreSQL, ignored elsewhere) and claims one with a conditional UPDATE
guarded on the previous `reserved_until`, so two workers can never hold
the same envelope even on dialects without row locks.
"""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.backends.base import Backend, Clock
from jobengine.constants import BackendName, BatchCallback
from jobengine.db.connection import session_scope
from jobengine.db.models import BatchFailure, BatchRecord, FailedJobRecord, QueuedJob
from jobengine.exceptions import BackendUnavailable
from jobengine.types.batch import Batch, BatchCounts
from jobengine.types.envelope import Command, JobEnvelope, MiddlewareSpec
from jobengine.types.failed import FailedJob

logger = logging.getLogger(__name__)

# Rows examined per reservation attempt before giving up
RESERVE_CANDIDATES = 5

TRANSPORT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, OSError)

_FIRED_COLUMNS = {
    BatchCallback.THEN: BatchRecord.then_fired,
    BatchCallback.CATCH: BatchRecord.catch_fired,
    BatchCallback.FINALLY: BatchRecord.finally_fired,
}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def envelope_to_values(envelope: JobEnvelope) -> dict:
    """Map an envelope onto `jobs` column values."""
    return {
        "id": envelope.id,
        "queue": envelope.queue,
        "payload": envelope.payload.model_dump(mode="json"),
        "attempts": envelope.attempts,
        "exceptions": envelope.exceptions,
        "max_tries": envelope.max_tries,
        "max_exceptions": envelope.max_exceptions,
        "timeout": envelope.timeout,
        "backoff": envelope.backoff,
        "created_at": envelope.created_at,
        "available_at": envelope.available_at,
        "reserved_until": envelope.reserved_until,
        "batch_id": envelope.batch_id,
        "chain_remainder": [link.model_dump(mode="json") for link in envelope.chain_remainder],
        "chain_catch": envelope.chain_catch,
        "middleware": [spec.model_dump(mode="json") for spec in envelope.middleware],
    }


def batch_to_values(batch: Batch) -> dict:
    """Map a new batch onto `job_batches` column values."""
    return {
        "id": batch.id,
        "name": batch.name,
        "queue": batch.queue,
        "connection": batch.connection,
        "total_jobs": batch.total_jobs,
        "pending_jobs": batch.pending_jobs,
        "failed_jobs": batch.failed_jobs,
        "allow_failures": batch.allow_failures,
        "then_callback": batch.callbacks.get(BatchCallback.THEN),
        "catch_callback": batch.callbacks.get(BatchCallback.CATCH),
        "finally_callback": batch.callbacks.get(BatchCallback.FINALLY),
        "created_at": batch.created_at,
    }


def row_to_envelope(row: QueuedJob, connection: str) -> JobEnvelope:
    """Rebuild an envelope from a `jobs` row."""
    return JobEnvelope(
        id=row.id,
        connection=connection,
        queue=row.queue,
        payload=Command.model_validate(row.payload),
        attempts=row.attempts,
        exceptions=row.exceptions,
        max_tries=row.max_tries,
        max_exceptions=row.max_exceptions,
        timeout=row.timeout,
        backoff=row.backoff,
        created_at=row.created_at,
        available_at=row.available_at,
        reserved_until=row.reserved_until,
        batch_id=row.batch_id,
        chain_remainder=[JobEnvelope.model_validate(link) for link in row.chain_remainder or []],
        chain_catch=row.chain_catch,
        middleware=[MiddlewareSpec.model_validate(spec) for spec in row.middleware or []],
    )


def _held(envelope_id: str, reserved_until: float | None):
    """Match an envelope, and its reservation when a token is given."""
    if reserved_until is None:
        return QueuedJob.id == envelope_id
    return and_(QueuedJob.id == envelope_id, QueuedJob.reserved_until == reserved_until)


def row_to_failed(row: FailedJobRecord) -> FailedJob:
    return FailedJob(
        id=row.id,
        original_id=row.original_id,
        connection=row.connection,
        queue=row.queue,
        payload=Command.model_validate(row.payload),
        exception=row.exception,
        failed_at=_aware(row.failed_at),
        envelope=JobEnvelope.model_validate(row.envelope),
    )


class DatabaseBackend(Backend):
    """
    Durable backend on any SQLAlchemy async dialect.

    Each operation runs in its own short transaction.
    """

    name = BackendName.DATABASE

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
        connection_name: str | None = None,
    ):
        """
        Initialize the backend with a session factory.

        Args:
            session_factory: Factory producing sessions bound to the queue database.
            clock: Time source in unix seconds.
            connection_name: Name this backend is registered under.
        """
        super().__init__(clock=clock, connection_name=connection_name)
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except TRANSPORT_ERRORS as e:
            logger.warning(
                "Database backend unavailable",
                extra={"connection": self.connection_name, "error": str(e)},
            )
            raise BackendUnavailable(str(e)) from e

    # ------------------------------------------------------------------
    # Envelopes
    # ------------------------------------------------------------------

    async def enqueue(self, envelope: JobEnvelope) -> JobEnvelope:
        if envelope.connection is None:
            envelope = envelope.model_copy(update={"connection": self.connection_name})

        async with self._session() as session:
            await session.execute(insert(QueuedJob).values(**envelope_to_values(envelope)))

        logger.debug(
            "Envelope stored",
            extra={"job_id": envelope.id, "queue": envelope.queue, "available_at": envelope.available_at},
        )
        return envelope

    async def reserve(self, queue: str, visibility_timeout: float) -> JobEnvelope | None:
        """
        Reserve the oldest visible envelope using FOR UPDATE SKIP LOCKED.

        This is the critical path for job distribution. The conditional
        UPDATE is the actual claim; the row lock only reduces contention.
        """
        now = self.now()
        reserved_until = now + visibility_timeout

        async with self._session() as session:
            stmt = (
                select(QueuedJob)
                .where(
                    and_(
                        QueuedJob.queue == queue,
                        QueuedJob.available_at <= now,
                        or_(
                            QueuedJob.reserved_until.is_(None),
                            QueuedJob.reserved_until <= now,
                        ),
                    )
                )
                .order_by(QueuedJob.available_at.asc(), QueuedJob.seq.asc())
                .limit(RESERVE_CANDIDATES)
                .with_for_update(skip_locked=True)
            )
            rows: Sequence[QueuedJob] = (await session.execute(stmt)).scalars().all()

            for row in rows:
                previous = row.reserved_until
                unchanged = (
                    QueuedJob.reserved_until.is_(None)
                    if previous is None
                    else QueuedJob.reserved_until == previous
                )
                claim = (
                    update(QueuedJob)
                    .where(and_(QueuedJob.seq == row.seq, unchanged))
                    .values(reserved_until=reserved_until)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(claim)
                if result.rowcount == 1:
                    envelope = row_to_envelope(row, self.connection_name)
                    envelope.reserved_until = reserved_until
                    return envelope

        return None

    async def ack(self, envelope_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(QueuedJob)
                .where(QueuedJob.id == envelope_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def release(
        self,
        envelope_id: str,
        delay: float,
        count_exception: bool = False,
        reserved_until: float | None = None,
    ) -> bool:
        now = self.now()
        async with self._session() as session:
            result = await session.execute(
                update(QueuedJob)
                .where(_held(envelope_id, reserved_until))
                .values(
                    reserved_until=None,
                    attempts=QueuedJob.attempts + 1,
                    exceptions=QueuedJob.exceptions + (1 if count_exception else 0),
                    available_at=now + delay,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def fail(
        self,
        envelope_id: str,
        reason: str,
        reserved_until: float | None = None,
    ) -> FailedJob | None:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(QueuedJob).where(_held(envelope_id, reserved_until)).with_for_update()
                )
            ).scalar_one_or_none()
            if row is None:
                return None

            envelope = row_to_envelope(row, self.connection_name)
            envelope.reserved_until = None

            removed = await session.execute(
                delete(QueuedJob)
                .where(and_(QueuedJob.seq == row.seq, _held(envelope_id, reserved_until)))
                .execution_options(synchronize_session=False)
            )
            if removed.rowcount == 0:
                return None

            failed = FailedJob(
                original_id=envelope.id,
                connection=self.connection_name,
                queue=envelope.queue,
                payload=envelope.payload,
                exception=reason,
                failed_at=self.now_datetime(),
                envelope=envelope,
            )
            await session.execute(
                insert(FailedJobRecord).values(
                    id=failed.id,
                    original_id=failed.original_id,
                    connection=failed.connection,
                    queue=failed.queue,
                    payload=failed.payload.model_dump(mode="json"),
                    envelope=envelope.model_dump(mode="json"),
                    exception=failed.exception,
                    failed_at=failed.failed_at,
                )
            )
            return failed

    async def extend(
        self,
        envelope_id: str,
        visibility_timeout: float,
        reserved_until: float | None = None,
    ) -> float | None:
        extended_until = self.now() + visibility_timeout
        async with self._session() as session:
            result = await session.execute(
                update(QueuedJob)
                .where(
                    and_(
                        _held(envelope_id, reserved_until),
                        QueuedJob.reserved_until.is_not(None),
                    )
                )
                .values(reserved_until=extended_until)
                .execution_options(synchronize_session=False)
            )
            return extended_until if result.rowcount > 0 else None

    async def delete(self, envelope_id: str) -> bool:
        now = self.now()
        async with self._session() as session:
            result = await session.execute(
                delete(QueuedJob)
                .where(
                    and_(
                        QueuedJob.id == envelope_id,
                        or_(
                            QueuedJob.reserved_until.is_(None),
                            QueuedJob.reserved_until <= now,
                        ),
                    )
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def count_pending(self, queue: str) -> int:
        now = self.now()
        async with self._session() as session:
            stmt = (
                select(func.count())
                .select_from(QueuedJob)
                .where(
                    and_(
                        QueuedJob.queue == queue,
                        or_(
                            QueuedJob.reserved_until.is_(None),
                            QueuedJob.reserved_until <= now,
                        ),
                    )
                )
            )
            return (await session.execute(stmt)).scalar() or 0

    async def get(self, envelope_id: str) -> JobEnvelope | None:
        async with self._session() as session:
            row = (
                await session.execute(select(QueuedJob).where(QueuedJob.id == envelope_id))
            ).scalar_one_or_none()
            return row_to_envelope(row, self.connection_name) if row else None

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def create_batch(self, batch: Batch) -> Batch:
        async with self._session() as session:
            await session.execute(insert(BatchRecord).values(**batch_to_values(batch)))
        return batch

    async def enqueue_batch(self, batch: Batch, envelopes: Sequence[JobEnvelope]) -> list[JobEnvelope]:
        """Insert the batch row and its members in one transaction."""
        stored = [
            envelope
            if envelope.connection is not None
            else envelope.model_copy(update={"connection": self.connection_name})
            for envelope in envelopes
        ]
        async with self._session() as session:
            await session.execute(insert(BatchRecord).values(**batch_to_values(batch)))
            for envelope in stored:
                await session.execute(insert(QueuedJob).values(**envelope_to_values(envelope)))

        logger.debug("Batch stored", extra={"batch_id": batch.id, "total_jobs": len(stored)})
        return stored

    async def get_batch(self, batch_id: str) -> Batch | None:
        async with self._session() as session:
            record = (
                await session.execute(select(BatchRecord).where(BatchRecord.id == batch_id))
            ).scalar_one_or_none()
            if record is None:
                return None
            failed_ids = (
                await session.execute(
                    select(BatchFailure.job_id).where(BatchFailure.batch_id == batch_id)
                )
            ).scalars().all()

        callbacks = {
            slot: name
            for slot, name in (
                (BatchCallback.THEN, record.then_callback),
                (BatchCallback.CATCH, record.catch_callback),
                (BatchCallback.FINALLY, record.finally_callback),
            )
            if name
        }
        fired = [
            slot
            for slot, flag in (
                (BatchCallback.THEN, record.then_fired),
                (BatchCallback.CATCH, record.catch_fired),
                (BatchCallback.FINALLY, record.finally_fired),
            )
            if flag
        ]
        return Batch(
            id=record.id,
            name=record.name,
            queue=record.queue,
            connection=record.connection,
            total_jobs=record.total_jobs,
            pending_jobs=record.pending_jobs,
            failed_jobs=record.failed_jobs,
            failed_job_ids=list(failed_ids),
            allow_failures=record.allow_failures,
            callbacks=callbacks,
            fired=fired,
            created_at=_aware(record.created_at),
            cancelled_at=_aware(record.cancelled_at),
            finished_at=_aware(record.finished_at),
        )

    async def _decrement_pending(
        self,
        session: AsyncSession,
        batch_id: str,
        failed: bool,
    ) -> BatchCounts | None:
        values = {"pending_jobs": BatchRecord.pending_jobs - 1}
        if failed:
            values["failed_jobs"] = BatchRecord.failed_jobs + 1

        result = await session.execute(
            update(BatchRecord)
            .where(and_(BatchRecord.id == batch_id, BatchRecord.pending_jobs > 0))
            .values(**values)
            .returning(
                BatchRecord.total_jobs,
                BatchRecord.pending_jobs,
                BatchRecord.failed_jobs,
                BatchRecord.allow_failures,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            return None

        counts = BatchCounts(
            total_jobs=row.total_jobs,
            pending_jobs=row.pending_jobs,
            failed_jobs=row.failed_jobs,
            allow_failures=row.allow_failures,
        )
        if counts.finished:
            await session.execute(
                update(BatchRecord)
                .where(and_(BatchRecord.id == batch_id, BatchRecord.finished_at.is_(None)))
                .values(finished_at=self.now_datetime())
                .execution_options(synchronize_session=False)
            )
        return counts

    async def batch_job_finished(self, batch_id: str) -> BatchCounts | None:
        async with self._session() as session:
            return await self._decrement_pending(session, batch_id, failed=False)

    async def batch_job_failed(self, batch_id: str, job_id: str) -> BatchCounts | None:
        async with self._session() as session:
            counts = await self._decrement_pending(session, batch_id, failed=True)
            if counts is not None:
                await session.execute(
                    insert(BatchFailure).values(batch_id=batch_id, job_id=job_id)
                )
            return counts

    async def cancel_batch(self, batch_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(BatchRecord)
                .where(and_(BatchRecord.id == batch_id, BatchRecord.cancelled_at.is_(None)))
                .values(cancelled_at=self.now_datetime())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def claim_batch_callback(self, batch_id: str, slot: BatchCallback) -> bool:
        column = _FIRED_COLUMNS[slot]
        async with self._session() as session:
            result = await session.execute(
                update(BatchRecord)
                .where(and_(BatchRecord.id == batch_id, column.is_(False)))
                .values({column.key: True})
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Failed job store
    # ------------------------------------------------------------------

    async def list_failed(self, queue: str | None = None, limit: int = 100) -> list[FailedJob]:
        stmt = select(FailedJobRecord).order_by(FailedJobRecord.failed_at.desc()).limit(limit)
        if queue is not None:
            stmt = stmt.where(FailedJobRecord.queue == queue)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [row_to_failed(row) for row in rows]

    async def get_failed(self, failed_id: str) -> FailedJob | None:
        stmt = (
            select(FailedJobRecord)
            .where(
                or_(
                    FailedJobRecord.id == failed_id,
                    FailedJobRecord.original_id == failed_id,
                )
            )
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return row_to_failed(row) if row else None

    async def forget_failed(self, failed_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(FailedJobRecord)
                .where(
                    or_(
                        FailedJobRecord.id == failed_id,
                        FailedJobRecord.original_id == failed_id,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def flush_failed(self) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(FailedJobRecord).execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def prune_failed(self, before: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(FailedJobRecord)
                .where(FailedJobRecord.failed_at < before)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount

        if count > 0:
            logger.info(f"Pruned {count} failed jobs", extra={"before": before.isoformat()})
        return count
