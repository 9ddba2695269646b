"""
SQLAlchemy database models.
Defines the queue, failed job, batch and lock tables.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
SeqType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueuedJob(Base):
    """
    An envelope stored by the database backend.

    Key constraints:
    - `seq` gives insertion order, the tie-break after `available_at`
    - `reserved_until` is the visibility timeout; NULL or past means reservable
    - rows are deleted on ack and moved to `failed_jobs` on terminal failure
    """

    __tablename__ = "jobs"

    seq: Mapped[int] = mapped_column(SeqType, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exceptions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_tries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_exceptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeout: Mapped[float | None] = mapped_column(Float, nullable=True)
    backoff: Mapped[float | list | None] = mapped_column(JSONType, nullable=True)

    # Visibility (unix seconds)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    available_at: Mapped[float] = mapped_column(Float, nullable=False)
    reserved_until: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Composition
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    chain_remainder: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    chain_catch: Mapped[str | None] = mapped_column(String(255), nullable=True)
    middleware: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    __table_args__ = (
        # Index for reservation polling
        Index("ix_jobs_reserve", "queue", "available_at", "seq"),
    )

    def __repr__(self) -> str:
        return f"QueuedJob(id={self.id}, queue={self.queue}, attempts={self.attempts})"


class FailedJobRecord(Base):
    """Terminal failures. Rows only leave through operator action."""

    __tablename__ = "failed_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    original_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connection: Mapped[str | None] = mapped_column(String(255), nullable=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    envelope: Mapped[dict] = mapped_column(JSONType, nullable=False)
    exception: Mapped[str] = mapped_column(Text, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )


class BatchRecord(Base):
    """
    Batch counters and callback bookkeeping.

    Counters and `*_fired` flags are only modified with single conditional
    UPDATE statements so concurrent workers never lose an update.
    """

    __tablename__ = "job_batches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    queue: Mapped[str | None] = mapped_column(String(255), nullable=True)
    connection: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False)
    pending_jobs: Mapped[int] = mapped_column(Integer, nullable=False)
    failed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allow_failures: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    then_callback: Mapped[str | None] = mapped_column(String(255), nullable=True)
    catch_callback: Mapped[str | None] = mapped_column(String(255), nullable=True)
    finally_callback: Mapped[str | None] = mapped_column(String(255), nullable=True)
    then_fired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    catch_fired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finally_fired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BatchFailure(Base):
    """Ids of batch members that failed permanently."""

    __tablename__ = "job_batch_failures"

    batch_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("job_batches.id", ondelete="CASCADE"),
        primary_key=True,
    )
    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class CacheLock(Base):
    """Lease rows for the database lock manager. One row per live key."""

    __tablename__ = "cache_locks"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
