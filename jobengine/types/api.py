"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jobengine.types.batch import Batch
from jobengine.types.failed import FailedJob


class FailedJobResponse(BaseModel):
    """A failed job as shown to operators."""

    id: str
    original_id: str
    connection: str | None
    queue: str
    job_type: str
    args: dict[str, Any]
    attempts: int
    exception: str
    failed_at: datetime

    @classmethod
    def from_failed(cls, failed: FailedJob) -> "FailedJobResponse":
        return cls(
            id=failed.id,
            original_id=failed.original_id,
            connection=failed.connection,
            queue=failed.queue,
            job_type=failed.payload.type,
            args=failed.payload.args,
            attempts=failed.envelope.attempts,
            exception=failed.exception,
            failed_at=failed.failed_at,
        )


class FailedJobListResponse(BaseModel):
    """Failed jobs, newest first."""

    failed_jobs: list[FailedJobResponse]
    total: int


class RetryResponse(BaseModel):
    """Envelopes re-enqueued from the failed store."""

    job_ids: list[str]
    message: str = "Job queued for retry"


class DeletedResponse(BaseModel):
    deleted: int


class BatchResponse(BaseModel):
    """Batch progress snapshot."""

    id: str
    name: str
    total_jobs: int
    pending_jobs: int
    processed_jobs: int
    failed_jobs: int
    failed_job_ids: list[str]
    progress: float = Field(..., ge=0.0, le=1.0)
    allow_failures: bool
    cancelled: bool
    finished: bool
    created_at: datetime
    cancelled_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_batch(cls, batch: Batch) -> "BatchResponse":
        return cls(
            id=batch.id,
            name=batch.name,
            total_jobs=batch.total_jobs,
            pending_jobs=batch.pending_jobs,
            processed_jobs=batch.processed_jobs,
            failed_jobs=batch.failed_jobs,
            failed_job_ids=batch.failed_job_ids,
            progress=batch.progress(),
            allow_failures=batch.allow_failures,
            cancelled=batch.cancelled,
            finished=batch.finished,
            created_at=batch.created_at,
            cancelled_at=batch.cancelled_at,
            finished_at=batch.finished_at,
        )


class QueueResponse(BaseModel):
    """Pending envelope count of one queue."""

    name: str
    connection: str
    pending: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    connections: dict[str, str]
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
