"""
Type definitions for the job engine.
Contains the data carried between dispatcher, backends and workers,
plus the operator API schemas.
"""

from jobengine.types.api import (
    BatchResponse,
    DeletedResponse,
    ErrorResponse,
    FailedJobListResponse,
    FailedJobResponse,
    HealthResponse,
    QueueResponse,
    RetryResponse,
)
from jobengine.types.batch import Batch, BatchCounts
from jobengine.types.envelope import (
    BackoffPolicy,
    Command,
    JobEnvelope,
    MiddlewareSpec,
    new_id,
)
from jobengine.types.failed import FailedJob
from jobengine.types.job import JobContext
from jobengine.types.lock import Lock

__all__ = [
    # Core types
    "BackoffPolicy",
    "Command",
    "JobEnvelope",
    "MiddlewareSpec",
    "new_id",
    "JobContext",
    "Batch",
    "BatchCounts",
    "FailedJob",
    "Lock",
    # API types
    "BatchResponse",
    "DeletedResponse",
    "ErrorResponse",
    "FailedJobListResponse",
    "FailedJobResponse",
    "HealthResponse",
    "QueueResponse",
    "RetryResponse",
]
