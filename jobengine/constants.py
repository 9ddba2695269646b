"""
Application constants.
Centralized location for all constant values used across the engine.
"""

from enum import StrEnum


class EnvelopeState(StrEnum):
    """
    Worker-side lifecycle of one reserved envelope.

    State transitions:
    - IDLE -> RESERVED (backend reservation succeeded)
    - RESERVED -> EXECUTING (middleware chain entered)
    - EXECUTING -> ACKED (handler returned)
    - EXECUTING -> RELEASED (handler raised, retries left, or released on purpose)
    - EXECUTING -> FAILED (attempts or exceptions exhausted)
    - RESERVED -> SKIPPED (batch cancelled before execution)
    """

    IDLE = "idle"
    RESERVED = "reserved"
    EXECUTING = "executing"
    ACKED = "acked"
    RELEASED = "released"
    FAILED = "failed"
    SKIPPED = "skipped"


class BackendName(StrEnum):
    """Concrete backend implementations selectable by configuration."""

    DATABASE = "database"
    MEMORY = "memory"


class BatchCallback(StrEnum):
    """Batch callback slots, each fired at most once."""

    THEN = "then"
    CATCH = "catch"
    FINALLY = "finally"


# Default values
DEFAULT_QUEUE = "default"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 90.0

# Lock key prefixes
LOCK_PREFIX_ONE_SERVER = "schedule-one-server"
LOCK_PREFIX_OVERLAP = "job-overlap"

# Metrics names
METRIC_QUEUE_DEPTH = "jobengine_queue_depth"
METRIC_JOBS_DISPATCHED = "jobengine_jobs_dispatched_total"
METRIC_JOBS_PROCESSED = "jobengine_jobs_processed_total"
METRIC_JOB_DURATION = "jobengine_job_duration_seconds"
METRIC_BACKEND_ERRORS = "jobengine_backend_errors_total"
METRIC_LOCKS_ACQUIRED = "jobengine_locks_acquired_total"
METRIC_LOCKS_CONTENDED = "jobengine_locks_contended_total"
METRIC_BATCH_CALLBACKS = "jobengine_batch_callbacks_total"

# Trace span names
SPAN_DISPATCH = "dispatch_job"
SPAN_RESERVE = "reserve_job"
SPAN_EXECUTE = "execute_job"
SPAN_ACK = "ack_job"
SPAN_BATCH_CALLBACK = "batch_callback"
