"""
Job-related type definitions for handler execution.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from jobengine.types.envelope import JobEnvelope

if TYPE_CHECKING:
    from jobengine.locks.base import LockManager
    from jobengine.ratelimit import RateLimiter


@dataclass
class JobContext:
    """
    Context passed to job handlers and middleware during execution.

    Handlers may call `release()` to put the job back on the queue or
    `fail()` to fail it permanently without raising.
    """

    envelope: JobEnvelope
    worker_id: str | None = None
    default_tries: int | None = None
    locks: "LockManager | None" = None
    rate_limiter: "RateLimiter | None" = None
    released_delay: float | None = None
    failure_reason: str | None = None
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def job_id(self) -> str:
        return self.envelope.id

    @property
    def command_type(self) -> str:
        return self.envelope.payload.type

    @property
    def args(self) -> dict[str, Any]:
        return self.envelope.payload.args

    @property
    def attempt(self) -> int:
        """1-based number of the delivery being executed."""
        return self.envelope.attempts + 1

    @property
    def max_tries(self) -> int | None:
        """Envelope limit, falling back to the worker default."""
        return self.envelope.max_tries or self.default_tries

    @property
    def batch_id(self) -> str | None:
        return self.envelope.batch_id

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.max_tries is not None and self.attempt >= self.max_tries

    @property
    def remaining_attempts(self) -> int | None:
        """Get remaining retry attempts, None when unbounded."""
        if self.max_tries is None:
            return None
        return max(0, self.max_tries - self.attempt)

    @property
    def is_released(self) -> bool:
        return self.released_delay is not None

    @property
    def is_failed(self) -> bool:
        return self.failure_reason is not None

    def release(self, delay: float = 0.0) -> None:
        """Release the job back onto its queue after `delay` seconds."""
        self.released_delay = max(0.0, float(delay))

    def fail(self, reason: str = "Job marked as failed") -> None:
        """Fail the job permanently."""
        self.failure_reason = reason
