"""
Job: a command plus the per-job options it is dispatched with.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from jobengine.types.envelope import BackoffPolicy, Command, JobEnvelope, MiddlewareSpec


@dataclass
class Job:
    """
    A dispatchable unit of work.

    `type` names the handler in the registry; `args` must be
    JSON-serializable. Options left as None fall back to the worker.

    Example:
        Job.of("send_email", to="a@example.com").with_options(max_tries=3, backoff=[1, 5, 10])
    """

    type: str
    args: dict[str, Any] = field(default_factory=dict)
    queue: str | None = None
    connection: str | None = None
    max_tries: int | None = None
    max_exceptions: int | None = None
    timeout: float | None = None
    backoff: BackoffPolicy = None
    middleware: list[MiddlewareSpec] = field(default_factory=list)

    @classmethod
    def of(cls, command_type: str, **args: Any) -> "Job":
        return cls(type=command_type, args=args)

    def with_options(self, **options: Any) -> "Job":
        """Copy of this job with the given option fields replaced."""
        return replace(self, **options)

    def through(self, name: str, **options: Any) -> "Job":
        """Copy of this job with one more middleware appended."""
        return replace(self, middleware=[*self.middleware, MiddlewareSpec(name=name, options=options)])

    def to_envelope(
        self,
        now: float,
        queue: str,
        connection: str | None = None,
        delay: float = 0.0,
    ) -> JobEnvelope:
        """Build a fresh envelope for this job."""
        return JobEnvelope(
            connection=connection,
            queue=queue,
            payload=Command(type=self.type, args=dict(self.args)),
            max_tries=self.max_tries,
            max_exceptions=self.max_exceptions,
            timeout=self.timeout,
            backoff=self.backoff,
            created_at=now,
            available_at=now + max(0.0, delay),
            middleware=list(self.middleware),
        )
