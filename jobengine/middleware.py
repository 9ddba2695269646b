"""
Job middleware: policies wrapped around handler execution.

A middleware either calls `call_next(context)` to continue the pipeline or
returns without calling it, usually after `context.release(...)`.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from jobengine.exceptions import LockUnavailable
from jobengine.locks.guards import without_overlapping
from jobengine.types.job import JobContext

logger = logging.getLogger(__name__)

Next = Callable[[JobContext], Awaitable[Any]]


class JobMiddleware(ABC):
    """Base class for job middleware."""

    @abstractmethod
    async def handle(self, context: JobContext, call_next: Next) -> Any:
        ...


class RateLimited(JobMiddleware):
    """
    Release the job when its limiter key is over the allowed rate.

    Options:
        key: Limiter key shared by the jobs being limited.
        per_minute: Sustained executions per minute.
        burst: Optional bucket size.
    """

    def __init__(self, key: str, per_minute: int, burst: int | None = None):
        self.key = key
        self.per_minute = per_minute
        self.burst = burst

    async def handle(self, context: JobContext, call_next: Next) -> Any:
        if context.rate_limiter is None:
            return await call_next(context)

        allowed, wait_time = context.rate_limiter.check(self.key, self.per_minute, self.burst)
        if allowed:
            return await call_next(context)

        logger.info(
            "Job rate limited, releasing",
            extra={"job_id": context.job_id, "limiter": self.key, "delay": wait_time},
        )
        context.release(wait_time)
        return None


class WithoutOverlapping(JobMiddleware):
    """
    Hold a lock on the job signature while it runs.

    When the lock is held, the job is released after `release_after`
    seconds, or dropped as done when `release_after` is None.

    Options:
        key: Lock key; defaults to the envelope signature.
        expires_after: Lock TTL so a crashed worker cannot block forever.
        release_after: Delay before retrying a job that found the lock held.
    """

    def __init__(
        self,
        key: str | None = None,
        expires_after: float = 3600.0,
        release_after: float | None = 0.0,
    ):
        self.key = key
        self.expires_after = expires_after
        self.release_after = release_after

    async def handle(self, context: JobContext, call_next: Next) -> Any:
        if context.locks is None:
            raise RuntimeError("WithoutOverlapping needs a worker with a lock manager")

        signature = self.key or context.envelope.signature()
        try:
            async with without_overlapping(context.locks, signature, self.expires_after):
                return await call_next(context)
        except LockUnavailable:
            if self.release_after is None:
                logger.info(
                    "Overlapping job dropped",
                    extra={"job_id": context.job_id, "signature": signature},
                )
                return None
            context.release(self.release_after)
            return None
