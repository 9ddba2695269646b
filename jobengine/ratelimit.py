"""
Token bucket rate limiting for job middleware.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Implements a simple token bucket algorithm for per-key rate limiting.
    """

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float

    def consume(self, now: float, tokens: float = 1.0) -> bool:
        """
        Try to consume tokens from the bucket.

        Args:
            now: Current time in seconds.
            tokens: Number of tokens to consume.

        Returns:
            True if tokens were consumed, False if rate limited.
        """
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True

        return False

    @property
    def wait_time(self) -> float:
        """Time in seconds until at least 1 token is available."""
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate


class RateLimiter:
    """
    In-process rate limiter using token buckets.

    Buckets live in the worker process; two worker processes each get
    their own allowance.
    """

    def __init__(self, clock: Callable[[], float] | None = None):
        self._clock = clock or time.time
        self._buckets: dict[str, TokenBucket] = {}

    def check(
        self,
        key: str,
        per_minute: int,
        burst: int | None = None,
    ) -> tuple[bool, float]:
        """
        Check if a unit of work under `key` may run now.

        Args:
            key: Limiter key.
            per_minute: Sustained rate.
            burst: Bucket capacity. Defaults to `per_minute`.

        Returns:
            Tuple of (allowed, wait_time_seconds).
        """
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            capacity = float(burst or per_minute)
            bucket = TokenBucket(
                capacity=capacity,
                tokens=capacity,
                refill_rate=per_minute / 60.0,
                last_refill=now,
            )
            self._buckets[key] = bucket

        if bucket.consume(now):
            return True, 0.0
        return False, bucket.wait_time

    def reset(self, key: str) -> None:
        """Reset the limit for a key."""
        self._buckets.pop(key, None)
