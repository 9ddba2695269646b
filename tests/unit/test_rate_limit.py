"""
Unit tests for rate limiting.
"""

import pytest

from jobengine.ratelimit import RateLimiter, TokenBucket


class TestTokenBucket:
    """Tests for TokenBucket."""

    def test_consume_success(self):
        """Test successful token consumption."""
        bucket = TokenBucket(capacity=10, tokens=10, refill_rate=1.0, last_refill=100.0)

        assert bucket.consume(100.0) is True
        assert bucket.tokens == 9

    def test_consume_empty_bucket(self):
        """Test consumption from empty bucket."""
        bucket = TokenBucket(capacity=10, tokens=0, refill_rate=1.0, last_refill=100.0)

        assert bucket.consume(100.0) is False

    def test_refill_over_time(self):
        """Test token refill based on time."""
        bucket = TokenBucket(capacity=10, tokens=0, refill_rate=10.0, last_refill=100.0)

        # One second refills 10 tokens
        assert bucket.consume(101.0, tokens=5) is True
        assert bucket.tokens == pytest.approx(5)

    def test_capacity_limit(self):
        """Test that tokens don't exceed capacity."""
        bucket = TokenBucket(capacity=10, tokens=10, refill_rate=100.0, last_refill=0.0)

        bucket.consume(100.0)

        assert bucket.tokens == pytest.approx(9)

    def test_clock_going_backwards_does_not_refill(self):
        bucket = TokenBucket(capacity=10, tokens=0, refill_rate=1.0, last_refill=100.0)

        assert bucket.consume(50.0) is False

    def test_wait_time(self):
        """Test wait time calculation."""
        bucket = TokenBucket(capacity=10, tokens=0.5, refill_rate=1.0, last_refill=100.0)

        # Need 0.5 more tokens at 1/second = 0.5 seconds
        assert bucket.wait_time == pytest.approx(0.5)


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_allows_burst_then_limits(self, clock):
        limiter = RateLimiter(clock=clock)

        results = [limiter.check("api", per_minute=60, burst=3)[0] for _ in range(4)]

        assert results == [True, True, True, False]

    def test_wait_time_reported(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.check("api", per_minute=60, burst=1)

        allowed, wait_time = limiter.check("api", per_minute=60, burst=1)

        assert allowed is False
        assert wait_time == pytest.approx(1.0)

    def test_refills_with_clock(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.check("api", per_minute=60, burst=1)

        clock.advance(1)

        assert limiter.check("api", per_minute=60, burst=1)[0] is True

    def test_keys_are_independent(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.check("a", per_minute=1)

        assert limiter.check("a", per_minute=1)[0] is False
        assert limiter.check("b", per_minute=1)[0] is True

    def test_reset(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.check("a", per_minute=1)

        limiter.reset("a")

        assert limiter.check("a", per_minute=1)[0] is True
