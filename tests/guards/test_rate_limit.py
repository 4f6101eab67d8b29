"""Tests for token-bucket admission control."""

import pytest

from reward_distributor.guards.rate_limit import RateLimiter, TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


class TestTokenBucket:
    """Tests for TokenBucket."""

    def test_starts_full(self) -> None:
        bucket = TokenBucket.create(3, now=0.0)
        assert [bucket.try_take(0.0) for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self) -> None:
        bucket = TokenBucket.create(60, now=0.0)
        for _ in range(60):
            bucket.try_take(0.0)
        assert not bucket.try_take(0.0)
        assert bucket.try_take(1.0)

    def test_refill_is_capped(self) -> None:
        bucket = TokenBucket.create(2, now=0.0)
        bucket.try_take(0.0)
        bucket._refill(3_600.0)
        assert bucket.tokens == 2.0


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_per_key_budget(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(2, clock=clock)

        assert limiter.allow("203.0.113.7")
        assert limiter.allow("203.0.113.7")
        assert not limiter.allow("203.0.113.7")
        # Other keys are independent
        assert limiter.allow("198.51.100.1")

    def test_recovers_after_a_minute(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(1, clock=clock)
        assert limiter.allow("k")
        assert not limiter.allow("k")

        clock.now += 60.0
        assert limiter.allow("k")

    def test_evicts_least_recently_used(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(1, max_keys=2, clock=clock)
        limiter.allow("a")
        limiter.allow("b")
        limiter.allow("a")  # refreshes "a"
        limiter.allow("c")  # evicts "b"

        assert len(limiter) == 2
        # "a" kept its exhausted bucket, "b" starts fresh
        assert not limiter.allow("a")
        assert limiter.allow("b")

    def test_rejects_non_positive_rate(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter(0)
