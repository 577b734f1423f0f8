"""Tests for the fixed-window rate limiter."""

import pytest

from security.rate_limit import OperationClass, RateLimitExceeded, RateLimiter, RateLimits


class TestRateLimiter:

    def test_exactly_n_then_rejected(self, clock):
        limiter = RateLimiter(5, 60, clock=clock)
        assert all(limiter.is_allowed("phone") for _ in range(5))
        assert limiter.is_allowed("phone") is False

    def test_window_reset(self, clock):
        limiter = RateLimiter(5, 60, clock=clock)
        for _ in range(6):
            limiter.is_allowed("phone")

        clock.advance(30)
        assert limiter.is_allowed("phone") is False
        clock.advance(30)
        assert limiter.is_allowed("phone") is True
        assert limiter.remaining("phone") == 4

    def test_identifiers_are_independent(self, clock):
        limiter = RateLimiter(1, 60, clock=clock)
        assert limiter.is_allowed("a")
        assert limiter.is_allowed("b")
        assert not limiter.is_allowed("a")

    def test_retry_after(self, clock):
        limiter = RateLimiter(1, 60, clock=clock)
        limiter.is_allowed("phone")
        clock.advance(15)
        assert limiter.retry_after("phone") == pytest.approx(45)
        assert limiter.retry_after("unknown") == 0.0

    def test_cleanup_drops_expired_windows(self, clock):
        limiter = RateLimiter(3, 60, clock=clock)
        limiter.is_allowed("old")
        clock.advance(30)
        limiter.is_allowed("new")
        clock.advance(31)

        assert limiter.cleanup() == 1
        assert len(limiter) == 1


class TestRateLimits:

    def test_classes_have_separate_budgets(self, rate_limits):
        for _ in range(10):
            rate_limits.consume(OperationClass.COMMAND, "phone")
        with pytest.raises(RateLimitExceeded):
            rate_limits.consume(OperationClass.COMMAND, "phone")

        # File budget is untouched
        rate_limits.consume(OperationClass.FILE, "phone")

    def test_exceeded_carries_retry_hint(self, rate_limits, clock):
        for _ in range(10):
            rate_limits.consume(OperationClass.COMMAND, "phone")
        clock.advance(20)

        with pytest.raises(RateLimitExceeded) as exc_info:
            rate_limits.consume(OperationClass.COMMAND, "phone")
        error = exc_info.value
        assert error.operation == "command"
        assert error.retry_after == pytest.approx(40)
        assert "Try again in" in str(error)

    def test_sweep(self, rate_limits, clock):
        rate_limits.consume(OperationClass.FILE, "a")
        rate_limits.consume(OperationClass.MESSAGE, "b")
        clock.advance(61)
        assert rate_limits.sweep() == 2

    def test_default_budgets(self):
        limits = RateLimits()
        assert limits.limiter(OperationClass.FILE).max_requests == 30
        assert limits.limiter(OperationClass.COMMAND).max_requests == 10
        assert limits.limiter(OperationClass.MESSAGE).max_requests == 60

    @pytest.mark.asyncio
    async def test_start_stop(self, rate_limits):
        rate_limits.start()
        await rate_limits.stop()
