"""Tests for per-caller tier limits."""

import pytest

from repo_resilience.exceptions import ErrorCode, NormalizedError
from repo_resilience.resilience.tier_limiter import DEFAULT_TIER_LIMITS, TierLimits, TierRateLimiter


class TestTierRateLimiter:
    @pytest.fixture
    def limiter(self, fake_clock):
        return TierRateLimiter(clock=fake_clock)

    def test_requests_within_limit(self, limiter):
        for expected_remaining in range(4, -1, -1):
            usage = limiter.check("user-1")
            assert usage.tier == "free"
            assert usage.minute_remaining == expected_remaining

    def test_minute_limit(self, limiter):
        for _ in range(DEFAULT_TIER_LIMITS["free"].requests_per_minute):
            limiter.check("user-1")

        with pytest.raises(NormalizedError) as exc_info:
            limiter.check("user-1")

        error = exc_info.value
        assert error.code is ErrorCode.RATE_LIMIT
        assert error.details["window"] == "minute"
        assert error.details["retry_after"] == 60
        assert error.details["tier"] == "free"

    def test_minute_window_resets(self, limiter, fake_clock):
        for _ in range(5):
            limiter.check("user-1")

        fake_clock.advance(60.0)

        assert limiter.check("user-1").minute_remaining == 4

    def test_hour_limit(self, fake_clock):
        limiter = TierRateLimiter({"free": TierLimits(requests_per_minute=100, requests_per_hour=3)}, clock=fake_clock)
        for _ in range(3):
            limiter.check("user-1")

        fake_clock.advance(600.0)
        with pytest.raises(NormalizedError) as exc_info:
            limiter.check("user-1")

        assert exc_info.value.details["window"] == "hour"
        assert exc_info.value.details["retry_after"] == 3000

    def test_callers_are_independent(self, limiter):
        for _ in range(5):
            limiter.check("user-1")

        assert limiter.check("user-2").minute_remaining == 4

    def test_tiers(self, limiter):
        assert limiter.check("user-1", "pro").minute_remaining == 29
        assert limiter.check("user-2", "enterprise").hour_remaining == 1999
        assert limiter.check("user-3", "platinum").tier == "free"

    def test_reset(self, limiter):
        for _ in range(5):
            limiter.check("user-1")

        limiter.reset("user-1")

        assert limiter.check("user-1").minute_remaining == 4

    def test_cleanup_drops_expired_callers(self, limiter, fake_clock):
        limiter.check("user-1")
        limiter.check("user-2")

        assert limiter.cleanup() == 0
        fake_clock.advance(3600.0)
        assert limiter.cleanup() == 2

    def test_check_sweeps_idle_callers_periodically(self, limiter, fake_clock):
        for caller_id in ("user-1", "user-2", "user-3"):
            limiter.check(caller_id)
        assert limiter.tracked_callers == 3

        fake_clock.advance(30.0)
        limiter.check("user-4")
        assert limiter.tracked_callers == 4

        fake_clock.advance(3590.0)
        limiter.check("user-5")

        # user-4 is still inside its hour window
        assert limiter.tracked_callers == 2

    def test_unknown_default_tier(self):
        with pytest.raises(ValueError):
            TierRateLimiter(default_tier="gold")
