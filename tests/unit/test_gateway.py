"""Tests for the composed gateway: tier check, retries and the shared queue."""

from unittest.mock import AsyncMock

import pytest

from helpers import HttpStatusError
from repo_resilience.config import QueueSettings, ResilienceSettings, RetrySettings
from repo_resilience.exceptions import ErrorCode, NormalizedError
from repo_resilience.resilience.gateway import ResilientGateway
from repo_resilience.resilience.rate_limited_queue import RateLimitedQueue
from repo_resilience.resilience.retry import RetryPolicy
from repo_resilience.resilience.tier_limiter import TierLimits, TierRateLimiter


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, initial_delay=0.0, jitter_enabled=False)


@pytest.fixture
def queue(fake_clock):
    return RateLimitedQueue("gemini", min_interval=30.0, daily_cap=45, clock=fake_clock, sleep=fake_clock.sleep)


class TestResilientGateway:
    @pytest.mark.asyncio
    async def test_success(self, queue, policy):
        gateway = ResilientGateway("gemini", queue, policy)

        assert await gateway.call(AsyncMock(return_value="analysis")) == "analysis"
        assert queue.status().requests_today == 1

    @pytest.mark.asyncio
    async def test_each_retry_goes_through_the_queue(self, queue, policy, fake_clock):
        gateway = ResilientGateway("gemini", queue, policy)
        operation = AsyncMock(side_effect=[HttpStatusError(503), "analysis"])

        result = await gateway.call(operation)

        assert result == "analysis"
        assert operation.call_count == 2
        # The retried call was spaced by the queue like any other request
        assert fake_clock.sleeps == [30.0]
        assert queue.status().requests_today == 1

    @pytest.mark.asyncio
    async def test_daily_cap_ends_attempts(self, fake_clock, policy):
        queue = RateLimitedQueue("gemini", daily_cap=0, clock=fake_clock, sleep=fake_clock.sleep)
        gateway = ResilientGateway("gemini", queue, policy)
        operation = AsyncMock()

        with pytest.raises(NormalizedError) as exc_info:
            await gateway.call(operation)

        assert exc_info.value.code is ErrorCode.RATE_LIMIT
        operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, queue, policy):
        gateway = ResilientGateway("gemini", queue, policy)
        operation = AsyncMock(side_effect=HttpStatusError(400, "prompt too long"))

        with pytest.raises(NormalizedError) as exc_info:
            await gateway.call(operation)

        assert exc_info.value.code is ErrorCode.CLIENT_INPUT_ERROR
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_tier_limit_is_checked_before_queueing(self, queue, policy, fake_clock):
        limiter = TierRateLimiter({"free": TierLimits(requests_per_minute=1, requests_per_hour=10)}, clock=fake_clock)
        gateway = ResilientGateway("gemini", queue, policy, tier_limiter=limiter)
        operation = AsyncMock(return_value="ok")

        await gateway.call(operation, caller_id="user-1")
        with pytest.raises(NormalizedError) as exc_info:
            await gateway.call(operation, caller_id="user-1")

        assert exc_info.value.details["window"] == "minute"
        assert operation.call_count == 1
        assert queue.status().requests_today == 1

    @pytest.mark.asyncio
    async def test_bypass(self, fake_clock, policy):
        queue = RateLimitedQueue("gemini", daily_cap=0, clock=fake_clock, sleep=fake_clock.sleep)
        gateway = ResilientGateway("gemini", queue, policy, use_queue=False)

        assert await gateway.call(AsyncMock(return_value="direct")) == "direct"

    def test_from_settings(self):
        settings = ResilienceSettings(
            queue=QueueSettings(min_request_interval=5.0, daily_request_cap=10, use_queue=False),
            retry=RetrySettings(max_attempts=5, backoff_strategy="linear"),
        )

        gateway = ResilientGateway.from_settings("gemini", settings)

        assert gateway.queue.min_interval == 5.0
        assert gateway.queue.daily_cap == 10
        assert gateway.use_queue is False
        assert gateway.policy.max_attempts == 5
        assert gateway.policy.backoff_strategy.value == "linear"
