"""Tests for the retry executor."""

import asyncio
import random
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from helpers import HttpStatusError, TransportError
from repo_resilience.exceptions import ErrorCode, NormalizedError
from repo_resilience.resilience.backoff import BackoffStrategy
from repo_resilience.resilience.retry import (
    RetryExecutor,
    RetryPolicy,
    execute_with_retry,
    execute_with_retry_and_timeout,
)


def _policy(**overrides) -> RetryPolicy:
    values = dict(max_attempts=3, initial_delay=1.0, max_delay=10.0, jitter_enabled=False)
    values.update(overrides)
    return RetryPolicy(**values)


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert policy.backoff_strategy is BackoffStrategy.EXPONENTIAL
        assert policy.initial_delay == 1.0
        assert policy.max_delay == 10.0
        assert policy.jitter_enabled is True

    def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_invalid_per_attempt_timeout(self):
        with pytest.raises(ValueError):
            RetryPolicy(per_attempt_timeout=0)

    def test_strategy_is_coerced(self):
        assert RetryPolicy(backoff_strategy="linear").backoff_strategy is BackoffStrategy.LINEAR

    def test_delay_without_jitter_is_deterministic(self):
        policy = _policy(backoff_strategy=BackoffStrategy.LINEAR, initial_delay=0.5)
        assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 1.5]


class TestRetryExecutor:
    """Test retry logic functionality."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def make_executor(self, sleeps):
        async def record_sleep(seconds):
            sleeps.append(seconds)

        def factory(**overrides):
            return RetryExecutor("test_service", _policy(**overrides), sleep=record_sleep)

        return factory

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, make_executor, sleeps):
        operation = AsyncMock(return_value="success")

        result = await make_executor().execute(operation)

        assert result == "success"
        assert operation.call_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, make_executor, sleeps):
        operation = AsyncMock(side_effect=[HttpStatusError(503), HttpStatusError(503), "ok"])

        result = await make_executor().execute(operation)

        assert result == "ok"
        assert operation.call_count == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_runs_once(self, make_executor, sleeps):
        original = HttpStatusError(400, "invalid prompt")
        operation = AsyncMock(side_effect=original)

        with pytest.raises(NormalizedError) as exc_info:
            await make_executor().execute(operation)

        assert exc_info.value.code is ErrorCode.CLIENT_INPUT_ERROR
        assert exc_info.value.__cause__ is original
        assert operation.call_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_rate_limit_is_not_retried(self, make_executor):
        operation = AsyncMock(side_effect=HttpStatusError(429))

        with pytest.raises(NormalizedError) as exc_info:
            await make_executor().execute(operation)

        assert exc_info.value.code is ErrorCode.RATE_LIMIT
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self, make_executor, sleeps):
        operation = AsyncMock(side_effect=[
            TransportError("ECONNRESET"),
            HttpStatusError(502),
            httpx.ConnectError("connection refused"),
        ])

        with pytest.raises(NormalizedError) as exc_info:
            await make_executor().execute(operation)

        assert exc_info.value.code is ErrorCode.NETWORK_TRANSIENT
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert operation.call_count == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_normalized_error_is_reraised_as_is(self, make_executor):
        error = NormalizedError(ErrorCode.CLIENT_INPUT_ERROR, "bad input")
        operation = AsyncMock(side_effect=error)

        with pytest.raises(NormalizedError) as exc_info:
            await make_executor().execute(operation)

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_single_attempt_policy(self, make_executor):
        operation = AsyncMock(side_effect=HttpStatusError(503))

        with pytest.raises(NormalizedError):
            await make_executor(max_attempts=1).execute(operation)

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_receives_attempt_and_error(self, make_executor):
        observer = Mock()
        operation = AsyncMock(side_effect=[HttpStatusError(500), HttpStatusError(503), "done"])

        await make_executor(on_retry=observer).execute(operation)

        assert observer.call_count == 2
        first_attempt, first_error = observer.call_args_list[0].args
        second_attempt, second_error = observer.call_args_list[1].args
        assert (first_attempt, second_attempt) == (1, 2)
        assert first_error.status_code == 500
        assert second_error.status_code == 503

    @pytest.mark.asyncio
    async def test_async_on_retry(self, make_executor):
        observer = AsyncMock()
        operation = AsyncMock(side_effect=[TransportError("ETIMEDOUT"), "done"])

        await make_executor(on_retry=observer).execute(operation)

        observer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_operation(self, make_executor):
        assert await make_executor().execute(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_jittered_delays_respect_cap(self, sleeps):
        async def record_sleep(seconds):
            sleeps.append(seconds)

        policy = RetryPolicy(max_attempts=6, initial_delay=1.0, max_delay=4.0, jitter_ratio=0.3)
        executor = RetryExecutor("jitter", policy, sleep=record_sleep, rng=random.Random(1))
        operation = AsyncMock(side_effect=HttpStatusError(503))

        with pytest.raises(NormalizedError):
            await executor.execute(operation)

        assert len(sleeps) == 5
        assert all(0.0 <= delay <= 4.0 for delay in sleeps)


class TestRetryWithTimeout:
    @pytest.mark.asyncio
    async def test_timeout_counts_as_attempt(self):
        release = asyncio.Event()
        calls = []

        async def hanging_operation():
            calls.append(1)
            await release.wait()

        policy = _policy(max_attempts=2, initial_delay=0.0)

        with pytest.raises(NormalizedError) as exc_info:
            await execute_with_retry_and_timeout(hanging_operation, 0.01, policy, service_name="slow")

        assert exc_info.value.code is ErrorCode.TIMEOUT
        assert exc_info.value.details["timeout_seconds"] == 0.01
        assert len(calls) == 2

        release.set()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_execute_with_retry_convenience(self):
        operation = AsyncMock(side_effect=[TransportError("ECONNRESET"), "ok"])

        result = await execute_with_retry(operation, _policy(initial_delay=0.0))

        assert result == "ok"
        assert operation.call_count == 2
