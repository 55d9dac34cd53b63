"""Retry logic with linear or exponential backoff and jitter."""

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

from repo_resilience.exceptions import NormalizedError
from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.backoff import BackoffStrategy, calculate_delay
from repo_resilience.resilience.classifier import classify
from repo_resilience.resilience.metrics import OPERATIONS_TOTAL, RETRY_ATTEMPTS_TOTAL
from repo_resilience.resilience.timeout import Operation, call_operation, execute_with_timeout

logger = get_logger(__name__)


RetryObserver = Callable[[int, NormalizedError], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior. Delays are in seconds."""
    max_attempts: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = 1.0
    max_delay: float = 10.0
    jitter_enabled: bool = True
    jitter_ratio: float = 0.3
    on_retry: Optional[RetryObserver] = None
    per_attempt_timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.per_attempt_timeout is not None and self.per_attempt_timeout <= 0:
            raise ValueError("per_attempt_timeout must be positive")
        object.__setattr__(self, "backoff_strategy", BackoffStrategy(self.backoff_strategy))

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        return calculate_delay(
            attempt,
            self.backoff_strategy,
            self.initial_delay,
            self.max_delay,
            jitter_ratio=self.jitter_ratio if self.jitter_enabled else 0.0,
            rng=rng,
        )


class RetryExecutor:
    """
    Runs an operation up to ``policy.max_attempts`` times.

    Every failure is classified once; only errors whose ``retryable`` flag is
    set are retried. Backoff waits suspend only the calling task.
    """

    def __init__(
        self,
        service_name: str = "default",
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.service_name = service_name
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng

    async def execute(self, operation: Operation) -> Any:
        """
        Execute an operation with retry logic.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The result of the first successful attempt

        Raises:
            NormalizedError: The classified error of the last attempt
        """
        policy = self.policy

        for attempt in range(1, policy.max_attempts + 1):
            try:
                logger.debug(
                    f"Attempting call to service '{self.service_name}' "
                    f"(attempt {attempt}/{policy.max_attempts})"
                )
                if policy.per_attempt_timeout is not None:
                    result = await execute_with_timeout(
                        operation, policy.per_attempt_timeout, service_name=self.service_name
                    )
                else:
                    result = await call_operation(operation)
            except Exception as exc:
                error = classify(exc)

                if not error.retryable or attempt == policy.max_attempts:
                    OPERATIONS_TOTAL.labels(service=self.service_name, outcome="failure").inc()
                    logger.log(
                        logging.WARNING if not error.retryable else logging.ERROR,
                        f"Service '{self.service_name}' call failed on attempt "
                        f"{attempt}/{policy.max_attempts}: {error}",
                        extra={
                            "service_name": self.service_name,
                            "attempt": attempt,
                            "error_code": error.code.value,
                            "retryable": error.retryable,
                        },
                    )
                    if error is exc:
                        raise
                    raise error from exc

                await self._notify(attempt, error)
                delay = policy.delay_for(attempt, self._rng)
                RETRY_ATTEMPTS_TOTAL.labels(service=self.service_name, code=error.code.value).inc()
                logger.warning(
                    f"Service '{self.service_name}' call failed on attempt {attempt}: {error}. "
                    f"Retrying in {delay:.2f}s...",
                    extra={
                        "service_name": self.service_name,
                        "attempt": attempt,
                        "error_code": error.code.value,
                        "delay_seconds": delay,
                    },
                )
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"Service '{self.service_name}' call succeeded on attempt {attempt}")
            OPERATIONS_TOTAL.labels(service=self.service_name, outcome="success").inc()
            return result

    async def _notify(self, attempt: int, error: NormalizedError) -> None:
        if self.policy.on_retry is None:
            return
        outcome = self.policy.on_retry(attempt, error)
        if inspect.isawaitable(outcome):
            await outcome


async def execute_with_retry(
    operation: Operation,
    policy: Optional[RetryPolicy] = None,
    service_name: str = "default",
) -> Any:
    """
    Convenience function to execute an operation with retry logic.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Retry policy (defaults to ``RetryPolicy()``)
        service_name: Name of the service for logging and metrics

    Returns:
        The result of the operation
    """
    return await RetryExecutor(service_name, policy).execute(operation)


async def execute_with_retry_and_timeout(
    operation: Operation,
    timeout: float,
    policy: Optional[RetryPolicy] = None,
    service_name: str = "default",
) -> Any:
    """Retry with each individual attempt bounded by ``timeout`` seconds.

    A timed-out attempt is a retryable ``TIMEOUT`` failure and counts toward
    ``max_attempts`` like any other.
    """
    policy = replace(policy or RetryPolicy(), per_attempt_timeout=timeout)
    return await RetryExecutor(service_name, policy).execute(operation)
