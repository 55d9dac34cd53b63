"""Composed entry point for calls to a quota-limited external API."""

from typing import Any, Optional

from repo_resilience.config import ResilienceSettings, get_settings
from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.rate_limited_queue import RateLimitedQueue, queue_request
from repo_resilience.resilience.retry import RetryExecutor, RetryPolicy
from repo_resilience.resilience.tier_limiter import TierRateLimiter
from repo_resilience.resilience.timeout import Operation

logger = get_logger(__name__)


class ResilientGateway:
    """
    Per-caller tier check, then retries around the shared queue.

    Each retry attempt is enqueued on its own, so every call that reaches the
    provider is spaced by the queue and counted against the daily cap. A
    ``RATE_LIMIT`` from the queue is not retryable and ends the attempts.
    """

    def __init__(
        self,
        name: str,
        queue: RateLimitedQueue,
        policy: Optional[RetryPolicy] = None,
        use_queue: bool = True,
        tier_limiter: Optional[TierRateLimiter] = None,
    ):
        self.name = name
        self.queue = queue
        self.use_queue = use_queue
        self.tier_limiter = tier_limiter
        self._executor = RetryExecutor(name, policy)

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: Optional[ResilienceSettings] = None,
        queue: Optional[RateLimitedQueue] = None,
        tier_limiter: Optional[TierRateLimiter] = None,
    ) -> "ResilientGateway":
        settings = settings or get_settings()
        return cls(
            name,
            queue or settings.queue.build_queue(name),
            policy=settings.retry.to_policy(),
            use_queue=settings.queue.use_queue,
            tier_limiter=tier_limiter,
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._executor.policy

    async def call(
        self,
        operation: Operation,
        caller_id: Optional[str] = None,
        tier: Optional[str] = None,
    ) -> Any:
        """
        Run ``operation`` against the protected API.

        Raises:
            NormalizedError: ``RATE_LIMIT`` from the tier limiter or the queue,
                or the classified error of the last attempt
        """
        if self.tier_limiter is not None and caller_id is not None:
            self.tier_limiter.check(caller_id, tier)

        if not self.use_queue:
            logger.debug(f"Gateway '{self.name}' bypassing queue")

        return await self._executor.execute(
            lambda: queue_request(self.queue, operation, use_queue=self.use_queue)
        )
