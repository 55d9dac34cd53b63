"""
Resilience patterns for external service calls.

This module provides error classification, retry with backoff, cooperative
timeouts, a serialized rate-limited queue, per-tier caller limits and
graceful degradation to fallbacks.

``ResilientGateway`` and ``create_resilience_router`` read the application
settings and are imported from their own modules.
"""

from .backoff import BackoffStrategy, calculate_delay
from .classifier import classify, is_retryable
from .timeout import execute_with_timeout
from .retry import RetryExecutor, RetryPolicy, execute_with_retry, execute_with_retry_and_timeout
from .rate_limited_queue import QueueStatus, RateLimitedQueue, queue_request
from .degradation import (
    DegradationCoordinator,
    DegradationEvent,
    DegradationOutcome,
    DegradationPolicy,
    always_eligible,
    is_resource_failure,
)
from .tier_limiter import DEFAULT_TIER_LIMITS, TierLimits, TierRateLimiter
from .decorators import queued, retried, with_fallback

__all__ = [
    "BackoffStrategy",
    "calculate_delay",
    "classify",
    "is_retryable",
    "execute_with_timeout",
    "RetryExecutor",
    "RetryPolicy",
    "execute_with_retry",
    "execute_with_retry_and_timeout",
    "QueueStatus",
    "RateLimitedQueue",
    "queue_request",
    "DegradationCoordinator",
    "DegradationEvent",
    "DegradationOutcome",
    "DegradationPolicy",
    "always_eligible",
    "is_resource_failure",
    "DEFAULT_TIER_LIMITS",
    "TierLimits",
    "TierRateLimiter",
    "queued",
    "retried",
    "with_fallback",
]
