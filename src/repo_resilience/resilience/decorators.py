"""Decorators for applying resilience patterns to async functions."""

import functools
from typing import Any, Awaitable, Callable, Optional, TypeVar

from repo_resilience.resilience.degradation import (
    DegradationCoordinator,
    DegradationPolicy,
    EligibilityRule,
    is_resource_failure,
)
from repo_resilience.resilience.rate_limited_queue import RateLimitedQueue, queue_request
from repo_resilience.resilience.retry import RetryExecutor, RetryPolicy

F = TypeVar('F', bound=Callable[..., Awaitable[Any]])


def retried(policy: Optional[RetryPolicy] = None, service_name: Optional[str] = None):
    """
    Retry the decorated coroutine function on transient failures.

    Args:
        policy: Retry policy (defaults to ``RetryPolicy()``)
        service_name: Name for logging and metrics (defaults to the function name)
    """
    def decorator(func: F) -> F:
        executor = RetryExecutor(service_name or func.__qualname__, policy)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await executor.execute(lambda: func(*args, **kwargs))

        return wrapper  # type: ignore[return-value]
    return decorator


def queued(queue: RateLimitedQueue, use_queue: bool = True):
    """
    Route every call of the decorated coroutine function through ``queue``.

    Args:
        queue: The gatekeeper shared by all callers of the protected resource
        use_queue: False calls the function directly
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await queue_request(queue, lambda: func(*args, **kwargs), use_queue=use_queue)

        return wrapper  # type: ignore[return-value]
    return decorator


def with_fallback(
    coordinator: DegradationCoordinator,
    resource: str,
    fallback: Callable[..., Any],
    is_eligible: EligibilityRule = is_resource_failure,
):
    """
    Register the decorated function as the primary operation of ``resource``.

    The fallback receives the same arguments as the decorated function.
    """
    def decorator(func: F) -> F:
        policy = coordinator.register(
            DegradationPolicy(resource=resource, primary=func, fallback=fallback, is_eligible=is_eligible)
        )

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            outcome = await coordinator.run(policy, *args, **kwargs)
            return outcome.value

        return wrapper  # type: ignore[return-value]
    return decorator
