"""Timeout handling for external service calls."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from repo_resilience.exceptions import timeout_error
from repo_resilience.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

Operation = Callable[[], Union[Awaitable[T], T]]


async def call_operation(operation: Operation) -> Any:
    """Invoke a zero-argument operation, awaiting its result when needed."""
    result = operation()
    if inspect.isawaitable(result):
        result = await result
    return result


def _consume_outcome(task: "asyncio.Future") -> None:
    # The caller stopped waiting; retrieve the outcome so it is not reported
    # as an unhandled task exception.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(
            "Abandoned operation finished with an error",
            extra={"exception_type": type(exc).__name__},
        )


async def execute_with_timeout(
    operation: Operation,
    timeout: float,
    message: Optional[str] = None,
    service_name: str = "default",
) -> Any:
    """
    Wait at most ``timeout`` seconds for ``operation``.

    Cancellation is cooperative: when the timer wins, only the wait is
    abandoned. The operation keeps running in its own task and its side
    effects still happen; operations that need real cancellation must accept
    and honor their own cancellation signal.

    Args:
        operation: Zero-argument callable returning an awaitable
        timeout: Seconds to wait
        message: Message for the raised error
        service_name: Name of the service for logging

    Returns:
        The result of the operation

    Raises:
        NormalizedError: ``TIMEOUT`` when the timer fires first; otherwise
            whatever the operation raises
    """
    task = asyncio.ensure_future(call_operation(operation))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.add_done_callback(_consume_outcome)
        raise

    if task in done:
        return task.result()

    task.add_done_callback(_consume_outcome)
    logger.warning(
        f"Service '{service_name}' call timed out after {timeout}s",
        extra={"service_name": service_name, "timeout_seconds": timeout},
    )
    raise timeout_error(
        message or f"Operation timed out for service '{service_name}' after {timeout}s",
        timeout,
    )
