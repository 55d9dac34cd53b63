"""
Graceful degradation for protected resources.

A ``DegradationPolicy`` pairs a primary operation with a fallback. When the
primary fails with a *resource* failure (network, 5xx, timeout, cache down,
pool exhausted) the coordinator serves the fallback and emits a degradation
event; caller or input failures (4xx, rate limits) propagate unchanged.
"""

import asyncio
import inspect
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from repo_resilience.exceptions import ErrorCode, NormalizedError
from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.classifier import classify
from repo_resilience.resilience.metrics import DEGRADATION_EVENTS_TOTAL

logger = get_logger(__name__)

RESOURCE_FAILURE_CODES = frozenset({
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.SERVER_TRANSIENT,
    ErrorCode.TIMEOUT,
    ErrorCode.CACHE_UNAVAILABLE,
    ErrorCode.POOL_EXHAUSTED,
})

EligibilityRule = Callable[[NormalizedError], bool]
DegradationListener = Callable[["DegradationEvent"], Any]


def is_resource_failure(error: NormalizedError) -> bool:
    """Default eligibility: the dependency failed, not the caller."""
    return error.code in RESOURCE_FAILURE_CODES


def always_eligible(error: NormalizedError) -> bool:
    """For optional steps (e.g. compression) whose failure must never fail a request."""
    return True


@dataclass(frozen=True)
class DegradationPolicy:
    resource: str
    primary: Callable[..., Any]
    fallback: Callable[..., Any]
    is_eligible: EligibilityRule = is_resource_failure


@dataclass(frozen=True)
class DegradationEvent:
    resource: str
    reason: str
    code: ErrorCode
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "reason": self.reason,
            "code": self.code.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class DegradationOutcome:
    value: Any
    degraded: bool
    event: Optional[DegradationEvent] = None


async def _invoke(func: Callable[..., Any], *args, **kwargs) -> Any:
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class DegradationCoordinator:
    """
    Runs primary operations and absorbs eligible failures into fallbacks.

    Degradation events are recorded, counted and logged synchronously;
    listeners are scheduled on the event loop so that a slow listener never
    delays the degraded response.
    """

    def __init__(self, max_recent_events: int = 100):
        self._policies: Dict[str, DegradationPolicy] = {}
        self._listeners: List[DegradationListener] = []
        self._recent: Deque[DegradationEvent] = deque(maxlen=max_recent_events)
        self._counts: Dict[str, int] = defaultdict(int)
        self._listener_tasks: Set["asyncio.Task[Any]"] = set()

    def register(self, policy: DegradationPolicy) -> DegradationPolicy:
        self._policies[policy.resource] = policy
        logger.info(f"Degradation policy registered for resource '{policy.resource}'")
        return policy

    def get_policy(self, resource: str) -> DegradationPolicy:
        try:
            return self._policies[resource]
        except KeyError:
            raise KeyError(f"No degradation policy registered for resource '{resource}'") from None

    @property
    def resources(self) -> List[str]:
        return list(self._policies)

    def add_listener(self, listener: DegradationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: DegradationListener) -> None:
        self._listeners.remove(listener)

    async def execute(self, resource: str, *args, **kwargs) -> Any:
        """Run the registered policy for ``resource`` and return its value."""
        outcome = await self.run(self.get_policy(resource), *args, **kwargs)
        return outcome.value

    async def execute_with_outcome(self, resource: str, *args, **kwargs) -> DegradationOutcome:
        return await self.run(self.get_policy(resource), *args, **kwargs)

    async def run(self, policy: DegradationPolicy, *args, **kwargs) -> DegradationOutcome:
        """
        Run ``policy.primary``, falling back when the failure is eligible.

        Arguments are passed to both the primary and the fallback.

        Raises:
            NormalizedError: the primary's classified error when it is not
                eligible for fallback, or the fallback's classified error
        """
        try:
            value = await _invoke(policy.primary, *args, **kwargs)
        except Exception as exc:
            error = classify(exc)
            if not policy.is_eligible(error):
                logger.info(
                    f"Resource '{policy.resource}' failed with {error.code.value}, not degrading",
                    extra={"resource": policy.resource, "error_code": error.code.value},
                )
                if error is exc:
                    raise
                raise error from exc

            event = DegradationEvent(resource=policy.resource, reason=error.message, code=error.code)
            self._emit(event)

            try:
                value = await _invoke(policy.fallback, *args, **kwargs)
            except Exception as fallback_exc:
                fallback_error = classify(fallback_exc)
                logger.error(
                    f"Fallback for resource '{policy.resource}' failed: {fallback_error}",
                    extra={
                        "resource": policy.resource,
                        "error_code": fallback_error.code.value,
                        "primary_error_code": error.code.value,
                    },
                )
                if fallback_error is fallback_exc:
                    raise
                raise fallback_error from fallback_exc

            return DegradationOutcome(value=value, degraded=True, event=event)

        return DegradationOutcome(value=value, degraded=False)

    def recent_events(self) -> List[DegradationEvent]:
        return list(self._recent)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "resources": self.resources,
            "events_by_resource": dict(self._counts),
            "recent_events": [event.to_dict() for event in self._recent],
        }

    async def flush_listeners(self) -> None:
        """Let scheduled listeners run and wait for coroutine listeners."""
        await asyncio.sleep(0)
        if self._listener_tasks:
            await asyncio.gather(*self._listener_tasks, return_exceptions=True)

    def _emit(self, event: DegradationEvent) -> None:
        self._recent.append(event)
        self._counts[event.resource] += 1
        DEGRADATION_EVENTS_TOTAL.labels(resource=event.resource, code=event.code.value).inc()
        logger.warning(
            f"Resource '{event.resource}' degraded to fallback: {event.reason}",
            extra=event.to_dict(),
        )

        if not self._listeners:
            return
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(self._deliver, listener, event)

    def _deliver(self, listener: DegradationListener, event: DegradationEvent) -> None:
        try:
            outcome = listener(event)
        except Exception:
            logger.exception(f"Degradation listener failed for resource '{event.resource}'")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._listener_tasks.add(task)
            task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: "asyncio.Task[Any]") -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Degradation listener failed", exc_info=task.exception())
