"""
Serialized, quota-aware gatekeeper for a scarce external resource.

A provider quota (for example an inference API allowing 2 requests per minute
and 50 per day) is aggregate across all callers of a process, so every call to
that provider goes through one ``RateLimitedQueue`` instance. The queue spaces
dispatches by ``min_interval`` seconds and stops at ``daily_cap`` successful
dispatches per rolling window. It never retries; callers that want retries
wrap the operation they enqueue with the retry executor.
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from repo_resilience.exceptions import ErrorCode, NormalizedError, rate_limit_error
from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.classifier import classify
from repo_resilience.resilience.metrics import QUEUE_DISPATCH_TOTAL, QUEUE_LENGTH, QUEUE_WAIT_SECONDS
from repo_resilience.resilience.timeout import Operation, call_operation

logger = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60


@dataclass
class QueuedRequest:
    execute: Operation
    future: "asyncio.Future[Any]"
    enqueued_at: float


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    draining: bool
    requests_today: int
    daily_cap: int
    remaining_today: int
    minutes_to_reset: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateLimitedQueue:
    """
    FIFO queue enforcing a minimum dispatch interval and a rolling daily cap.

    State machine: IDLE <-> DRAINING. ``draining`` guarantees at most one drain
    loop per instance; under asyncio's cooperative scheduling a plain flag is
    enough because nothing awaits between checking and setting it.

    Counters live in process memory. Several processes (or replicas) each
    enforce their own budget, so the provider sees up to N times the
    configured rate. Cross-instance enforcement needs a shared store and is
    not provided here.
    """

    def __init__(
        self,
        name: str,
        min_interval: float = 30.0,
        daily_cap: int = 45,
        daily_window: float = DAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        if daily_cap < 0:
            raise ValueError("daily_cap must be >= 0")
        if daily_window <= 0:
            raise ValueError("daily_window must be positive")

        self.name = name
        self.min_interval = min_interval
        self.daily_cap = daily_cap
        self.daily_window = daily_window
        self._clock = clock
        self._sleep = sleep

        self.pending: Deque[QueuedRequest] = deque()
        self.draining = False
        self.last_dispatch_at: Optional[float] = None
        self.daily_count = 0
        self.daily_window_reset_at = clock() + daily_window
        self._drain_task: Optional["asyncio.Task[None]"] = None

        logger.info(
            f"Rate-limited queue '{name}' created",
            extra={"queue": name, "min_interval": min_interval, "daily_cap": daily_cap},
        )

    async def enqueue(self, operation: Operation) -> Any:
        """
        Append an operation to the tail of the queue and wait for its outcome.

        Raises:
            NormalizedError: ``RATE_LIMIT`` when the daily cap is exhausted, or
                the classified failure of the operation itself
        """
        future = asyncio.get_running_loop().create_future()
        self.pending.append(QueuedRequest(operation, future, self._clock()))
        QUEUE_LENGTH.labels(queue=self.name).set(len(self.pending))

        if not self.draining:
            self.draining = True
            self._drain_task = asyncio.ensure_future(self._drain())
            self._drain_task.add_done_callback(self._on_drain_done)

        return await future

    def status(self) -> QueueStatus:
        return QueueStatus(
            queue_length=len(self.pending),
            draining=self.draining,
            requests_today=self.daily_count,
            daily_cap=self.daily_cap,
            remaining_today=max(0, self.daily_cap - self.daily_count),
            minutes_to_reset=self._minutes_to_reset(self._clock()),
        )

    def clear(self) -> int:
        """Reject every pending request. Returns how many were rejected.

        A drain loop that is currently waiting finds the queue empty and
        stops on its own; ``draining`` is left to it.
        """
        cleared = 0
        while self.pending:
            request = self.pending.popleft()
            if not request.future.done():
                request.future.set_exception(
                    NormalizedError(
                        ErrorCode.UNKNOWN,
                        "Queue cleared",
                        retryable=False,
                        details={"queue": self.name},
                    )
                )
                cleared += 1
        QUEUE_LENGTH.labels(queue=self.name).set(0)
        if cleared:
            logger.warning(f"Queue '{self.name}' cleared, {cleared} requests rejected")
        return cleared

    async def wait_until_idle(self) -> None:
        """Wait for the current drain loop, if any, to finish."""
        if self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def _drain(self) -> None:
        try:
            while self.pending:
                now = self._clock()
                self._roll_window(now)

                if self.daily_count >= self.daily_cap:
                    self._reject_all(now)
                    break

                await self._wait_for_interval()
                if not self.pending:
                    # cleared while waiting
                    break

                request = self.pending.popleft()
                QUEUE_LENGTH.labels(queue=self.name).set(len(self.pending))
                if request.future.done():
                    # The caller stopped waiting; the request never reaches the provider
                    QUEUE_DISPATCH_TOTAL.labels(queue=self.name, outcome="abandoned").inc()
                    continue

                await self._dispatch(request)
        except asyncio.CancelledError:
            cancelled = self._cancel_pending()
            logger.warning(f"Drain loop of queue '{self.name}' cancelled, {cancelled} requests cancelled")
            raise
        finally:
            self.draining = False

    def _cancel_pending(self) -> int:
        cancelled = 0
        while self.pending:
            if self.pending.popleft().future.cancel():
                cancelled += 1
        QUEUE_LENGTH.labels(queue=self.name).set(0)
        return cancelled

    def _roll_window(self, now: float) -> None:
        if now >= self.daily_window_reset_at:
            self.daily_count = 0
            self.daily_window_reset_at = now + self.daily_window
            logger.info(f"Queue '{self.name}' daily request counter reset")

    def _reject_all(self, now: float) -> None:
        minutes_to_reset = self._minutes_to_reset(now)
        logger.error(
            f"Queue '{self.name}' daily limit reached ({self.daily_cap}). "
            f"Resets in {minutes_to_reset} minutes.",
            extra={"queue": self.name, "rejected": len(self.pending)},
        )
        while self.pending:
            request = self.pending.popleft()
            if request.future.done():
                continue
            request.future.set_exception(
                rate_limit_error(
                    f"Daily request limit for '{self.name}' reached. "
                    f"Please try again in {minutes_to_reset} minutes.",
                    minutes_to_reset=minutes_to_reset,
                    daily_cap=self.daily_cap,
                    queue=self.name,
                )
            )
            QUEUE_DISPATCH_TOTAL.labels(queue=self.name, outcome="over_cap").inc()
        QUEUE_LENGTH.labels(queue=self.name).set(0)

    async def _wait_for_interval(self) -> None:
        if self.last_dispatch_at is None:
            return
        while True:
            wait = self.min_interval - (self._clock() - self.last_dispatch_at)
            if wait <= 0:
                return
            logger.info(
                f"Queue '{self.name}' waiting {wait:.2f}s before next request "
                f"({len(self.pending)} in queue)"
            )
            await self._sleep(wait)

    async def _dispatch(self, request: QueuedRequest) -> None:
        QUEUE_WAIT_SECONDS.labels(queue=self.name).observe(max(0.0, self._clock() - request.enqueued_at))
        logger.info(
            f"Queue '{self.name}' processing request "
            f"({self.daily_count + 1}/{self.daily_cap} today, {len(self.pending)} remaining in queue)"
        )
        # Own task: a CancelledError raised by the operation must not end the drain loop
        task = asyncio.ensure_future(call_operation(request.execute))
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            request.future.cancel()
            self.last_dispatch_at = self._clock()
            raise

        try:
            if task.cancelled():
                logger.warning(
                    f"Queue '{self.name}' request was cancelled by its operation",
                    extra={"queue": self.name},
                )
                QUEUE_DISPATCH_TOTAL.labels(queue=self.name, outcome="cancelled").inc()
                request.future.cancel()
                return

            exc = task.exception()
            if exc is not None:
                error = classify(exc)
                if error is not exc:
                    error.__cause__ = exc
                logger.warning(
                    f"Queue '{self.name}' request failed: {error}",
                    extra={"queue": self.name, "error_code": error.code.value},
                )
                QUEUE_DISPATCH_TOTAL.labels(queue=self.name, outcome="failure").inc()
                if not request.future.done():
                    request.future.set_exception(error)
                return

            self.daily_count += 1
            QUEUE_DISPATCH_TOTAL.labels(queue=self.name, outcome="success").inc()
            if not request.future.done():
                request.future.set_result(task.result())
        finally:
            self.last_dispatch_at = self._clock()

    def _minutes_to_reset(self, now: float) -> int:
        return max(0, math.ceil((self.daily_window_reset_at - now) / 60))

    def _on_drain_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Drain loop of queue '{self.name}' crashed", exc_info=exc)


async def queue_request(queue: RateLimitedQueue, operation: Operation, use_queue: bool = True) -> Any:
    """
    Run ``operation`` through ``queue``, or directly when ``use_queue`` is False.

    The bypass is meant for trusted internal call sites; failures on the direct
    path are classified the same way the queue classifies them.
    """
    if use_queue:
        return await queue.enqueue(operation)

    try:
        return await call_operation(operation)
    except Exception as exc:
        error = classify(exc)
        if error is exc:
            raise
        raise error from exc
