"""Per-caller request limits by subscription tier.

These limits keep a single caller from draining the shared inference budget.
They sit in front of, and never replace, the process-wide rate-limited queue.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from repo_resilience.exceptions import rate_limit_error
from repo_resilience.logging_config import get_logger

logger = get_logger(__name__)

MINUTE = 60.0
HOUR = 60.0 * 60.0


@dataclass(frozen=True)
class TierLimits:
    requests_per_minute: int
    requests_per_hour: int


DEFAULT_TIER_LIMITS: Dict[str, TierLimits] = {
    "free": TierLimits(requests_per_minute=5, requests_per_hour=50),
    "pro": TierLimits(requests_per_minute=30, requests_per_hour=500),
    "enterprise": TierLimits(requests_per_minute=60, requests_per_hour=2000),
}


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class TierUsage:
    tier: str
    minute_remaining: int
    hour_remaining: int
    minute_reset_in: float
    hour_reset_in: float


class TierRateLimiter:
    """Fixed minute and hour windows tracked per caller."""

    def __init__(
        self,
        tier_limits: Optional[Mapping[str, TierLimits]] = None,
        default_tier: str = "free",
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval: float = MINUTE,
    ):
        self.tier_limits = dict(tier_limits or DEFAULT_TIER_LIMITS)
        if default_tier not in self.tier_limits:
            raise ValueError(f"default tier '{default_tier}' has no limits")
        self.default_tier = default_tier
        self._clock = clock
        self._windows: Dict[str, Dict[str, _Window]] = {}
        self.cleanup_interval = cleanup_interval
        self._next_cleanup_at = clock() + cleanup_interval

    def check(self, caller_id: str, tier: Optional[str] = None) -> TierUsage:
        """
        Count one request for ``caller_id`` or reject it.

        Raises:
            NormalizedError: ``RATE_LIMIT`` with ``details["retry_after"]`` in
                seconds when the minute or hour window is full
        """
        tier_name = tier if tier in self.tier_limits else self.default_tier
        limits = self.tier_limits[tier_name]
        now = self._clock()
        if now >= self._next_cleanup_at:
            self.cleanup()
        windows = self._get_windows(caller_id, now)
        minute, hour = windows["minute"], windows["hour"]

        if minute.count >= limits.requests_per_minute:
            retry_after = math.ceil(minute.reset_at - now)
            logger.warning(
                f"Caller '{caller_id}' exceeded {limits.requests_per_minute} requests per minute",
                extra={"caller_id": caller_id, "tier": tier_name, "window": "minute"},
            )
            raise rate_limit_error(
                f"Rate limit exceeded: {limits.requests_per_minute} requests per minute",
                retry_after=retry_after,
                window="minute",
                limit=limits.requests_per_minute,
                tier=tier_name,
            )

        if hour.count >= limits.requests_per_hour:
            retry_after = math.ceil(hour.reset_at - now)
            logger.warning(
                f"Caller '{caller_id}' exceeded {limits.requests_per_hour} requests per hour",
                extra={"caller_id": caller_id, "tier": tier_name, "window": "hour"},
            )
            raise rate_limit_error(
                f"Rate limit exceeded: {limits.requests_per_hour} requests per hour",
                retry_after=retry_after,
                window="hour",
                limit=limits.requests_per_hour,
                tier=tier_name,
            )

        minute.count += 1
        hour.count += 1
        return TierUsage(
            tier=tier_name,
            minute_remaining=limits.requests_per_minute - minute.count,
            hour_remaining=limits.requests_per_hour - hour.count,
            minute_reset_in=max(0.0, minute.reset_at - now),
            hour_reset_in=max(0.0, hour.reset_at - now),
        )

    def reset(self, caller_id: Optional[str] = None) -> None:
        if caller_id is None:
            self._windows.clear()
        else:
            self._windows.pop(caller_id, None)

    @property
    def tracked_callers(self) -> int:
        return len(self._windows)

    def cleanup(self) -> int:
        """Drop callers whose windows have all expired. Returns how many.

        Runs from ``check`` at most once per ``cleanup_interval``.
        """
        now = self._clock()
        self._next_cleanup_at = now + self.cleanup_interval
        expired = [
            caller_id
            for caller_id, windows in self._windows.items()
            if all(window.reset_at <= now for window in windows.values())
        ]
        for caller_id in expired:
            del self._windows[caller_id]
        if expired:
            logger.debug(f"Dropped rate limit windows of {len(expired)} idle callers")
        return len(expired)

    def _get_windows(self, caller_id: str, now: float) -> Dict[str, _Window]:
        windows = self._windows.get(caller_id)
        if windows is None:
            windows = {
                "minute": _Window(0, now + MINUTE),
                "hour": _Window(0, now + HOUR),
            }
            self._windows[caller_id] = windows
            return windows

        if windows["minute"].reset_at <= now:
            windows["minute"] = _Window(0, now + MINUTE)
        if windows["hour"].reset_at <= now:
            windows["hour"] = _Window(0, now + HOUR)
        return windows
