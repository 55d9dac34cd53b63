"""Backoff delay calculation with optional jitter."""

import random
from enum import Enum
from typing import Optional


class BackoffStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def calculate_delay(
    attempt: int,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter_ratio: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Calculate the delay before the retry that follows ``attempt``.

    Exponential: ``initial_delay * 2 ** (attempt - 1)``; linear:
    ``initial_delay * attempt``. The base value is capped at ``max_delay``
    before jitter is applied, and the jittered value is capped again.
    Without jitter the result is deterministic.

    Args:
        attempt: 1-based number of the attempt that just failed
        strategy: Linear or exponential growth
        initial_delay: Delay after the first attempt, in seconds
        max_delay: Upper bound for any delay, in seconds
        jitter_ratio: Relative jitter; 0.3 perturbs the delay by up to +/-30%
        rng: Random source, mainly for tests

    Returns:
        Delay in seconds
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    strategy = BackoffStrategy(strategy)
    if strategy is BackoffStrategy.EXPONENTIAL:
        # Exponent capped so the int -> float conversion cannot overflow
        delay = initial_delay * (2 ** min(attempt - 1, 1000))
    else:
        delay = initial_delay * attempt

    delay = min(delay, max_delay)

    if jitter_ratio > 0:
        uniform = (rng or random).uniform
        delay *= 1 + uniform(-jitter_ratio, jitter_ratio)
        delay = min(max(delay, 0.0), max_delay)

    return delay
