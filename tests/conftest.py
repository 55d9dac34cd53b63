from unittest.mock import AsyncMock

import pytest

from helpers import FakeClock
from repo_resilience.resilience.degradation import DegradationCoordinator


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def coordinator() -> DegradationCoordinator:
    return DegradationCoordinator()


@pytest.fixture
def mock_redis_client():
    """Mocks the async Redis client."""
    mock_redis = AsyncMock()
    mock_redis.get.return_value = None
    mock_redis.set.return_value = True
    mock_redis.setex.return_value = True
    mock_redis.delete.return_value = 1
    mock_redis.ping.return_value = True
    return mock_redis
