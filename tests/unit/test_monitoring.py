"""Tests for the monitoring endpoints."""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from repo_resilience.resilience.degradation import DegradationPolicy
from repo_resilience.resilience.monitoring import create_resilience_router
from repo_resilience.resilience.rate_limited_queue import RateLimitedQueue
from repo_resilience.services.cache_service import CacheFallbackManager, RedisCache
from repo_resilience.services.compression import PayloadCompressor


@pytest.fixture
def client(fake_clock, coordinator, mock_redis_client):
    queues = {
        "gemini": RateLimitedQueue("gemini", min_interval=30.0, daily_cap=45, clock=fake_clock),
    }
    cache = RedisCache(mock_redis_client, PayloadCompressor(coordinator), cache_name="videos")
    caches = {"videos": CacheFallbackManager(cache, None, coordinator)}

    app = FastAPI()
    app.include_router(create_resilience_router(queues, coordinator, caches))
    return TestClient(app)


class TestResilienceRouter:
    def test_all_queues(self, client):
        response = client.get("/resilience/queues")

        assert response.status_code == 200
        data = response.json()
        assert "timestamp" in data
        assert data["queues"]["gemini"]["remaining_today"] == 45
        assert data["queues"]["gemini"]["draining"] is False

    def test_single_queue(self, client):
        response = client.get("/resilience/queues/gemini")

        assert response.status_code == 200
        assert response.json()["name"] == "gemini"
        assert response.json()["minutes_to_reset"] == 1440

    def test_unknown_queue(self, client):
        response = client.get("/resilience/queues/missing")

        assert response.status_code == 404

    def test_degradation(self, client, coordinator):
        async def timed_out():
            raise TimeoutError("search timed out")

        async def no_results():
            return []

        coordinator.register(DegradationPolicy("search", primary=timed_out, fallback=no_results))
        asyncio.run(coordinator.execute("search"))

        response = client.get("/resilience/degradation")

        assert response.status_code == 200
        data = response.json()
        assert "cache:videos" in data["resources"]
        assert data["events_by_resource"] == {"search": 1}
        assert data["recent_events"][0]["resource"] == "search"

    def test_caches(self, client):
        response = client.get("/resilience/caches")

        assert response.status_code == 200
        assert response.json()["caches"]["videos"]["currently_fallen_back"] is False
