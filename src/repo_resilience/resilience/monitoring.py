"""Monitoring endpoints for the rate-limited queues and degradation events."""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, HTTPException

from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.degradation import DegradationCoordinator
from repo_resilience.resilience.rate_limited_queue import RateLimitedQueue
from repo_resilience.services.cache_service import CacheFallbackManager

logger = get_logger(__name__)


def create_resilience_router(
    queues: Mapping[str, RateLimitedQueue],
    coordinator: DegradationCoordinator,
    caches: Optional[Mapping[str, CacheFallbackManager]] = None,
) -> APIRouter:
    """
    Build a router exposing queue status, degradation events and cache stats.

    The queues and coordinator are the instances the application injects into
    its call sites; the router only reads them.
    """
    router = APIRouter(prefix="/resilience", tags=["resilience"])
    caches = caches or {}

    @router.get("/queues")
    async def get_queues() -> Dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queues": {name: queue.status().to_dict() for name, queue in queues.items()},
        }

    @router.get("/queues/{queue_name}")
    async def get_queue(queue_name: str) -> Dict[str, Any]:
        queue = queues.get(queue_name)
        if queue is None:
            logger.info(f"Status requested for unknown queue '{queue_name}'")
            raise HTTPException(status_code=404, detail=f"Queue '{queue_name}' not found")
        return {"name": queue_name, **queue.status().to_dict()}

    @router.get("/degradation")
    async def get_degradation() -> Dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **coordinator.get_stats(),
        }

    @router.get("/caches")
    async def get_caches() -> Dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "caches": {name: cache.get_stats() for name, cache in caches.items()},
        }

    return router
