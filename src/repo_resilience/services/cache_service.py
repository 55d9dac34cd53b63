"""
Redis-backed cache with graceful degradation to the source of truth.

``RedisCache`` turns every Redis failure into a ``CACHE_UNAVAILABLE`` error.
``CacheFallbackManager`` sits in front of it: reads fall back to a direct
fetch from the source of truth, writes and deletes are best-effort, and an
unhealthy cache is skipped until a health check succeeds again.
"""

import asyncio
import json
import zlib
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
from prometheus_client import Counter
from redis.exceptions import RedisError

from repo_resilience.config import CacheSettings
from repo_resilience.exceptions import ErrorCode, NormalizedError, cache_unavailable_error
from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.degradation import DegradationCoordinator, DegradationPolicy
from repo_resilience.services.compression import CompressedPayload, PayloadCompressor, decompress_payload

logger = get_logger(__name__)

CACHE_OPERATIONS_TOTAL = Counter(
    'cache_operations_total',
    'Total cache operations',
    ['operation', 'status', 'cache_name']
)

COMPRESSED_PREFIX = b'COMPRESSED:'

DataRetriever = Callable[[str], Awaitable[Any]]


class RedisCache:
    """Thin async cache over a Redis client with JSON values."""

    def __init__(
        self,
        client: "redis.Redis",
        compressor: PayloadCompressor,
        cache_name: str = "default",
        default_ttl: int = 3600,
    ):
        self._client = client
        self._compressor = compressor
        self.cache_name = cache_name
        self.default_ttl = default_ttl

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings,
        coordinator: DegradationCoordinator,
        cache_name: str = "default",
    ) -> "RedisCache":
        client = redis.Redis(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.socket_timeout,
            decode_responses=False,
        )
        compressor = PayloadCompressor(
            coordinator,
            threshold=settings.compression_threshold,
            level=settings.compression_level,
            resource=f"compression:{cache_name}",
        )
        return cls(client, compressor, cache_name=cache_name, default_ttl=settings.default_ttl)

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self._client.get(key)
        except (RedisError, OSError) as e:
            self._record('get', 'error')
            raise cache_unavailable_error(
                f"Cache GET failed for key '{key}': {e}", cache_name=self.cache_name, operation="get"
            ) from e

        if data is None:
            self._record('get', 'miss')
            return None

        try:
            value = self._deserialize_value(data)
        except (zlib.error, json.JSONDecodeError, UnicodeDecodeError) as e:
            # A corrupt entry is a miss; the caller refills it from the source
            logger.warning(f"Cache entry '{key}' could not be decoded: {e}")
            self._record('get', 'corrupt')
            return None

        self._record('get', 'hit')
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        serialized = await self._serialize_value(value)
        try:
            if ttl > 0:
                result = await self._client.setex(key, ttl, serialized)
            else:
                result = await self._client.set(key, serialized)
        except (RedisError, OSError) as e:
            self._record('set', 'error')
            raise cache_unavailable_error(
                f"Cache SET failed for key '{key}': {e}", cache_name=self.cache_name, operation="set"
            ) from e

        self._record('set', 'success')
        return bool(result)

    async def delete(self, key: str) -> bool:
        try:
            deleted = await self._client.delete(key)
        except (RedisError, OSError) as e:
            self._record('delete', 'error')
            raise cache_unavailable_error(
                f"Cache DELETE failed for key '{key}': {e}", cache_name=self.cache_name, operation="delete"
            ) from e

        self._record('delete', 'success')
        return deleted > 0

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as e:
            raise cache_unavailable_error(
                f"Cache PING failed: {e}", cache_name=self.cache_name, operation="ping"
            ) from e

    async def close(self) -> None:
        await self._client.aclose()
        logger.info(f"Cache '{self.cache_name}' closed")

    async def _serialize_value(self, value: Any) -> bytes:
        serialized = json.dumps(value, default=str).encode('utf-8')
        payload = await self._compressor.compress(serialized)
        # Only keep compression if it actually reduces size
        if payload.compressed and len(payload.body) < len(serialized):
            return COMPRESSED_PREFIX + payload.body
        return serialized

    def _deserialize_value(self, data: bytes) -> Any:
        if data.startswith(COMPRESSED_PREFIX):
            data = decompress_payload(CompressedPayload(data[len(COMPRESSED_PREFIX):], "deflate"))
        return json.loads(data.decode('utf-8'))

    def _record(self, operation: str, status: str) -> None:
        CACHE_OPERATIONS_TOTAL.labels(operation=operation, status=status, cache_name=self.cache_name).inc()


class CacheFallbackManager:
    """
    Cache-aside reads with fallback to ``data_retriever``.

    * ``get``: cache hit is returned; a miss is fetched from the source and
      written back; a cache failure degrades to a direct fetch.
    * ``set`` / ``delete``: failures are logged and never raised.
    * After a failure the cache is marked unhealthy and skipped until
      ``check_health`` succeeds (run periodically by ``start_health_checks``).
    """

    def __init__(
        self,
        cache: RedisCache,
        data_retriever: Optional[DataRetriever],
        coordinator: DegradationCoordinator,
        resource: Optional[str] = None,
        health_check_interval: float = 60.0,
    ):
        self.cache = cache
        self.data_retriever = data_retriever
        self.coordinator = coordinator
        self.resource = resource or f"cache:{cache.cache_name}"
        self.health_check_interval = health_check_interval
        self._healthy = True
        self._health_task: Optional["asyncio.Task[None]"] = None
        self._stats: Dict[str, Any] = {
            "total_operations": 0,
            "fallback_operations": 0,
            "recovery_attempts": 0,
            "successful_recoveries": 0,
            "last_failure_time": None,
            "last_recovery_time": None,
        }
        self._policy = coordinator.register(
            DegradationPolicy(resource=self.resource, primary=cache.get, fallback=self._fetch_from_source)
        )

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    async def get(self, key: str) -> Optional[Any]:
        self._stats["total_operations"] += 1

        if not self._healthy:
            return await self._fetch_from_source(key)

        outcome = await self.coordinator.run(self._policy, key)
        if outcome.degraded:
            self._mark_unhealthy("get")
            return outcome.value

        if outcome.value is not None:
            return outcome.value

        value = await self._retrieve(key)
        if value is not None:
            await self.set(key, value)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self._stats["total_operations"] += 1
        if not self._healthy:
            return False
        try:
            return await self.cache.set(key, value, ttl)
        except NormalizedError as error:
            self._absorb(error, "set")
            return False

    async def delete(self, key: str) -> bool:
        self._stats["total_operations"] += 1
        if not self._healthy:
            # Entries expire by TTL; report the delete as done
            return True
        try:
            await self.cache.delete(key)
        except NormalizedError as error:
            self._absorb(error, "delete")
        return True

    async def check_health(self) -> bool:
        """Ping the cache and mark it healthy again when it answers."""
        try:
            await self.cache.ping()
        except NormalizedError as error:
            if error.code is not ErrorCode.CACHE_UNAVAILABLE:
                raise
            if self._healthy:
                self._mark_unhealthy("health_check")
            return False

        if not self._healthy:
            self._healthy = True
            self._stats["successful_recoveries"] += 1
            self._stats["last_recovery_time"] = datetime.now(timezone.utc).isoformat()
            logger.info(f"Cache '{self.cache.cache_name}' recovered")
        return True

    def start_health_checks(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.ensure_future(self._health_check_loop())

    async def close(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "cache_name": self.cache.cache_name,
            "currently_fallen_back": not self._healthy,
        }

    async def _health_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            if not self._healthy:
                self._stats["recovery_attempts"] += 1
                await self.check_health()

    async def _fetch_from_source(self, key: str) -> Optional[Any]:
        self._stats["fallback_operations"] += 1
        return await self._retrieve(key)

    async def _retrieve(self, key: str) -> Optional[Any]:
        if self.data_retriever is None:
            return None
        return await self.data_retriever(key)

    def _absorb(self, error: NormalizedError, operation: str) -> None:
        if error.code is not ErrorCode.CACHE_UNAVAILABLE:
            raise error
        logger.warning(
            f"Cache operation '{operation}' failed, continuing without cache: {error.message}",
            extra={"cache_name": self.cache.cache_name, "operation": operation},
        )
        self._mark_unhealthy(operation)

    def _mark_unhealthy(self, operation: str) -> None:
        if self._healthy:
            self._healthy = False
            self._stats["last_failure_time"] = datetime.now(timezone.utc).isoformat()
            logger.warning(
                f"Cache '{self.cache.cache_name}' marked unhealthy after '{operation}' failure",
                extra={"cache_name": self.cache.cache_name, "operation": operation},
            )
