"""
Bounded async connection pool with a direct-connection fallback.

When every pooled connection is busy for longer than ``acquire_timeout`` the
pool raises ``POOL_EXHAUSTED``. ``PoolFallbackManager`` absorbs that failure
by opening a single throwaway direct connection, bounded by its own timeout,
and closing it as soon as the caller is done.
"""

import asyncio
import inspect
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional

from prometheus_client import Counter, Gauge

from repo_resilience.config import PoolSettings
from repo_resilience.exceptions import pool_exhausted_error
from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.degradation import DegradationCoordinator, DegradationPolicy

logger = get_logger(__name__)

POOL_CONNECTIONS_ACTIVE = Gauge(
    'connection_pool_active_connections',
    'Connections currently checked out',
    ['pool_name']
)

POOL_EXHAUSTED_TOTAL = Counter(
    'connection_pool_exhausted_total',
    'Acquisitions that timed out because the pool was full',
    ['pool_name']
)

DIRECT_CONNECTIONS_TOTAL = Counter(
    'connection_pool_direct_connections_total',
    'Throwaway direct connections opened because the pool was exhausted',
    ['pool_name']
)

ConnectionFactory = Callable[[], Any]
ConnectionCloser = Callable[[Any], Any]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _close_quietly(closer: ConnectionCloser, connection: Any, pool_name: str) -> None:
    try:
        await _maybe_await(closer(connection))
    except Exception as e:
        logger.warning(f"Error closing connection for pool '{pool_name}': {e}")


class ConnectionPool:
    """Async pool creating connections lazily up to ``max_size``."""

    def __init__(
        self,
        name: str,
        connection_factory: ConnectionFactory,
        connection_closer: Optional[ConnectionCloser] = None,
        max_size: int = 10,
        acquire_timeout: float = 5.0,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.name = name
        self.connection_factory = connection_factory
        self.connection_closer = connection_closer or (lambda conn: None)
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout

        self._idle: Deque[Any] = deque()
        self._slots = asyncio.Semaphore(max_size)
        self._in_use = 0
        self._stats = {
            'total_created': 0,
            'total_closed': 0,
            'total_exhausted': 0,
        }

        logger.info(f"Connection pool '{name}' initialized (max_size={max_size})")

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: PoolSettings,
        connection_factory: ConnectionFactory,
        connection_closer: Optional[ConnectionCloser] = None,
    ) -> "ConnectionPool":
        return cls(
            name,
            connection_factory,
            connection_closer,
            max_size=settings.max_size,
            acquire_timeout=settings.acquire_timeout,
        )

    async def checkout(self) -> Any:
        """
        Take a connection out of the pool.

        Raises:
            NormalizedError: ``POOL_EXHAUSTED`` when no slot frees up within
                ``acquire_timeout`` seconds
        """
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError:
            self._stats['total_exhausted'] += 1
            POOL_EXHAUSTED_TOTAL.labels(pool_name=self.name).inc()
            raise pool_exhausted_error(
                f"Connection pool '{self.name}' exhausted after waiting {self.acquire_timeout}s",
                pool_name=self.name,
                max_size=self.max_size,
            ) from None

        try:
            if self._idle:
                connection = self._idle.popleft()
            else:
                connection = await _maybe_await(self.connection_factory())
                self._stats['total_created'] += 1
                logger.debug(f"Created connection for pool '{self.name}'")
        except Exception:
            self._slots.release()
            raise

        self._in_use += 1
        POOL_CONNECTIONS_ACTIVE.labels(pool_name=self.name).set(self._in_use)
        return connection

    async def checkin(self, connection: Any, discard: bool = False) -> None:
        """Return a connection; ``discard`` closes it instead of reusing it."""
        self._in_use -= 1
        POOL_CONNECTIONS_ACTIVE.labels(pool_name=self.name).set(self._in_use)
        try:
            if discard:
                await _close_quietly(self.connection_closer, connection, self.name)
                self._stats['total_closed'] += 1
            else:
                self._idle.append(connection)
        finally:
            self._slots.release()

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        connection = await self.checkout()
        discard = False
        try:
            yield connection
        except Exception:
            # The connection may be in an unknown state
            discard = True
            raise
        finally:
            await self.checkin(connection, discard=discard)

    async def close(self) -> None:
        while self._idle:
            await _close_quietly(self.connection_closer, self._idle.popleft(), self.name)
            self._stats['total_closed'] += 1
        logger.info(f"Connection pool '{self.name}' closed")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'pool_name': self.name,
            'max_size': self.max_size,
            'in_use': self._in_use,
            'idle': len(self._idle),
        }


class PoolFallbackManager:
    """
    Hands out pooled connections, or one direct connection when the pool
    cannot serve the request.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        direct_factory: ConnectionFactory,
        coordinator: DegradationCoordinator,
        direct_closer: Optional[ConnectionCloser] = None,
        direct_connection_timeout: float = 10.0,
        resource: Optional[str] = None,
    ):
        self.pool = pool
        self.direct_factory = direct_factory
        self.direct_closer = direct_closer or pool.connection_closer
        self.direct_connection_timeout = direct_connection_timeout
        self.coordinator = coordinator
        self.resource = resource or f"pool:{pool.name}"
        self._direct_connections_used = 0
        self._policy = coordinator.register(
            DegradationPolicy(resource=self.resource, primary=pool.checkout, fallback=self._open_direct)
        )

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        outcome = await self.coordinator.run(self._policy)
        connection = outcome.value

        if outcome.degraded:
            try:
                yield connection
            finally:
                await _close_quietly(self.direct_closer, connection, self.pool.name)
            return

        discard = False
        try:
            yield connection
        except Exception:
            discard = True
            raise
        finally:
            await self.pool.checkin(connection, discard=discard)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.pool.get_stats(),
            'direct_connections_used': self._direct_connections_used,
        }

    async def _open_direct(self) -> Any:
        self._direct_connections_used += 1
        DIRECT_CONNECTIONS_TOTAL.labels(pool_name=self.pool.name).inc()
        logger.warning(f"Pool '{self.pool.name}' unavailable, opening a direct connection")
        # Creation is cancelled on timeout, unlike execute_with_timeout
        return await asyncio.wait_for(
            _maybe_await(self.direct_factory()),
            timeout=self.direct_connection_timeout,
        )
