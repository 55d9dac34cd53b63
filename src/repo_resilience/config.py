from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.backoff import BackoffStrategy
from repo_resilience.resilience.rate_limited_queue import RateLimitedQueue
from repo_resilience.resilience.retry import RetryPolicy

logger = get_logger(__name__)


class QueueSettings(BaseModel):
    """Gatekeeper for the scarce inference API.

    Defaults sit below the free-tier quota (2 requests per minute, 50 per day).
    """
    min_request_interval: float = Field(default=30.0, ge=0.0, description="Seconds between dispatches")
    daily_request_cap: int = Field(default=45, ge=0)
    daily_window: float = Field(default=24 * 60 * 60, gt=0.0, description="Rolling window in seconds")
    # False routes operations directly, skipping the queue (trusted call sites)
    use_queue: bool = True

    def build_queue(self, name: str) -> RateLimitedQueue:
        return RateLimitedQueue(
            name,
            min_interval=self.min_request_interval,
            daily_cap=self.daily_request_cap,
            daily_window=self.daily_window,
        )


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=1.0, ge=0.0)  # seconds
    max_delay: float = Field(default=10.0, ge=0.0)  # seconds
    jitter_enabled: bool = True
    jitter_ratio: float = Field(default=0.3, ge=0.0, le=1.0)
    per_attempt_timeout: Optional[float] = Field(default=None, gt=0.0)

    def to_policy(self, **overrides) -> RetryPolicy:
        values = dict(
            max_attempts=self.max_attempts,
            backoff_strategy=self.backoff_strategy,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            jitter_enabled=self.jitter_enabled,
            jitter_ratio=self.jitter_ratio,
            per_attempt_timeout=self.per_attempt_timeout,
        )
        values.update(overrides)
        return RetryPolicy(**values)


class CacheSettings(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    socket_timeout: float = 5.0
    default_ttl: int = 3600
    compression_threshold: int = 1024  # Compress values larger than 1KB
    compression_level: int = Field(default=6, ge=0, le=9)
    health_check_interval: float = 60.0


class PoolSettings(BaseModel):
    max_size: int = Field(default=10, ge=1)
    acquire_timeout: float = Field(default=5.0, gt=0.0)
    direct_connection_timeout: float = Field(default=10.0, gt=0.0)


class LoggingSettings(BaseModel):
    """Logging configuration settings."""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    json_format: Optional[bool] = None  # Auto-detect based on environment

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level: {value}")
        return value


class ResilienceSettings(BaseSettings):
    """
    Configuration for the resilience layer.

    Values are loaded from environment variables (``RESILIENCE_`` prefix,
    ``__`` for nested fields, e.g. ``RESILIENCE_QUEUE__DAILY_REQUEST_CAP``)
    and a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="RESILIENCE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "test", "staging", "production"] = "development"

    queue: QueueSettings = Field(default_factory=QueueSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache
def get_settings() -> ResilienceSettings:
    """Return the process-wide settings, loaded once."""
    settings = ResilienceSettings()
    logger.debug(
        "Resilience settings loaded",
        extra={
            "environment": settings.environment,
            "min_request_interval": settings.queue.min_request_interval,
            "daily_request_cap": settings.queue.daily_request_cap,
            "use_queue": settings.queue.use_queue,
        },
    )
    return settings
