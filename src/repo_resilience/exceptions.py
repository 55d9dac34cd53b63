"""
Normalized error type for the resilience layer.

Every failure coming back from an external dependency is converted into a
single ``NormalizedError`` before any retry or fallback decision is made.
The error carries a closed error code, a safe message for display, a
recovery hint and a retryability verdict fixed at construction time.
"""

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, NamedTuple, Optional


class ErrorCode(str, Enum):
    """Closed taxonomy of failure kinds."""

    CLIENT_INPUT_ERROR = "CLIENT_INPUT_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_TRANSIENT = "NETWORK_TRANSIENT"
    SERVER_TRANSIENT = "SERVER_TRANSIENT"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"

    # Resource kinds raised by this package's own cache and pool wrappers
    CACHE_UNAVAILABLE = "CACHE_UNAVAILABLE"
    POOL_EXHAUSTED = "POOL_EXHAUSTED"


class ErrorCatalogEntry(NamedTuple):
    user_message: str
    recovery_action: str
    status_code: Optional[int]
    retryable: bool


ERROR_CATALOG: Dict[ErrorCode, ErrorCatalogEntry] = {
    ErrorCode.CLIENT_INPUT_ERROR: ErrorCatalogEntry(
        "The request could not be completed with the provided input.",
        "Check the request and try again",
        400,
        False,
    ),
    ErrorCode.RATE_LIMIT: ErrorCatalogEntry(
        "Rate limit exceeded. Please try again later.",
        "Wait for the rate limit to reset",
        429,
        False,
    ),
    ErrorCode.NETWORK_TRANSIENT: ErrorCatalogEntry(
        "A network error occurred. Please check your connection.",
        "Check your internet connection and retry",
        None,
        True,
    ),
    ErrorCode.SERVER_TRANSIENT: ErrorCatalogEntry(
        "An external service is temporarily unavailable.",
        "Please try again in a few moments",
        502,
        True,
    ),
    ErrorCode.TIMEOUT: ErrorCatalogEntry(
        "The request took too long to complete.",
        "Please try again or try a smaller request",
        504,
        True,
    ),
    ErrorCode.UNKNOWN: ErrorCatalogEntry(
        "An unexpected error occurred. Please try again.",
        "Please try again or contact support",
        500,
        True,
    ),
    ErrorCode.CACHE_UNAVAILABLE: ErrorCatalogEntry(
        "The cache is temporarily unavailable.",
        "No action needed, data is served from the source",
        503,
        True,
    ),
    ErrorCode.POOL_EXHAUSTED: ErrorCatalogEntry(
        "All connections are currently busy.",
        "Please try again in a few moments",
        503,
        True,
    ),
}


class NormalizedError(Exception):
    """
    Single error shape for all external-dependency failures.

    Instances are immutable: fields are exposed as read-only properties and
    ``details`` is a read-only mapping. ``retryable`` is decided once, when the
    error is built, and consumers trust it instead of re-deriving it.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        user_message: Optional[str] = None,
        status_code: Optional[int] = None,
        recovery_action: Optional[str] = None,
        retryable: Optional[bool] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        entry = ERROR_CATALOG[code]
        self._code = code
        self._message = message
        self._user_message = user_message or entry.user_message
        self._status_code = status_code if status_code is not None else entry.status_code
        self._recovery_action = recovery_action or entry.recovery_action
        self._retryable = entry.retryable if retryable is None else retryable
        self._details = MappingProxyType(dict(details or {}))
        self._timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def code(self) -> ErrorCode:
        return self._code

    @property
    def message(self) -> str:
        return self._message

    @property
    def user_message(self) -> str:
        return self._user_message

    @property
    def status_code(self) -> Optional[int]:
        return self._status_code

    @property
    def recovery_action(self) -> str:
        return self._recovery_action

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def details(self) -> Mapping[str, Any]:
        return self._details

    @property
    def timestamp(self) -> str:
        return self._timestamp

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a dictionary for structured logging."""
        return {
            "error_code": self._code.value,
            "message": self._message,
            "user_message": self._user_message,
            "status_code": self._status_code,
            "recovery_action": self._recovery_action,
            "retryable": self._retryable,
            "details": dict(self._details),
            "timestamp": self._timestamp,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Fields that are safe to return to an end user."""
        return {
            "error_code": self._code.value,
            "message": self._user_message,
            "recovery_action": self._recovery_action,
            "retryable": self._retryable,
        }

    def __str__(self) -> str:
        return f"[{self._code.value}] {self._message}"

    def __repr__(self) -> str:
        return f"NormalizedError(code={self._code.value!r}, message={self._message!r})"

    def __reduce__(self):
        return (
            _rebuild_normalized_error,
            (
                self._code,
                self._message,
                self._user_message,
                self._status_code,
                self._recovery_action,
                self._retryable,
                dict(self._details),
            ),
        )


def _rebuild_normalized_error(code, message, user_message, status_code, recovery_action, retryable, details):
    return NormalizedError(
        code,
        message,
        user_message=user_message,
        status_code=status_code,
        recovery_action=recovery_action,
        retryable=retryable,
        details=details,
    )


def rate_limit_error(message: str, **details: Any) -> NormalizedError:
    """Build a ``RATE_LIMIT`` error carrying a wait hint in ``details``."""
    return NormalizedError(ErrorCode.RATE_LIMIT, message, details=details)


def timeout_error(message: str, timeout_seconds: float) -> NormalizedError:
    return NormalizedError(
        ErrorCode.TIMEOUT,
        message,
        details={"timeout_seconds": timeout_seconds},
    )


def cache_unavailable_error(message: str, **details: Any) -> NormalizedError:
    return NormalizedError(ErrorCode.CACHE_UNAVAILABLE, message, details=details)


def pool_exhausted_error(message: str, **details: Any) -> NormalizedError:
    return NormalizedError(ErrorCode.POOL_EXHAUSTED, message, details=details)
