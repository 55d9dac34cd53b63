"""
Utility functions for error logging and correlation context.

This module provides helper functions for consistent error logging
throughout the resilience layer.
"""

import logging
from contextvars import ContextVar
from typing import Any, Dict, Optional
from uuid import uuid4

from repo_resilience.exceptions import NormalizedError

# Context variables for request tracking
correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='')
request_id_var: ContextVar[str] = ContextVar('request_id', default='')

logger = logging.getLogger(__name__)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set correlation ID in context, generating one if not given."""
    correlation_id = correlation_id or str(uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from context."""
    return correlation_id_var.get() or None


def set_request_id(request_id: str) -> None:
    """Set request ID in context."""
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    """Get request ID from context."""
    return request_id_var.get() or None


def log_normalized_error(
    error: NormalizedError,
    message: Optional[str] = None,
    extra_context: Optional[Dict[str, Any]] = None,
    level: int = logging.ERROR,
    log: Optional[logging.Logger] = None,
) -> None:
    """
    Log a normalized error with structured context information.

    The internal message and the chained traceback go to the log only;
    callers expose ``error.user_message`` instead.

    Args:
        error: The classified error
        message: Optional custom message
        extra_context: Additional context to include in logs
        level: Logging level to use
        log: Logger to write to (defaults to this module's logger)
    """
    context = {
        "correlation_id": get_correlation_id(),
        "request_id": get_request_id(),
    }
    error_fields = error.to_dict()
    # "message" is reserved on LogRecord
    error_fields["error_message"] = error_fields.pop("message")
    context.update(error_fields)
    if extra_context:
        context.update(extra_context)

    (log or logger).log(
        level,
        message or f"{error.code.value}: {error.message}",
        extra=context,
        exc_info=(type(error), error, error.__traceback__) if level >= logging.ERROR else None,
    )
