"""
Classification of raw failures into normalized errors.

``classify`` is pure: it never performs I/O and never logs. It is called once,
as close to the failure as practical, and the resulting ``retryable`` verdict
is trusted by every downstream consumer.
"""

import asyncio
import errno
import socket
from typing import Any, Dict, Optional, Tuple

import httpx

from repo_resilience.exceptions import ErrorCode, NormalizedError

TRANSIENT_TRANSPORT_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED"})

_TRANSIENT_ERRNOS = {
    errno.ECONNRESET: "ECONNRESET",
    errno.ETIMEDOUT: "ETIMEDOUT",
    errno.ECONNREFUSED: "ECONNREFUSED",
}

_STATUS_ATTRIBUTES = ("status_code", "status", "statusCode")

# First match wins, checked against the lower-cased message
_MESSAGE_RULES: Tuple[Tuple[Tuple[str, ...], ErrorCode], ...] = (
    (("rate limit", "429"), ErrorCode.RATE_LIMIT),
    (("timeout", "timed out"), ErrorCode.TIMEOUT),
    (("not found", "404"), ErrorCode.CLIENT_INPUT_ERROR),
    (("unauthorized", "401"), ErrorCode.CLIENT_INPUT_ERROR),
    (("forbidden", "403"), ErrorCode.CLIENT_INPUT_ERROR),
    (("network", "fetch failed"), ErrorCode.NETWORK_TRANSIENT),
)


def classify(raw: Any) -> NormalizedError:
    """
    Turn any raised value into a ``NormalizedError``.

    Priority order:
        1. an existing ``NormalizedError`` is returned unchanged;
        2. an explicit HTTP status (429, other 4xx, 5xx);
        3. a transport error code or a Python transport/timeout exception;
        4. keywords in the message;
        5. ``UNKNOWN``, treated as retryable.
    """
    if isinstance(raw, NormalizedError):
        return raw

    message = _raw_message(raw)
    details: Dict[str, Any] = {"exception_type": type(raw).__name__}

    status, source = _extract_status(raw)
    if status is not None:
        details["status_code"] = status
        if status == 429:
            retry_after = _extract_retry_after(raw, source)
            if retry_after is not None:
                details["retry_after"] = retry_after
            return NormalizedError(ErrorCode.RATE_LIMIT, message, status_code=status, details=details)
        if 400 <= status < 500:
            return NormalizedError(ErrorCode.CLIENT_INPUT_ERROR, message, status_code=status, details=details)
        if status >= 500:
            return NormalizedError(ErrorCode.SERVER_TRANSIENT, message, status_code=status, details=details)

    transport_code = _extract_transport_code(raw)
    if transport_code is not None:
        details["transport_code"] = transport_code
        return NormalizedError(ErrorCode.NETWORK_TRANSIENT, message, details=details)

    if isinstance(raw, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return NormalizedError(ErrorCode.NETWORK_TRANSIENT, message, details=details)

    if isinstance(raw, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
        return NormalizedError(ErrorCode.TIMEOUT, message, details=details)

    lowered = message.lower()
    for keywords, code in _MESSAGE_RULES:
        if any(keyword in lowered for keyword in keywords):
            return NormalizedError(code, message, details=details)

    return NormalizedError(ErrorCode.UNKNOWN, message, details=details)


def is_retryable(raw: Any) -> bool:
    return classify(raw).retryable


def _raw_message(raw: Any) -> str:
    if raw is None:
        return "Unknown error"
    if isinstance(raw, BaseException):
        return str(raw) or type(raw).__name__
    for attr in ("status_text", "reason_phrase", "statusText", "message"):
        value = getattr(raw, attr, None)
        if isinstance(value, str) and value:
            return value
    return str(raw)


def _as_status(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599:
        return value
    return None


def _extract_status(raw: Any) -> Tuple[Optional[int], Any]:
    """Find an HTTP-like status on the error itself or on its ``response``."""
    for source in (raw, getattr(raw, "response", None)):
        if source is None:
            continue
        for attr in _STATUS_ATTRIBUTES:
            status = _as_status(getattr(source, attr, None))
            if status is not None:
                return status, source
        # urllib's HTTPError and similar expose the status as an integer ``code``
        status = _as_status(getattr(source, "code", None))
        if status is not None:
            return status, source
    return None, None


def _extract_retry_after(raw: Any, source: Any) -> Optional[Any]:
    for candidate in (raw, source):
        value = getattr(candidate, "retry_after", None)
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            return _parse_retry_after(value)

    headers = getattr(source, "headers", None)
    if headers is not None and hasattr(headers, "get"):
        value = headers.get("Retry-After") or headers.get("retry-after")
        if value is not None:
            return _parse_retry_after(value)
    return None


def _parse_retry_after(value: Any) -> Any:
    try:
        return float(value)
    except (TypeError, ValueError):
        # HTTP-date form is kept verbatim
        return value


def _extract_transport_code(raw: Any) -> Optional[str]:
    code = getattr(raw, "code", None)
    if isinstance(code, str) and code.upper() in TRANSIENT_TRANSPORT_CODES:
        return code.upper()

    if isinstance(raw, socket.gaierror):
        return "ENOTFOUND"

    if isinstance(raw, OSError) and raw.errno in _TRANSIENT_ERRNOS:
        return _TRANSIENT_ERRNOS[raw.errno]

    return None
