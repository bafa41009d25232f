"""
Error classification for upstream failures.

Errors arrive from litellm, from the sandbox provider, or as plain dicts
from a serialized stream; fields are looked up by attribute first and then
by key so all three shapes classify the same way.
"""

from __future__ import annotations

import re
from typing import Any, Iterator, Optional

RATE_LIMIT_STATUS = 429

PER_MINUTE_WAIT = 60
PER_HOUR_WAIT = 3600 + 60
PER_DAY_WAIT = 86400 + 300
RATE_LIMIT_WAIT = 60

_RATE_LIMIT_PHRASES = ("rate limit", "rate_limit", "429")
_NOT_FOUND_PHRASES = ("not found", "doesn't exist", "expired", "404", "NotFoundError")
_TIMEOUT_PHRASES = ("connect timeout", "timed out", "timeout")
_RETRY_AFTER = re.compile(r"retry[_\s-]?after[:\s]+(\d+)", re.IGNORECASE)

_STATUS_FIELDS = ("status", "status_code", "statusCode")
_WRAPPED_FIELDS = ("last_error", "lastError", "__cause__")


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _wrapped(error: Any) -> Optional[Any]:
    for name in _WRAPPED_FIELDS:
        inner = _field(error, name)
        if inner is not None:
            return inner
    return None


def _layers(error: Any) -> Iterator[Any]:
    """The error itself, then the error it wraps (one level only)."""
    yield error
    inner = _wrapped(error)
    if inner is not None:
        yield inner


def error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or error)
    return str(error)


def has_rate_limit_phrase(message: str) -> bool:
    lowered = message.lower()
    return any(p in lowered for p in _RATE_LIMIT_PHRASES)


def is_rate_limit_error(error: Any) -> bool:
    if error is None:
        return False
    for layer in _layers(error):
        for name in _STATUS_FIELDS:
            if _field(layer, name) == RATE_LIMIT_STATUS:
                return True
    return any(has_rate_limit_phrase(error_message(layer)) for layer in _layers(error))


def is_not_found_error(error: Any) -> bool:
    """True for expired, deleted or never-existing sandboxes."""
    if error is None:
        return False
    if type(error).__name__ == "NotFoundError":
        return True
    for name in ("status_code", "statusCode", "code"):
        if _field(error, name) in (404, "404"):
            return True
    message = error_message(error)
    return any(p in message for p in _NOT_FOUND_PHRASES)


def is_timeout_error(error: Any) -> bool:
    for layer in _layers(error):
        if isinstance(layer, TimeoutError):
            return True
        if _field(layer, "code") == "UND_ERR_CONNECT_TIMEOUT":
            return True
        if any(p in error_message(layer).lower() for p in _TIMEOUT_PHRASES):
            return True
    return False


def _header(headers: Any, name: str) -> Any:
    if headers is None:
        return None
    try:
        value = headers.get(name)
    except AttributeError:
        return None
    if value is None and isinstance(headers, dict):
        # Plain dicts are case sensitive; httpx.Headers is not.
        for key, candidate in headers.items():
            if str(key).lower() == name:
                return candidate
    return value


def _as_seconds(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def extract_retry_after(error: Any) -> Optional[int]:
    """Seconds to wait before retrying, or None when the error gives no hint."""
    if error is None:
        return None

    for layer in _layers(error):
        response = _field(layer, "response")
        for headers in (
            _field(layer, "response_headers"),
            _field(layer, "responseHeaders"),
            _field(response, "headers") if response is not None else None,
        ):
            seconds = _as_seconds(_header(headers, "retry-after"))
            if seconds is not None:
                return seconds
        seconds = _as_seconds(_field(layer, "retry_after"))
        if seconds is not None:
            return seconds

    messages = [error_message(layer) for layer in _layers(error)]
    for message in messages:
        match = _RETRY_AFTER.search(message)
        if match:
            return int(match.group(1))

    for message in messages:
        lowered = message.lower()
        if "per minute" in lowered:
            return PER_MINUTE_WAIT
        if "per hour" in lowered:
            return PER_HOUR_WAIT
        if "per day" in lowered:
            return PER_DAY_WAIT

    if any(has_rate_limit_phrase(m) for m in messages):
        return RATE_LIMIT_WAIT
    return None
