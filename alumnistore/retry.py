"""Bounded exponential backoff for Google Sheets RPC calls.

Failures are sorted into three buckets:

``quota``
    The provider says the quota is exhausted.  Retrying would only feed the
    storm, so the call fails immediately with :class:`QuotaExceededError`.

``transient``
    Connection resets, timeouts, recoverable rate limiting and backend
    errors.  These are retried with ``base_delay_ms * 2**(attempt - 1)``
    until ``max_attempts`` is reached.

``fatal``
    Everything else surfaces on the first failure.
"""
from __future__ import annotations

import asyncio
import logging
import re
import socket
from typing import Awaitable, Callable, Optional, TypeVar

import httplib2
from googleapiclient.errors import HttpError

from alumnistore.errors import QuotaExceededError, SheetsOperationError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 250
QUOTA_RETRY_AFTER_SECONDS = 60

QUOTA = "quota"
TRANSIENT = "transient"
FATAL = "fatal"

_QUOTA_RE = re.compile(r"quota exceeded", re.IGNORECASE)
_TRANSIENT_RE = re.compile(
    r"ECONNRESET|ENOTFOUND|ETIMEDOUT|EPIPE|socket hang up|connection reset|broken pipe|"
    r"timed out|rateLimitExceeded|backendError|internalError",
    re.IGNORECASE,
)
_TRANSIENT_STATUSES = {500, 502, 503, 504}
_TRANSIENT_TYPES = (ConnectionError, TimeoutError, socket.timeout, httplib2.HttpLib2Error)


def _http_status(exc: BaseException) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else 0
    except (TypeError, ValueError):
        return 0


def _error_text(exc: BaseException) -> str:
    parts = [str(exc)]
    if isinstance(exc, HttpError):
        content = getattr(exc, "content", b"") or b""
        if isinstance(content, bytes):
            parts.append(content.decode("utf-8", errors="replace"))
        else:
            parts.append(str(content))
    return " ".join(part for part in parts if part)


def classify_error(exc: BaseException) -> str:
    """Return ``"quota"``, ``"transient"`` or ``"fatal"`` for ``exc``."""

    text = _error_text(exc)
    if _QUOTA_RE.search(text):
        return QUOTA
    if isinstance(exc, StoreError):
        return FATAL
    if isinstance(exc, _TRANSIENT_TYPES):
        return TRANSIENT
    if _http_status(exc) in _TRANSIENT_STATUSES:
        return TRANSIENT
    if _TRANSIENT_RE.search(text):
        return TRANSIENT
    return FATAL


def backoff_delay(attempt: int, base_delay_ms: int = DEFAULT_BASE_DELAY_MS) -> float:
    """Return the delay in seconds to wait after failed ``attempt`` (1-based)."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return base_delay_ms * (2 ** (attempt - 1)) / 1000.0


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    *,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run ``operation`` applying the quota/transient/fatal retry policy."""

    sleeper = sleep or asyncio.sleep
    attempts = max(1, max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            kind = classify_error(exc)
            if kind == QUOTA:
                logger.warning("%s hit the Sheets quota; not retrying: %s", label, exc)
                raise QuotaExceededError(
                    label, exc, retry_after=QUOTA_RETRY_AFTER_SECONDS
                ) from exc
            if kind == TRANSIENT and attempt < attempts:
                delay = backoff_delay(attempt, base_delay_ms)
                logger.warning(
                    "%s transient error (%s). Retrying in %.3fs (%d/%d)",
                    label,
                    exc,
                    delay,
                    attempt,
                    attempts,
                )
                await sleeper(delay)
                continue
            break

    raise SheetsOperationError(label, last_error) from last_error


__all__ = [
    "DEFAULT_BASE_DELAY_MS",
    "DEFAULT_MAX_ATTEMPTS",
    "FATAL",
    "QUOTA",
    "TRANSIENT",
    "backoff_delay",
    "classify_error",
    "with_retry",
]
