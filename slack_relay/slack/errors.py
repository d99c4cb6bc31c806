"""Retry predicates and policies for Slack and plain HTTP calls.

WHY: The Backoff Executor is generic; deciding which failures are worth
retrying is platform knowledge. Slack signals transient trouble with the
error codes ``ratelimited``, ``timeout`` and ``internal_error`` and, when
rate limiting, a ``Retry-After`` header in seconds.

RULES:
- Only SlackApiError with a transient code is retryable for Slack calls
- Retry-After (header or ``retry_after`` body field) is converted to ms
- For raw HTTP: transport errors, 429 and 5xx are retryable; 4xx are not
"""

from __future__ import annotations

from typing import Optional

import httpx
from slack_sdk.errors import SlackApiError

from slack_relay.core.errors import SourceFetchError
from slack_relay.core.retry import RetryPolicy

SLACK_RETRYABLE_CODES = frozenset({"ratelimited", "timeout", "internal_error"})


def slack_error_code(error: BaseException) -> Optional[str]:
    if not isinstance(error, SlackApiError) or error.response is None:
        return None
    code = error.response.get("error")
    return code if isinstance(code, str) else None


def is_slack_retryable(error: BaseException) -> bool:
    return slack_error_code(error) in SLACK_RETRYABLE_CODES


def slack_retry_after_ms(error: BaseException) -> Optional[float]:
    """Server-supplied delay in ms, or None when Slack sent no hint."""
    if not isinstance(error, SlackApiError) or error.response is None:
        return None

    raw = None
    headers = getattr(error.response, "headers", None) or {}
    for name in ("Retry-After", "retry-after"):
        if name in headers:
            raw = headers[name]
            break
    if raw is None:
        raw = error.response.get("retry_after")

    try:
        seconds = float(raw[0] if isinstance(raw, list) else raw)
    except (TypeError, ValueError):
        return None
    return seconds * 1000 if seconds > 0 else None


def is_http_retryable(error: BaseException) -> bool:
    if isinstance(error, SourceFetchError):
        return error.status == 429 or error.status >= 500
    return isinstance(error, httpx.TransportError)


SLACK_RETRY_POLICY = RetryPolicy(
    attempts=3,
    base_delay_ms=500,
    max_delay_ms=4000,
    jitter=0.2,
    is_retryable=is_slack_retryable,
    get_retry_after_ms=slack_retry_after_ms,
)

HTTP_RETRY_POLICY = RetryPolicy(
    attempts=3,
    base_delay_ms=500,
    max_delay_ms=4000,
    jitter=0.2,
    is_retryable=is_http_retryable,
)
