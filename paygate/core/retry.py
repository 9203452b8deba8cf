"""
Retry helpers for outbound HTTP calls.

Transport errors, 429 and 5xx responses are retried with exponential backoff.
Anything else is returned to the caller as-is.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx


logger = logging.getLogger("paygate.retry")

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def compute_backoff(attempt: int, base: float = 0.5, cap: float = 8.0) -> float:
    """Exponential backoff in seconds, capped."""
    return min(base * (2 ** attempt), cap)


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS or status_code >= 500


def send_with_retry(
    send: Callable[[], httpx.Response],
    *,
    max_retries: int,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
    backoff_base: float = 0.5,
) -> httpx.Response:
    """Call `send` until it yields a non-retryable response or retries run out.

    The last retryable response is returned; the last transport error is raised.
    """
    attempt = 0
    while True:
        try:
            response = send()
        except httpx.TransportError as exc:
            if attempt >= max_retries:
                raise
            delay = compute_backoff(attempt, backoff_base)
            logger.warning(f"{label} transport error, retrying in {delay:.1f}s: {exc}")
        else:
            if not is_retryable_status(response.status_code) or attempt >= max_retries:
                return response
            delay = compute_backoff(attempt, backoff_base)
            retry_after: Optional[str] = response.headers.get("retry-after")
            if retry_after and retry_after.isdigit():
                delay = max(delay, float(retry_after))
            logger.warning(f"{label} returned {response.status_code}, retrying in {delay:.1f}s")
        attempt += 1
        sleep(delay)
