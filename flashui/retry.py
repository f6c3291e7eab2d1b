"""Bounded exponential backoff for remote generation calls.

Every call to the generation service goes through ``with_retry`` (or the
``retrying`` decorator). Errors are split into two classes:

- transient: rate limiting, quota or resource exhaustion, overload and
  deadline conditions. These are retried after ``delay + jitter`` with the
  base delay doubling each time.
- everything else: re-raised on the first occurrence without touching the
  remaining budget.

When the budget runs out on transient errors the caller gets a
``QuotaExhaustedError`` chained to the last underlying error.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import os
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

try:
    RETRY_MAX = int(os.getenv("RETRY_MAX", "6"))
except ValueError:
    RETRY_MAX = 6
try:
    RETRY_INITIAL_DELAY_SECS = float(os.getenv("RETRY_INITIAL_DELAY_MS", "3000")) / 1000.0
except ValueError:
    RETRY_INITIAL_DELAY_SECS = 3.0
try:
    RETRY_JITTER_SECS = float(os.getenv("RETRY_JITTER_MS", "2000")) / 1000.0
except ValueError:
    RETRY_JITTER_SECS = 2.0

# Matched case-insensitively against the error text and status
TRANSIENT_MARKERS = ("429", "RESOURCE_EXHAUSTED", "QUOTA", "LIMIT", "503", "OVERLOADED", "DEADLINE")
TRANSIENT_STATUS_CODES = frozenset({429, 503})


class QuotaExhaustedError(RuntimeError):
    """Every attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            "Maximum API retries reached. Please check your quota or wait a moment."
        )
        self.attempts = attempts
        self.last_error = last_error


def _status_of(exc: BaseException) -> Any:
    for attr in ("status", "code", "status_code"):
        value = getattr(exc, attr, None)
        if value is not None:
            return value
    return None


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` looks like a rate-limit, overload or deadline failure."""
    status = _status_of(exc)
    if isinstance(status, int) and status in TRANSIENT_STATUS_CODES:
        return True
    text = str(exc or "").upper()
    if status is not None:
        text = f"{text} {status}".upper()
    return any(marker in text for marker in TRANSIENT_MARKERS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: Optional[int] = None,
    initial_delay: Optional[float] = None,
    *,
    jitter: Optional[float] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    label: str = "call",
) -> T:
    """Run ``operation`` with up to ``retries`` extra attempts on transient errors.

    Delays are in seconds. ``sleep`` defaults to ``asyncio.sleep``; tests pass
    a recorder instead.
    """
    retries = RETRY_MAX if retries is None else max(0, int(retries))
    delay = RETRY_INITIAL_DELAY_SECS if initial_delay is None else float(initial_delay)
    jitter = RETRY_JITTER_SECS if jitter is None else float(jitter)
    sleep = sleep or asyncio.sleep

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= retries:
                log.error("retry: %s failed after %d attempts: %s", label, attempt + 1, exc)
                raise QuotaExhaustedError(attempt + 1, exc) from exc
            wait_for = delay + random.uniform(0, jitter)
            log.warning(
                "retry: %s transient error (attempt %d/%d), retrying in %.0fms: %s",
                label,
                attempt + 1,
                retries + 1,
                wait_for * 1000,
                exc,
            )
            await sleep(wait_for)
            delay *= 2
            attempt += 1


def retrying(
    retries: Optional[int] = None,
    initial_delay: Optional[float] = None,
    **options: Any,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of ``with_retry`` for async functions."""

    def decorate(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        call_options = {"label": fn.__name__, **options}

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                lambda: fn(*args, **kwargs),
                retries,
                initial_delay,
                **call_options,
            )

        return wrapper

    return decorate
