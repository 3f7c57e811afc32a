"""Exponential backoff retry policy for transient store failures.

Retry is a caller-side concern: store methods never retry themselves.
Celery tasks and the migration engine use the schedule below.
"""

from __future__ import annotations

import asyncio

from sqlalchemy.exc import DBAPIError, OperationalError

from app.core.errors import InternalError

BASE_DELAY_SECONDS = 1.0
BACKOFF_MULTIPLIER = 2.0
MAX_DELAY_SECONDS = 10.0
MAX_ATTEMPTS = 3


def backoff_delay(
    attempt: int,
    *,
    base: float = BASE_DELAY_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
    cap: float = MAX_DELAY_SECONDS,
) -> float:
    """Delay before retry number ``attempt`` (1-based): 1s, 2s, 4s, ... capped."""
    if attempt < 1:
        return 0.0
    return min(cap, base * multiplier ** (attempt - 1))


def is_retryable(exc: BaseException) -> bool:
    """True for timeouts, dropped connections and other transient store failures."""
    if isinstance(exc, InternalError):
        return exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    return False


def should_retry(exc: BaseException, attempt: int, max_attempts: int = MAX_ATTEMPTS) -> bool:
    """Determine if a failed operation should be attempted again."""
    if attempt >= max_attempts:
        return False
    return is_retryable(exc)
