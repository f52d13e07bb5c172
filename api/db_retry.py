"""
Retry helpers for transient database errors.

Both backends hit short-lived contention under concurrent uploads and worker
claims:

SQLite:
- "database is locked" / "SQLITE_BUSY" while another connection writes

PostgreSQL:
- Deadlocks (40P01) and serialization failures (40001)
- Dropped or refused connections during failover

Callers either wrap a coroutine with execute_with_retry / @with_db_retry or use
the fetch_* / db_execute_with_retry shortcuts, which also log slow queries.
"""

import asyncio
import functools
import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

from api.database import database

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their (truncated) SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_SQLITE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

_POSTGRES_PATTERNS = (
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
    "canceling statement due to lock timeout",
)

_RETRYABLE_SQLSTATES = ("40P01", "40001")


class DatabaseRetryableError(Exception):
    """Raised when a database operation still fails after all retries."""

    pass


# Short name used by the HTTP exception handler
DatabaseLockedError = DatabaseRetryableError


def is_retryable_database_error(exc: BaseException) -> bool:
    """Return True if exc (or anything in its __cause__ chain) is transient."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in _SQLITE_PATTERNS + _POSTGRES_PATTERNS):
        return True

    # asyncpg and psycopg2 expose the SQLSTATE code
    if getattr(exc, "sqlstate", None) in _RETRYABLE_SQLSTATES:
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def _backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    # ±25% jitter so competing workers don't retry in lockstep
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable,
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Await func(*args, **kwargs), retrying transient database errors.

    Args:
        func: Async callable to execute
        max_retries: Retries after the first attempt
        base_delay: Initial delay between retries (seconds)
        max_delay: Upper bound on a single delay (seconds)

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            last_exception = e

            if attempt < max_retries:
                delay = _backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


def with_db_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """
    Decorator form of execute_with_retry.

    Usage:
        @with_db_retry()
        async def claim():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await execute_with_retry(
                func,
                *args,
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                **kwargs,
            )

        return wrapper

    return decorator


# =============================================================================
# Database Operation Wrappers
# =============================================================================


async def _timed(method: str, query, *args) -> Any:
    start_time = time.monotonic()
    result = await getattr(database, method)(query, *args)
    elapsed = time.monotonic() - start_time
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Fetch a single row (or None) with retry."""
    return await execute_with_retry(_timed, "fetch_one", query, max_retries=max_retries)


async def fetch_all_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Fetch all rows with retry."""
    return await execute_with_retry(_timed, "fetch_all", query, max_retries=max_retries)


async def fetch_val_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Fetch a scalar with retry."""
    return await execute_with_retry(_timed, "fetch_val", query, max_retries=max_retries)


async def db_execute_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """
    Execute a write with retry.

    Returns:
        The driver result (the new row id for inserts)
    """
    if values is not None:
        return await execute_with_retry(_timed, "execute", query, values, max_retries=max_retries)
    return await execute_with_retry(_timed, "execute", query, max_retries=max_retries)
