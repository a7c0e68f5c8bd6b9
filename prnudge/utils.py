"""Shared utilities for PRNudge."""

import logging
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, TypeVar, Any

T = TypeVar("T")

logger = logging.getLogger("prnudge.utils")

SECONDS_PER_UNIT = {"h": 3600.0, "m": 60.0}


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
) -> Callable:
    """Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each attempt.
        exceptions: Tuple of exception types to catch and retry.

    Returns:
        Decorated function.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception = None
            current_delay = delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_attempts:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt}/{max_attempts}): {e}"
                        )
                        time.sleep(current_delay)
                        current_delay *= backoff

            raise last_exception or RuntimeError("Retry failed without exception")
        return wrapper
    return decorator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_in_unit(since: datetime, now: datetime, unit: str) -> float:
    """Elapsed time between two instants expressed in hours ('h') or minutes ('m').

    Raises:
        ValueError: If unit is not 'h' or 'm'.
    """
    if unit not in SECONDS_PER_UNIT:
        raise ValueError(f"Unsupported time unit '{unit}', expected 'h' or 'm'")
    return (now - since).total_seconds() / SECONDS_PER_UNIT[unit]
