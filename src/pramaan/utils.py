"""
Utility functions and decorators for the Pramaan core.

This module provides the helpers shared across components: a timing
decorator for hot paths, identifier generation, a wall clock abstraction
that tests can freeze, and log-safe digest formatting.
"""

import functools
import hmac
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, TypeVar, Union

import structlog

from .constants import LOG_DIGEST_PREFIX

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])

# A clock returns the current timezone-aware UTC datetime
Clock = Callable[[], datetime]


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.

    Examples
    --------
    >>> @timer
    ... def slow_function():
    ...     time.sleep(1)
    ...     return "done"
    >>> result = slow_function()  # Logs execution time
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.debug(
                "Function execution completed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                success=True,
            )

            return result

        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.error(
                "Function execution failed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                error=str(e),
                error_type=type(e).__name__,
                success=False,
            )

            raise

    return wrapper


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class FrozenClock:
    """
    Manually advanced clock for tests and replaying incidents.

    Examples
    --------
    >>> clock = FrozenClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))
    >>> clock.advance(seconds=180)
    >>> clock().minute
    3
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or utc_now()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0.0, **kwargs: float) -> None:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


def generate_id() -> str:
    """
    Generate a unique identifier for challenges and attendance proofs.

    Returns
    -------
    str
        32-character hexadecimal UUID4.
    """
    return uuid.uuid4().hex


def short_digest(value: Union[bytes, str, None]) -> Optional[str]:
    """Shorten a digest for log output."""
    if value is None:
        return None
    text = value.hex() if isinstance(value, (bytes, bytearray)) else value
    return text[:LOG_DIGEST_PREFIX]


def constant_time_equals(left: bytes, right: bytes) -> bool:
    """Compare two byte strings without leaking the mismatch position."""
    return hmac.compare_digest(left, right)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds as human-readable string.

    Examples
    --------
    >>> print(format_duration(65))  # "1m 5.0s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        remaining_seconds = seconds % 60
        return f"{minutes}m {remaining_seconds:.1f}s"
    else:
        hours = int(seconds // 3600)
        remaining_minutes = int((seconds % 3600) // 60)
        remaining_seconds = seconds % 60
        return f"{hours}h {remaining_minutes}m {remaining_seconds:.1f}s"
