"""
Retry helpers for transient storage failures.

Only infrastructure errors (dropped connections, operational errors reported
by the database driver) are retried. Business outcomes such as version
conflicts are never retried here; resolving them is the caller's job.
"""

import functools
import logging
import time
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from core.config import (
    STORE_TRANSIENT_MAX_RETRIES,
    STORE_TRANSIENT_BASE_DELAY_SECONDS,
    STORE_TRANSIENT_MAX_DELAY_SECONDS,
)
from services.billing_errors import StorageUnavailableError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def is_transient_storage_error(error: BaseException) -> bool:
    """Return True for database errors worth retrying."""
    if isinstance(error, OperationalError):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return False


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff capped at max_delay. attempt is 0-based."""
    return min(base_delay * (2 ** attempt), max_delay)


def retry_on_transient_failure(
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> Callable[[F], F]:
    """
    Decorator to retry storage operations that fail for transient reasons.

    Implements capped exponential backoff. After the last attempt the
    underlying error is wrapped in StorageUnavailableError.

    Args:
        max_retries: Maximum number of retry attempts (defaults to STORE_TRANSIENT_MAX_RETRIES)
        base_delay: Base delay in seconds (defaults to STORE_TRANSIENT_BASE_DELAY_SECONDS)
        max_delay: Upper bound for a single delay (defaults to STORE_TRANSIENT_MAX_DELAY_SECONDS)
    """
    retries = STORE_TRANSIENT_MAX_RETRIES if max_retries is None else max_retries
    base = STORE_TRANSIENT_BASE_DELAY_SECONDS if base_delay is None else base_delay
    cap = STORE_TRANSIENT_MAX_DELAY_SECONDS if max_delay is None else max_delay

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except DBAPIError as e:
                    if not is_transient_storage_error(e):
                        raise
                    if attempt >= retries:
                        logger.error(
                            f"Transient storage failure in {func.__name__} persisted after "
                            f"{retries + 1} attempts: {e}"
                        )
                        raise StorageUnavailableError(
                            f"Storage unavailable during {func.__name__}",
                            {"attempts": retries + 1},
                        ) from e
                    delay = backoff_delay(attempt, base, cap)
                    logger.warning(
                        f"Transient storage failure in {func.__name__} "
                        f"(attempt {attempt + 1}/{retries + 1}), retrying in {delay:.2f} seconds: {e}"
                    )
                    time.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover
        return wrapper  # type: ignore[return-value]
    return decorator
