"""
Database utility functions and decorators.

Provides a tenacity retry decorator for transient database errors and a
small helper for turning result rows into dicts.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
)
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


RETRYABLE_EXCEPTIONS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    asyncio.TimeoutError,
    ConnectionRefusedError,
    ConnectionResetError,
)


def create_db_retry(
    max_attempts: int = 3,
    min_wait: float = 0.2,
    max_wait: float = 2,
):
    """
    Create a tenacity retry decorator for database operations.

    Waits are kept short because enforcement reads sit on the request path.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)

    Returns:
        Configured retry decorator
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.2, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


db_retry = create_db_retry()


def with_db_retry(func: Callable[..., T]) -> Callable[..., T]:
    """
    Decorator adding retry logic to an async database function.

    The whole function is re-executed on a retryable error, so it must be
    safe to run more than once.

    Usage:
        @with_db_retry
        async def fetch_row(self, user_id):
            async with db.session() as session:
                ...
    """
    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        @db_retry
        async def inner():
            return await func(*args, **kwargs)
        return await inner()

    return wrapper


def row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    """Convert a SQLAlchemy result row to a plain dict (None passes through)."""
    if row is None:
        return None
    return dict(row._mapping)
