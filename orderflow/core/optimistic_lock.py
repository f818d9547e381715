"""
Orderflow - Optimistic locking retry decorator

Orders carry a version_id column registered as the mapper's version counter,
so every UPDATE is issued as ``... WHERE id = :id AND version_id = :seen``.
When another request committed first the UPDATE matches no row and SQLAlchemy
raises StaleDataError; the decorated operation is then re-run from a fresh
read with exponential backoff + jitter.
"""
import asyncio
import random
import functools
import logging

from sqlalchemy.orm.exc import StaleDataError

from orderflow.core.config import get_settings
from orderflow.core.errors import ConflictError

settings = get_settings()
logger = logging.getLogger(__name__)


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    base_delay = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
    max_delay = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


def with_optimistic_retry(max_retries: int | None = None):
    """
    Decorator for async read-modify-write operations on versioned rows.
    The wrapped coroutine must roll its session back before letting
    StaleDataError escape, so the retry starts from a clean transaction.

    Usage:
        @with_optimistic_retry()
        async def confirm_payment(db, order_id, ...):
            ...
    """
    _max = max_retries or settings.OPT_LOCK_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return await func(*args, **kwargs)
                except StaleDataError as exc:
                    if attempt == _max:
                        logger.error(
                            "Optimistic lock conflict unresolved after %d retries for %s",
                            _max, func.__name__,
                        )
                        raise ConflictError(
                            "The order was modified concurrently; please retry."
                        ) from exc
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "StaleDataError in %s on attempt %d/%d, retrying in %.3fs",
                        func.__name__, attempt, _max, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
