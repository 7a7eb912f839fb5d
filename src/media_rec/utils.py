"""Small helpers shared by the store and batch jobs."""

import time
import logging
from functools import wraps
from typing import TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Call the wrapped function up to `max_retries` times, sleeping
    initial_delay, initial_delay * backoff_factor, ... between attempts.

    Only `exceptions` are retried; the last one is re-raised.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} gave up after {attempt} attempts: {e}")
                        raise
                    logger.warning(f"{func.__name__} attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
                    time.sleep(delay)
                    delay *= backoff_factor

        return wrapper
    return decorator


def chunked(items: list, size: int):
    """Yield successive slices of at most `size` items."""
    for i in range(0, len(items), size):
        yield items[i:i + size]
