# src/table_importer/utils/retry.py

import time
import logging
from functools import wraps
from typing import Callable, Type, Tuple

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_seconds: float = 3.0, factor: float = 2.0) -> float:
    """
    Delay before retry number ``attempt`` (zero-indexed).

    Example:
        backoff_delay(0) -> 3.0, backoff_delay(1) -> 6.0, backoff_delay(4) -> 48.0
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return base_seconds * factor ** attempt


def retry_with_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,)
):
    """
    Decorator that retries a function in-process with exponential backoff.

    Only meant for calls that are safe to repeat (e.g. a request that never
    reached the server). Retries of whole batches are scheduled by the
    import cycle instead, see ``backoff_delay``.

    Args:
        max_attempts: Maximum number of attempts
        initial_delay: Delay in seconds before the first retry
        backoff_factor: Multiplier for delay after each attempt
        exceptions: Tuple of exception types to catch and retry
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(f"'{func.__name__}' gave up after {max_attempts} attempts: {e}")
                        raise
                    delay = backoff_delay(attempt - 1, initial_delay, backoff_factor)
                    logger.warning(
                        f"'{func.__name__}' attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {delay:g}s"
                    )
                    time.sleep(delay)
                    attempt += 1

        return wrapper
    return decorator
