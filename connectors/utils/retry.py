"""
Retry helpers for connector calls.
"""

import functools
import logging
import random
import time
from typing import Callable, Tuple, Type

logger = logging.getLogger(__name__)


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable:
    """
    Retry a blocking call with exponential backoff.

    Only the listed exception types are retried; anything else propagates
    immediately. After ``max_retries`` retries the last exception is re-raised.

    :param max_retries: Number of retries after the first attempt.
    :param initial_delay: Delay before the first retry, in seconds.
    :param max_delay: Upper bound for a single delay.
    :param backoff_factor: Multiplier applied to the delay after each retry.
    :param jitter: Randomize each delay between 50% and 100% of its value.
    :param exceptions: Exception types that trigger a retry.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = initial_delay
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        logger.error(
                            f"{func.__name__} failed after {attempt + 1} attempts: {e}"
                        )
                        raise
                    sleep_for = min(delay, max_delay)
                    if jitter:
                        sleep_for *= 0.5 + random.random() / 2
                    attempt += 1
                    logger.warning(
                        f"{func.__name__} failed ({e}); retry {attempt}/{max_retries} "
                        f"in {sleep_for:.1f}s"
                    )
                    time.sleep(sleep_for)
                    delay *= backoff_factor

        return wrapper

    return decorator
