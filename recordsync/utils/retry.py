"""Retry utilities with exponential backoff."""

import time
from functools import wraps
from threading import Event
from typing import Callable, Tuple, Type

import structlog

log = structlog.stdlib.get_logger()


def exponential_backoff_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    cancel_event: Event | None = None,
) -> Callable:
    """
    Decorator that retries a function with exponential backoff.

    The wait between attempts is interruptible: when ``cancel_event`` is set the
    pending wait ends and the last error is raised without further attempts.

    Args:
        max_retries: Maximum number of retry attempts after the first call
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exceptions: Tuple of exception types to catch and retry
        cancel_event: Optional event that aborts pending retries

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        log.error(
                            "max_retries_reached",
                            function=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)

                    log.warning(
                        "retrying_after_error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        error=str(e),
                    )

                    if cancel_event is None:
                        time.sleep(delay)
                    elif cancel_event.wait(delay):
                        log.warning("retry_cancelled", function=func.__name__)
                        raise

        return wrapper

    return decorator
