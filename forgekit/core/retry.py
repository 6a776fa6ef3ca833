"""Retry helpers with exponential backoff.

Used by the build step and the upload step; attempts run sequentially.
"""
import functools
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from forgekit.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_call(
    func: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    name: Optional[str] = None,
) -> T:
    """Call ``func`` until it succeeds or attempts run out.

    The first attempt runs immediately; the wait before each further attempt
    starts at ``delay`` and is multiplied by ``backoff`` every time.

    Args:
        func: Zero-argument callable to invoke
        max_attempts: Maximum number of attempts (including the first)
        delay: Initial delay in seconds between attempts
        backoff: Backoff multiplier for each retry
        exceptions: Exception types that are candidates for a retry
        should_retry: Optional predicate; returning False re-raises at once
        on_retry: Callback receiving (attempt, error, next_delay) before sleeping
        sleep: Sleep function (injected in tests)
        name: Label used in log messages

    Returns:
        Whatever ``func`` returns

    Raises:
        The last exception raised by ``func``
    """
    label = name or getattr(func, "__name__", "operation")
    current_delay = delay

    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise

            if attempt == max_attempts:
                logger.debug(f"{label} failed after {max_attempts} attempts: {e}")
                raise

            logger.warning(f"{label} failed (attempt {attempt}/{max_attempts}): {e}")
            logger.debug(f"Retrying in {current_delay:.1f}s...")
            if on_retry is not None:
                on_retry(attempt, e, current_delay)
            sleep(current_delay)
            current_delay *= backoff

    raise ValueError("max_attempts must be at least 1")


def retry(
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
):
    """Retry decorator with exponential backoff.

    Example:
        @retry(max_attempts=3, delay=5, exceptions=(NetworkError,))
        def fetch_deployment(slug):
            ...
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return retry_call(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                delay=delay,
                backoff=backoff,
                exceptions=exceptions,
                name=func.__name__,
            )

        return wrapper

    return decorator
