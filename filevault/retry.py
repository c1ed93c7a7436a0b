# retry.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import PermanentError, UploadError

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 10.0  # seconds


def is_retryable(error: BaseException) -> bool:
    """
    Default retry policy: permanent errors and uploads the backend rejected
    outright are not retried. Everything else is.
    """
    if isinstance(error, PermanentError):
        return False
    if isinstance(error, UploadError) and not error.retryable:
        return False
    return True


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    on_retry: Optional[Callable[[Exception, int], Any]] = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Runs an async operation, retrying failures with exponential backoff.

    The first retry waits `initial_delay` seconds, each following one twice as
    long, capped at `max_delay`. No jitter. After the last attempt the last
    error is re-raised as is.

    :param operation: Zero-argument coroutine factory, called once per attempt.
    :param max_attempts: Total number of calls, including the first one.
    :param on_retry: Called with (error, attempt_number) before each wait.
    :param retryable: Errors for which this returns False are raised at once.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt == max_attempts or not retryable(e):
                raise

            if on_retry is not None:
                on_retry(e, attempt)

            logging.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {delay:.1f}s..."
            )
            await sleep(delay)
            delay = min(delay * 2, max_delay)
