"""
Retry utility with exponential backoff for customer directory calls.

OAuth token exchange and SMS vendor calls do not go through here: OAuth is a
single attempt, and SMS retries belong to the job queue.
"""
import asyncio
import random
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar('T')


def should_retry_error(error: Exception) -> bool:
    """
    Determine if an error should be retried.

    Retries on:
    - Timeout errors
    - Network errors (connection refused/reset)
    - 429 Too Many Requests
    - 5xx server errors

    Does NOT retry on other 4xx client errors or application errors.
    """
    if isinstance(error, httpx.TimeoutException):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return status_code == 429 or 500 <= status_code < 600

    if isinstance(error, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return True

    return False


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    **kwargs
) -> T:
    """
    Retry an async function with capped exponential backoff.

    Args:
        func: Async function to retry
        *args, **kwargs: Arguments to pass to func
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 10.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter to delays (default: True)

    Returns:
        Result of func if successful

    Raises:
        Last exception if all attempts fail, or the first non-retryable one
    """
    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not should_retry_error(e):
                logger.debug(f"Error {e} is not retryable, stopping")
                raise

            if attempt >= max_attempts:
                logger.warning(f"Max attempts ({max_attempts}) reached, giving up")
                break

            delay = min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)

            # A 429 may tell us exactly how long to wait
            if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
                retry_after = e.response.headers.get("Retry-After")
                if retry_after and retry_after.replace(".", "", 1).isdigit():
                    delay = min(float(retry_after), max_delay)

            if jitter:
                delay += delay * 0.1 * random.random()

            logger.info(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f}s"
            )

            await asyncio.sleep(delay)

    raise last_exception
