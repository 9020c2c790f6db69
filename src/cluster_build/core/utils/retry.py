"""Retry logic with exponential backoff for transient failures."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from cluster_build.exceptions import RetryExhaustedError, TransportError

from .backoff import get_backoff_delay

logger = logging.getLogger(__name__)


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    max_attempts: int = 3,
    min_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: float = 0.0,
    retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
    **kwargs: Any,
) -> Any:
    """Execute async function with retry and exponential backoff.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_attempts: Maximum number of attempts, first one included (default: 3)
        min_delay: Delay after the first failed attempt in seconds (default: 0.5)
        max_delay: Maximum delay between retries (default: 10.0)
        jitter: Jitter factor (0.0-1.0) to add randomness (default: 0.0)
        retryable_exceptions: Tuple of exception types to retry on
            (default: (TransportError, ConnectionError))
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful function call

    Raises:
        RetryExhaustedError: If max attempts exceeded; chained to the last error
        Exception: If non-retryable exception occurs
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    if retryable_exceptions is None:
        retryable_exceptions = (TransportError, ConnectionError)

    name = getattr(func, "__name__", repr(func))

    for attempt in range(max_attempts):
        try:
            result = await func(*args, **kwargs)

            if attempt > 0:
                logger.info(f"Retry succeeded on attempt {attempt + 1}/{max_attempts}")

            return result

        except retryable_exceptions as e:
            if attempt >= max_attempts - 1:
                logger.warning(f"Max attempts ({max_attempts}) exhausted for {name}")
                raise RetryExhaustedError(
                    f"Failed after {max_attempts} attempts: {e}",
                    {"attempts": max_attempts},
                ) from e

            delay = get_backoff_delay(
                attempt, min_delay=min_delay, max_delay=max_delay, jitter=jitter
            )
            logger.debug(
                f"Attempt {attempt + 1}/{max_attempts} of {name} failed ({e}), "
                f"retrying after {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    # Should never reach here
    raise RetryExhaustedError(f"Failed after {max_attempts} attempts")
