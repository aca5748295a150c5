"""Retry logic with capped exponential backoff.

This module provides:
- retry_with_backoff: Exponential backoff retry with cooperative cancellation
- backoff_delays: The delay sequence used between attempts
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import Any

from shelfsync.client.sync.types import SyncCancelledError, TransientNetworkError

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def backoff_delays(
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> Iterator[float]:
    """Yield an endless sequence of capped exponential delays."""
    backoff = initial_backoff
    while True:
        yield backoff
        backoff = min(backoff * backoff_multiplier, max_backoff)


def retry_with_backoff(
    func: Callable[[], Any],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (TransientNetworkError,),
    should_cancel: Callable[[], bool] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Tuple of exception types to retry on.
        should_cancel: Polled before each retry; a True result aborts.
        on_retry: Called with (attempt, error, delay) before sleeping.
        sleep: Sleep function (replaced in tests).

    Returns:
        Result of the function.

    Raises:
        SyncCancelledError: If cancellation was requested between attempts.
        The last exception if all retries fail.
    """
    delays = backoff_delays(initial_backoff, max_backoff, backoff_multiplier)

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retryable_exceptions as e:
            if attempt == max_retries:
                logger.error("All %d retries failed: %s", max_retries, e)
                raise

            delay = next(delays)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.1fs...",
                attempt + 1,
                max_retries + 1,
                e,
                delay,
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)
            if should_cancel and should_cancel():
                raise SyncCancelledError("Cancelled while waiting to retry") from e
            sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")
