"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Exponential backoff retry, interruptible by a cancel event
- check_cancelled: Raise if a cancel event is set
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from profilesync.sync.types import SyncCancelledError

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def check_cancelled(cancel_event: threading.Event | None) -> None:
    """Raise SyncCancelledError if cancel_event is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError("Sync cancelled")


def retry_with_backoff(
    func: Callable[[], Any],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    cancel_event: threading.Event | None = None,
) -> Any:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Tuple of exception types to retry on.
        cancel_event: Event that interrupts the backoff wait.

    Returns:
        Result of the function.

    Raises:
        SyncCancelledError: If cancel_event is set before or between attempts.
        The last exception if all retries fail.
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        check_cancelled(cancel_event)
        try:
            return func()
        except retryable_exceptions as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            if cancel_event is not None:
                if cancel_event.wait(backoff):
                    raise SyncCancelledError("Sync cancelled") from e
            else:
                time.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("Unexpected retry loop exit")
