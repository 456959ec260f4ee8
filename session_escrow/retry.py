"""
retry.py - Bounded retry for transient storage failures

Only TransientStorageError is retried. Permanent errors (IllegalTransition,
InsufficientFunds, InvalidEscrowState, NotFound, ...) propagate on the first
attempt.
"""

from __future__ import annotations
from typing import Callable, TypeVar
import logging
import time

from .core import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_transient(
    operation: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.05,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run operation, retrying transient storage failures with exponential backoff.

    Args:
        operation: Zero-argument callable to run
        attempts: Total attempts including the first
        base_delay: Delay before the second attempt, doubled each time
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever operation returns

    Raises:
        TransientStorageError: If every attempt failed transiently
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(attempts):
        try:
            return operation()
        except TransientStorageError as e:
            if attempt == attempts - 1:
                logger.error("storage still failing after %d attempts: %s", attempts, e)
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "transient storage failure (attempt %d/%d), retrying in %.3fs: %s",
                attempt + 1, attempts, delay, e,
            )
            sleep(delay)
    raise AssertionError("unreachable")
