"""Retry helper for transient storage failures in background components."""

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from billing_engine.core.config import settings
from billing_engine.core.errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential delay for the given 1-based attempt, capped at ``maximum``."""
    return float(min(base * (2 ** (attempt - 1)), maximum))


def retry_storage(
    operation: Callable[[], T],
    *,
    attempts: int | None = None,
    base_backoff: float | None = None,
    max_backoff: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying on ``StorageError`` with exponential backoff.

    Only storage errors are retried; validation, transition and lookup errors
    propagate on the first occurrence.

    Args:
        operation: Zero-argument callable doing one unit of work.
        attempts: Total attempts, defaults to ``STORAGE_RETRY_ATTEMPTS``.
        base_backoff: First delay in seconds.
        max_backoff: Upper bound for a single delay.
        sleep: Sleep function, injectable for tests.

    Returns:
        Whatever ``operation`` returns.
    """
    max_attempts = attempts if attempts is not None else settings.STORAGE_RETRY_ATTEMPTS
    base = base_backoff if base_backoff is not None else settings.STORAGE_RETRY_BACKOFF_SECONDS
    cap = max_backoff if max_backoff is not None else settings.STORAGE_RETRY_BACKOFF_MAX_SECONDS

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except StorageError as exc:
            if attempt >= max_attempts:
                raise
            delay = backoff_delay(attempt, base, cap)
            jitter = delay * random.uniform(0.0, 0.3)
            logger.warning(
                "Storage error on attempt %d/%d, retrying in %.2fs: %s",
                attempt,
                max_attempts,
                delay + jitter,
                exc.detail,
            )
            sleep(delay + jitter)

    raise RuntimeError("storage_retry_exhausted")  # pragma: no cover
