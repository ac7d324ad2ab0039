"""Exponential backoff with jitter, layered on top of circuit breakers."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from .errors import CircuitBreakerError, JobCancelled, PermanentExternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 16.0) -> float:
    """Delay before retry number *attempt* (1-based), jitter included."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    return delay + random.uniform(0, delay * 0.25)


def _default_retry_on(exc: Exception) -> bool:
    return not isinstance(exc, (PermanentExternalError, JobCancelled))


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 16.0,
    retry_on: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it succeeds or *max_attempts* is exhausted.

    An open breaker is never retried: the dependency is known to be down.
    """
    should_retry = retry_on or _default_retry_on
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except CircuitBreakerError:
            raise
        except Exception as exc:
            if attempt >= max_attempts or not should_retry(exc):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt, max_attempts, exc, delay,
            )
            sleep(delay)
