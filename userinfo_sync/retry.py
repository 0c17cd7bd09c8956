"""
Retry utilities for directory lookups.

This module provides the failure classification and the capped exponential
backoff loop used by the directory client. Sleeping and jitter are injected
so the loop can be driven deterministically.
"""

import time
import random
import logging
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Exponent cap for the backoff multiplier (2^5 = 32x the base delay)
MAX_BACKOFF_EXPONENT = 5

# Jitter bounds applied to every computed delay
JITTER_MIN = 0.7
JITTER_MAX = 1.3

# Lower bound for the configured base backoff
MIN_BASE_BACKOFF_MS = 50


class DirectoryLookupError(Exception):
    """Base exception for directory lookup failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RetryableLookupError(DirectoryLookupError):
    """Transient failure: network error, timeout, HTTP 429 or 5xx."""
    pass


class NonRetryableLookupError(DirectoryLookupError):
    """Semantic rejection by the directory. Never retried."""
    pass


def is_retryable_status(status_code: int) -> bool:
    """
    Classify a non-2xx HTTP status.

    Args:
        status_code: HTTP status returned by the directory

    Returns:
        True for 429 and any 5xx status
    """
    return status_code == 429 or 500 <= status_code <= 599


def uniform_jitter() -> float:
    """Draw a jitter factor from [JITTER_MIN, JITTER_MAX]."""
    return random.uniform(JITTER_MIN, JITTER_MAX)


def backoff_delay_ms(base_backoff_ms: int, attempt: int, jitter: float = 1.0) -> float:
    """
    Compute the delay before the next attempt.

    Args:
        base_backoff_ms: Base delay in milliseconds
        attempt: Number of the attempt that just failed (1-based)
        jitter: Multiplicative jitter factor

    Returns:
        Delay in milliseconds, never negative
    """
    exponent = min(max(attempt, 1) - 1, MAX_BACKOFF_EXPONENT)
    return max(0.0, base_backoff_ms * (2 ** exponent) * jitter)


def retry_call(
    func: Callable[[], T],
    max_attempts: int,
    base_backoff_ms: int,
    sleep: Callable[[float], None] = time.sleep,
    jitter: Callable[[], float] = uniform_jitter,
    operation_name: str = "operation"
) -> T:
    """
    Call a function, retrying retryable lookup failures with backoff.

    NonRetryableLookupError is re-raised on its first occurrence. Any
    RetryableLookupError is retried until max_attempts is reached, after
    which the last error propagates unchanged.

    Args:
        func: Zero-argument callable performing one attempt
        max_attempts: Maximum number of attempts including the first (floored at 1)
        base_backoff_ms: Base delay in milliseconds (floored at MIN_BASE_BACKOFF_MS)
        sleep: Sleeper taking seconds
        jitter: Source of jitter factors
        operation_name: Label used in log messages

    Returns:
        Result of func
    """
    attempts = max(1, max_attempts)
    base = max(MIN_BASE_BACKOFF_MS, base_backoff_ms)

    attempt = 0
    while True:
        attempt += 1
        try:
            result = func()
            if attempt > 1:
                logger.debug(f"{operation_name} succeeded on attempt {attempt}")
            return result
        except NonRetryableLookupError:
            raise
        except RetryableLookupError as e:
            if attempt >= attempts:
                logger.debug(f"{operation_name} giving up after {attempt} attempts: {e}")
                raise
            delay_ms = backoff_delay_ms(base, attempt, jitter())
            logger.debug(f"{operation_name} failed on attempt {attempt}/{attempts} "
                         f"({e}), retrying in {delay_ms:.0f} ms")
            sleep(delay_ms / 1000.0)
