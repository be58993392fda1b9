"""
Retry policy with exponential backoff for broker propagation.

Transient broker failures are retried at the work-item level; this module
defines the backoff schedule and the retryable / non-retryable taxonomy.
"""

import random
from dataclasses import dataclass
from typing import Optional


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of requeues before a failure is surfaced
        retry_backoff_ms: Initial backoff in milliseconds
        retry_backoff_max_ms: Maximum backoff in milliseconds
        retry_jitter_ms: Random jitter to add to backoff
    """
    max_retries: int = 5
    retry_backoff_ms: int = 100
    retry_backoff_max_ms: int = 30000
    retry_jitter_ms: int = 20


class RetryableError(Exception):
    """Exception that should trigger retry."""
    pass


class NonRetryableError(Exception):
    """Exception that should not be retried."""
    pass


class ExponentialBackoff:
    """
    Backoff schedule for requeued work items.

    Implements:
    - Exponential backoff: delay doubles each retry
    - Maximum backoff: caps delay at maximum
    - Random jitter: prevents thundering herd
    """

    def __init__(self, config: Optional[RetryConfig] = None):
        """
        Initialize backoff schedule.

        Args:
            config: Retry configuration
        """
        self.config = config or RetryConfig()

    def delay_ms(self, attempt: int) -> int:
        """
        Calculate backoff delay with exponential growth and jitter.

        Formula: min(base * 2^attempt, max) + jitter

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Backoff delay in milliseconds
        """
        exponential_backoff = self.config.retry_backoff_ms * (2 ** attempt)

        backoff = min(exponential_backoff, self.config.retry_backoff_max_ms)

        jitter = random.randint(0, self.config.retry_jitter_ms) if self.config.retry_jitter_ms else 0

        return backoff + jitter

    def delay_seconds(self, attempt: int) -> float:
        """Backoff delay for attempt in seconds."""
        return self.delay_ms(attempt) / 1000.0

    def exhausted(self, attempt: int) -> bool:
        """
        Check whether the retry budget is spent.

        Args:
            attempt: Number of requeues so far

        Returns:
            True if no retries remain
        """
        return attempt >= self.config.max_retries


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if error is retryable.

    Args:
        error: Exception to check

    Returns:
        True if error should be retried
    """
    if isinstance(error, RetryableError):
        return True

    if isinstance(error, NonRetryableError):
        return False

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    error_str = str(error).lower()

    retryable_patterns = [
        "timeout",
        "connection refused",
        "connection reset",
        "broken pipe",
        "temporarily unavailable",
        "service unavailable",
    ]

    for pattern in retryable_patterns:
        if pattern in error_str:
            return True

    return False
