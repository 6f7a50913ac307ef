"""Bounded retry policies with exponential backoff.

Each pipeline stage owns a :class:`RetryStrategy`; a :class:`RetryContext`
drives one stage execution through it. Time is injected (``sleep``) so
retry behaviour is testable without real waits or network calls.

A strategy with ``max_retries = n`` permits at most ``n + 1`` attempts in
total: the first attempt plus ``n`` retries.

Example:
    >>> from release_spine.execution.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=1.0, jitter=False)
    >>> [strategy.next_delay(n) for n in range(4)]
    [1.0, 2.0, 4.0, 8.0]
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from release_spine.core.errors import is_retryable

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    max_retries: int

    @abstractmethod
    def next_delay(self, retry: int) -> float:
        """Calculate delay before a retry.

        Args:
            retry: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds before that retry
        """
        ...

    def should_retry(self, retries_done: int, error: Exception | None = None) -> bool:
        """Determine if another attempt is allowed.

        Args:
            retries_done: Retries already performed (0 after the first attempt)
            error: The exception that caused the failure

        Returns:
            True if another attempt may be made
        """
        return retries_done < self.max_retries


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** retry), max_delay) ± jitter

    Attributes:
        max_retries: Maximum number of retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to avoid synchronized retries
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, retry: int) -> float:
        delay = min(
            self.base_delay * (self.multiplier ** retry),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail after the first attempt."""

    max_retries: int = 0

    def next_delay(self, retry: int) -> float:
        return 0.0

    def should_retry(self, retries_done: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Drives a callable through a retry strategy.

    Only errors whose ``retryable`` flag is set are retried; anything
    else propagates on the first occurrence. When the bound is exhausted
    the last error is re-raised and ``exhausted`` is set so the caller
    can promote it.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3), sleep=lambda s: None)
        >>> ctx.run(lambda: "ok")
        'ok'
        >>> ctx.attempts
        1
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    exhausted: bool = field(default=False, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    @property
    def retries(self) -> int:
        return max(0, self.attempt - 1)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute ``func`` with retry logic.

        Raises:
            The last exception if it is not retryable or the bound is exhausted
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not is_retryable(e):
                    raise

                if not self.strategy.should_retry(self.retries, e):
                    self.exhausted = True
                    raise

                delay = self.strategy.next_delay(self.retries)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.sleep(delay)


__all__ = [
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
]
