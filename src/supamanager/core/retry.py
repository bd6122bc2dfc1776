"""Bounded retry with exponential backoff for runtime calls.

Only errors flagged ``retryable`` (in practice ``RuntimeUnavailableError``)
are retried, and never more than ``max_retries`` times; once the budget is
spent the last error propagates so the caller can mark the operation failed.

Example:
    >>> strategy = ExponentialBackoff(max_retries=4, base_delay=0.5, max_delay=8.0)
    >>> [round(strategy.next_delay(a), 1) for a in range(4)]  # jitter=False
    [0.5, 1.0, 2.0, 4.0]
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from supamanager.core.errors import is_retryable

T = TypeVar("T")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (zero-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether another attempt is allowed after ``attempt`` failures."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) +/- jitter

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        retryable_errors: Exception types that are retryable
            (None = anything whose ``retryable`` flag is set)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    retryable_errors: tuple[type[BaseException], ...] | None = None

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is None:
            return True
        if self.retryable_errors is not None:
            return isinstance(error, self.retryable_errors)
        return is_retryable(error)


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Retry state for one logical call.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> result = await ctx.run_async(runtime.create_network, "p1", "supamanager-p1")
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, BaseException, float], None] | None = None
    attempt: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)
    errors: list[tuple[int, BaseException, datetime]] = field(default_factory=list, init=False)

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func`` until it succeeds or the strategy gives up.

        Raises:
            The last exception once retries are exhausted or the error is
            not retryable.
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                await asyncio.sleep(delay)


async def retry_async(
    strategy: RetryStrategy,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    **kwargs: Any,
) -> T:
    """One-shot helper around :class:`RetryContext`."""
    return await RetryContext(strategy=strategy, on_retry=on_retry).run_async(func, *args, **kwargs)
