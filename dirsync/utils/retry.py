"""
Retry Utilities for the directory sync engine.

Provides backoff calculation and a retry executor used by adapters,
lock acquisition and the operation strategies.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Callable, List, Optional, Type

logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """Retry strategy types."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)
    non_retryable_exceptions: List[Type[Exception]] = field(default_factory=list)

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay before the next try, for a zero-based attempt index.

        Args:
            attempt: Number of attempts already failed minus one

        Returns:
            Delay in seconds, capped at max_delay
        """
        if self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay
        elif self.strategy == RetryStrategy.LINEAR:
            delay = self.base_delay * (attempt + 1)
        else:
            delay = self.base_delay * (self.backoff_multiplier ** attempt)

        delay = min(delay, self.max_delay)

        if self.jitter and self.jitter_range > 0 and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
            delay = max(0.0, min(delay, self.max_delay))

        return delay


def is_retryable(exception: BaseException) -> bool:
    """
    Classify an exception as transient.

    Sync errors carry their own ``retryable`` flag; programming errors
    are never retried.
    """
    flag = getattr(exception, "retryable", None)
    if flag is not None:
        return bool(flag)
    if isinstance(exception, (TypeError, ValueError, KeyError, AttributeError)):
        return False
    return isinstance(exception, Exception)


class RetryExecutor:
    """Retry executor with configurable backoff strategy."""

    def __init__(self, config: RetryConfig, sleep: Optional[Callable] = None):
        self.config = config
        self._sleep = sleep or asyncio.sleep

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if the exception should trigger a retry."""
        if attempt + 1 >= self.config.max_attempts:
            return False

        for exc_type in self.config.non_retryable_exceptions:
            if isinstance(exception, exc_type):
                return False

        if self.config.retryable_exceptions:
            return any(isinstance(exception, exc_type) for exc_type in self.config.retryable_exceptions)

        return is_retryable(exception)

    async def async_execute(self, func: Callable, *args, **kwargs) -> Any:
        """Execute async function with retry logic."""
        last_exception = None

        for attempt in range(self.config.max_attempts):
            try:
                if asyncio.iscoroutinefunction(func):
                    return await func(*args, **kwargs)
                return func(*args, **kwargs)
            except Exception as e:
                last_exception = e

                if not self._should_retry(e, attempt):
                    logger.debug(f"Not retrying after attempt {attempt + 1}: {e}")
                    raise

                delay = self.config.calculate_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay:.2f} seconds..."
                )
                await self._sleep(delay)

        raise last_exception


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL,
    retryable_exceptions: Optional[List[Type[Exception]]] = None,
    non_retryable_exceptions: Optional[List[Type[Exception]]] = None
):
    """Decorator for adding retry logic to coroutine functions."""
    config = RetryConfig(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=max_delay,
        strategy=strategy,
        retryable_exceptions=retryable_exceptions or [],
        non_retryable_exceptions=non_retryable_exceptions or []
    )
    executor = RetryExecutor(config)

    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await executor.async_execute(func, *args, **kwargs)
        return async_wrapper

    return decorator
