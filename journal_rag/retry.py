"""Shared exponential-backoff policy for every upstream provider call."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import ConfigurationError, ValidationError
from .logger import LOGGER

T = TypeVar("T")

# Never worth retrying: the next attempt fails the same way
NON_RETRYABLE: Tuple[Type[BaseException], ...] = (ConfigurationError, ValidationError)


class RetryPolicy:
    """Retry a callable with exponential backoff.

    ``max_retries`` counts retries, so a policy with ``max_retries=2`` makes
    at most three calls. Delays grow as ``initial_delay * base ** attempt``
    and are capped at ``max_delay``.
    """

    def __init__(
        self,
        max_retries: int = 2,
        initial_delay: float = 0.25,
        max_delay: float = 4.0,
        exponential_base: float = 2.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max(0, max_retries)
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.retry_on = retry_on
        self._sleep = sleep
        self._async_sleep = async_sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given zero-based failed attempt."""
        return min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)

    def _should_retry(self, exc: BaseException, attempt: int) -> bool:
        if isinstance(exc, NON_RETRYABLE):
            return False
        return isinstance(exc, self.retry_on) and attempt < self.max_retries

    def call(self, func: Callable[[], T], label: str = "call") -> T:
        """Run ``func`` synchronously under this policy."""
        attempt = 0
        while True:
            try:
                result = func()
                if attempt > 0:
                    LOGGER.info("RetryPolicy [%s]: succeeded on attempt %d", label, attempt + 1)
                return result
            except Exception as exc:
                if not self._should_retry(exc, attempt):
                    if attempt > 0:
                        LOGGER.error(
                            "RetryPolicy [%s]: giving up after %d attempts: %s",
                            label, attempt + 1, exc,
                        )
                    raise
                delay = self.delay_for(attempt)
                LOGGER.warning(
                    "RetryPolicy [%s]: attempt %d failed (%s), retrying in %.2fs",
                    label, attempt + 1, exc, delay,
                )
                self._sleep(delay)
                attempt += 1

    async def acall(self, func: Callable[[], Awaitable[T]], label: str = "call") -> T:
        """Await ``func()`` under this policy."""
        attempt = 0
        while True:
            try:
                result = await func()
                if attempt > 0:
                    LOGGER.info("RetryPolicy [%s]: succeeded on attempt %d", label, attempt + 1)
                return result
            except Exception as exc:
                if not self._should_retry(exc, attempt):
                    if attempt > 0:
                        LOGGER.error(
                            "RetryPolicy [%s]: giving up after %d attempts: %s",
                            label, attempt + 1, exc,
                        )
                    raise
                delay = self.delay_for(attempt)
                LOGGER.warning(
                    "RetryPolicy [%s]: attempt %d failed (%s), retrying in %.2fs",
                    label, attempt + 1, exc, delay,
                )
                await self._async_sleep(delay)
                attempt += 1


def no_retry() -> RetryPolicy:
    """Policy that makes exactly one call."""
    return RetryPolicy(max_retries=0)


_default_policy: Optional[RetryPolicy] = None


def default_retry_policy() -> RetryPolicy:
    global _default_policy
    if _default_policy is None:
        _default_policy = RetryPolicy()
    return _default_policy


__all__ = ["RetryPolicy", "NON_RETRYABLE", "default_retry_policy", "no_retry"]
