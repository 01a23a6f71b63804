#!/usr/bin/env python3
"""
Retry policy shared by the feed poller, classifier, ecosystem mapper and
artifact writer.

A policy is parameterized by an error-classification function (which errors
are worth another attempt) and an exponential backoff schedule bounded both by
attempt count and by total wall-clock time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryExhausted(Exception):
    """Raised when a retryable error outlived the policy's budget."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """
    Exponential backoff schedule.

    Attempt ``n`` (0-based retry count) waits ``base_delay * multiplier ** n``
    seconds, capped at ``max_delay``. A server-provided ``retry_after`` on the
    error raises the wait for that attempt, still capped at ``max_delay``.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_elapsed: Optional[float] = 120.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    clock: Callable[[], float] = time.monotonic

    def delay_for(self, retry_number: int, error: Optional[BaseException] = None) -> float:
        """Get delay in seconds before retry number ``retry_number`` (0-based)."""
        delay = self.base_delay * (self.multiplier ** retry_number)
        retry_after = getattr(error, 'retry_after', None)
        if isinstance(retry_after, (int, float)) and retry_after > delay:
            delay = float(retry_after)
        return min(delay, self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        """
        Run ``operation`` until it succeeds, fails permanently or the budget runs out.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            description: Label used in log messages

        Returns:
            The operation's result

        Raises:
            RetryExhausted: If retryable errors persisted past the budget
            Exception: Any non-retryable error, unchanged
        """
        started = self.clock()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                retries_done = attempt - 1
                if retries_done >= self.max_retries:
                    logger.warning(f"{description}: giving up after {attempt} attempts ({e})")
                    raise RetryExhausted(attempt, e) from e

                delay = self.delay_for(retries_done, e)
                if self.max_elapsed is not None and (self.clock() - started) + delay > self.max_elapsed:
                    logger.warning(f"{description}: wall-clock budget of {self.max_elapsed}s exhausted ({e})")
                    raise RetryExhausted(attempt, e) from e

                logger.warning(f"{description}: attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
                await self.sleep(delay)

    def with_overrides(self, **changes) -> 'RetryPolicy':
        """Copy of this policy with some fields replaced."""
        values = {name: getattr(self, name) for name in self.__dataclass_fields__}
        values.update(changes)
        return RetryPolicy(**values)
