"""
Retry policy — bounded attempts with a pluggable delay function.

Kept separate from what is being retried: callers pass the coroutine
factory and decide which exception types count as transient.

Usage::

    policy = RetryPolicy(max_attempts=3, delay=linear_backoff(1.0))
    row = await policy.run(lambda: store.insert(record), retry_on=(OperationalError,))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DelayFn = Callable[[int], float]


def linear_backoff(step: float) -> DelayFn:
    """Attempt n (1-based) waits n * step seconds."""
    return lambda attempt: step * attempt


def fixed_delay(seconds: float) -> DelayFn:
    return lambda attempt: seconds


class RetryExhausted(Exception):
    """Every attempt failed. ``last_exc`` holds the final failure."""

    def __init__(self, attempts: int, last_exc: Optional[BaseException]) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_exc}")
        self.attempts = attempts
        self.last_exc = last_exc


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    delay: DelayFn = field(default_factory=lambda: linear_backoff(1.0))
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        label: str = "operation",
    ) -> T:
        """Await ``fn()`` until it succeeds or attempts run out.

        Exceptions outside ``retry_on`` propagate immediately.
        Raises RetryExhausted when the budget is spent.
        """
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except retry_on as exc:
                last_exc = exc
                if attempt == self.max_attempts:
                    break
                wait = self.delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    label, attempt, self.max_attempts, exc, wait,
                )
                await self.sleep(wait)

        logger.error("%s failed after %d attempts: %s", label, self.max_attempts, last_exc)
        raise RetryExhausted(self.max_attempts, last_exc)
