"""
Reusable retry policy with exponential backoff.

The sleep primitive is injectable so tests can run the backoff schedule
without waiting.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def _always_retryable(error: Exception) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        base_delay: Delay in seconds before the second attempt
        max_delay: Upper bound on any single delay in seconds
        is_retryable: Predicate deciding whether an error may be retried
        sleep: Awaitable sleep used between attempts
    """
    max_attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 4.0
    is_retryable: Callable[[Exception], bool] = field(default=_always_retryable)
    sleep: SleepFn = field(default=asyncio.sleep)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def delays(self) -> List[float]:
        """The full backoff schedule between attempts."""
        return [self.delay_for(attempt) for attempt in range(self.max_attempts - 1)]

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument coroutine factory; invoked afresh on
                every attempt

        Returns:
            The first successful result

        Raises:
            Exception: The last error, once attempts are exhausted or as soon
                as a non-retryable error occurs
        """
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as exc:
                if attempt + 1 >= self.max_attempts or not self.is_retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retry %d/%d after %.2fs: %s",
                    attempt + 1,
                    self.max_attempts - 1,
                    delay,
                    exc,
                )
                await self.sleep(delay)

        raise AssertionError("unreachable: retry loop exited without result")
