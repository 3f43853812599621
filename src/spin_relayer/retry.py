"""
Bounded exponential backoff for chain calls.

Which errors are worth retrying is always decided by the caller: a pool
priority rejection is retried blindly, while an authority set mismatch needs
a different recovery procedure and must surface immediately.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Delay before retry number ``attempt`` (1-based), doubling and capped.

    Args:
        attempt: Number of the attempt that just failed
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for the delay, in seconds

    Returns:
        Delay in seconds, without jitter
    """
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def with_retry(
    label: str,
    fn: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    retry_if: RetryPredicate,
    jitter: float = 0.0,
) -> T:
    """
    Run ``fn`` until it succeeds or a non-retryable error occurs.

    Args:
        label: Operation name used in log messages
        fn: Zero-argument coroutine function to run
        max_attempts: Total number of attempts, including the first
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any delay, in seconds
        retry_if: Returns True for errors worth retrying
        jitter: Fraction of each delay added as uniform random jitter

    Returns:
        The result of the first successful attempt

    Raises:
        The last error, unchanged, once it is not retryable or attempts ran out
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= max_attempts or not retry_if(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            if jitter > 0:
                delay += random.uniform(0, jitter * delay)
            logger.warning(
                f"{label} failed (attempt {attempt}/{max_attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)
            attempt += 1


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff tuning shared by all retried chain calls.

    Attributes:
        max_attempts: Total number of attempts, including the first
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any delay, in seconds
        jitter: Fraction of each delay added as uniform random jitter
    """
    max_attempts: int = 8
    base_delay: float = 1.5
    max_delay: float = 20.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be non-negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"jitter must be between 0 and 1, got {self.jitter}")

    async def run(
        self,
        label: str,
        fn: Callable[[], Awaitable[T]],
        retry_if: RetryPredicate,
    ) -> T:
        """Run ``fn`` with this policy's tuning. See ``with_retry``."""
        return await with_retry(
            label,
            fn,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retry_if=retry_if,
            jitter=self.jitter,
        )
