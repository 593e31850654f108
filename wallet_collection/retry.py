"""
Bounded Retry

Single retry helper for polling chain state: a fixed attempt budget, a delay
that may grow by a backoff factor up to a ceiling, and an explicit set of
retryable exception types. Anything else propagates on the first attempt.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from loguru import logger

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget"""
    max_attempts: int = 10
    delay_seconds: float = 3.0
    backoff: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based attempt"""
        delay = self.delay_seconds * (self.backoff ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    @property
    def total_budget_seconds(self) -> float:
        return sum(self.delay_for(n) for n in range(1, self.max_attempts))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None
) -> T:
    """
    Run an async operation until it succeeds or the attempt budget is spent

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt budget and delays
        retry_on: Exception types that mean "not yet, try again"
        description: Label for log lines
        sleep: Sleep coroutine (tests pass a no-op)

    Returns:
        The operation's result

    Raises:
        The last retryable error once attempts are exhausted, or any
        non-retryable error immediately
    """
    sleep = sleep or asyncio.sleep
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if attempt == policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.debug(
                f"{description}: attempt {attempt}/{policy.max_attempts} "
                f"-> {type(e).__name__}: {e}; retrying in {delay:.1f}s"
            )
            await sleep(delay)

    logger.warning(f"{description}: gave up after {policy.max_attempts} attempts ({type(last_error).__name__})")
    raise last_error
