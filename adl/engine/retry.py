# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - RETRY POLICY
# =============================================================================
"""
Retry Policy

One configurable retry shape shared by every call site that retries:

    - LLM quota fallback: 2 attempts, no delay, retry on QuotaExceededError
    - CI log fetch: 3 attempts, 2s base delay doubling each time
    - State compare-and-swap: a handful of quick attempts on StateConflictError

The wrapped operation receives the 0-based attempt index so a call site can
vary its behaviour per attempt (for example switching to a fallback model).

Usage:
    policy = RetryPolicy(max_attempts=3, base_delay=2.0, retry_on=is_transient)
    logs = await policy.execute(lambda attempt: fetch_logs(job_id))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]


def retry_on_types(*exc_types: Type[BaseException]) -> RetryPredicate:
    """Build a predicate that retries on the given exception types."""

    def _predicate(exc: BaseException) -> bool:
        return isinstance(exc, exc_types)

    return _predicate


@dataclass
class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, in seconds
        backoff_factor: Multiplier applied to the delay after each retry
        max_delay: Upper bound for a single delay
        retry_on: Predicate (or exception types) deciding whether to retry
        name: Label used in log messages
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0
    retry_on: Union[RetryPredicate, Tuple[Type[BaseException], ...]] = (Exception,)
    name: str = "operation"
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if isinstance(self.retry_on, tuple):
            self.retry_on = retry_on_types(*self.retry_on)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (0-based)."""
        delay = self.base_delay * (self.backoff_factor ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        if attempt + 1 >= self.max_attempts:
            return False
        return bool(self.retry_on(exc))

    async def execute(
        self,
        operation: Callable[[int], Awaitable[T]],
        on_retry: Optional[Callable[[BaseException, int], None]] = None,
    ) -> T:
        """
        Run the operation until it succeeds or the policy gives up.

        Args:
            operation: Coroutine factory receiving the attempt index
            on_retry: Optional hook called with (error, next_attempt)

        Returns:
            The operation's result

        Raises:
            The last error raised by the operation
        """
        attempt = 0
        while True:
            try:
                return await operation(attempt)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    raise

                delay = self.delay_for(attempt)
                logger.warning(
                    f"{self.name} failed on attempt {attempt + 1}/{self.max_attempts}: {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                if on_retry is not None:
                    on_retry(e, attempt + 1)
                if delay > 0:
                    await self.sleep(delay)
                attempt += 1


__all__ = [
    "RetryPolicy",
    "RetryPredicate",
    "retry_on_types",
]
