"""
Retry Policy
============

Exponential backoff as a reusable value object.

One policy instance is shared by embedding, vector search, external
search and model calls so backoff behaviour is uniform.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def _always_retry(error: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff settings plus a retryability predicate.

    Delay for attempt n (0-based) is min(base_delay * 2**n, max_delay).
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 20.0
    is_retryable: Callable[[BaseException], bool] = field(default=_always_retry, compare=False)
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """True if another attempt is allowed after `attempt` failed."""
        if attempt + 1 >= self.max_attempts:
            return False
        if not isinstance(error, self.retry_on):
            return False
        return self.is_retryable(error)

    async def run(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        label: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs,
    ) -> Any:
        """
        Await func(*args, **kwargs) with exponential backoff.

        Args:
            func: Coroutine function to call
            label: Name used in log lines
            sleep: Awaitable sleep, injectable for tests

        Returns:
            The first successful result

        Raises:
            The last exception once attempts are exhausted or the error is
            not retryable
        """
        name = label or getattr(func, "__name__", "call")
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                if not self.should_retry(e, attempt):
                    raise
                wait_time = self.delay_for(attempt)
                logger.warning(
                    f"{name} failed (attempt {attempt + 1}/{self.max_attempts}): {e}, "
                    f"retrying in {wait_time:.1f}s"
                )
                await sleep(wait_time)
                attempt += 1

    @classmethod
    def from_config(cls, config, is_retryable: Optional[Callable[[BaseException], bool]] = None) -> "RetryPolicy":
        """Build from a RetryConfig section."""
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            is_retryable=is_retryable or _always_retry,
        )


NO_RETRY = RetryPolicy(max_attempts=1)
