"""
Retry Policy

Synchronous exponential backoff. The sleep function is injectable so tests
can run a full retry sequence without waiting.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar
import structlog

logger = structlog.get_logger()

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """max_attempts total tries; delay before retry n is base_delay * multiplier**(n-1)."""
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (0-based)."""
        return self.base_delay * (self.multiplier ** attempt)


def retry_call(
    fn: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "call",
) -> T:
    """
    Call fn until it succeeds or the policy is exhausted.

    Exceptions outside retry_on propagate immediately. After the last attempt
    the final exception propagates unchanged.
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_attempts):
        try:
            return fn()
        except retry_on as e:
            if attempt == policy.max_attempts - 1:
                logger.error(
                    "retry_exhausted",
                    operation=operation,
                    attempts=policy.max_attempts,
                    error=str(e),
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(e),
            )
            sleep(delay)

    raise AssertionError("unreachable")
