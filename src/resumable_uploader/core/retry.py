"""
Bounded retry combinator shared by chunk uploads and merge requests.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry ceiling and backoff.

    ``max_retries`` counts retries after the first attempt, so an operation
    runs at most ``max_retries + 1`` times. The delay before retry ``n`` is
    ``base_delay * n``, capped at ``max_delay``.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, retry_number: int) -> float:
        return min(self.base_delay * retry_number, self.max_delay)


def get_retry_policy(max_retries: int = 3, base_delay: float = 1.0) -> RetryPolicy:
    """Standard policy for upload operations."""
    return RetryPolicy(max_retries=max_retries, base_delay=base_delay)


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool],
    token: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    description: str = "operation",
) -> T:
    """
    Run ``operation(attempt)`` until it succeeds or the policy gives up.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number
        policy: Retry ceiling and backoff
        should_retry: Predicate deciding whether an exception is transient
        token: Checked before every attempt and while backing off
        on_retry: Called with (retry_number, error, delay) before sleeping
        description: Used in log lines

    Returns:
        The operation's result

    Raises:
        The last exception once it is non-retryable or retries are exhausted;
        ``UploadCancelled`` if the token fires first.
    """
    attempt = 0
    while True:
        attempt += 1
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await operation(attempt)
        except Exception as e:
            retry_number = attempt
            if retry_number > policy.max_retries or not should_retry(e):
                raise
            delay = policy.delay_for(retry_number)
            logger.warning(
                f"{description} failed ({e}), retrying {retry_number}/{policy.max_retries} in {delay:.1f}s"
            )
            if on_retry is not None:
                on_retry(retry_number, e, delay)
            if token is not None:
                await token.sleep(delay)
            else:
                await asyncio.sleep(delay)
