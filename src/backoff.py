"""
Retry with bounded exponential backoff.

Cluster API calls are the only blocking points in the reconciler; each is
retried locally on transient failures and surfaced only once attempts are
exhausted.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Backoff:
    """Exponential backoff policy with jitter."""

    base_delay: float = 0.5  # seconds
    max_delay: float = 30.0  # seconds
    jitter_factor: float = 0.1  # ±10% jitter
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (0-based).

        min(base * 2^attempt, max) scaled by a random factor in
        [1 - jitter, 1 + jitter] to prevent thundering herd.
        """
        raw = min(self.base_delay * (2**attempt), self.max_delay)
        jitter = (random.random() * 2 - 1) * self.jitter_factor
        return max(0.0, raw * (1 + jitter))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    backoff: Backoff,
    description: str = "operation",
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Run ``operation`` until it succeeds, retrying transient failures.

    The whole operation is re-invoked on each attempt, so callers that do
    read-modify-write pass the read inside ``operation``.

    Args:
        operation: Zero-argument coroutine factory
        backoff: Retry policy
        description: Used in log messages
        retryable: Predicate classifying errors as transient
        sleep: Sleep function (tests substitute a no-op)

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or a terminal error
        immediately.
    """

    def wait(retry_state: RetryCallState) -> float:
        return backoff.delay(retry_state.attempt_number - 1)

    def log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            f"{description} failed (attempt {retry_state.attempt_number}/"
            f"{backoff.max_attempts}): {retry_state.outcome.exception()}; "
            f"retrying in {retry_state.next_action.sleep:.2f}s"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(backoff.max_attempts),
        wait=wait,
        retry=retry_if_exception(retryable),
        before_sleep=log_retry,
        sleep=sleep or asyncio.sleep,
        reraise=True,
    )
    return await retrying(operation)
