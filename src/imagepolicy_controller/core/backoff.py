"""Cancellable retry combinator with linear backoff.

retry_async() runs an async operation up to `max_attempts` times. Before
attempt N (0-indexed) it waits N * base_delay seconds, so the waits before
attempts 1, 2, 3 are 0s, base_delay, 2 * base_delay. Only errors accepted by
`is_retryable` are retried; any other error propagates immediately.

Waiting uses an injectable awaitable sleep. Cancelling the calling task while
it waits raises asyncio.CancelledError out of the sleep at once.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when every allowed attempt failed with a retryable error.

    Attributes:
        attempts: Number of attempts made.
        last_error: The error raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    is_retryable: Callable[[Exception], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run an async operation with bounded linear-backoff retries.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        max_attempts: Total attempts, including the first.
        base_delay: Seconds added to the wait for each further attempt.
        is_retryable: Predicate deciding whether an error is retried.
        sleep: Awaitable sleep used between attempts.
        description: Label for log events.

    Returns:
        The first successful result of `operation`.

    Raises:
        RetryExhaustedError: If all attempts failed with retryable errors.
        Exception: The first non-retryable error, unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Exception | None = None
    for attempt in range(max_attempts):
        delay = attempt * base_delay
        if delay > 0:
            logger.info(
                "Retrying after backoff",
                operation=description,
                attempt=attempt + 1,
                delay_seconds=delay,
            )
            await sleep(delay)

        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            logger.info(
                "Retryable failure",
                operation=description,
                attempt=attempt + 1,
                max_attempts=max_attempts,
                error=str(exc),
            )

    raise RetryExhaustedError(attempts=max_attempts, last_error=last_error)
