"""Tests for the linear-backoff retry combinator."""

import asyncio

import pytest

from imagepolicy_controller.core.backoff import RetryExhaustedError, retry_async


class _Flaky:
    """Fails with the given errors in order, then returns 'ok'."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.asyncio()
async def test_success_on_first_attempt_does_not_sleep() -> None:
    """No wait happens before the first attempt."""
    sleep = _RecordingSleep()
    operation = _Flaky([])

    result = await retry_async(operation, max_attempts=3, base_delay=5, is_retryable=lambda e: True, sleep=sleep)

    assert result == "ok"
    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio()
async def test_linear_delays_between_attempts() -> None:
    """The waits before attempts 2 and 3 are base_delay and 2 * base_delay."""
    sleep = _RecordingSleep()
    operation = _Flaky([ValueError("429"), ValueError("429")])

    result = await retry_async(operation, max_attempts=3, base_delay=5, is_retryable=lambda e: True, sleep=sleep)

    assert result == "ok"
    assert operation.calls == 3
    assert sleep.delays == [5, 10]


@pytest.mark.asyncio()
async def test_exhaustion_raises_with_last_error() -> None:
    """When every attempt fails retryably, RetryExhaustedError carries the last error."""
    sleep = _RecordingSleep()
    last = ValueError("third")
    operation = _Flaky([ValueError("first"), ValueError("second"), last])

    with pytest.raises(RetryExhaustedError) as exc_info:
        await retry_async(operation, max_attempts=3, base_delay=1, is_retryable=lambda e: True, sleep=sleep)

    assert exc_info.value.attempts == 3
    assert exc_info.value.last_error is last
    assert operation.calls == 3


@pytest.mark.asyncio()
async def test_non_retryable_error_propagates_immediately() -> None:
    """A non-retryable error is raised unchanged without further attempts."""
    sleep = _RecordingSleep()
    operation = _Flaky([KeyError("boom")])

    with pytest.raises(KeyError):
        await retry_async(
            operation,
            max_attempts=3,
            base_delay=5,
            is_retryable=lambda e: isinstance(e, ValueError),
            sleep=sleep,
        )

    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio()
async def test_zero_attempts_rejected() -> None:
    """max_attempts below one is a programming error."""
    with pytest.raises(ValueError):
        await retry_async(_Flaky([]), max_attempts=0, base_delay=1, is_retryable=lambda e: True)


@pytest.mark.asyncio()
async def test_cancellation_during_backoff() -> None:
    """Cancelling the task while it waits stops the retry loop at once."""
    operation = _Flaky([ValueError("429")] * 5)

    task = asyncio.create_task(
        retry_async(operation, max_attempts=3, base_delay=60, is_retryable=lambda e: True)
    )
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert operation.calls == 1
