from __future__ import annotations

import asyncio
import random

import pytest
from pydantic import ValidationError

from sheetguard.services.deadline import Deadline
from sheetguard.services.errors import (
    DeadlineExceededError,
    PermanentRemoteError,
    RateLimitError,
    RetryExhaustedError,
    TransientRemoteError,
)
from sheetguard.services.retry import RetryConfig, RetryExecutor
from sheetguard.settings import Settings


class Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(failures: list[Exception], result: str = "done"):
    calls = 0

    async def request() -> str:
        nonlocal calls
        calls += 1
        if failures:
            raise failures.pop(0)
        return result

    def count() -> int:
        return calls

    return request, count


@pytest.mark.parametrize("seed", range(5))
def test_delay_sequence_is_non_decreasing_and_capped(seed: int) -> None:
    retry = RetryExecutor(
        RetryConfig(base_delay=0.5, max_delay=8.0, jitter=0.2), rng=random.Random(seed)
    )
    delays = [retry.compute_delay(attempt) for attempt in range(10)]

    assert delays == sorted(delays)
    assert max(delays) == 8.0
    assert 0.4 <= delays[0] <= 0.6


@pytest.mark.parametrize("jitter", [-0.1, 0.34, 0.5])
def test_jitter_beyond_a_third_is_rejected(jitter: float) -> None:
    with pytest.raises(ValueError, match="jitter"):
        RetryConfig(jitter=jitter)
    with pytest.raises(ValidationError):
        Settings(retry_jitter=jitter)


def test_jitter_at_a_third_keeps_delays_non_decreasing() -> None:
    retry = RetryExecutor(
        RetryConfig(base_delay=1.0, max_delay=1_000.0, jitter=1 / 3), rng=random.Random(7)
    )
    delays = [retry.compute_delay(attempt) for attempt in range(8)]

    assert delays == sorted(delays)


def test_retry_after_overrides_computed_delay() -> None:
    retry = RetryExecutor(RetryConfig(base_delay=0.5, max_delay=8.0))
    assert retry.compute_delay(0, retry_after=12.0) == 12.0
    assert retry.compute_delay(5, retry_after=0.25) == 0.25


def test_retries_transient_errors_until_success() -> None:
    sleeps = Sleeps()
    retry = RetryExecutor(RetryConfig(max_attempts=4, base_delay=1, jitter=0), sleep=sleeps)
    request, count = _flaky(
        [
            TransientRemoteError("HTTP 503", status_code=503),
            RateLimitError("values.get", retry_after=7.0),
        ]
    )

    assert asyncio.run(retry.execute(request, service_id="values.get")) == "done"
    assert count() == 3
    assert sleeps.delays == [1.0, 7.0]
    assert retry.get_stats().retries == 2


def test_permanent_errors_are_not_retried() -> None:
    retry = RetryExecutor(sleep=Sleeps())
    request, count = _flaky([PermanentRemoteError("HTTP 400", status_code=400)])

    with pytest.raises(PermanentRemoteError):
        asyncio.run(retry.execute(request))
    assert count() == 1


def test_exhaustion_is_surfaced_as_retryable() -> None:
    retry = RetryExecutor(RetryConfig(max_attempts=3, base_delay=0), sleep=Sleeps())
    request, count = _flaky([TransientRemoteError(f"HTTP 503 #{i}") for i in range(5)])

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(retry.execute(request, service_id="values.get"))

    assert count() == 3
    detail = exc_info.value.to_detail()
    assert detail.code == "RETRY_EXHAUSTED"
    assert detail.retryable is True
    assert exc_info.value.attempts == 3


def test_no_retry_scheduled_past_the_deadline() -> None:
    sleeps = Sleeps()
    retry = RetryExecutor(RetryConfig(max_attempts=5), sleep=sleeps)
    request, count = _flaky([RateLimitError("values.get", retry_after=120.0)])

    with pytest.raises(DeadlineExceededError):
        asyncio.run(retry.execute(request, deadline=Deadline.after(5), service_id="values.get"))

    assert count() == 1
    assert sleeps.delays == []
    assert retry.get_stats().deadline_aborts == 1
