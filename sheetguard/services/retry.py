"""
RetryExecutor - Bounded exponential backoff with jitter for single remote calls.

delay(attempt) = min(base_delay * 2^attempt * (1 ± jitter), max_delay)

A retry-after hint carried by the error replaces the computed delay. A retry
whose delay would run past the caller's deadline is never scheduled.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from sheetguard.services.deadline import Deadline
from sheetguard.services.errors import (
    DeadlineExceededError,
    RetryExhaustedError,
    TransientRemoteError,
)

T = TypeVar("T")

# Above this, a jittered delay can undercut the previous one
MAX_JITTER = 1 / 3


@dataclass
class RetryConfig:
    """Retry policy configuration."""

    max_attempts: int = 4  # Total attempts including the first one
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.2  # ±20%
    retryable_exceptions: tuple[type[Exception], ...] = (TransientRemoteError,)

    def __post_init__(self) -> None:
        if not 0 <= self.jitter <= MAX_JITTER:
            raise ValueError(f"jitter must be within [0, {MAX_JITTER:.3f}], got {self.jitter}")


@dataclass
class RetryStats:
    """Retry statistics."""

    attempts: int = 0
    retries: int = 0
    exhausted: int = 0
    deadline_aborts: int = 0
    total_delay: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "exhausted": self.exhausted,
            "deadline_aborts": self.deadline_aborts,
            "total_delay": round(self.total_delay, 3),
        }


class RetryExecutor:
    """
    Retries one call on the retryable-error set.

    Usage:
        retry = RetryExecutor(RetryConfig(max_attempts=3))
        result = await retry.execute(
            lambda: remote.get_values(...), deadline=deadline, service_id="values.get"
        )
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._stats = RetryStats()

    def compute_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """
        Delay before retry number ``attempt`` (0-based).

        Jitter is applied before the cap, so the sequence never exceeds
        max_delay and stays non-decreasing while jitter is at most 1/3.
        """
        if retry_after is not None:
            return max(0.0, retry_after)

        raw = self.config.base_delay * (2**attempt)
        jitter = self.config.jitter
        factor = self._rng.uniform(1 - jitter, 1 + jitter) if jitter else 1.0
        return min(raw * factor, self.config.max_delay)

    def is_retryable(self, error: Exception) -> bool:
        return isinstance(error, self.config.retryable_exceptions)

    async def execute(
        self,
        request_fn: Callable[[], Awaitable[T]],
        deadline: Deadline | None = None,
        service_id: str | None = None,
    ) -> T:
        """Run ``request_fn``, retrying transient failures."""
        deadline = deadline or Deadline.never()
        last_error: Exception | None = None

        for attempt in range(self.config.max_attempts):
            deadline.check("calling remote service", service_id)
            self._stats.attempts += 1
            try:
                return await request_fn()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e

            if attempt == self.config.max_attempts - 1:
                break

            delay = self.compute_delay(attempt, getattr(last_error, "retry_after", None))
            if not deadline.allows(delay):
                self._stats.deadline_aborts += 1
                logger.warning(
                    f"Not retrying {service_id}: {delay:.2f}s backoff would pass the deadline"
                )
                raise DeadlineExceededError(
                    "waiting to retry", service_id=service_id
                ) from last_error

            self._stats.retries += 1
            self._stats.total_delay += delay
            logger.info(
                f"Retrying {service_id} in {delay:.2f}s "
                f"(attempt {attempt + 2}/{self.config.max_attempts}): {last_error}"
            )
            await self._sleep(delay)

        self._stats.exhausted += 1
        raise RetryExhaustedError(
            service_id or "unknown", self.config.max_attempts, last_error
        ) from last_error

    def get_stats(self) -> RetryStats:
        return self._stats
