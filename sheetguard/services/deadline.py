"""
Deadline - the point in time after which a caller task stops waiting.

Every suspension point (rate limiter, concurrency gate, dedup join, retry
backoff) checks the deadline instead of waiting indefinitely.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, TypeVar

from sheetguard.services.errors import DeadlineExceededError

T = TypeVar("T")


@dataclass(frozen=True)
class Deadline:
    """Absolute deadline on the monotonic clock. ``None`` means unbounded."""

    expires_at: float | None = None

    @classmethod
    def after(cls, seconds: float | None) -> "Deadline":
        if seconds is None:
            return cls(None)
        return cls(time.monotonic() + seconds)

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float | None:
        """Seconds left, clamped at zero; ``None`` when unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def allows(self, delay: float) -> bool:
        """True if waiting ``delay`` seconds still ends before the deadline."""
        remaining = self.remaining()
        return remaining is None or delay < remaining

    def check(self, operation: str, service_id: str | None = None) -> None:
        if self.expired:
            raise DeadlineExceededError(operation, service_id=service_id)

    async def wait_for(
        self,
        awaitable: Awaitable[T],
        operation: str,
        service_id: str | None = None,
    ) -> T:
        """Await ``awaitable`` but give up when the deadline passes."""
        if self.expired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceededError(operation, service_id=service_id)
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remaining())
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError(operation, service_id=service_id) from e
