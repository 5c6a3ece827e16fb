"""
Admission control in front of the remote service.

- RateLimiter: token bucket over the remote quota (aiolimiter). A call waits
  cooperatively for capacity or until its deadline, whichever comes first.
- ConcurrencyGate: caps simultaneously in-flight remote calls. Waiters queue
  in FIFO order; past max_queue_depth new callers fail fast.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from aiolimiter import AsyncLimiter
from loguru import logger

from sheetguard.services.deadline import Deadline
from sheetguard.services.errors import CapacityExceededError


@dataclass
class RateLimit:
    max_calls: int = 60
    per_seconds: float = 60.0


@dataclass
class AdmissionStats:
    """Admission statistics shared by the limiter and the gate."""

    admitted: int = 0
    waited: int = 0
    rejected: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "admitted": self.admitted,
            "waited": self.waited,
            "rejected": self.rejected,
        }


class RateLimiter:
    """
    Token bucket refilled at max_calls per per_seconds.

    Usage:
        limiter = RateLimiter(RateLimit(max_calls=60, per_seconds=60))
        await limiter.acquire(deadline, "values.get")
    """

    def __init__(self, rate: RateLimit | None = None):
        self.rate = rate or RateLimit()
        self._limiter = AsyncLimiter(self.rate.max_calls, self.rate.per_seconds)
        self._stats = AdmissionStats()

    def has_capacity(self) -> bool:
        return self._limiter.has_capacity()

    async def acquire(
        self, deadline: Deadline | None = None, service_id: str | None = None
    ) -> None:
        """Take one token, waiting until one is free or the deadline passes."""
        deadline = deadline or Deadline.never()
        if not self._limiter.has_capacity():
            self._stats.waited += 1
            logger.debug(f"[RateLimiter] {service_id} waiting for a token")
        try:
            await deadline.wait_for(
                self._limiter.acquire(), "waiting for a rate limit token", service_id
            )
        except CapacityExceededError:
            self._stats.rejected += 1
            raise
        self._stats.admitted += 1

    def get_stats(self) -> AdmissionStats:
        return self._stats


class ConcurrencyGate:
    """
    Bounded number of in-flight remote calls with a bounded FIFO wait queue.

    Usage:
        gate = ConcurrencyGate(max_in_flight=10, max_queue_depth=100)
        async with gate.slot(deadline, "values.get"):
            await do_call()
    """

    def __init__(self, max_in_flight: int = 10, max_queue_depth: int = 100):
        self.max_in_flight = max_in_flight
        self.max_queue_depth = max_queue_depth
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._waiting = 0
        self._in_flight = 0
        self._stats = AdmissionStats()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return self._waiting

    @asynccontextmanager
    async def slot(
        self, deadline: Deadline | None = None, service_id: str | None = None
    ) -> AsyncIterator[None]:
        await self._acquire(deadline or Deadline.never(), service_id)
        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            self._semaphore.release()

    async def _acquire(self, deadline: Deadline, service_id: str | None) -> None:
        if self._semaphore.locked():
            if self._waiting >= self.max_queue_depth:
                self._stats.rejected += 1
                logger.warning(
                    f"[ConcurrencyGate] Queue full ({self._waiting} waiting), "
                    f"rejecting {service_id}"
                )
                raise CapacityExceededError(
                    f"Remote call queue is full ({self.max_queue_depth} waiting)",
                    service_id=service_id,
                )
            self._stats.waited += 1

        self._waiting += 1
        try:
            await deadline.wait_for(
                self._semaphore.acquire(), "waiting for a remote call slot", service_id
            )
        except CapacityExceededError:
            self._stats.rejected += 1
            raise
        finally:
            self._waiting -= 1
        self._stats.admitted += 1

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats.to_dict(),
            "in_flight": self._in_flight,
            "queued": self._waiting,
            "max_in_flight": self.max_in_flight,
            "max_queue_depth": self.max_queue_depth,
        }
