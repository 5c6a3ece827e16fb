"""
RequestDeduplicator - Collapses concurrent identical reads into one upstream call.

When multiple callers issue the same read (same endpoint, same parameters)
while one is already in flight, only one actual request is made and the
result is shared. Writes must never go through here: every write is a
distinct effect.
"""

import asyncio
import hashlib
import json
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from sheetguard.services.deadline import Deadline

T = TypeVar("T")


def request_fingerprint(endpoint: str, params: dict[str, Any]) -> str:
    """Content hash of (endpoint, parameters)."""
    payload = json.dumps(
        {"endpoint": endpoint, "params": params}, sort_keys=True, default=str
    )
    return hashlib.sha256(payload.encode()).hexdigest()


class RequestDeduplicator:
    """
    Deduplicates concurrent async reads.

    Usage:
        dedup = RequestDeduplicator()

        values = await dedup.dedupe(
            endpoint="values.get",
            params={"document_id": doc, "range": "A1:B2"},
            request_fn=lambda: remote.get_values(doc, region),
        )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        endpoint: str,
        params: dict[str, Any],
        request_fn: Callable[[], Awaitable[T]],
        deadline: Deadline | None = None,
    ) -> T:
        """
        Execute a read with deduplication.

        If an identical read is already in flight, wait for and return its
        result instead of making a new request. A joiner that hits its own
        deadline stops waiting without cancelling the shared request.
        """
        key = request_fingerprint(endpoint, params)
        deadline = deadline or Deadline.never()

        async with self._lock:
            if key in self._in_flight:
                self._stats.deduplicated += 1
                self._log(f"DEDUPE: Joining in-flight {endpoint} {key[:12]}")
                task = self._in_flight[key]
            else:
                self._stats.total += 1
                self._log(f"NEW: Starting {endpoint} {key[:12]}")
                task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
                task.add_done_callback(_consume_exception)
                self._in_flight[key] = task

        return await deadline.wait_for(
            asyncio.shield(task), f"waiting for in-flight {endpoint}", endpoint
        )

    async def _execute_and_cleanup(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute request and clean up when done."""
        try:
            return await request_fn()
        finally:
            async with self._lock:
                self._in_flight.pop(key, None)
            self._log(f"DONE: {key[:12]}")

    async def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        async with self._lock:
            count = len(self._in_flight)
            tasks = list(self._in_flight.values())
            self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if count:
            logger.info(f"[Deduplicator] Cancelled {count} in-flight requests")
        return count

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Every joiner may have given up; keep asyncio from warning about the error.
    if not task.cancelled():
        task.exception()


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Unique upstream requests made
        self.deduplicated: int = 0  # Requests that joined an in-flight one
        self.in_flight: int = 0  # Current in-flight requests

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
