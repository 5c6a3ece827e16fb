"""
ResilientDocumentService - the remote document service behind the resilience stack.

Implements the same interface as the service it wraps. Every call passes,
in this order, through:
- RateLimiter (token bucket on the remote quota)
- RequestDeduplicator (reads only)
- CircuitBreaker (one per logical endpoint)
- RetryExecutor (bounded backoff, honours retry-after)
- ConcurrencyGate (bounded in-flight attempts)

Reads also go through the CacheManager: fresh reads refresh it, and
``use_cache=True`` serves from it.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from sheetguard.remote.base import (
    BATCH_UPDATE,
    METADATA_GET,
    VALUES_GET,
    RemoteDocumentService,
)
from sheetguard.remote.models import (
    BatchUpdateResult,
    DocumentMetadata,
    Region,
    ValueRange,
)
from sheetguard.services.cache import CacheKey, CacheManager
from sheetguard.services.circuit_breaker import CircuitBreakerRegistry
from sheetguard.services.deadline import Deadline
from sheetguard.services.deduplicator import RequestDeduplicator
from sheetguard.services.rate_limiter import ConcurrencyGate, RateLimiter
from sheetguard.services.retry import RetryExecutor

T = TypeVar("T")


@dataclass
class ResilienceConfig:
    """Per-call defaults for the stack."""

    cache_ttl: timedelta = timedelta(seconds=60)
    default_deadline_seconds: float | None = 60.0


class ResilientDocumentService(RemoteDocumentService):
    """
    Remote document service with caching, rate limiting, dedup, circuit
    breaking and retries.

    Usage:
        remote = ResilientDocumentService(SheetsApiClient(token=...))
        values = await remote.get_values("doc-id", region)
        await remote.batch_update("doc-id", requests)
        await remote.close()
    """

    def __init__(
        self,
        remote: RemoteDocumentService,
        cache: CacheManager | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        deduplicator: RequestDeduplicator | None = None,
        rate_limiter: RateLimiter | None = None,
        retry: RetryExecutor | None = None,
        gate: ConcurrencyGate | None = None,
        config: ResilienceConfig | None = None,
    ):
        self._remote = remote
        self.cache = cache or CacheManager()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.deduplicator = deduplicator or RequestDeduplicator()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry = retry or RetryExecutor()
        self.gate = gate or ConcurrencyGate()
        self.config = config or ResilienceConfig()

    @property
    def service_id(self) -> str:
        return self._remote.service_id

    def new_deadline(self, seconds: float | None = None) -> Deadline:
        """Deadline for a caller task; falls back to the configured default."""
        if seconds is None:
            seconds = self.config.default_deadline_seconds
        return Deadline.after(seconds)

    async def get_values(
        self,
        document_id: str,
        region: Region,
        *,
        value_render: str = "FORMULA",
        deadline: Deadline | None = None,
        use_cache: bool = False,
    ) -> ValueRange:
        """
        Read a region's values.

        With ``use_cache`` a cached read is returned when present; otherwise
        the read goes upstream and its result is cached.
        """
        deadline = deadline or self.new_deadline()
        return await self.cache.get_or_fetch(
            CacheKey(document_id, region, f"values:{value_render}"),
            lambda: self._read(
                VALUES_GET,
                {"document_id": document_id, "range": region.to_a1(), "render": value_render},
                lambda: self._remote.get_values(
                    document_id, region, value_render=value_render, deadline=deadline
                ),
                deadline,
            ),
            self.config.cache_ttl,
            use_cache=use_cache,
        )

    async def get_metadata(
        self,
        document_id: str,
        *,
        deadline: Deadline | None = None,
        use_cache: bool = False,
    ) -> DocumentMetadata:
        deadline = deadline or self.new_deadline()
        return await self.cache.get_or_fetch(
            CacheKey(document_id, None, "metadata"),
            lambda: self._read(
                METADATA_GET,
                {"document_id": document_id},
                lambda: self._remote.get_metadata(document_id, deadline=deadline),
                deadline,
            ),
            self.config.cache_ttl,
            use_cache=use_cache,
        )

    async def batch_update(
        self,
        document_id: str,
        requests: list[dict[str, Any]],
        *,
        deadline: Deadline | None = None,
    ) -> BatchUpdateResult:
        """Batched write. Never deduplicated, never cached."""
        deadline = deadline or self.new_deadline()
        await self.rate_limiter.acquire(deadline, BATCH_UPDATE)
        return await self._guarded(
            BATCH_UPDATE,
            lambda: self._remote.batch_update(document_id, requests, deadline=deadline),
            deadline,
        )

    async def invalidate_region(self, document_id: str, region: Region) -> int:
        return await self.cache.invalidate_region(document_id, region)

    async def _read(
        self,
        endpoint: str,
        params: dict[str, Any],
        request_fn: Callable[[], Awaitable[T]],
        deadline: Deadline,
    ) -> T:
        await self.rate_limiter.acquire(deadline, endpoint)
        return await self.deduplicator.dedupe(
            endpoint,
            params,
            lambda: self._guarded(endpoint, request_fn, deadline),
            deadline,
        )

    async def _guarded(
        self,
        endpoint: str,
        request_fn: Callable[[], Awaitable[T]],
        deadline: Deadline,
    ) -> T:
        breaker = self.breakers.get(endpoint)

        async def attempt() -> T:
            async with self.gate.slot(deadline, endpoint):
                return await request_fn()

        return await breaker.call(
            lambda: self.retry.execute(attempt, deadline=deadline, service_id=endpoint)
        )

    async def close(self) -> None:
        """Cancel in-flight reads and close the wrapped service."""
        await self.deduplicator.cancel_all()
        await self._remote.close()
        logger.debug("ResilientDocumentService closed")

    async def __aenter__(self) -> "ResilientDocumentService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of every stack component."""
        return {
            "cache": self.cache.get_stats().to_dict(),
            "circuit_breakers": self.breakers.get_all_status(),
            "open_circuits": self.breakers.get_open_circuits(),
            "deduplicator": self.deduplicator.get_stats().to_dict(),
            "rate_limiter": self.rate_limiter.get_stats().to_dict(),
            "gate": self.gate.get_stats(),
            "retry": self.retry.get_stats().to_dict(),
        }
