"""
CacheManager - Async-compatible read-through cache over remote document state.

Features:
- Entries keyed by (document id, region, query shape)
- TTL (Time To Live) for cache entries, oldest-first eviction at capacity
- Region-overlap invalidation after mutations; reads that started before an
  overlapping invalidation are not stored
- Substring pattern invalidation
"""

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from sheetguard.remote.models import Region

T = TypeVar("T")

INVALIDATION_HISTORY = 64


@dataclass(frozen=True)
class CacheKey:
    """Identity of a cached read. ``region`` is None for document-level reads."""

    document_id: str
    region: Region | None
    query_shape: str

    def __str__(self) -> str:
        region = self.region.to_a1() if self.region is not None else "*"
        return f"{self.document_id}|{region}|{self.query_shape}"


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    value: T
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CacheManager:
    """
    Async-compatible cache manager with TTL and region-aware invalidation.

    Usage:
        cache = CacheManager(max_size=500)
        key = CacheKey("doc-id", region, "values:FORMULA")

        values = await cache.get_or_fetch(key, lambda: remote.get_values(...))

        # After writing to `region`
        await cache.invalidate_region("doc-id", region)
    """

    def __init__(
        self,
        max_size: int = 500,
        default_ttl: timedelta = timedelta(seconds=60),
        debug: bool = False,
        now: Callable[[], datetime] = datetime.now,
    ):
        self._memory: dict[CacheKey, CacheEntry[Any]] = {}
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._debug = debug
        self._now = now
        self._lock = asyncio.Lock()
        self._stats = CacheStats()
        # Per document: invalidation counter and the most recent invalidated regions
        self._generations: dict[str, int] = defaultdict(int)
        self._invalidated: dict[str, deque[tuple[int, Region]]] = defaultdict(
            lambda: deque(maxlen=INVALIDATION_HISTORY)
        )

    async def get(self, key: CacheKey) -> Any | None:
        """Get value from cache. Returns None on miss or expiry."""
        async with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key}")
                return None

            if entry.is_expired(self._now()):
                del self._memory[key]
                self._stats.misses += 1
                self._log(f"EXPIRED: {key}")
                return None

            self._stats.hits += 1
            self._log(f"HIT: {key}")
            return entry.value

    async def set(
        self,
        key: CacheKey,
        value: Any,
        ttl: timedelta | None = None,
        since: int | None = None,
    ) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live (uses default if not specified)
            since: ``generation()`` observed before the value was read; the
                store is skipped if an overlapping invalidation came after it

        Returns:
            Whether the value was stored
        """
        ttl = ttl or self._default_ttl
        now = self._now()
        entry = CacheEntry(value=value, created_at=now, expires_at=now + ttl)

        async with self._lock:
            if since is not None and self._invalidated_since(key, since):
                self._log(f"SKIP: {key} (invalidated while reading)")
                return False

            # Evict the oldest entry if at capacity
            if len(self._memory) >= self._max_size and key not in self._memory:
                self._evict_oldest()

            self._memory[key] = entry
            self._log(f"SET: {key} (TTL: {ttl.total_seconds()}s)")
            return True

    def generation(self, document_id: str) -> int:
        """Number of region invalidations seen so far for ``document_id``."""
        return self._generations[document_id]

    async def get_or_fetch(
        self,
        key: CacheKey,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: timedelta | None = None,
        use_cache: bool = True,
    ) -> T:
        """
        Read-through lookup.

        On a miss (or with ``use_cache=False``) ``fetch_fn`` runs outside the
        lock. Its result is stored unless an overlapping region was
        invalidated while it ran.
        """
        if use_cache:
            cached = await self.get(key)
            if cached is not None:
                return cached

        since = self.generation(key.document_id)
        value = await fetch_fn()
        await self.set(key, value, ttl, since=since)
        return value

    async def invalidate(self, pattern: str) -> int:
        """
        Invalidate all keys whose string form contains ``pattern``.

        Returns:
            Number of entries invalidated
        """
        async with self._lock:
            keys_to_delete = [k for k in self._memory if pattern in str(k)]
            for key in keys_to_delete:
                del self._memory[key]

        if keys_to_delete:
            self._log(f"INVALIDATE: {len(keys_to_delete)} entries matching '{pattern}'")
        return len(keys_to_delete)

    async def invalidate_region(self, document_id: str, region: Region) -> int:
        """
        Invalidate entries of ``document_id`` whose region overlaps ``region``.

        Document-level entries (region None) are dropped too since any write
        changes document metadata. Entries for disjoint regions survive.
        """
        async with self._lock:
            self._generations[document_id] += 1
            self._invalidated[document_id].append((self._generations[document_id], region))

            keys_to_delete = [
                k
                for k in self._memory
                if k.document_id == document_id
                and (k.region is None or k.region.overlaps(region))
            ]
            for key in keys_to_delete:
                del self._memory[key]
            self._stats.invalidations += len(keys_to_delete)

        if keys_to_delete:
            logger.debug(
                f"[CacheManager] Invalidated {len(keys_to_delete)} entries "
                f"overlapping {document_id} {region}"
            )
        return len(keys_to_delete)

    def _invalidated_since(self, key: CacheKey, since: int) -> bool:
        """Caller holds the lock."""
        current = self._generations[key.document_id]
        if current == since:
            return False

        recent = [r for g, r in self._invalidated[key.document_id] if g > since]
        if len(recent) < current - since:
            # History rolled over; assume the worst.
            return True
        return key.region is None or any(key.region.overlaps(r) for r in recent)

    def _evict_oldest(self) -> None:
        """Evict the oldest entry. Caller holds the lock."""
        if not self._memory:
            return

        oldest_key = min(self._memory, key=lambda k: self._memory[k].created_at)
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key}")

    def __contains__(self, key: CacheKey) -> bool:
        entry = self._memory.get(key)
        return entry is not None and not entry.is_expired(self._now())

    def __len__(self) -> int:
        return len(self._memory)

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheManager] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
