"""
Service layer infrastructure - resilience patterns for remote document calls.

Provides:
- CacheManager: Region-aware read-through cache with TTL
- CircuitBreaker: Per-endpoint failure isolation
- RetryExecutor: Bounded exponential backoff with jitter
- RequestDeduplicator: Collapses concurrent identical reads
- RateLimiter / ConcurrencyGate: Admission control

The composed stack lives in ``sheetguard.services.client``.
"""

from sheetguard.services.errors import (
    CapacityExceededError,
    CircuitOpenError,
    DeadlineExceededError,
    ErrorDetail,
    PermanentRemoteError,
    RateLimitError,
    RequestTimeoutError,
    RetryExhaustedError,
    ServiceError,
    TransientRemoteError,
)
from sheetguard.services.deadline import Deadline
from sheetguard.services.cache import CacheEntry, CacheKey, CacheManager
from sheetguard.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitState,
)
from sheetguard.services.deduplicator import RequestDeduplicator
from sheetguard.services.rate_limiter import ConcurrencyGate, RateLimit, RateLimiter
from sheetguard.services.retry import RetryConfig, RetryExecutor

__all__ = [
    # Errors
    "ServiceError",
    "ErrorDetail",
    "TransientRemoteError",
    "RateLimitError",
    "RequestTimeoutError",
    "RetryExhaustedError",
    "PermanentRemoteError",
    "CircuitOpenError",
    "CapacityExceededError",
    "DeadlineExceededError",
    # Deadline
    "Deadline",
    # Cache
    "CacheManager",
    "CacheEntry",
    "CacheKey",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitState",
    # Deduplicator
    "RequestDeduplicator",
    # Admission
    "RateLimit",
    "RateLimiter",
    "ConcurrencyGate",
    # Retry
    "RetryConfig",
    "RetryExecutor",
]
