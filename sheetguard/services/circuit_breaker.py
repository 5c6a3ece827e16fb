"""
CircuitBreaker - Stops calling a remote endpoint that is known to be failing.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Endpoint is failing, calls fail fast with CircuitOpenError
- HALF_OPEN: Cool-down elapsed, exactly one trial call is allowed

Transitions:
- CLOSED → OPEN: failure_threshold consecutive failures within failure_window
- OPEN → HALF_OPEN: After reset_timeout expires
- HALF_OPEN → CLOSED: Trial call succeeded
- HALF_OPEN → OPEN: Trial call failed

All state changes are synchronous, so they are atomic on the event loop and
no lock is held across the wrapped call.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from pydantic import BaseModel

from sheetguard.services.errors import (
    CircuitOpenError,
    PermanentRemoteError,
    TransientRemoteError,
)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking calls
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    failure_window: timedelta = timedelta(seconds=60)  # Streak must fit in this window
    reset_timeout: timedelta = timedelta(seconds=30)  # Cool-down before half-open
    half_open_max_requests: int = 1  # Trial calls allowed in half-open state


class CircuitBreakerState(BaseModel):
    """Point-in-time view of one breaker."""

    endpoint: str
    state: CircuitState
    consecutive_failures: int
    last_state_change_at: datetime
    opened_until: datetime | None = None


def is_remote_failure(error: BaseException) -> bool:
    """Default failure classifier: only transient remote errors trip the breaker."""
    return isinstance(error, TransientRemoteError)


class CircuitBreaker:
    """
    Circuit breaker for a single logical endpoint.

    Usage:
        cb = CircuitBreaker("spreadsheets.batchUpdate")
        result = await cb.call(lambda: remote.batch_update(...))
    """

    def __init__(
        self,
        endpoint: str,
        config: CircuitBreakerConfig | None = None,
        is_failure: Callable[[BaseException], bool] = is_remote_failure,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.endpoint = endpoint
        self.config = config or CircuitBreakerConfig()
        self._is_failure = is_failure
        self._now = now

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._streak_started_at: datetime | None = None
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._last_state_change_at = now()
        self._half_open_requests = 0
        self._rejected = 0

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        if self._state == CircuitState.OPEN:
            if self._opened_at and self._now() >= self._opened_at + self.config.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
                self._half_open_requests = 0
        return self._state

    def can_request(self) -> bool:
        """Check if a call would be admitted right now."""
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return True

        if current_state == CircuitState.HALF_OPEN:
            return self._half_open_requests < self.config.half_open_max_requests

        return False

    def acquire(self) -> None:
        """
        Admit one call or raise CircuitOpenError.

        In HALF_OPEN the admitted call is the trial; later calls are rejected
        until the trial reports back.
        """
        if not self.can_request():
            self._rejected += 1
            raise CircuitOpenError(self.endpoint, self.get_time_until_reset() or 0)
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_requests += 1

    async def call(self, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``request_fn`` under breaker protection."""
        self.acquire()
        trial = self._state == CircuitState.HALF_OPEN
        settled = False
        try:
            result = await request_fn()
            self.record_success()
            settled = True
            return result
        except Exception as e:
            if self._is_failure(e):
                self.record_failure()
                settled = True
            elif isinstance(e, PermanentRemoteError):
                # The endpoint answered; a rejected request says nothing about its health.
                self.record_success()
                settled = True
            raise
        finally:
            if trial and not settled and self._state == CircuitState.HALF_OPEN:
                # Trial never reached the endpoint; let the next call try instead.
                self._half_open_requests = max(0, self._half_open_requests - 1)

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0
            self._streak_started_at = None

    def record_failure(self) -> None:
        """Record a failed call."""
        now = self._now()
        self._last_failure_time = now

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._failure_count += 1
            self._open()
            return

        if self._state != CircuitState.CLOSED:
            return

        if (
            self._streak_started_at is None
            or now - self._streak_started_at > self.config.failure_window
        ):
            self._streak_started_at = now
            self._failure_count = 0
        self._failure_count += 1

        if self._failure_count >= self.config.failure_threshold:
            self._open()

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._last_state_change_at = self._now()
        logger.info(
            f"Circuit breaker '{self.endpoint}' {old_state.value} -> {new_state.value}"
        )

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._opened_at = self._now()
        self._half_open_requests = 0
        self._transition(CircuitState.OPEN)
        logger.warning(
            f"Circuit breaker '{self.endpoint}' OPENED after {self._failure_count} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._failure_count = 0
        self._streak_started_at = None
        self._opened_at = None
        self._half_open_requests = 0
        self._transition(CircuitState.CLOSED)

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._close()
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.endpoint}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or not self._opened_at:
            return None

        reset_at = self._opened_at + self.config.reset_timeout
        remaining = (reset_at - self._now()).total_seconds()
        return max(0, remaining)

    def snapshot(self) -> CircuitBreakerState:
        state = self.state
        opened_until = None
        if state == CircuitState.OPEN and self._opened_at:
            opened_until = self._opened_at + self.config.reset_timeout
        return CircuitBreakerState(
            endpoint=self.endpoint,
            state=state,
            consecutive_failures=self._failure_count,
            last_state_change_at=self._last_state_change_at,
            opened_until=opened_until,
        )

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "endpoint": self.endpoint,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "rejected": self._rejected,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }


class CircuitBreakerRegistry:
    """
    Registry owning one circuit breaker per logical endpoint.

    Usage:
        registry = CircuitBreakerRegistry()
        cb = registry.get("values.get")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._now = now

    def get(
        self,
        endpoint: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for an endpoint."""
        if endpoint not in self._breakers:
            self._breakers[endpoint] = CircuitBreaker(
                endpoint,
                config or self._default_config,
                now=self._now,
            )
        return self._breakers[endpoint]

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {endpoint: cb.get_status() for endpoint, cb in self._breakers.items()}

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def get_open_circuits(self) -> list[str]:
        """Get list of endpoints with open circuits."""
        return [
            endpoint
            for endpoint, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
