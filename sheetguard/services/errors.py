"""
Service layer exceptions.

Every error raised on the way to the remote document service derives from
ServiceError and can describe itself as an ErrorDetail for the caller.
"""

from typing import Any

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured, caller-facing description of a failure or denial."""

    code: str
    message: str
    retryable: bool = False
    document_id: str | None = None
    region: str | None = None
    cells_affected: int | None = None
    limit: int | None = None
    retry_after: float | None = None
    endpoint: str | None = None
    suggested_fix: str | None = None


class ServiceError(Exception):
    """Base exception for service layer errors."""

    code = "SERVICE_ERROR"
    retryable = False

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)

    def to_detail(self, **extra: Any) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=str(self),
            retryable=self.retryable,
            endpoint=self.service_id,
            **extra,
        )


class TransientRemoteError(ServiceError):
    """Remote call failed in a way that may succeed if repeated."""

    code = "TRANSIENT_REMOTE_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message, service_id=service_id)

    def to_detail(self, **extra: Any) -> ErrorDetail:
        extra.setdefault("retry_after", self.retry_after)
        return super().to_detail(**extra)


class RateLimitError(TransientRemoteError):
    """Rate limit exceeded."""

    code = "RATE_LIMITED"

    def __init__(self, service_id: str, retry_after: float | None = None):
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(
            msg, service_id=service_id, status_code=429, retry_after=retry_after
        )


class RequestTimeoutError(TransientRemoteError):
    """Request timed out on the wire."""

    code = "REQUEST_TIMEOUT"

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class RetryExhaustedError(TransientRemoteError):
    """All retry attempts failed; the caller may resubmit later."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, service_id: str, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Request to service '{service_id}' failed after {attempts} attempts: "
            f"{last_error}",
            service_id=service_id,
            status_code=getattr(last_error, "status_code", None),
            retry_after=getattr(last_error, "retry_after", None),
        )


class PermanentRemoteError(ServiceError):
    """Remote service rejected the call; repeating it will not help."""

    code = "PERMANENT_REMOTE_ERROR"

    def __init__(
        self, message: str, service_id: str | None = None, status_code: int | None = None
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    code = "CIRCUIT_OPEN"

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for endpoint '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )

    def to_detail(self, **extra: Any) -> ErrorDetail:
        extra.setdefault("retry_after", self.reset_after_seconds)
        return super().to_detail(**extra)


class CapacityExceededError(ServiceError):
    """Too many calls queued for the remote service."""

    code = "CAPACITY_EXCEEDED"
    retryable = True

    def __init__(self, message: str, service_id: str | None = None):
        super().__init__(message, service_id=service_id)


class DeadlineExceededError(CapacityExceededError):
    """The task's deadline passed while it was waiting."""

    code = "DEADLINE_EXCEEDED"

    def __init__(self, operation: str, service_id: str | None = None):
        self.operation = operation
        super().__init__(
            f"Deadline exceeded while {operation}", service_id=service_id
        )
