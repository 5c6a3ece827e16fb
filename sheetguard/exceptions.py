"""
Caller-facing exceptions.

Both are recovered locally into a structured denial; neither ever reaches
the remote service.
"""

from enum import Enum

from pydantic import ValidationError

from sheetguard.services.errors import ErrorDetail


class PolicyViolationCode(str, Enum):
    EFFECT_SCOPE_EXCEEDED = "EFFECT_SCOPE_EXCEEDED"
    STATE_MISMATCH = "STATE_MISMATCH"
    EXPLICIT_RANGE_REQUIRED = "EXPLICIT_RANGE_REQUIRED"


class IntentValidationError(Exception):
    """Malformed intent; rejected before policy evaluation."""

    code = "VALIDATION_ERROR"

    def __init__(self, detail: str = "Invalid intent", index: int | None = None):
        self.index = index
        super().__init__(detail)

    @classmethod
    def from_pydantic(
        cls, error: ValidationError, index: int | None = None
    ) -> "IntentValidationError":
        fields = "; ".join(
            f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}"
            for e in error.errors()
        )
        prefix = f"Intent #{index}: " if index is not None else ""
        return cls(f"{prefix}{fields}", index=index)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=str(self),
            retryable=False,
            suggested_fix="Fix the listed fields and resubmit",
        )


class PolicyViolation(Exception):
    """A proposed mutation was denied before any remote call."""

    def __init__(
        self,
        code: PolicyViolationCode,
        message: str,
        document_id: str | None = None,
        region: str | None = None,
        cells_affected: int | None = None,
        limit: int | None = None,
        suggested_fix: str | None = None,
    ):
        self.code = code
        self.document_id = document_id
        self.region = region
        self.cells_affected = cells_affected
        self.limit = limit
        self.suggested_fix = suggested_fix
        super().__init__(message)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code.value,
            message=str(self),
            # A stale precondition can pass after the caller re-reads.
            retryable=self.code == PolicyViolationCode.STATE_MISMATCH,
            document_id=self.document_id,
            region=self.region,
            cells_affected=self.cells_affected,
            limit=self.limit,
            suggested_fix=self.suggested_fix,
        )


class SnapshotNotFoundError(Exception):
    """Snapshot id is unknown, already restored, or past its retention window."""

    code = "SNAPSHOT_NOT_FOUND"

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot '{snapshot_id}' not found or expired")

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=str(self),
            retryable=False,
            suggested_fix="Snapshots are kept for a bounded retention window; capture a new one",
        )
