"""
Mutation safety types using Pydantic models.

Intents are a tagged union over ``kind``. The safety layer itself only looks
at ``target`` and ``metadata``; ``payload`` is one remote sub-operation and
is passed through untouched.
"""

from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Mapping, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from sheetguard.exceptions import IntentValidationError, PolicyViolationCode
from sheetguard.remote.models import Region
from sheetguard.services.errors import ErrorDetail


class Target(BaseModel):
    """Where an intent lands: one document, one region."""

    model_config = ConfigDict(frozen=True)

    document_id: str = Field(min_length=1)
    region: Region


class IntentMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    estimated_cells_affected: int | None = Field(default=None, ge=0)
    destructive: bool | None = None  # None: the kind's default
    priority: int = 0


class IntentBase(BaseModel):
    """Fields and behaviour shared by every intent kind."""

    model_config = ConfigDict(frozen=True)

    DESTRUCTIVE: ClassVar[bool] = False
    SHIFTS_GRID: ClassVar[bool] = False

    kind: str
    target: Target
    payload: dict[str, Any] = Field(min_length=1)
    metadata: IntentMetadata = Field(default_factory=IntentMetadata)

    @model_validator(mode="after")
    def _fill_estimate(self) -> "IntentBase":
        if self.metadata.estimated_cells_affected is None:
            cells = self.target.region.cell_count()
            if cells is None:
                raise ValueError(
                    "metadata.estimated_cells_affected is required for unbounded regions"
                )
            object.__setattr__(
                self,
                "metadata",
                self.metadata.model_copy(update={"estimated_cells_affected": cells}),
            )
        return self

    @property
    def document_id(self) -> str:
        return self.target.document_id

    @property
    def cells(self) -> int:
        return self.metadata.estimated_cells_affected or 0

    @property
    def destructive(self) -> bool:
        if self.metadata.destructive is not None:
            return self.metadata.destructive
        return self.DESTRUCTIVE

    @property
    def shifts_grid(self) -> bool:
        return self.SHIFTS_GRID

    @property
    def effect_region(self) -> Region:
        """Region whose content may change when this intent applies."""
        if self.SHIFTS_GRID:
            return self.target.region.whole_sheet()
        return self.target.region


class WriteValuesIntent(IntentBase):
    kind: Literal["write_values"] = "write_values"


class AppendRowsIntent(IntentBase):
    kind: Literal["append_rows"] = "append_rows"

    @property
    def effect_region(self) -> Region:
        # Appends land somewhere below the target's first row.
        return self.target.region.model_copy(update={"end_row": None})


class ClearValuesIntent(IntentBase):
    DESTRUCTIVE = True

    kind: Literal["clear_values"] = "clear_values"


class FormatCellsIntent(IntentBase):
    kind: Literal["format_cells"] = "format_cells"


class InsertDimensionIntent(IntentBase):
    SHIFTS_GRID = True

    kind: Literal["insert_dimension"] = "insert_dimension"


class DeleteDimensionIntent(IntentBase):
    DESTRUCTIVE = True
    SHIFTS_GRID = True

    kind: Literal["delete_dimension"] = "delete_dimension"


class DeleteSheetIntent(IntentBase):
    DESTRUCTIVE = True
    SHIFTS_GRID = True

    kind: Literal["delete_sheet"] = "delete_sheet"


class RawIntent(IntentBase):
    """Any other sub-operation; the caller declares its effect in metadata."""

    kind: Literal["raw"] = "raw"


Intent = Annotated[
    Union[
        WriteValuesIntent,
        AppendRowsIntent,
        ClearValuesIntent,
        FormatCellsIntent,
        InsertDimensionIntent,
        DeleteDimensionIntent,
        DeleteSheetIntent,
        RawIntent,
    ],
    Field(discriminator="kind"),
]

_intent_adapter: TypeAdapter[Intent] = TypeAdapter(Intent)


def parse_intents(raw: Sequence[Mapping[str, Any] | IntentBase]) -> list[IntentBase]:
    """Validate caller input into intents, or raise IntentValidationError."""
    if not raw:
        raise IntentValidationError("No intents submitted")

    intents: list[IntentBase] = []
    for index, item in enumerate(raw):
        if isinstance(item, IntentBase):
            intents.append(item)
            continue
        try:
            intents.append(_intent_adapter.validate_python(item))
        except ValidationError as e:
            raise IntentValidationError.from_pydantic(e, index) from e
    return intents


class EffectScopeLimits(BaseModel):
    """Caller-supplied caps; None falls back to the configured default."""

    max_cells_affected: int | None = Field(default=None, gt=0)
    max_rows_affected: int | None = Field(default=None, gt=0)
    max_columns_affected: int | None = Field(default=None, gt=0)
    require_explicit_range: bool = False  # deny targets without both row and column bounds


class ExpectedState(BaseModel):
    """Precondition the caller observed earlier (optimistic concurrency)."""

    version: str | None = None
    checksum: str | None = None
    checksum_region: Region | None = None
    row_count: int | None = Field(default=None, ge=0)
    column_count: int | None = Field(default=None, ge=0)
    sheet_title: str | None = None
    first_row_values: list[str] | None = None

    @property
    def needs_metadata(self) -> bool:
        return any(
            v is not None
            for v in (self.version, self.row_count, self.column_count, self.sheet_title)
        )


class SubmitOptions(BaseModel):
    dry_run: bool = False
    expected_state: ExpectedState | None = None
    effect_scope_limits: EffectScopeLimits | None = None
    auto_snapshot: bool = True  # False opts out of snapshots for destructive sets
    deadline_seconds: float | None = Field(default=None, gt=0)


class PolicyDecision(BaseModel):
    """Verdict for one intent. All intents of a document share the verdict."""

    document_id: str
    allowed: bool
    reason: PolicyViolationCode | None = None
    dry_run: bool = False
    requires_snapshot: bool = False
    cells_affected: int = 0
    limit: int | None = None
    error: ErrorDetail | None = None
    warnings: list[ErrorDetail] = Field(default_factory=list)


class CellChange(BaseModel):
    cell: str
    change: Literal["added", "removed", "changed"]
    before: Any = None
    after: Any = None


class DiffResult(BaseModel):
    """
    Cell-level description of a mutation.

    Counts are exact; ``changes`` is capped for reporting and ``truncated``
    says so.
    """

    tier: Literal["full", "reported", "projected"]
    regions: list[str] = Field(default_factory=list)
    added: int = 0
    removed: int = 0
    changed: int = 0
    changes: list[CellChange] = Field(default_factory=list)
    truncated: bool = False
    sub_operations: int = 0

    @property
    def total_changes(self) -> int:
        return self.added + self.removed + self.changed


class MutationStatus(str, Enum):
    APPLIED = "applied"
    PARTIAL = "partial"
    DRY_RUN = "dry_run"
    DENIED = "denied"
    FAILED = "failed"


class DocumentSummary(BaseModel):
    document_id: str
    status: MutationStatus
    cells_affected: int = 0
    reversible: bool = False
    snapshot_id: str | None = None
    diff: DiffResult | None = None
    completed_calls: int = 0
    total_calls: int = 0
    error: ErrorDetail | None = None
    warnings: list[ErrorDetail] = Field(default_factory=list)


class MutationSummary(BaseModel):
    """What the caller gets back from submit/restore."""

    status: MutationStatus
    cells_affected: int = 0
    reversible: bool = False
    snapshot_id: str | None = None
    diff: DiffResult | None = None
    error: ErrorDetail | None = None
    warnings: list[ErrorDetail] = Field(default_factory=list)
    documents: list[DocumentSummary] = Field(default_factory=list)

    @classmethod
    def from_documents(cls, documents: list[DocumentSummary]) -> "MutationSummary":
        statuses = {d.status for d in documents}
        if len(statuses) == 1:
            status = statuses.pop()
        elif statuses & {MutationStatus.APPLIED, MutationStatus.PARTIAL}:
            status = MutationStatus.PARTIAL
        elif MutationStatus.FAILED in statuses:
            status = MutationStatus.FAILED
        else:
            status = MutationStatus.DENIED

        touched = [d for d in documents if d.completed_calls or d.status == MutationStatus.DRY_RUN]
        return cls(
            status=status,
            cells_affected=sum(d.cells_affected for d in documents),
            reversible=bool(touched) and all(d.reversible for d in touched),
            snapshot_id=next((d.snapshot_id for d in documents if d.snapshot_id), None),
            diff=documents[0].diff if len(documents) == 1 else None,
            error=next((d.error for d in documents if d.error), None),
            warnings=[w for d in documents for w in d.warnings],
            documents=documents,
        )

    @classmethod
    def from_error(cls, status: MutationStatus, error: ErrorDetail) -> "MutationSummary":
        return cls(status=status, error=error)
