"""
Remote document data types using Pydantic models.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def column_letter(index: int) -> str:
    """Zero-based column index to A1 letters (0 -> A, 26 -> AA)."""
    letters = ""
    index += 1
    while index > 0:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def cell_name(row: int, column: int) -> str:
    """Zero-based row/column to an A1 cell name."""
    return f"{column_letter(column)}{row + 1}"


class Region(BaseModel):
    """
    Rectangular region of one sheet.

    Zero-based, half-open bounds (the same convention as a Sheets GridRange).
    ``end_row``/``end_column`` of ``None`` mean the region runs to the edge of
    the sheet.
    """

    model_config = ConfigDict(frozen=True)

    sheet_id: int = 0
    sheet_title: str = "Sheet1"
    start_row: int = Field(default=0, ge=0)
    end_row: int | None = None
    start_column: int = Field(default=0, ge=0)
    end_column: int | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "Region":
        if self.end_row is not None and self.end_row <= self.start_row:
            raise ValueError("end_row must be greater than start_row")
        if self.end_column is not None and self.end_column <= self.start_column:
            raise ValueError("end_column must be greater than start_column")
        return self

    @property
    def bounded(self) -> bool:
        return self.end_row is not None and self.end_column is not None

    @property
    def row_count(self) -> int | None:
        return None if self.end_row is None else self.end_row - self.start_row

    @property
    def column_count(self) -> int | None:
        if self.end_column is None:
            return None
        return self.end_column - self.start_column

    def cell_count(self) -> int | None:
        if not self.bounded:
            return None
        return self.row_count * self.column_count

    def overlaps(self, other: "Region") -> bool:
        if self.sheet_id != other.sheet_id:
            return False
        return _spans_overlap(
            self.start_row, self.end_row, other.start_row, other.end_row
        ) and _spans_overlap(
            self.start_column, self.end_column, other.start_column, other.end_column
        )

    def whole_sheet(self) -> "Region":
        return Region(sheet_id=self.sheet_id, sheet_title=self.sheet_title)

    def to_grid_range(self) -> dict[str, int]:
        grid: dict[str, int] = {
            "sheetId": self.sheet_id,
            "startRowIndex": self.start_row,
            "startColumnIndex": self.start_column,
        }
        if self.end_row is not None:
            grid["endRowIndex"] = self.end_row
        if self.end_column is not None:
            grid["endColumnIndex"] = self.end_column
        return grid

    def to_a1(self) -> str:
        title = "'" + self.sheet_title.replace("'", "''") + "'"
        if (
            self.start_row == 0
            and self.start_column == 0
            and self.end_row is None
            and self.end_column is None
        ):
            return title

        start = cell_name(self.start_row, self.start_column)
        end_col = column_letter(
            (self.end_column if self.end_column is not None else 18278) - 1
        )
        end = end_col if self.end_row is None else f"{end_col}{self.end_row}"
        return f"{title}!{start}:{end}"

    def __str__(self) -> str:
        return self.to_a1()


def _spans_overlap(
    a_start: int, a_end: int | None, b_start: int, b_end: int | None
) -> bool:
    a_before_b = a_end is not None and a_end <= b_start
    b_before_a = b_end is not None and b_end <= a_start
    return not (a_before_b or b_before_a)


class ValueRange(BaseModel):
    """Values read from one region, row-major. Trailing empty cells may be absent."""

    region: Region
    values: list[list[Any]] = Field(default_factory=list)


class SheetProperties(BaseModel):
    """Grid properties of one sheet."""

    sheet_id: int
    title: str
    row_count: int = 0
    column_count: int = 0


class DocumentMetadata(BaseModel):
    """Cheap document-level metadata used for precondition checks."""

    document_id: str
    version: str | None = None
    sheets: list[SheetProperties] = Field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(s.row_count for s in self.sheets)

    @property
    def total_columns(self) -> int:
        return sum(s.column_count for s in self.sheets)

    def sheet(self, title: str) -> SheetProperties | None:
        return next((s for s in self.sheets if s.title == title), None)


class BatchUpdateResult(BaseModel):
    """Outcome of one batched write: one reply per sub-operation, in order."""

    document_id: str
    replies: list[dict[str, Any]] = Field(default_factory=list)
