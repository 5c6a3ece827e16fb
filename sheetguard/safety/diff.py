"""
DiffEngine - cell-level before/after comparison for mutation summaries.

Tiers:
- full: snapshot values vs post-mutation read
- reported: no snapshot; built from the remote service's per-call replies
- projected: dry run; what would be touched, nothing is read
"""

import hashlib
import json
from typing import Any, Iterable, Sequence

from sheetguard.remote.models import ValueRange, cell_name
from sheetguard.safety.models import CellChange, DiffResult, IntentBase


def values_checksum(values: list[list[Any]]) -> str:
    """MD5 of the compact JSON of a value grid."""
    payload = json.dumps(values, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.md5(payload.encode()).hexdigest()


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _cell(values: list[list[Any]], row: int, column: int) -> Any:
    if row < len(values) and column < len(values[row]):
        return values[row][column]
    return None


def normalize_grid(values: list[list[Any]], rows: int, columns: int) -> list[list[Any]]:
    """Pad a ragged grid with None up to rows x columns."""
    return [[_cell(values, r, c) for c in range(columns)] for r in range(rows)]


class DiffEngine:
    """
    Computes DiffResults.

    Counting is always exact. Only the list of reported changes is sampled
    when it grows past ``max_reported_changes``.
    """

    def __init__(self, max_reported_changes: int = 100):
        self.max_reported_changes = max_reported_changes

    def diff(self, before: ValueRange, after: ValueRange) -> DiffResult:
        return self.diff_many([(before, after)])

    def diff_many(self, pairs: Iterable[tuple[ValueRange, ValueRange]]) -> DiffResult:
        added = removed = changed = 0
        changes: list[CellChange] = []
        regions: list[str] = []

        for before, after in pairs:
            regions.append(before.region.to_a1())
            row_offset = before.region.start_row
            col_offset = before.region.start_column
            rows = max(len(before.values), len(after.values))
            for r in range(rows):
                width = max(
                    len(before.values[r]) if r < len(before.values) else 0,
                    len(after.values[r]) if r < len(after.values) else 0,
                )
                for c in range(width):
                    old = _cell(before.values, r, c)
                    new = _cell(after.values, r, c)
                    if _is_empty(old) and _is_empty(new):
                        continue
                    if _is_empty(old):
                        kind = "added"
                        added += 1
                    elif _is_empty(new):
                        kind = "removed"
                        removed += 1
                    elif old != new:
                        kind = "changed"
                        changed += 1
                    else:
                        continue
                    changes.append(
                        CellChange(
                            cell=cell_name(row_offset + r, col_offset + c),
                            change=kind,
                            before=None if _is_empty(old) else old,
                            after=None if _is_empty(new) else new,
                        )
                    )

        reported, truncated = self._sample(changes)
        return DiffResult(
            tier="full",
            regions=regions,
            added=added,
            removed=removed,
            changed=changed,
            changes=reported,
            truncated=truncated,
        )

    def reported(
        self, intents: Sequence[IntentBase], replies: Sequence[dict[str, Any]]
    ) -> DiffResult:
        """Diff built from what the remote service said it did."""
        return DiffResult(
            tier="reported",
            regions=_unique_regions(intents),
            changed=sum(i.cells for i in intents),
            sub_operations=len(replies),
        )

    def projected(self, intents: Sequence[IntentBase], sub_operations: int) -> DiffResult:
        return DiffResult(
            tier="projected",
            regions=_unique_regions(intents),
            changed=sum(i.cells for i in intents),
            sub_operations=sub_operations,
        )

    def _sample(self, changes: list[CellChange]) -> tuple[list[CellChange], bool]:
        limit = self.max_reported_changes
        if len(changes) <= limit:
            return changes, False
        if limit == 0:
            return [], True
        step = len(changes) / limit
        return [changes[int(i * step)] for i in range(limit)], True


def _unique_regions(intents: Iterable[IntentBase]) -> list[str]:
    seen: dict[str, None] = {}
    for intent in intents:
        seen.setdefault(intent.effect_region.to_a1(), None)
    return list(seen)
