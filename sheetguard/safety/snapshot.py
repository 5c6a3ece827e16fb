"""
SnapshotService - captures region values before a mutation and replays them.

Captured values use the FORMULA render, so formulas come back as formulas
on restore. Formatting is not captured.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence

from loguru import logger

from sheetguard.exceptions import SnapshotNotFoundError
from sheetguard.remote.models import Region, ValueRange
from sheetguard.safety.diff import normalize_grid
from sheetguard.safety.store import SnapshotRecord, SnapshotStore
from sheetguard.services.client import ResilientDocumentService
from sheetguard.services.deadline import Deadline


def to_extended_value(value: Any) -> dict[str, Any]:
    """A read value as a Sheets ExtendedValue."""
    if isinstance(value, bool):
        return {"boolValue": value}
    if isinstance(value, (int, float)):
        return {"numberValue": value}
    text = str(value)
    if text.startswith("="):
        return {"formulaValue": text}
    return {"stringValue": text}


def restore_request(captured: ValueRange) -> dict[str, Any]:
    """
    One updateCells sub-operation writing ``captured`` back.

    Cells inside the range that the rows do not cover are cleared, so content
    added after the capture goes away too.
    """
    region = captured.region
    rows = region.row_count if region.row_count is not None else len(captured.values)
    columns = region.column_count
    if columns is None:
        columns = max((len(row) for row in captured.values), default=0)

    grid = normalize_grid(captured.values, rows, columns)
    return {
        "updateCells": {
            "range": region.to_grid_range(),
            "rows": [
                {
                    "values": [
                        {} if v is None or v == "" else {"userEnteredValue": to_extended_value(v)}
                        for v in row
                    ]
                }
                for row in grid
            ],
            "fields": "userEnteredValue",
        }
    }


def merge_regions(regions: Iterable[Region]) -> list[Region]:
    """Drop regions already covered by a whole-sheet region of the same sheet."""
    regions = list(dict.fromkeys(regions))
    whole = {r.sheet_id for r in regions if r == r.whole_sheet()}
    return [r for r in regions if r.sheet_id not in whole or r == r.whole_sheet()]


class SnapshotService:
    """
    Captures and restores region values.

    Every read and write goes through the ResilientDocumentService; a restore
    is an ordinary batched write.
    """

    def __init__(
        self,
        remote: ResilientDocumentService,
        store: SnapshotStore,
        retention: timedelta = timedelta(hours=1),
        now: Callable[[], datetime] = datetime.now,
    ):
        self.remote = remote
        self.store = store
        self.retention = retention
        self._now = now

    async def read_current(
        self,
        document_id: str,
        regions: Sequence[Region],
        deadline: Deadline | None = None,
        use_cache: bool = False,
    ) -> list[ValueRange]:
        return [
            await self.remote.get_values(
                document_id, region, deadline=deadline, use_cache=use_cache
            )
            for region in regions
        ]

    async def capture(
        self,
        document_id: str,
        regions: Region | Sequence[Region],
        deadline: Deadline | None = None,
    ) -> str:
        """
        Read the regions and persist them. The snapshot is committed before
        this returns.
        """
        if isinstance(regions, Region):
            regions = [regions]
        regions = merge_regions(regions)

        now = self._now()
        await self.store.prune_expired(now)

        ranges = await self.read_current(document_id, regions, deadline)
        record = SnapshotRecord(
            snapshot_id=str(uuid.uuid4()),
            document_id=document_id,
            ranges=ranges,
            created_at=now,
            expires_at=now + self.retention,
        )
        await self.store.save(record)

        logger.info(
            f"[Snapshot] Captured {record.snapshot_id} for {document_id} "
            f"({', '.join(r.to_a1() for r in regions)})"
        )
        return record.snapshot_id

    async def load(self, snapshot_id: str) -> SnapshotRecord:
        record = await self.store.get(snapshot_id)
        if record is None or record.is_expired(self._now()):
            if record is not None:
                await self.store.delete(snapshot_id)
            raise SnapshotNotFoundError(snapshot_id)
        return record

    async def restore(
        self, snapshot_id: str, deadline: Deadline | None = None
    ) -> SnapshotRecord:
        """Write the captured values back, then drop the snapshot."""
        record = await self.load(snapshot_id)
        requests = [restore_request(r) for r in record.ranges]

        await self.remote.batch_update(record.document_id, requests, deadline=deadline)
        for captured in record.ranges:
            await self.remote.invalidate_region(record.document_id, captured.region)

        await self.store.delete(snapshot_id)
        logger.info(f"[Snapshot] Restored {snapshot_id} to {record.document_id}")
        return record

    async def close(self) -> None:
        await self.store.close()
