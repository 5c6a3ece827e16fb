"""
PolicyEnforcer - decides whether a set of intents may run.

Checks, per document:
- summed estimated cells (and row/column spans) against the effect-scope limits
- bounded target regions, when the limits require explicit ranges
- the caller's expected state against a precondition read

Evaluation never writes. Real runs read fresh state for preconditions; dry
runs may be answered from the cache.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from sheetguard.exceptions import PolicyViolation, PolicyViolationCode
from sheetguard.remote.models import DocumentMetadata, Region
from sheetguard.safety.diff import values_checksum
from sheetguard.safety.models import (
    EffectScopeLimits,
    ExpectedState,
    IntentBase,
    PolicyDecision,
)
from sheetguard.services.client import ResilientDocumentService
from sheetguard.services.deadline import Deadline


@dataclass
class PolicyConfig:
    max_cells_affected: int = 50_000
    max_cells_ceiling: int = 1_000_000


def group_by_document(intents: Sequence[IntentBase]) -> dict[str, list[IntentBase]]:
    """Partition intents by document, keeping submission order in each group."""
    groups: dict[str, list[IntentBase]] = defaultdict(list)
    for intent in intents:
        groups[intent.document_id].append(intent)
    return dict(groups)


class PolicyEnforcer:
    """
    Usage:
        enforcer = PolicyEnforcer(resilient_remote, PolicyConfig(max_cells_affected=10_000))
        decisions = await enforcer.evaluate(intents, limits, expected_state)
    """

    def __init__(self, remote: ResilientDocumentService, config: PolicyConfig | None = None):
        self.remote = remote
        self.config = config or PolicyConfig()

    def cell_limit(self, limits: EffectScopeLimits | None) -> int:
        """The caller's cap (or the default), never above the ceiling."""
        requested = limits.max_cells_affected if limits else None
        if requested is None:
            requested = self.config.max_cells_affected
        return min(requested, self.config.max_cells_ceiling)

    async def evaluate(
        self,
        intents: Sequence[IntentBase],
        limits: EffectScopeLimits | None = None,
        expected_state: ExpectedState | None = None,
        dry_run: bool = False,
        auto_snapshot: bool = True,
        deadline: Deadline | None = None,
    ) -> list[PolicyDecision]:
        """One decision per intent; intents of the same document share it."""
        by_document: dict[str, PolicyDecision] = {}
        for document_id, group in group_by_document(intents).items():
            by_document[document_id] = await self.evaluate_document(
                document_id,
                group,
                limits=limits,
                expected_state=expected_state,
                dry_run=dry_run,
                auto_snapshot=auto_snapshot,
                deadline=deadline,
            )
        return [by_document[intent.document_id] for intent in intents]

    async def evaluate_document(
        self,
        document_id: str,
        intents: Sequence[IntentBase],
        limits: EffectScopeLimits | None = None,
        expected_state: ExpectedState | None = None,
        dry_run: bool = False,
        auto_snapshot: bool = True,
        deadline: Deadline | None = None,
    ) -> PolicyDecision:
        cells = sum(intent.cells for intent in intents)
        limit = self.cell_limit(limits)
        requires_snapshot = auto_snapshot and any(intent.destructive for intent in intents)

        violations = self.check_scope(document_id, intents, cells, limit, limits)
        if expected_state is not None and (dry_run or not violations):
            mismatch = await self.check_expected_state(
                document_id, intents, expected_state, deadline, use_cache=dry_run
            )
            if mismatch is not None:
                violations.append(mismatch)

        if dry_run:
            return PolicyDecision(
                document_id=document_id,
                allowed=True,
                dry_run=True,
                requires_snapshot=requires_snapshot,
                cells_affected=cells,
                limit=limit,
                warnings=[v.to_detail() for v in violations],
            )

        if violations:
            violation = violations[0]
            logger.info(f"[Policy] Denied {document_id}: {violation.code.value} - {violation}")
            return PolicyDecision(
                document_id=document_id,
                allowed=False,
                reason=violation.code,
                cells_affected=cells,
                limit=limit,
                error=violation.to_detail(),
            )

        return PolicyDecision(
            document_id=document_id,
            allowed=True,
            requires_snapshot=requires_snapshot,
            cells_affected=cells,
            limit=limit,
        )

    def check_scope(
        self,
        document_id: str,
        intents: Sequence[IntentBase],
        cells: int,
        limit: int,
        limits: EffectScopeLimits | None,
    ) -> list[PolicyViolation]:
        violations: list[PolicyViolation] = []
        first_region = str(intents[0].target.region)

        if cells > limit:
            violations.append(
                PolicyViolation(
                    PolicyViolationCode.EFFECT_SCOPE_EXCEEDED,
                    f"Operation would affect {cells} cells, limit is {limit}",
                    document_id=document_id,
                    region=first_region,
                    cells_affected=cells,
                    limit=limit,
                    suggested_fix="Split into smaller submissions or narrow the target regions",
                )
            )

        if limits is None:
            return violations

        unbounded = [i.target.region for i in intents if not i.target.region.bounded]
        if limits.require_explicit_range and unbounded:
            violations.append(
                PolicyViolation(
                    PolicyViolationCode.EXPLICIT_RANGE_REQUIRED,
                    f"Explicit range required, {unbounded[0]} runs to the sheet edge",
                    document_id=document_id,
                    region=str(unbounded[0]),
                    cells_affected=cells,
                    suggested_fix="Give every target a bounded A1 range",
                )
            )

        rows = sum(i.target.region.row_count or 0 for i in intents)
        if limits.max_rows_affected is not None and rows > limits.max_rows_affected:
            violations.append(
                PolicyViolation(
                    PolicyViolationCode.EFFECT_SCOPE_EXCEEDED,
                    f"Operation would affect {rows} rows, limit is {limits.max_rows_affected}",
                    document_id=document_id,
                    region=first_region,
                    cells_affected=cells,
                    limit=limits.max_rows_affected,
                    suggested_fix="Target fewer rows per submission",
                )
            )

        columns = sum(i.target.region.column_count or 0 for i in intents)
        if limits.max_columns_affected is not None and columns > limits.max_columns_affected:
            violations.append(
                PolicyViolation(
                    PolicyViolationCode.EFFECT_SCOPE_EXCEEDED,
                    f"Operation would affect {columns} columns, "
                    f"limit is {limits.max_columns_affected}",
                    document_id=document_id,
                    region=first_region,
                    cells_affected=cells,
                    limit=limits.max_columns_affected,
                    suggested_fix="Target fewer columns per submission",
                )
            )
        return violations

    async def check_expected_state(
        self,
        document_id: str,
        intents: Sequence[IntentBase],
        expected: ExpectedState,
        deadline: Deadline | None = None,
        use_cache: bool = False,
    ) -> PolicyViolation | None:
        """
        Compare the caller's observed state with what the document holds now.

        Row and column counts are totals over all sheets. The checksum is taken
        over unformatted values and the header over formatted ones, the same
        renders a caller sees when computing them.
        """
        target = intents[0].target.region

        if expected.needs_metadata:
            metadata = await self.remote.get_metadata(
                document_id, deadline=deadline, use_cache=use_cache
            )
            mismatch = _compare_metadata(document_id, target, expected, metadata)
            if mismatch is not None:
                return mismatch

        if expected.checksum is not None:
            region = expected.checksum_region or target
            current = await self.remote.get_values(
                document_id,
                region,
                value_render="UNFORMATTED_VALUE",
                deadline=deadline,
                use_cache=use_cache,
            )
            actual = values_checksum(current.values)
            if actual != expected.checksum:
                return _mismatch(
                    document_id,
                    region,
                    f"Checksum of {region.to_a1()} changed: expected {expected.checksum}, "
                    f"found {actual}",
                )

        if expected.first_row_values is not None:
            header = Region(
                sheet_id=target.sheet_id,
                sheet_title=target.sheet_title,
                start_row=0,
                end_row=1,
            )
            current = await self.remote.get_values(
                document_id,
                header,
                value_render="FORMATTED_VALUE",
                deadline=deadline,
                use_cache=use_cache,
            )
            actual_row = [str(v) for v in current.values[0]] if current.values else []
            # Columns past the expected ones are not compared
            if actual_row[: len(expected.first_row_values)] != expected.first_row_values:
                return _mismatch(
                    document_id,
                    header,
                    f"Header row changed: expected {expected.first_row_values}, "
                    f"found {actual_row}",
                )
        return None


def _mismatch(document_id: str, region: Region, message: str) -> PolicyViolation:
    return PolicyViolation(
        PolicyViolationCode.STATE_MISMATCH,
        message,
        document_id=document_id,
        region=region.to_a1(),
        suggested_fix="Re-read the document and resubmit with the current state",
    )


def _compare_metadata(
    document_id: str,
    target: Region,
    expected: ExpectedState,
    metadata: DocumentMetadata,
) -> PolicyViolation | None:
    if expected.version is not None and expected.version != metadata.version:
        return _mismatch(
            document_id,
            target,
            f"Document version changed: expected {expected.version}, found {metadata.version}",
        )
    if expected.row_count is not None and expected.row_count != metadata.total_rows:
        return _mismatch(
            document_id,
            target,
            f"Row count changed: expected {expected.row_count}, found {metadata.total_rows}",
        )
    if expected.column_count is not None and expected.column_count != metadata.total_columns:
        return _mismatch(
            document_id,
            target,
            f"Column count changed: expected {expected.column_count}, "
            f"found {metadata.total_columns}",
        )
    if expected.sheet_title is not None and metadata.sheet(expected.sheet_title) is None:
        return _mismatch(
            document_id,
            target,
            f"Sheet {expected.sheet_title!r} not found in {document_id}",
        )
    return None
