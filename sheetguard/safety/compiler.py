"""
BatchCompiler - turns approved intents into the fewest ordered batched writes.

Documents run concurrently and are reported in submission order. Per document:
1. policy evaluation (any denial aborts the whole document)
2. snapshot, when required, before any write
3. compile into calls; intents whose effect regions overlap stay in
   submission order in separate calls
4. dry run stops here with a projected summary
5. calls run in order; the first terminal failure stops the rest
6. overlapping cache entries are invalidated after each successful call
7. diff: full against the snapshot, otherwise from the call replies
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence

from loguru import logger

from sheetguard.remote.models import Region
from sheetguard.safety.diff import DiffEngine
from sheetguard.safety.models import (
    DiffResult,
    DocumentSummary,
    IntentBase,
    MutationStatus,
    MutationSummary,
    SubmitOptions,
)
from sheetguard.safety.policy import PolicyEnforcer, group_by_document
from sheetguard.safety.snapshot import SnapshotService, merge_regions
from sheetguard.services.client import ResilientDocumentService
from sheetguard.services.deadline import Deadline
from sheetguard.services.errors import ServiceError


@dataclass
class CompiledCall:
    """One batched write: sub-operations of one or more intents, in order."""

    document_id: str
    intents: list[IntentBase] = field(default_factory=list)

    @property
    def requests(self) -> list[dict[str, Any]]:
        return [intent.payload for intent in self.intents]

    @property
    def regions(self) -> list[Region]:
        return [intent.effect_region for intent in self.intents]

    def conflicts_with(self, intent: IntentBase) -> bool:
        region = intent.effect_region
        return any(region.overlaps(other) for other in self.regions)

    def describe(self) -> str:
        return ", ".join(dict.fromkeys(r.to_a1() for r in self.regions))


@dataclass
class CompilerConfig:
    max_batch_requests: int = 100


class BatchCompiler:
    """
    Orchestrates policy, snapshot, compile and execute for a submission.

    Usage:
        compiler = BatchCompiler(remote, policy, snapshots, DiffEngine())
        summary = await compiler.execute(intents, SubmitOptions(dry_run=True))
    """

    def __init__(
        self,
        remote: ResilientDocumentService,
        policy: PolicyEnforcer,
        snapshots: SnapshotService,
        diff_engine: DiffEngine | None = None,
        config: CompilerConfig | None = None,
    ):
        self.remote = remote
        self.policy = policy
        self.snapshots = snapshots
        self.diff_engine = diff_engine or DiffEngine()
        self.config = config or CompilerConfig()

    def compile(self, intents: Sequence[IntentBase]) -> list[CompiledCall]:
        """
        Greedy, order-preserving compile.

        An intent joins the current call unless its effect region overlaps one
        already in it, or the call is full; then a new call starts.
        """
        calls: list[CompiledCall] = []
        for document_id, group in group_by_document(intents).items():
            current = CompiledCall(document_id)
            for intent in group:
                if current.intents and (
                    current.conflicts_with(intent)
                    or len(current.intents) >= self.config.max_batch_requests
                ):
                    calls.append(current)
                    current = CompiledCall(document_id)
                current.intents.append(intent)
            if current.intents:
                calls.append(current)
        return calls

    async def execute(
        self, intents: Sequence[IntentBase], options: SubmitOptions | None = None
    ) -> MutationSummary:
        options = options or SubmitOptions()
        deadline = self.remote.new_deadline(options.deadline_seconds)

        documents = list(
            await asyncio.gather(
                *(
                    self._execute_document(document_id, group, options, deadline)
                    for document_id, group in group_by_document(intents).items()
                )
            )
        )
        summary = MutationSummary.from_documents(documents)
        logger.info(
            f"[BatchCompiler] {len(intents)} intents over {len(documents)} documents: "
            f"{summary.status.value}, {summary.cells_affected} cells"
        )
        return summary

    async def _execute_document(
        self,
        document_id: str,
        intents: list[IntentBase],
        options: SubmitOptions,
        deadline: Deadline,
    ) -> DocumentSummary:
        try:
            decision = await self.policy.evaluate_document(
                document_id,
                intents,
                limits=options.effect_scope_limits,
                expected_state=options.expected_state,
                dry_run=options.dry_run,
                auto_snapshot=options.auto_snapshot,
                deadline=deadline,
            )
        except ServiceError as e:
            logger.warning(f"[BatchCompiler] Precondition read failed for {document_id}: {e}")
            return DocumentSummary(
                document_id=document_id,
                status=MutationStatus.FAILED,
                error=e.to_detail(document_id=document_id),
            )

        if not decision.allowed:
            return DocumentSummary(
                document_id=document_id,
                status=MutationStatus.DENIED,
                error=decision.error,
            )

        calls = self.compile(intents)
        shifts_grid = any(intent.shifts_grid for intent in intents)

        if decision.dry_run:
            return DocumentSummary(
                document_id=document_id,
                status=MutationStatus.DRY_RUN,
                cells_affected=decision.cells_affected,
                reversible=decision.requires_snapshot and not shifts_grid,
                diff=self.diff_engine.projected(intents, len(intents)),
                total_calls=len(calls),
                warnings=decision.warnings,
            )

        snapshot_id = None
        if decision.requires_snapshot:
            try:
                snapshot_id = await self.snapshots.capture(
                    document_id, merge_regions(i.effect_region for i in intents), deadline
                )
            except ServiceError as e:
                logger.warning(
                    f"[BatchCompiler] Snapshot failed for {document_id}, no writes issued: {e}"
                )
                return DocumentSummary(
                    document_id=document_id,
                    status=MutationStatus.FAILED,
                    total_calls=len(calls),
                    error=e.to_detail(document_id=document_id),
                )

        completed = 0
        replies: list[dict[str, Any]] = []
        error = None
        for call in calls:
            try:
                result = await self.remote.batch_update(
                    document_id, call.requests, deadline=deadline
                )
            except ServiceError as e:
                logger.warning(
                    f"[BatchCompiler] Call {completed + 1}/{len(calls)} on {document_id} "
                    f"failed, {len(calls) - completed - 1} not attempted: {e}"
                )
                error = e.to_detail(document_id=document_id, region=call.describe())
                break

            completed += 1
            replies.extend(result.replies)
            for region in call.regions:
                await self.remote.invalidate_region(document_id, region)

        applied = [intent for call in calls[:completed] for intent in call.intents]
        if not applied:
            return DocumentSummary(
                document_id=document_id,
                status=MutationStatus.FAILED,
                snapshot_id=snapshot_id,
                total_calls=len(calls),
                error=error,
            )

        return DocumentSummary(
            document_id=document_id,
            status=MutationStatus.APPLIED if error is None else MutationStatus.PARTIAL,
            cells_affected=sum(intent.cells for intent in applied),
            reversible=snapshot_id is not None and not shifts_grid,
            snapshot_id=snapshot_id,
            diff=await self._diff(document_id, snapshot_id, applied, replies, deadline),
            completed_calls=completed,
            total_calls=len(calls),
            error=error,
        )

    async def _diff(
        self,
        document_id: str,
        snapshot_id: str | None,
        applied: list[IntentBase],
        replies: list[dict[str, Any]],
        deadline: Deadline,
    ) -> DiffResult:
        if snapshot_id is None:
            return self.diff_engine.reported(applied, replies)

        try:
            record = await self.snapshots.load(snapshot_id)
            after = await self.snapshots.read_current(
                document_id, [captured.region for captured in record.ranges], deadline
            )
        except ServiceError as e:
            # The write already happened; fall back to what the service reported.
            logger.warning(f"[BatchCompiler] Post-mutation read failed for {document_id}: {e}")
            return self.diff_engine.reported(applied, replies)

        return self.diff_engine.diff_many(zip(record.ranges, after))
