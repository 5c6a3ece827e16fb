from __future__ import annotations

import asyncio

from sheetguard.remote.base import BATCH_UPDATE, METADATA_GET, VALUES_GET
from sheetguard.remote.models import Region
from sheetguard.safety.diff import values_checksum
from sheetguard.safety.models import (
    EffectScopeLimits,
    ExpectedState,
    MutationStatus,
    SubmitOptions,
)
from sheetguard.service import MutationService
from sheetguard.services.cache import CacheKey
from sheetguard.services.errors import PermanentRemoteError, TransientRemoteError
from sheetguard.settings import Settings
from tests.fakes import FakeDocumentService, make_intent, run_with_service

DOC = "doc-1"


def _row(row: int, columns: int = 3) -> Region:
    return Region(start_row=row, end_row=row + 1, end_column=columns)


def test_disjoint_intents_compile_into_one_call(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    intents = [
        make_intent(region=_row(10), values=[["a", "b", "c"]]),
        make_intent(region=_row(11), values=[["d", "e", "f"]]),
    ]

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents)

    summary = run_with_service(settings, fake_remote, scenario)

    assert summary.status == MutationStatus.APPLIED
    assert fake_remote.writes == 1
    assert len(fake_remote.batches[0][1]) == 2
    assert fake_remote.values(DOC, _row(11)) == [["d", "e", "f"]]
    assert summary.cells_affected == 6
    assert summary.diff.tier == "reported"
    assert summary.reversible is False


def test_overlapping_intents_keep_submission_order(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    first = make_intent(region=_row(1), values=[["x"]])
    unrelated = make_intent(region=_row(20), values=[["y"]])
    second = make_intent(region=Region(start_row=1, end_row=2, start_column=0, end_column=1))
    other_sheet = make_intent(region=Region(sheet_id=5, end_row=2, end_column=2))

    async def scenario(service: MutationService):
        return service.compiler.compile([first, unrelated, second, other_sheet])

    calls = run_with_service(settings, fake_remote, scenario)

    assert [c.intents for c in calls] == [[first, unrelated], [second, other_sheet]]


def test_grid_shifting_intent_gets_its_own_call(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    write = make_intent(region=_row(1))
    insert = make_intent("insert_dimension", region=_row(30))
    later = make_intent(region=_row(50))
    elsewhere = make_intent(region=Region(sheet_id=2, end_row=1, end_column=1))

    async def scenario(service: MutationService):
        return service.compiler.compile([write, insert, later, elsewhere])

    calls = run_with_service(settings, fake_remote, scenario)

    assert [c.intents for c in calls] == [[write], [insert], [later, elsewhere]]


def test_calls_are_chunked_at_max_batch_requests(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    settings = settings.model_copy(update={"max_batch_requests": 2})
    intents = [make_intent(region=_row(i), values=[[i]]) for i in range(5)]

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents)

    summary = run_with_service(settings, fake_remote, scenario)

    assert [len(requests) for _, requests in fake_remote.batches] == [2, 2, 1]
    assert summary.documents[0].completed_calls == 3


def test_destructive_intent_snapshots_before_writing(
    settings: Settings, fake_remote: FakeDocumentService, table: Region
) -> None:
    intents = [make_intent("clear_values", region=table)]

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents)

    summary = run_with_service(settings, fake_remote, scenario)

    assert fake_remote.log[:2] == [VALUES_GET, BATCH_UPDATE]
    assert fake_remote.writes == 1
    assert summary.status == MutationStatus.APPLIED
    assert summary.reversible is True
    assert summary.snapshot_id is not None
    assert summary.diff.tier == "full"
    assert summary.diff.removed == 12
    assert fake_remote.values(DOC, table) == []


def test_opting_out_skips_snapshot(
    settings: Settings, fake_remote: FakeDocumentService, table: Region
) -> None:
    intents = [make_intent("clear_values", region=table)]

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents, SubmitOptions(auto_snapshot=False))

    summary = run_with_service(settings, fake_remote, scenario)

    assert fake_remote.calls[VALUES_GET] == 0
    assert summary.snapshot_id is None
    assert summary.reversible is False


def test_grid_changes_are_not_reversible(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    intents = [make_intent("delete_dimension", region=_row(1))]

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents)

    summary = run_with_service(settings, fake_remote, scenario)

    assert summary.status == MutationStatus.APPLIED
    assert summary.snapshot_id is not None
    assert summary.reversible is False


def test_stale_expected_state_is_denied_without_writes(
    settings: Settings, fake_remote: FakeDocumentService, table: Region
) -> None:
    observed = values_checksum(fake_remote.values(DOC, table))
    fake_remote.seed(DOC, [[None, 99]])
    intents = [make_intent(region=_row(1), values=[["z"]])]
    options = SubmitOptions(expected_state=ExpectedState(checksum=observed, checksum_region=table))

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents, options)

    summary = run_with_service(settings, fake_remote, scenario)

    assert summary.status == MutationStatus.DENIED
    assert summary.error.code == "STATE_MISMATCH"
    assert summary.error.retryable is True
    assert fake_remote.writes == 0


def test_permanent_failure_stops_the_batch(
    settings: Settings, fake_remote: FakeDocumentService, table: Region
) -> None:
    intents = [
        make_intent(region=table, values=[["one"]]),
        make_intent(region=table, values=[["two"]]),
        make_intent(region=table, values=[["three"]]),
    ]
    fake_remote.fail_next(
        BATCH_UPDATE,
        None,
        PermanentRemoteError("HTTP 400: bad request", status_code=400),
    )

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents)

    summary = run_with_service(settings, fake_remote, scenario)
    document = summary.documents[0]

    assert fake_remote.writes == 2
    assert summary.status == MutationStatus.PARTIAL
    assert (document.completed_calls, document.total_calls) == (1, 3)
    assert summary.cells_affected == 12
    assert summary.error.code == "PERMANENT_REMOTE_ERROR"
    assert summary.error.retryable is False
    assert summary.error.region == table.to_a1()
    assert fake_remote.cell(DOC, (0, 0)) == "one"


def test_failure_on_first_call_reports_nothing_applied(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    fake_remote.fail_next(BATCH_UPDATE, PermanentRemoteError("HTTP 404", status_code=404))

    async def scenario(service: MutationService):
        return await service.compiler.execute([make_intent(values=[["x"]])])

    summary = run_with_service(settings, fake_remote, scenario)

    assert summary.status == MutationStatus.FAILED
    assert summary.cells_affected == 0
    assert summary.documents[0].completed_calls == 0


def test_transient_failures_are_retried(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    fake_remote.fail_next(BATCH_UPDATE, TransientRemoteError("HTTP 503", status_code=503))

    async def scenario(service: MutationService):
        return await service.compiler.execute([make_intent(values=[["x"]])])

    summary = run_with_service(settings, fake_remote, scenario)

    assert summary.status == MutationStatus.APPLIED
    assert fake_remote.writes == 2


def test_scope_exceeded_makes_no_remote_calls(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    intents = [
        make_intent("clear_values", region=Region(end_row=40, end_column=20)),
        make_intent(region=Region(start_row=40, end_row=60, end_column=20)),
    ]
    options = SubmitOptions(expected_state=ExpectedState(version="v0"))

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents, options)

    summary = run_with_service(settings, fake_remote, scenario)

    assert summary.status == MutationStatus.DENIED
    assert summary.error.code == "EFFECT_SCOPE_EXCEEDED"
    assert summary.error.cells_affected == 1_200
    assert summary.error.limit == 1_000
    assert fake_remote.total_calls == 0


def test_denial_is_per_document(settings: Settings, fake_remote: FakeDocumentService) -> None:
    intents = [
        make_intent(region=_row(1), values=[["ok"]]),
        make_intent(region=Region(end_row=40, end_column=30), document_id="doc-2"),
    ]

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents)

    summary = run_with_service(settings, fake_remote, scenario)
    statuses = {d.document_id: d.status for d in summary.documents}

    assert statuses == {DOC: MutationStatus.APPLIED, "doc-2": MutationStatus.DENIED}
    assert summary.status == MutationStatus.PARTIAL
    assert [doc for doc, _ in fake_remote.batches] == [DOC]


def test_dry_run_is_idempotent_and_side_effect_free(
    settings: Settings, fake_remote: FakeDocumentService, table: Region
) -> None:
    before = fake_remote.values(DOC, Region())
    intents = [
        make_intent("clear_values", region=table),
        make_intent(region=Region(start_row=100, end_row=200, end_column=20)),
    ]
    options = SubmitOptions(
        dry_run=True, effect_scope_limits=EffectScopeLimits(max_cells_affected=500)
    )

    async def scenario(service: MutationService):
        first = await service.compiler.execute(intents, options)
        second = await service.compiler.execute(intents, options)
        return first, second

    first, second = run_with_service(settings, fake_remote, scenario)

    assert first.model_dump() == second.model_dump()
    assert first.status == MutationStatus.DRY_RUN
    assert first.diff.tier == "projected"
    assert first.cells_affected == 2_012
    assert [w.code for w in first.warnings] == ["EFFECT_SCOPE_EXCEEDED"]
    assert first.documents[0].total_calls == 1
    assert fake_remote.writes == 0
    assert fake_remote.values(DOC, Region()) == before


def test_mutation_invalidates_only_overlapping_cache_entries(
    settings: Settings, fake_remote: FakeDocumentService, table: Region
) -> None:
    far = Region(start_row=500, end_row=510, end_column=3)

    async def scenario(service: MutationService):
        await service.remote.get_values(DOC, table)
        await service.remote.get_values(DOC, far)
        await service.remote.get_metadata(DOC)
        await service.compiler.execute([make_intent(region=_row(2), values=[["new"]])])
        cache = service.remote.cache
        return (
            CacheKey(DOC, table, "values:FORMULA") in cache,
            CacheKey(DOC, far, "values:FORMULA") in cache,
            CacheKey(DOC, None, "metadata") in cache,
        )

    table_cached, far_cached, metadata_cached = run_with_service(settings, fake_remote, scenario)

    assert not table_cached
    assert far_cached
    assert not metadata_cached
    assert fake_remote.calls[METADATA_GET] == 1


class WriteCircuitTripper(FakeDocumentService):
    """Opens the write circuit once the first write has landed, as a burst of
    failures from other traffic would."""

    def __init__(self) -> None:
        super().__init__()
        self.trip = None

    async def batch_update(self, document_id, requests, *, deadline=None):
        result = await super().batch_update(document_id, requests, deadline=deadline)
        if self.trip is not None:
            self.trip()
            self.trip = None
        return result


def test_open_circuit_stops_the_remaining_calls(settings: Settings) -> None:
    remote = WriteCircuitTripper()
    intents = [make_intent(values=[[n]]) for n in range(3)]

    async def scenario(service: MutationService):
        breaker = service.remote.breakers.get(BATCH_UPDATE)
        remote.trip = lambda: [
            breaker.record_failure() for _ in range(settings.circuit_failure_threshold)
        ]
        return await service.submit(intents)

    summary = run_with_service(settings, remote, scenario)
    document = summary.documents[0]

    assert remote.writes == 1
    assert summary.status == MutationStatus.PARTIAL
    assert (document.completed_calls, document.total_calls) == (1, 3)
    assert summary.error.code == "CIRCUIT_OPEN"
    assert summary.error.retry_after is not None
    assert remote.cell(DOC, (0, 0)) == 0


def test_retry_exhaustion_is_reported_as_retryable(
    settings: Settings, fake_remote: FakeDocumentService
) -> None:
    intents = [make_intent(values=[["first"]]), make_intent(values=[["second"]])]
    fake_remote.fail_next(
        BATCH_UPDATE,
        None,
        *(TransientRemoteError("HTTP 503", status_code=503) for _ in range(3)),
    )

    async def scenario(service: MutationService):
        summary = await service.submit(intents)
        return summary, service.get_health_status()

    summary, health = run_with_service(settings, fake_remote, scenario)

    assert fake_remote.writes == 4
    assert summary.status == MutationStatus.PARTIAL
    assert summary.documents[0].completed_calls == 1
    assert summary.error.code == "RETRY_EXHAUSTED"
    assert summary.error.retryable is True
    assert health["open_circuits"] == []
    assert fake_remote.cell(DOC, (0, 0)) == "first"


class SlowWrites(FakeDocumentService):
    """Holds each write open for a while and tracks how many overlap."""

    def __init__(self, delays: dict[str, float]) -> None:
        super().__init__()
        self.delays = delays
        self.in_flight = 0
        self.peak = 0
        self.finished: list[str] = []

    async def batch_update(self, document_id, requests, *, deadline=None):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delays[document_id])
            return await super().batch_update(document_id, requests, deadline=deadline)
        finally:
            self.in_flight -= 1
            self.finished.append(document_id)


def test_documents_run_concurrently_in_submission_order(settings: Settings) -> None:
    documents = ["doc-1", "doc-2", "doc-3"]
    remote = SlowWrites({"doc-1": 0.05, "doc-2": 0.02, "doc-3": 0.01})
    intents = [make_intent(values=[[doc]], document_id=doc) for doc in documents]

    async def scenario(service: MutationService):
        return await service.compiler.execute(intents)

    summary = run_with_service(settings, remote, scenario)

    assert remote.peak == 3
    assert remote.finished == ["doc-3", "doc-2", "doc-1"]
    assert [d.document_id for d in summary.documents] == documents
    assert summary.status == MutationStatus.APPLIED
    assert remote.cell("doc-2", (0, 0)) == "doc-2"
