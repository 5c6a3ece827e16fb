from __future__ import annotations

import asyncio

from sheetguard.exceptions import PolicyViolationCode
from sheetguard.remote.base import METADATA_GET, VALUES_GET
from sheetguard.remote.models import Region
from sheetguard.safety.diff import values_checksum
from sheetguard.safety.models import EffectScopeLimits, ExpectedState
from sheetguard.safety.policy import PolicyConfig, PolicyEnforcer
from tests.fakes import FakeDocumentService, make_intent, resilient

DOC = "doc-1"


def _enforcer(remote: FakeDocumentService) -> PolicyEnforcer:
    return PolicyEnforcer(
        resilient(remote), PolicyConfig(max_cells_affected=1_000, max_cells_ceiling=5_000)
    )


def _block(rows: int, columns: int, start_row: int = 0) -> Region:
    return Region(start_row=start_row, end_row=start_row + rows, end_column=columns)


def test_summed_cells_over_limit_is_denied_without_remote_calls(
    fake_remote: FakeDocumentService,
) -> None:
    intents = [
        make_intent(region=_block(20, 30)),
        make_intent(region=_block(20, 30, start_row=20)),
    ]

    decisions = asyncio.run(_enforcer(fake_remote).evaluate(intents))

    assert len(decisions) == 2
    decision = decisions[0]
    assert not decision.allowed
    assert decision.reason == PolicyViolationCode.EFFECT_SCOPE_EXCEEDED
    assert decision.error.cells_affected == 1_200
    assert decision.error.limit == 1_000
    assert decision.error.retryable is False
    assert fake_remote.total_calls == 0


def test_limit_is_per_document(fake_remote: FakeDocumentService) -> None:
    intents = [
        make_intent(region=_block(20, 30)),
        make_intent(region=_block(20, 30), document_id="doc-2"),
    ]

    decisions = asyncio.run(_enforcer(fake_remote).evaluate(intents))
    assert all(d.allowed for d in decisions)
    assert [d.document_id for d in decisions] == [DOC, "doc-2"]


def test_caller_limit_is_clamped_to_ceiling(fake_remote: FakeDocumentService) -> None:
    enforcer = _enforcer(fake_remote)
    intents = [make_intent(region=_block(100, 60))]

    assert enforcer.cell_limit(EffectScopeLimits(max_cells_affected=10)) == 10
    assert enforcer.cell_limit(EffectScopeLimits(max_cells_affected=10**9)) == 5_000

    decision = asyncio.run(
        enforcer.evaluate(intents, EffectScopeLimits(max_cells_affected=10**9))
    )[0]
    assert not decision.allowed
    assert decision.limit == 5_000


def test_row_limit(fake_remote: FakeDocumentService) -> None:
    intents = [make_intent(region=_block(50, 1))]
    decision = asyncio.run(
        _enforcer(fake_remote).evaluate(intents, EffectScopeLimits(max_rows_affected=10))
    )[0]

    assert decision.reason == PolicyViolationCode.EFFECT_SCOPE_EXCEEDED
    assert decision.error.limit == 10


def test_version_precondition(fake_remote: FakeDocumentService) -> None:
    enforcer = _enforcer(fake_remote)
    intents = [make_intent()]

    current = asyncio.run(enforcer.evaluate(intents, expected_state=ExpectedState(version="v0")))
    stale = asyncio.run(enforcer.evaluate(intents, expected_state=ExpectedState(version="v7")))

    assert current[0].allowed
    assert not stale[0].allowed
    assert stale[0].reason == PolicyViolationCode.STATE_MISMATCH
    assert "v7" in stale[0].error.message
    assert stale[0].error.retryable is True


def test_checksum_precondition(fake_remote: FakeDocumentService, table: Region) -> None:
    enforcer = _enforcer(fake_remote)
    intents = [make_intent(region=table)]
    observed = values_checksum(fake_remote.values(DOC, table))

    expected = ExpectedState(checksum=observed)

    fresh = asyncio.run(enforcer.evaluate(intents, expected_state=expected))
    assert fresh[0].allowed

    fake_remote.seed(DOC, [["renamed"]])
    stale = asyncio.run(enforcer.evaluate(intents, expected_state=expected))
    assert stale[0].reason == PolicyViolationCode.STATE_MISMATCH
    assert stale[0].error.region == table.to_a1()


def test_header_and_grid_preconditions(fake_remote: FakeDocumentService) -> None:
    enforcer = _enforcer(fake_remote)
    intents = [make_intent(region=_block(1, 1, start_row=5))]

    ok = ExpectedState(
        first_row_values=["name", "qty", "price"], row_count=1000, sheet_title="Sheet1"
    )
    renamed = ExpectedState(first_row_values=["name", "quantity", "price"])
    resized = ExpectedState(column_count=52)

    assert asyncio.run(enforcer.evaluate(intents, expected_state=ok))[0].allowed
    assert not asyncio.run(enforcer.evaluate(intents, expected_state=renamed))[0].allowed
    assert not asyncio.run(enforcer.evaluate(intents, expected_state=resized))[0].allowed


def test_scope_denial_skips_precondition_read(fake_remote: FakeDocumentService) -> None:
    intents = [make_intent(region=_block(100, 100))]
    decision = asyncio.run(
        _enforcer(fake_remote).evaluate(intents, expected_state=ExpectedState(version="v0"))
    )[0]

    assert decision.reason == PolicyViolationCode.EFFECT_SCOPE_EXCEEDED
    assert fake_remote.calls[METADATA_GET] == 0


def test_dry_run_is_allowed_with_warnings(fake_remote: FakeDocumentService) -> None:
    intents = [make_intent("clear_values", region=_block(100, 100))]
    decision = asyncio.run(
        _enforcer(fake_remote).evaluate(
            intents, expected_state=ExpectedState(version="v9"), dry_run=True
        )
    )[0]

    assert decision.allowed and decision.dry_run
    assert decision.reason is None
    assert [w.code for w in decision.warnings] == ["EFFECT_SCOPE_EXCEEDED", "STATE_MISMATCH"]
    assert decision.requires_snapshot


def test_dry_run_precondition_reads_use_cache(
    fake_remote: FakeDocumentService, table: Region
) -> None:
    enforcer = _enforcer(fake_remote)
    intents = [make_intent(region=table)]
    expected = ExpectedState(checksum=values_checksum(fake_remote.values(DOC, table)))

    async def runner() -> None:
        await enforcer.remote.get_values(DOC, table, value_render="UNFORMATTED_VALUE")
        for _ in range(3):
            decision = (
                await enforcer.evaluate(intents, expected_state=expected, dry_run=True)
            )[0]
            assert decision.warnings == []

    asyncio.run(runner())
    assert fake_remote.calls[VALUES_GET] == 1


def test_snapshot_required_for_destructive_unless_opted_out(
    fake_remote: FakeDocumentService,
) -> None:
    enforcer = _enforcer(fake_remote)
    destructive = [make_intent(), make_intent("clear_values", region=_block(2, 2, start_row=3))]

    assert asyncio.run(enforcer.evaluate(destructive))[0].requires_snapshot
    opted_out = asyncio.run(enforcer.evaluate(destructive, auto_snapshot=False))
    assert not opted_out[0].requires_snapshot
    assert not asyncio.run(enforcer.evaluate([make_intent()]))[0].requires_snapshot


def test_explicit_range_required(fake_remote: FakeDocumentService) -> None:
    enforcer = _enforcer(fake_remote)
    whole_columns = make_intent(
        region=Region(start_column=0, end_column=2), estimated_cells_affected=20
    )
    limits = EffectScopeLimits(require_explicit_range=True)

    denied = asyncio.run(enforcer.evaluate([make_intent(), whole_columns], limits))[0]
    bounded = asyncio.run(enforcer.evaluate([make_intent(region=_block(2, 2))], limits))[0]
    not_required = asyncio.run(enforcer.evaluate([whole_columns], EffectScopeLimits()))[0]

    assert denied.reason == PolicyViolationCode.EXPLICIT_RANGE_REQUIRED
    assert denied.error.region == "'Sheet1'!A1:B"
    assert denied.error.retryable is False
    assert bounded.allowed
    assert not_required.allowed
    assert fake_remote.total_calls == 0


def test_grid_preconditions_use_document_totals(fake_remote: FakeDocumentService) -> None:
    fake_remote.seed(DOC, [["other"]], sheet_id=1)
    enforcer = _enforcer(fake_remote)
    intents = [make_intent()]

    def allowed(expected: ExpectedState) -> bool:
        return asyncio.run(enforcer.evaluate(intents, expected_state=expected))[0].allowed

    assert allowed(ExpectedState(row_count=2000, column_count=52))
    assert allowed(ExpectedState(sheet_title="Sheet2"))
    assert not allowed(ExpectedState(row_count=1000))
    assert not allowed(ExpectedState(sheet_title="Archive"))


def test_precondition_reads_use_caller_renders(
    fake_remote: FakeDocumentService, table: Region
) -> None:
    expected = ExpectedState(
        checksum=values_checksum(fake_remote.values(DOC, table)),
        checksum_region=table,
        first_row_values=["name", "qty"],
    )

    decision = asyncio.run(
        _enforcer(fake_remote).evaluate([make_intent()], expected_state=expected)
    )[0]

    assert decision.allowed
    assert fake_remote.renders == ["UNFORMATTED_VALUE", "FORMATTED_VALUE"]
