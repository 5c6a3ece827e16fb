from __future__ import annotations

import pytest

from sheetguard.remote.models import Region
from sheetguard.settings import Settings
from tests.fakes import FakeDocumentService

DOC = "doc-1"


@pytest.fixture
def fake_remote() -> FakeDocumentService:
    remote = FakeDocumentService()
    remote.seed(
        DOC,
        [
            ["name", "qty", "price"],
            ["apple", 3, 1.5],
            ["pear", 5, 2.0],
            ["plum", 7, "=B4*2"],
        ],
    )
    return remote


@pytest.fixture
def settings() -> Settings:
    return Settings(
        max_cells_affected=1_000,
        max_cells_ceiling=5_000,
        retry_max_attempts=3,
        retry_base_delay=0,
        retry_jitter=0,
        circuit_failure_threshold=3,
        rate_limit_calls=1_000,
        rate_limit_period=1,
    )


@pytest.fixture
def table() -> Region:
    return Region(start_row=0, end_row=4, start_column=0, end_column=3)
