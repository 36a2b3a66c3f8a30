"""End-to-end import of a spreadsheet statement using the mock classifier."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

import pytest
from openpyxl import Workbook

from ai_classification import AIClassificationStage
from import_service import ImportService, RowAction
from persistence.database import build_session_factory, create_engine_for_url, init_db
from persistence.repository import ConfirmScope, ImportRepository
from shared.provider_settings import BatchSettings, ProviderSettings

USER = "integration-user"

ICICI_ROWS = [
    ["S No.", "Value Date", "Transaction Date", "Cheque Number", "Description", "Debit", "Credit", "Balance"],
    [1, "01/04/2024", "01/04/2024", None, "UPI/ZOMATO/ORDER", 450.0, None, 9550.0],
    [2, "02/04/2024", "02/04/2024", None, "KIRANA STORE 0042", 120.0, None, 9430.0],
    [3, "03/04/2024", "03/04/2024", None, "SELF TRF 9981", None, 5000.0, 14430.0],
    [4, "04/04/2024", "04/04/2024", None, "UPI/NETFLIX/SUBSCRIPTION", 649.0, None, 13781.0],
    [5, "05/05/2024", "05/05/2024", None, "UPI/NETFLIX/SUBSCRIPTION", 649.0, None, 13132.0],
]


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _workbook_bytes() -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in ICICI_ROWS:
        sheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.mark.integration
@pytest.mark.anyio
async def test_spreadsheet_import_with_mock_classifier(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("IMPORT_CLASSIFIER_FIXTURE", raising=False)
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'imports.db'}")
    init_db(engine)
    repository = ImportRepository(build_session_factory(engine))
    stage = AIClassificationStage(
        ProviderSettings(provider_name="mock", timeout_seconds=5.0, temperature=0.0, max_output_tokens=2000),
        BatchSettings(batch_size=25, concurrency=2, retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )
    service = ImportService(repository, stage)

    created = await service.create_session(_workbook_bytes(), "icici.xlsx", USER)
    await service.background.drain()
    session_id = created["session_id"]

    session = service.get_session(session_id, USER)
    assert session.status == "REVIEWING"
    assert session.bank_format == "ICICI"
    assert (session.row_count, session.auto_count, session.review_count) == (5, 3, 2)

    stored = service.get_rows(session_id, USER)
    rows = {row.narration: row for row in stored}
    kirana = rows["KIRANA STORE 0042"]
    assert kirana.classified_by == "AI"
    assert kirana.category == "Shopping"
    assert kirana.platform == "Local Store"
    assert kirana.tags == ["groceries"]

    transfer = rows["SELF TRF 9981"]
    assert transfer.type == "INFLOW"
    assert transfer.payment_method == "Bank Transfer"

    netflix_rows = [row for row in stored if row.platform == "Netflix"]
    assert len(netflix_rows) == 2
    assert all(row.recurring_flag for row in netflix_rows)
    assert all(row.auto_classified for row in netflix_rows)

    skipped = service.confirm_row(transfer.id, RowAction.SKIP, USER)
    assert skipped.status == "SKIPPED"

    assert service.confirm_all(session_id, ConfirmScope.ALL, USER) == {"imported": 4}
    assert service.get_session(session_id, USER).status == "COMPLETE"

    posted = [row for row in service.get_rows(session_id, USER) if row.status == "CONFIRMED"]
    assert len(posted) == 4
    assert all(row.posted_expense_id for row in posted)
    engine.dispose()
