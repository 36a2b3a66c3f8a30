from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from errors import ConflictError, NotFoundError
from persistence.database import build_session_factory, create_engine_for_url, init_db
from persistence.repository import ConfirmScope, ImportRepository, RowStatus, SessionStatus


@pytest.fixture
def repository(tmp_path: Path) -> ImportRepository:
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'imports.db'}")
    init_db(engine)
    yield ImportRepository(build_session_factory(engine))
    engine.dispose()


def _row(index: int, *, auto: bool, narration: str = "UPI/ZOMATO/ORDER") -> dict:
    return {
        "source_row_index": index,
        "raw_data": {"Narration": narration},
        "narration": narration,
        "amount": Decimal("450.00"),
        "datetime": "2024-04-01T00:00:00",
        "type": "EXPENSE",
        "category": "Food",
        "platform": "Zomato",
        "payment_method": "UPI",
        "tags": [],
        "recurring_flag": False,
        "confidence": {"amount": 1.0, "category": 0.9},
        "classified_by": "RULE",
        "auto_classified": auto,
    }


def _expense(amount: str = "450.00") -> dict:
    return {
        "user_id": "user-1",
        "amount": Decimal(amount),
        "datetime": "2024-04-01T00:00:00",
        "type": "EXPENSE",
        "category": "Food",
        "platform": "Zomato",
        "payment_method": "UPI",
        "notes": None,
        "tags": [],
        "source": "IMPORT",
        "raw_text": '{"Narration": "UPI/ZOMATO/ORDER"}',
    }


def test_created_session_starts_parsing(repository: ImportRepository) -> None:
    created = repository.create_session(user_id="user-1", source_file="hdfc.csv", bank_format="HDFC", row_count=3)

    restored = repository.get_session(created.id, "user-1")

    assert restored.status == SessionStatus.PARSING.value
    assert restored.row_count == 3
    assert restored.progress_total == 3
    assert restored.progress_done == 0
    assert restored.created_at is not None


def test_foreign_user_cannot_see_session(repository: ImportRepository) -> None:
    created = repository.create_session(user_id="user-1", source_file="a.csv", bank_format=None, row_count=0)

    with pytest.raises(NotFoundError):
        repository.get_session(created.id, "user-2")
    assert repository.get_session(created.id).user_id == "user-1"


def test_missing_records_raise_not_found(repository: ImportRepository) -> None:
    with pytest.raises(NotFoundError):
        repository.get_session("nope")
    with pytest.raises(NotFoundError):
        repository.update_session("nope", status=SessionStatus.FAILED.value)
    with pytest.raises(NotFoundError):
        repository.get_row("nope")
    with pytest.raises(NotFoundError):
        repository.get_expense("nope")


def test_rows_round_trip_in_source_order(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=2)

    inserted = repository.insert_rows(session.id, [_row(5, auto=False), _row(2, auto=True)])
    rows = repository.get_rows_by_session(session.id)

    assert [record.source_row_index for record in inserted] == [5, 2]
    assert [record.source_row_index for record in rows] == [2, 5]
    assert rows[0].status == RowStatus.PENDING.value
    assert rows[0].amount == Decimal("450.00")
    assert rows[0].raw_data == {"Narration": "UPI/ZOMATO/ORDER"}
    assert rows[0].confidence == {"amount": 1.0, "category": 0.9}


def test_pending_rows_respect_scope(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=3)
    auto_row, review_row, done_row = repository.insert_rows(
        session.id,
        [_row(2, auto=True), _row(3, auto=False), _row(4, auto=True)],
    )
    repository.update_row(done_row.id, status=RowStatus.SKIPPED.value)

    auto_ids = [row.id for row in repository.get_pending_rows(session.id, ConfirmScope.AUTO)]
    all_ids = [row.id for row in repository.get_pending_rows(session.id, "ALL")]

    assert auto_ids == [auto_row.id]
    assert all_ids == [auto_row.id, review_row.id]


def test_update_rows_applies_all_changes(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=2)
    first, second = repository.insert_rows(session.id, [_row(2, auto=False), _row(3, auto=False)])

    applied = repository.update_rows(
        [
            (first.id, {"category": "Shopping", "classified_by": "AI"}),
            (second.id, {"category": "Travel", "classified_by": "AI"}),
        ]
    )

    assert applied == 2
    assert [row.category for row in repository.get_rows_by_session(session.id)] == ["Shopping", "Travel"]
    assert repository.update_rows([]) == 0


def test_unknown_column_is_rejected(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=0)

    with pytest.raises(AttributeError):
        repository.update_session(session.id, colour="blue")


def test_expense_links_back_to_row(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=1)
    [row] = repository.insert_rows(session.id, [_row(2, auto=True)])

    expense = repository.insert_expense(_expense())
    repository.update_row(row.id, status=RowStatus.CONFIRMED.value, posted_expense_id=expense.id)

    assert repository.get_row(row.id).posted_expense_id == expense.id
    assert repository.get_expense(expense.id).source == "IMPORT"


def test_sessions_survive_a_new_engine(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'durable.db'}"
    engine_one = create_engine_for_url(url)
    init_db(engine_one)
    created = ImportRepository(build_session_factory(engine_one)).create_session(
        user_id="user-1", source_file="a.csv", bank_format="SBI", row_count=0
    )
    engine_one.dispose()

    engine_two = create_engine_for_url(url)
    restored = ImportRepository(build_session_factory(engine_two)).get_session(created.id)
    engine_two.dispose()

    assert restored.bank_format == "SBI"


def test_post_rows_confirms_rows_and_completes_the_session_together(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=2)
    first, second = repository.insert_rows(session.id, [_row(2, auto=True), _row(3, auto=False)])

    expenses = repository.post_rows(
        [(first.id, _expense(), {}), (second.id, _expense("99.00"), {"notes": "groceries"})],
        complete_session_id=session.id,
    )

    rows = repository.get_rows_by_session(session.id)
    assert [row.status for row in rows] == [RowStatus.CONFIRMED.value] * 2
    assert [row.posted_expense_id for row in rows] == [expense.id for expense in expenses]
    assert rows[1].notes == "groceries"
    assert repository.get_expense(expenses[1].id).amount == Decimal("99.00")
    assert repository.get_session(session.id).status == SessionStatus.COMPLETE.value
    assert repository.post_rows([]) == []


def test_post_rows_writes_nothing_when_a_row_is_already_settled(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=2)
    first, second = repository.insert_rows(session.id, [_row(2, auto=True), _row(3, auto=True)])
    repository.skip_row(second.id)

    with pytest.raises(ConflictError):
        repository.post_rows([(first.id, _expense(), {}), (second.id, _expense(), {})], complete_session_id=session.id)

    assert repository.get_row(first.id).status == RowStatus.PENDING.value
    assert repository.get_row(first.id).posted_expense_id is None
    assert repository.get_session(session.id).status == SessionStatus.PARSING.value
    with pytest.raises(ConflictError):
        repository.skip_row(second.id)
    with pytest.raises(ConflictError):
        repository.post_row(second.id, _expense())


def test_post_row_returns_the_confirmed_row(repository: ImportRepository) -> None:
    session = repository.create_session(user_id="user-1", source_file="a.csv", bank_format="HDFC", row_count=1)
    [row] = repository.insert_rows(session.id, [_row(2, auto=False)])

    confirmed, expense = repository.post_row(row.id, _expense(), {"category": "Shopping", "classified_by": "MANUAL"})

    assert confirmed.status == RowStatus.CONFIRMED.value
    assert confirmed.posted_expense_id == expense.id
    assert confirmed.category == "Shopping"
    assert confirmed.classified_by == "MANUAL"
