"""Import session data access helpers."""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError
from persistence.models import Expense, ImportRow, ImportSession


class SessionStatus(str, Enum):
    """Lifecycle of one uploaded statement."""

    PARSING = "PARSING"
    REVIEWING = "REVIEWING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class RowStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SKIPPED = "SKIPPED"


class ConfirmScope(str, Enum):
    AUTO = "AUTO"
    ALL = "ALL"


SessionFactory = Callable[[], Session]


def _new_id() -> str:
    return str(uuid.uuid4())


class ImportRepository:
    """
    Thin repository over import sessions, rows, and expenses.

    Each call opens and commits its own short-lived DB session, since the
    classification pipeline runs long after the request that started it.
    Returned records are detached but fully loaded.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def create_session(
        self,
        *,
        user_id: str,
        source_file: str,
        bank_format: str | None,
        row_count: int,
    ) -> ImportSession:
        record = ImportSession(
            id=_new_id(),
            user_id=user_id,
            status=SessionStatus.PARSING.value,
            source_file=source_file,
            bank_format=bank_format,
            row_count=row_count,
            auto_count=0,
            review_count=0,
            progress_done=0,
            progress_total=row_count,
        )
        with self._session_factory() as db:
            db.add(record)
            db.commit()
            db.refresh(record)
        return record

    def update_session(self, session_id: str, **fields: Any) -> ImportSession:
        with self._session_factory() as db:
            record = db.get(ImportSession, session_id)
            if record is None:
                raise NotFoundError(f"Import session '{session_id}' not found")
            _assign(record, fields)
            db.commit()
            db.refresh(record)
        return record

    def get_session(self, session_id: str, user_id: str | None = None) -> ImportSession:
        """Fetch a session; a foreign owner is indistinguishable from a missing one."""
        with self._session_factory() as db:
            record = db.get(ImportSession, session_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise NotFoundError(f"Import session '{session_id}' not found")
        return record

    def insert_rows(self, session_id: str, rows: Sequence[Mapping[str, Any]]) -> list[ImportRow]:
        """Insert rows in one transaction; the result is in input order."""
        records = [
            ImportRow(id=_new_id(), session_id=session_id, status=RowStatus.PENDING.value, **dict(row))
            for row in rows
        ]
        if not records:
            return []
        with self._session_factory() as db:
            db.add_all(records)
            db.commit()
            for record in records:
                db.refresh(record)
        return records

    def update_row(self, row_id: str, **fields: Any) -> ImportRow:
        with self._session_factory() as db:
            record = db.get(ImportRow, row_id)
            if record is None:
                raise NotFoundError(f"Import row '{row_id}' not found")
            _assign(record, fields)
            db.commit()
            db.refresh(record)
        return record

    def update_rows(self, updates: Sequence[tuple[str, Mapping[str, Any]]]) -> int:
        """Apply several row updates in one transaction. Returns the count applied."""
        if not updates:
            return 0
        with self._session_factory() as db:
            for row_id, fields in updates:
                record = db.get(ImportRow, row_id)
                if record is None:
                    raise NotFoundError(f"Import row '{row_id}' not found")
                _assign(record, fields)
            db.commit()
        return len(updates)

    def get_row(self, row_id: str) -> ImportRow:
        with self._session_factory() as db:
            record = db.get(ImportRow, row_id)
        if record is None:
            raise NotFoundError(f"Import row '{row_id}' not found")
        return record

    def get_rows_by_session(self, session_id: str) -> list[ImportRow]:
        statement = (
            select(ImportRow)
            .where(ImportRow.session_id == session_id)
            .order_by(ImportRow.source_row_index, ImportRow.id)
        )
        with self._session_factory() as db:
            return list(db.scalars(statement).all())

    def get_pending_rows(self, session_id: str, scope: ConfirmScope | str) -> list[ImportRow]:
        statement = select(ImportRow).where(
            ImportRow.session_id == session_id,
            ImportRow.status == RowStatus.PENDING.value,
        )
        if ConfirmScope(scope) is ConfirmScope.AUTO:
            statement = statement.where(ImportRow.auto_classified.is_(True))
        statement = statement.order_by(ImportRow.source_row_index, ImportRow.id)
        with self._session_factory() as db:
            return list(db.scalars(statement).all())

    def insert_expense(self, fields: Mapping[str, Any]) -> Expense:
        return self.insert_expenses([fields])[0]

    def insert_expenses(self, rows: Sequence[Mapping[str, Any]]) -> list[Expense]:
        """Insert expenses in one transaction; the result is in input order."""
        records = [Expense(id=_new_id(), **dict(fields)) for fields in rows]
        if not records:
            return []
        with self._session_factory() as db:
            db.add_all(records)
            db.commit()
            for record in records:
                db.refresh(record)
        return records

    def post_rows(
        self,
        postings: Sequence[tuple[str, Mapping[str, Any], Mapping[str, Any]]],
        *,
        complete_session_id: str | None = None,
    ) -> list[Expense]:
        """
        Post expenses and confirm their rows in a single transaction.

        Each posting is `(row_id, expense_fields, row_fields)`. A row is only
        confirmed while it is still PENDING; when any row has already moved on,
        nothing is written and ConflictError is raised. `complete_session_id`
        moves that session to COMPLETE in the same transaction.
        """

        expenses = [Expense(id=_new_id(), **dict(expense_fields)) for _, expense_fields, _ in postings]
        if not expenses:
            return []
        with self._session_factory() as db:
            db.add_all(expenses)
            db.flush()
            for (row_id, _, row_fields), expense in zip(postings, expenses):
                values = {
                    **row_fields,
                    "status": RowStatus.CONFIRMED.value,
                    "posted_expense_id": expense.id,
                }
                if not _claim_pending_row(db, row_id, values):
                    db.rollback()
                    raise ConflictError(f"Import row '{row_id}' is no longer pending.")
            if complete_session_id is not None:
                db.execute(
                    update(ImportSession)
                    .where(ImportSession.id == complete_session_id)
                    .values(status=SessionStatus.COMPLETE.value)
                )
            db.commit()
            for record in expenses:
                db.refresh(record)
        return expenses

    def post_row(
        self,
        row_id: str,
        expense_fields: Mapping[str, Any],
        row_fields: Mapping[str, Any] | None = None,
    ) -> tuple[ImportRow, Expense]:
        [expense] = self.post_rows([(row_id, expense_fields, row_fields or {})])
        return self.get_row(row_id), expense

    def skip_row(self, row_id: str) -> ImportRow:
        """Mark a PENDING row SKIPPED; ConflictError if it was already settled."""
        with self._session_factory() as db:
            if not _claim_pending_row(db, row_id, {"status": RowStatus.SKIPPED.value}):
                db.rollback()
                raise ConflictError(f"Import row '{row_id}' is no longer pending.")
            db.commit()
        return self.get_row(row_id)

    def get_expense(self, expense_id: str) -> Expense:
        with self._session_factory() as db:
            record = db.get(Expense, expense_id)
        if record is None:
            raise NotFoundError(f"Expense '{expense_id}' not found")
        return record


def _assign(record: Any, fields: Mapping[str, Any]) -> None:
    for name, value in fields.items():
        if not hasattr(type(record), name):
            raise AttributeError(f"{type(record).__name__} has no column '{name}'")
        setattr(record, name, value)


def _claim_pending_row(db: Session, row_id: str, values: Mapping[str, Any]) -> bool:
    """Update a row only while it is PENDING. False when it was not."""
    result = db.execute(
        update(ImportRow)
        .where(ImportRow.id == row_id, ImportRow.status == RowStatus.PENDING.value)
        .values(**dict(values))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
