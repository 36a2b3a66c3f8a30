"""
Import session orchestration.

`ImportService.create_session` parses an upload synchronously, records a
PARSING session, and hands the classification pipeline to `BackgroundPipeline`
so the caller gets the session id straight away. The pipeline rule-classifies
every row, persists them all, escalates the low-confidence ones to the AI stage
batch by batch, and finally moves the session to REVIEWING. Any exception that
escapes the pipeline marks the session FAILED; clients learn about it by
polling, never through an exception.

When a row extractor is configured, PDF uploads skip the line parser: only the
text is extracted up front, and the model turns it into rows as the first step
of the background pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Coroutine, Mapping, Sequence
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.observability import bind_import_session, reset_import_session

from ai_classification import AIClassificationStage
from ai_row_extractor import AIRowExtractor
from errors import ConflictError, InvalidInputError, NoDataRowsError, NotFoundError, UnsupportedFileTypeError
from models import BankFormatId, ClassifiedBy, ClassifiedRow, RawImportRow, TransactionType
from parsers.file_parser import determine_file_kind, parse_file
from parsers.pdf_extractor import extract_pdf_text
from persistence.models import ImportRow, ImportSession
from persistence.repository import ConfirmScope, ImportRepository, RowStatus, SessionStatus
from rule_classifier import classify_rows

logger = logging.getLogger(__name__)

AUTO_THRESHOLD = 0.80
SUPPORTED_FILE_KINDS = frozenset({"csv", "xls", "xlsx", "pdf"})
EXPENSE_SOURCE = "IMPORT"
DEFAULT_LABEL = "Other"
EDITABLE_ROW_FIELDS = frozenset(
    {"amount", "datetime", "type", "category", "platform", "payment_method", "notes", "tags"}
)
CLASSIFICATION_FIELDS = frozenset({"category", "platform", "payment_method"})
MAX_ERROR_LENGTH = 500


class RowAction(str, Enum):
    CONFIRM = "CONFIRM"
    SKIP = "SKIP"


def is_auto_import(row: ClassifiedRow) -> bool:
    """Every one of the six confidences must clear the threshold."""
    return row.confidence.all_at_least(AUTO_THRESHOLD)


FailureHandler = Callable[[str, BaseException], None]


class BackgroundPipeline:
    """
    Supervisor for detached per-session pipeline tasks.

    Holds a strong reference to each task until it finishes, binds the import
    session id into the logging context, and routes any escaping exception to
    the failure handler instead of leaving it unobserved on the task.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def launch(
        self,
        session_id: str,
        pipeline: Coroutine[Any, Any, None],
        on_failure: FailureHandler,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(
            self._supervise(session_id, pipeline, on_failure),
            name=f"import-pipeline-{session_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every pipeline launched so far (used at shutdown and in tests)."""
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)

    async def _supervise(
        self,
        session_id: str,
        pipeline: Coroutine[Any, Any, None],
        on_failure: FailureHandler,
    ) -> None:
        token = bind_import_session(session_id)
        try:
            await pipeline
        except asyncio.CancelledError as exc:
            on_failure(session_id, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            on_failure(session_id, exc)
        finally:
            reset_import_session(token)


class ImportService:
    def __init__(
        self,
        repository: ImportRepository,
        stage: AIClassificationStage,
        background: BackgroundPipeline | None = None,
        row_extractor: AIRowExtractor | None = None,
    ):
        self._repository = repository
        self._stage = stage
        self._background = background or BackgroundPipeline()
        self._row_extractor = row_extractor

    @property
    def background(self) -> BackgroundPipeline:
        return self._background

    async def create_session(
        self,
        file_bytes: bytes,
        filename: str,
        user_id: str,
        *,
        content_type: str | None = None,
        password: str | None = None,
    ) -> Dict[str, str]:
        """
        Validate and decode an upload, record a PARSING session, and start its pipeline.

        With a row extractor configured, PDF rows are extracted by the model
        inside the pipeline, so the session starts with a row count of zero.
        Password errors still surface here, before any session exists.
        """

        kind = determine_file_kind(filename, content_type)
        if kind not in SUPPORTED_FILE_KINDS:
            raise UnsupportedFileTypeError("Unsupported file type. Upload CSV, XLS, XLSX or PDF.")

        rows: Sequence[RawImportRow] = []
        text: str | None = None
        if kind == "pdf" and self._row_extractor is not None:
            text = extract_pdf_text(file_bytes, password)
            if not text.strip():
                raise NoDataRowsError("File has no data rows.")
            bank_format = BankFormatId.PDF
        else:
            parsed = parse_file(file_bytes, filename, content_type=content_type, password=password)
            bank_format, rows = parsed.format, parsed.rows

        record = self._repository.create_session(
            user_id=user_id,
            source_file=filename,
            bank_format=bank_format.value,
            row_count=len(rows),
        )

        logger.info(
            {
                "event": "import_session_created",
                "session_id": record.id,
                "file_kind": kind,
                "bank_format": bank_format.value,
                "row_count": len(rows),
                "row_extraction": "model" if text is not None else "parser",
            }
        )

        if text is not None and self._row_extractor is not None:
            pipeline = self.run_text_pipeline(record.id, text, self._row_extractor)
        else:
            pipeline = self.run_pipeline(record.id, rows)
        self._background.launch(record.id, pipeline, self._mark_failed)
        return {"session_id": record.id}

    async def run_text_pipeline(self, session_id: str, text: str, extractor: AIRowExtractor) -> None:
        """Extract rows from statement text with the model, then run the regular pipeline."""
        rows = await extractor.extract(text)
        self._repository.update_session(session_id, row_count=len(rows), progress_total=len(rows))
        await self.run_pipeline(session_id, rows)

    async def run_pipeline(self, session_id: str, rows: Sequence[RawImportRow]) -> None:
        start_time = time.perf_counter()
        classified = classify_rows(rows)

        auto_flags = [is_auto_import(row) for row in classified]
        fallback_rows = [row for row, auto in zip(classified, auto_flags) if not auto]
        auto_count = len(classified) - len(fallback_rows)
        review_count = len(fallback_rows)

        records = self._repository.insert_rows(
            session_id,
            [_row_fields(row, auto) for row, auto in zip(classified, auto_flags)],
        )
        row_ids = {record.source_row_index: record.id for record in records}

        if fallback_rows:
            self._repository.update_session(
                session_id,
                progress_done=auto_count,
                auto_count=auto_count,
                review_count=review_count,
            )

            def persist_batch(results: List[ClassifiedRow]) -> None:
                updates = [
                    (row_ids[result.source_row_index], _classification_fields(result))
                    for result in results
                    # RULE-tagged results are placeholders for rows the model skipped. They are
                    # not written back, so those rows keep their stored rule classification
                    # rather than being blanked.
                    if result.classified_by is ClassifiedBy.AI
                ]
                self._repository.update_rows(updates)

            def record_progress(done: int, total: int) -> None:
                self._repository.update_session(session_id, progress_done=auto_count + done)

            await self._stage.classify(fallback_rows, on_progress=record_progress, on_batch=persist_batch)

        self._repository.update_session(
            session_id,
            status=SessionStatus.REVIEWING.value,
            auto_count=auto_count,
            review_count=review_count,
            progress_done=len(classified),
        )

        logger.info(
            {
                "event": "import_pipeline_complete",
                "session_id": session_id,
                "row_count": len(classified),
                "auto_count": auto_count,
                "review_count": review_count,
                "provider": self._stage.provider_name,
                "latency_ms": round((time.perf_counter() - start_time) * 1000, 2),
            }
        )

    def get_session(self, session_id: str, user_id: str) -> ImportSession:
        return self._repository.get_session(session_id, user_id)

    def get_rows(self, session_id: str, user_id: str) -> List[ImportRow]:
        session = self._repository.get_session(session_id, user_id)
        if session.status == SessionStatus.PARSING.value:
            raise ConflictError("Import session is still being processed.")
        return self._repository.get_rows_by_session(session_id)

    def confirm_row(
        self,
        row_id: str,
        action: RowAction | str,
        user_id: str,
        *,
        fields: Mapping[str, Any] | None = None,
        session_id: str | None = None,
    ) -> ImportRow:
        row = self._repository.get_row(row_id)
        if session_id is not None and row.session_id != session_id:
            raise NotFoundError(f"Import row '{row_id}' not found")
        session = self._repository.get_session(row.session_id, user_id)
        _ensure_reviewable(session)
        if row.status != RowStatus.PENDING.value:
            raise ConflictError(f"Import row '{row_id}' is already {row.status}.")

        if RowAction(action) is RowAction.SKIP:
            updated = self._repository.skip_row(row_id)
            logger.info({"event": "import_row_skipped", "session_id": row.session_id, "row_id": row_id})
            return updated

        overrides = normalize_overrides(fields or {})
        merged = {name: getattr(row, name) for name in EDITABLE_ROW_FIELDS}
        merged.update(overrides)

        row_update: Dict[str, Any] = dict(overrides)
        if CLASSIFICATION_FIELDS & overrides.keys():
            row_update["classified_by"] = ClassifiedBy.MANUAL.value
        updated, expense = self._repository.post_row(
            row_id,
            _expense_fields(merged, row.raw_data, user_id),
            row_update,
        )

        logger.info(
            {
                "event": "import_row_confirmed",
                "session_id": row.session_id,
                "row_id": row_id,
                "expense_id": expense.id,
                "overridden_fields": sorted(overrides),
            }
        )
        return updated

    def confirm_all(self, session_id: str, scope: ConfirmScope | str, user_id: str) -> Dict[str, int]:
        session = self._repository.get_session(session_id, user_id)
        _ensure_reviewable(session)

        resolved_scope = ConfirmScope(scope)
        rows = self._repository.get_pending_rows(session_id, resolved_scope)
        if not rows:
            return {"imported": 0}

        # Raises ConflictError, with nothing posted, if another request settled any of these rows first.
        self._repository.post_rows(
            [(row.id, _expense_fields(_row_values(row), row.raw_data, user_id), {}) for row in rows],
            complete_session_id=session_id,
        )

        logger.info(
            {
                "event": "import_session_confirmed",
                "session_id": session_id,
                "scope": resolved_scope.value,
                "imported": len(rows),
            }
        )
        return {"imported": len(rows)}

    def _mark_failed(self, session_id: str, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        logger.error(
            {
                "event": "import_pipeline_failed",
                "session_id": session_id,
                "error_type": type(exc).__name__,
                "error": message,
            },
            exc_info=exc,
        )
        try:
            self._repository.update_session(
                session_id,
                status=SessionStatus.FAILED.value,
                error=message[:MAX_ERROR_LENGTH],
            )
        except Exception:  # noqa: BLE001
            logger.exception({"event": "import_session_fail_update_failed", "session_id": session_id})


def normalize_overrides(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate and coerce user field overrides for a row confirmation."""

    unknown = set(fields) - EDITABLE_ROW_FIELDS
    if unknown:
        raise InvalidInputError(f"Unsupported row fields: {', '.join(sorted(unknown))}")

    normalized: Dict[str, Any] = {}
    for name, value in fields.items():
        if name == "amount":
            normalized[name] = _coerce_amount(value)
        elif name == "type":
            normalized[name] = _coerce_type(value)
        elif name == "datetime":
            if not isinstance(value, str) or not value.strip():
                raise InvalidInputError("datetime must be a non-empty ISO-8601 string")
            normalized[name] = value.strip()
        elif name == "tags":
            if value is None:
                normalized[name] = []
            elif isinstance(value, list) and all(isinstance(tag, str) for tag in value):
                normalized[name] = [tag.strip() for tag in value if tag.strip()]
            else:
                raise InvalidInputError("tags must be a list of strings")
        else:
            if value is not None and not isinstance(value, str):
                raise InvalidInputError(f"{name} must be a string")
            normalized[name] = value.strip() if isinstance(value, str) and value.strip() else None
    return normalized


def session_to_dict(record: ImportSession) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "status": record.status,
        "source_file": record.source_file,
        "bank_format": record.bank_format,
        "row_count": record.row_count,
        "auto_count": record.auto_count,
        "review_count": record.review_count,
        "progress_done": record.progress_done,
        "progress_total": record.progress_total,
        "error": record.error,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


def row_to_dict(record: ImportRow) -> Dict[str, Any]:
    return {
        "id": record.id,
        "session_id": record.session_id,
        "source_row_index": record.source_row_index,
        "status": record.status,
        "raw_data": record.raw_data,
        "narration": record.narration,
        "amount": float(record.amount) if record.amount is not None else None,
        "datetime": record.datetime,
        "type": record.type,
        "category": record.category,
        "platform": record.platform,
        "payment_method": record.payment_method,
        "notes": record.notes,
        "tags": list(record.tags or []),
        "recurring_flag": record.recurring_flag,
        "confidence": record.confidence or {},
        "classified_by": record.classified_by,
        "auto_classified": record.auto_classified,
        "posted_expense_id": record.posted_expense_id,
    }


def _ensure_reviewable(session: ImportSession) -> None:
    if session.status == SessionStatus.PARSING.value:
        raise ConflictError("Import session is still being processed.")
    if session.status == SessionStatus.FAILED.value:
        raise ConflictError("Import session failed; upload the statement again.")


def _row_fields(row: ClassifiedRow, auto_classified: bool) -> Dict[str, Any]:
    return {
        "source_row_index": row.source_row_index,
        "raw_data": dict(row.row.raw_data),
        "narration": row.narration,
        "amount": row.amount,
        "datetime": row.datetime,
        "auto_classified": auto_classified,
        **_classification_fields(row),
    }


def _classification_fields(row: ClassifiedRow) -> Dict[str, Any]:
    return {
        "type": row.type.value if row.type is not None else None,
        "category": row.category,
        "platform": row.platform,
        "payment_method": row.payment_method,
        "notes": row.notes,
        "tags": list(row.tags),
        "recurring_flag": row.recurring_flag,
        "confidence": row.confidence.to_dict(),
        "classified_by": row.classified_by.value,
    }


def _row_values(row: ImportRow) -> Dict[str, Any]:
    return {name: getattr(row, name) for name in EDITABLE_ROW_FIELDS}


def _expense_fields(values: Mapping[str, Any], raw_data: Optional[Mapping[str, Any]], user_id: str) -> Dict[str, Any]:
    if values.get("amount") is None or not values.get("datetime"):
        raise InvalidInputError("A confirmed row needs an amount and a date.")
    return {
        "user_id": user_id,
        "amount": values["amount"],
        "datetime": values["datetime"],
        "type": values.get("type") or TransactionType.EXPENSE.value,
        "category": values.get("category") or DEFAULT_LABEL,
        "platform": values.get("platform") or DEFAULT_LABEL,
        "payment_method": values.get("payment_method") or DEFAULT_LABEL,
        "notes": values.get("notes"),
        "tags": list(values.get("tags") or []),
        "source": EXPENSE_SOURCE,
        "raw_text": json.dumps(dict(raw_data or {}), sort_keys=True),
    }


def _coerce_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidInputError("amount must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidInputError("amount must be a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidInputError("amount must be a positive number")
    return amount


def _coerce_type(value: Any) -> str:
    try:
        return TransactionType(str(value).strip().upper()).value
    except ValueError as exc:
        raise InvalidInputError("type must be EXPENSE or INFLOW") from exc
