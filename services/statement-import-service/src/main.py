"""
Statement Import Service turns uploaded bank statements into reviewable,
classified rows and posts the confirmed ones as expenses.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

SRC_DIR = Path(__file__).resolve().parent
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

SERVICES_ROOT = SRC_DIR.parents[1]
if str(SERVICES_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICES_ROOT))

from shared.observability import (
    bind_request_context,
    ensure_request_id,
    redact_fields,
    reset_request_context,
    setup_telemetry,
)
from shared.provider_settings import (
    BatchSettings,
    ProviderSettings,
    ProviderSettingsError,
    load_batch_settings,
    load_provider_settings,
)

from ai_classification import AIClassificationStage
from ai_row_extractor import AIRowExtractor
from errors import ImportServiceError
from import_service import ImportService, RowAction, row_to_dict, session_to_dict
from persistence.database import SessionLocal, init_db
from persistence.repository import ConfirmScope, ImportRepository

logger = logging.getLogger(__name__)

SAFE_UPLOAD_KEYS = frozenset({"content_type", "size_bytes", "password_supplied"})

app = FastAPI(title="Statement Import Service")
setup_telemetry(app, service_name="statement-import-service")


def _load_classifier_settings() -> ProviderSettings:
    return load_provider_settings(
        provider_env="IMPORT_CLASSIFIER_PROVIDER",
        timeout_env="IMPORT_CLASSIFIER_TIMEOUT_SECONDS",
        temperature_env="IMPORT_CLASSIFIER_TEMPERATURE",
        max_tokens_env="IMPORT_CLASSIFIER_MAX_TOKENS",
        default_timeout=20.0,
        default_temperature=0.0,
        default_max_tokens=2000,
    )


def _load_classifier_batch_settings() -> BatchSettings:
    return load_batch_settings(
        batch_size_env="IMPORT_AI_BATCH_SIZE",
        concurrency_env="IMPORT_AI_CONCURRENCY",
        retries_env="IMPORT_AI_RETRIES",
        backoff_env="IMPORT_AI_BACKOFF_SECONDS",
        timeout_env="IMPORT_AI_BATCH_TIMEOUT_SECONDS",
    )


PDF_ROW_EXTRACTORS = ("lines", "ai")


def _load_pdf_row_extractor_mode() -> str:
    mode = os.getenv("IMPORT_PDF_ROW_EXTRACTOR", "lines").strip().lower() or "lines"
    if mode not in PDF_ROW_EXTRACTORS:
        raise ProviderSettingsError(
            f"IMPORT_PDF_ROW_EXTRACTOR must be one of {', '.join(PDF_ROW_EXTRACTORS)}; got '{mode}'"
        )
    return mode


try:
    CLASSIFIER_SETTINGS = _load_classifier_settings()
    CLASSIFIER_BATCH_SETTINGS = _load_classifier_batch_settings()
    PDF_ROW_EXTRACTOR = _load_pdf_row_extractor_mode()
except ProviderSettingsError as exc:
    logger.error("Failed to load import classifier settings: %s", exc)
    raise


def _initialize_import_service(session_factory=SessionLocal) -> ImportService:
    provider_name = CLASSIFIER_SETTINGS.provider_name
    try:
        stage = AIClassificationStage(CLASSIFIER_SETTINGS, CLASSIFIER_BATCH_SETTINGS)
    except ValueError as exc:
        logger.error("Unsupported import classifier provider '%s'", provider_name)
        raise RuntimeError(f"Unsupported import classifier provider '{provider_name}'") from exc
    row_extractor = None
    if PDF_ROW_EXTRACTOR == "ai":
        try:
            row_extractor = AIRowExtractor(CLASSIFIER_SETTINGS)
        except ValueError as exc:
            logger.error("PDF row extraction is unavailable with provider '%s'", provider_name)
            raise RuntimeError(f"PDF row extraction needs a chat provider, got '{provider_name}'") from exc
    return ImportService(ImportRepository(session_factory), stage, row_extractor=row_extractor)


IMPORT_SERVICE = _initialize_import_service()


def reload_import_service_for_tests(session_factory=SessionLocal) -> ImportService:
    """
    Refresh classifier wiring after tests mutate environment variables.
    """

    global CLASSIFIER_SETTINGS
    global CLASSIFIER_BATCH_SETTINGS
    global PDF_ROW_EXTRACTOR
    global IMPORT_SERVICE

    CLASSIFIER_SETTINGS = _load_classifier_settings()
    CLASSIFIER_BATCH_SETTINGS = _load_classifier_batch_settings()
    PDF_ROW_EXTRACTOR = _load_pdf_row_extractor_mode()
    IMPORT_SERVICE = _initialize_import_service(session_factory)
    return IMPORT_SERVICE


def get_import_service() -> ImportService:
    return IMPORT_SERVICE


def error_response(status_code: int, error_code: str, details: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error_code, "details": details},
    )


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = ensure_request_id(request)
    token = bind_request_context(request_id)
    try:
        response = await call_next(request)
        response.headers.setdefault("x-request-id", request_id)
        return response
    finally:
        reset_request_context(token)


@app.exception_handler(ImportServiceError)
async def import_error_handler(request: Request, exc: ImportServiceError) -> JSONResponse:
    logger.warning(
        {
            "event": "import_request_rejected",
            "path": request.url.path,
            "error": exc.code,
            "status_code": exc.status_code,
        }
    )
    return error_response(exc.status_code, exc.code, exc.message)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize persistence before serving requests."""
    init_db()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    """Let in-flight pipelines settle their session status before exiting."""
    await get_import_service().background.drain()


class RowFieldOverrides(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[float] = Field(default=None, gt=0)
    datetime: Optional[str] = None
    type: Optional[Literal["EXPENSE", "INFLOW"]] = None
    category: Optional[str] = None
    platform: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None


class ConfirmRowRequest(BaseModel):
    action: Literal["CONFIRM", "SKIP"]
    fields: Optional[RowFieldOverrides] = None


class ConfirmAllRequest(BaseModel):
    scope: Literal["AUTO", "ALL"]


@app.get("/health")
def health_check() -> dict:
    """Reports uptime plus the active classifier so operators can tell offline mode apart."""
    return {
        "status": "ok",
        "service": "statement-import-service",
        "classifier_provider": CLASSIFIER_SETTINGS.provider_name,
        "pdf_row_extractor": PDF_ROW_EXTRACTOR,
    }


@app.post("/import/sessions", status_code=202, response_model=None)
async def create_import_session(
    file: UploadFile = File(...),
    password: Optional[str] = Form(default=None),
    x_user_id: Optional[str] = Header(default=None),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any] | JSONResponse:
    """Parses the upload and starts classification in the background; poll the session for progress."""
    if not x_user_id:
        return error_response(401, "user_required", "x-user-id header is required.")

    file_bytes = await file.read()
    logger.info(
        {
            "event": "import_upload_received",
            **redact_fields(
                {
                    "filename": file.filename,
                    "content_type": file.content_type,
                    "size_bytes": len(file_bytes),
                    "password_supplied": bool(password),
                },
                SAFE_UPLOAD_KEYS,
            ),
        }
    )
    return await service.create_session(
        file_bytes,
        file.filename or "statement_upload",
        x_user_id,
        content_type=file.content_type,
        password=password or None,
    )


@app.get("/import/sessions/{session_id}", response_model=None)
def get_import_session(
    session_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any] | JSONResponse:
    if not x_user_id:
        return error_response(401, "user_required", "x-user-id header is required.")
    return {"session": session_to_dict(service.get_session(session_id, x_user_id))}


@app.get("/import/sessions/{session_id}/rows", response_model=None)
def get_import_rows(
    session_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any] | JSONResponse:
    if not x_user_id:
        return error_response(401, "user_required", "x-user-id header is required.")
    rows = service.get_rows(session_id, x_user_id)
    return {"rows": [row_to_dict(row) for row in rows]}


@app.patch("/import/sessions/{session_id}/rows/{row_id}", response_model=None)
def confirm_import_row(
    session_id: str,
    row_id: str,
    payload: ConfirmRowRequest,
    x_user_id: Optional[str] = Header(default=None),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any] | JSONResponse:
    if not x_user_id:
        return error_response(401, "user_required", "x-user-id header is required.")

    overrides = payload.fields.model_dump(exclude_unset=True) if payload.fields else {}
    row = service.confirm_row(
        row_id,
        RowAction(payload.action),
        x_user_id,
        fields=overrides,
        session_id=session_id,
    )
    return {"row": row_to_dict(row)}


@app.post("/import/sessions/{session_id}/confirm-all", response_model=None)
def confirm_all_rows(
    session_id: str,
    payload: ConfirmAllRequest,
    x_user_id: Optional[str] = Header(default=None),
    service: ImportService = Depends(get_import_service),
) -> Dict[str, Any] | JSONResponse:
    if not x_user_id:
        return error_response(401, "user_required", "x-user-id header is required.")
    return service.confirm_all(session_id, ConfirmScope(payload.scope), x_user_id)
