"""
Telemetry bootstrap for the statement import service.

`setup_telemetry` installs JSON logging and, when `ENABLE_TELEMETRY` is set,
OpenTelemetry tracing for FastAPI and httpx. Every log record is stamped with
the inbound request ID and, for the detached import pipeline, the import
session ID, so a FAILED session can be traced back to its log lines.
"""

from __future__ import annotations

import logging
import os
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

from fastapi import FastAPI, Request
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from pythonjsonlogger import jsonlogger

CORRELATION_ID_HEADER = "x-request-id"
DEFAULT_OTLP_ENDPOINT = "http://localhost:4318/v1/traces"
LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(message)s %(service_name)s "
    "%(request_id)s %(import_session_id)s %(trace_id)s %(span_id)s"
)

RequestContextToken = Token

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_import_session_id: ContextVar[Optional[str]] = ContextVar("import_session_id", default=None)
_logging_installed = False
_httpx_instrumented = False


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    service_name: str
    traces_enabled: bool
    console_export: bool
    otlp_endpoint: str
    log_level: str


def load_telemetry_settings(default_service_name: str) -> TelemetrySettings:
    return TelemetrySettings(
        service_name=os.getenv("OTEL_SERVICE_NAME") or default_service_name,
        traces_enabled=_env_flag("ENABLE_TELEMETRY"),
        console_export=_env_flag("OTEL_CONSOLE_EXPORT"),
        otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or DEFAULT_OTLP_ENDPOINT,
        log_level=(os.getenv("IMPORT_LOG_LEVEL") or "INFO").upper(),
    )


def setup_telemetry(app: FastAPI, service_name: str) -> TelemetrySettings:
    """
    Configure logging and (optionally) tracing for `app`.

    Safe to call more than once; logging and httpx instrumentation are only
    installed the first time.
    """

    settings = load_telemetry_settings(service_name)
    _install_json_logging(settings)

    if settings.traces_enabled:
        _install_tracer_provider(settings)
        FastAPIInstrumentor.instrument_app(app)
        _instrument_httpx()
        LoggingInstrumentor().instrument(set_logging_format=False)
    return settings


def ensure_request_id(request: Optional[Request], header_name: str = CORRELATION_ID_HEADER) -> str:
    """Reuse the caller's request ID when present, otherwise mint one and remember it on the request."""

    if request is not None:
        existing = request.headers.get(header_name) or getattr(request.state, "request_id", None)
        if existing:
            request.state.request_id = existing
            return existing

    request_id = os.getenv("REQUEST_ID_PREFIX", "") + str(uuid4())
    if request is not None:
        request.state.request_id = request_id
    return request_id


def bind_request_context(request_id: Optional[str]) -> RequestContextToken:
    return _request_id.set(request_id)


def reset_request_context(token: Optional[RequestContextToken]) -> None:
    if token is not None:
        _request_id.reset(token)


def bind_import_session(session_id: Optional[str]) -> RequestContextToken:
    """
    Tag log records emitted from the current task with an import session ID.

    asyncio tasks copy the context at creation, so binding inside the detached
    pipeline task does not leak into the request that spawned it.
    """

    return _import_session_id.set(session_id)


def reset_import_session(token: Optional[RequestContextToken]) -> None:
    if token is not None:
        _import_session_id.reset(token)


def _install_json_logging(settings: TelemetrySettings) -> None:
    global _logging_installed
    if _logging_installed:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
    handler.addFilter(_ContextLogFilter(settings.service_name, settings.traces_enabled))
    logging.basicConfig(level=settings.log_level, handlers=[handler], force=True)
    _logging_installed = True


def _install_tracer_provider(settings: TelemetrySettings) -> None:
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return

    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: settings.service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
    if settings.console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)


def _instrument_httpx() -> None:
    # The OpenAI SDK talks over httpx, so AI classification calls show up as spans.
    global _httpx_instrumented
    if _httpx_instrumented:
        return
    HTTPXClientInstrumentor().instrument()
    _httpx_instrumented = True


def _env_flag(env_key: str) -> bool:
    return (os.getenv(env_key) or "").strip().lower() in {"1", "true", "yes", "on"}


def _current_trace_ids() -> Tuple[Optional[str], Optional[str]]:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None, None
    return format(span_context.trace_id, "032x"), format(span_context.span_id, "016x")


class _ContextLogFilter(logging.Filter):
    """Copies service name, request/session IDs, and trace IDs onto each record."""

    def __init__(self, service_name: str, traces_enabled: bool) -> None:
        super().__init__()
        self._service_name = service_name
        self._traces_enabled = traces_enabled

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self._service_name
        record.request_id = _request_id.get()
        record.import_session_id = _import_session_id.get()
        record.trace_id, record.span_id = _current_trace_ids() if self._traces_enabled else (None, None)
        return True
