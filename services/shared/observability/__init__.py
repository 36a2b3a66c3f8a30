"""
Shared observability helpers (telemetry, privacy utilities, etc.).

The service imports from this package to enable consistent instrumentation and
logging guardrails for both request handlers and the detached import pipeline.
"""

from .privacy import fingerprint_narrations, hash_payload, redact_fields
from .telemetry import (
    CORRELATION_ID_HEADER,
    RequestContextToken,
    TelemetrySettings,
    bind_import_session,
    bind_request_context,
    ensure_request_id,
    reset_import_session,
    load_telemetry_settings,
    reset_request_context,
    setup_telemetry,
)

__all__ = [
    "fingerprint_narrations",
    "hash_payload",
    "redact_fields",
    "CORRELATION_ID_HEADER",
    "RequestContextToken",
    "TelemetrySettings",
    "bind_import_session",
    "bind_request_context",
    "ensure_request_id",
    "load_telemetry_settings",
    "reset_import_session",
    "reset_request_context",
    "setup_telemetry",
]
