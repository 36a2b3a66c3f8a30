import logging

from shared.observability import (
    bind_import_session,
    bind_request_context,
    fingerprint_narrations,
    hash_payload,
    redact_fields,
    reset_import_session,
    reset_request_context,
)
from shared.observability.privacy import REDACTED
from shared.observability.telemetry import _ContextLogFilter, load_telemetry_settings


def test_fingerprints_hide_narrations_but_stay_stable():
    fingerprints = fingerprint_narrations(["UPI/ZOMATO/ORDER/9876543210@ybl", "UPI/ZOMATO/ORDER/9876543210@ybl"])

    assert fingerprints[0] == fingerprints[1]
    assert len(fingerprints[0]) == 12
    assert "9876543210" not in fingerprints[0]
    assert fingerprints[0] == hash_payload("UPI/ZOMATO/ORDER/9876543210@ybl")[:12]


def test_redact_fields_keeps_only_allowed_keys():
    redacted = redact_fields({"filename": "salary-april.csv", "size_bytes": 120}, {"size_bytes"})
    assert redacted == {"filename": REDACTED, "size_bytes": 120}


def test_log_filter_attaches_request_and_import_session():
    log_filter = _ContextLogFilter("statement-import-service", traces_enabled=False)
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "message", None, None)

    request_token = bind_request_context("req-1")
    session_token = bind_import_session("session-1")
    try:
        assert log_filter.filter(record) is True
    finally:
        reset_import_session(session_token)
        reset_request_context(request_token)

    assert record.service_name == "statement-import-service"
    assert record.request_id == "req-1"
    assert record.import_session_id == "session-1"
    assert record.trace_id is None


def test_telemetry_settings_default_to_logging_only(monkeypatch):
    for name in ("ENABLE_TELEMETRY", "OTEL_CONSOLE_EXPORT", "OTEL_SERVICE_NAME", "OTEL_EXPORTER_OTLP_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("IMPORT_LOG_LEVEL", "debug")

    settings = load_telemetry_settings("statement-import-service")

    assert settings.service_name == "statement-import-service"
    assert settings.traces_enabled is False
    assert settings.otlp_endpoint == "http://localhost:4318/v1/traces"
    assert settings.log_level == "DEBUG"


def test_telemetry_flag_accepts_common_truthy_values(monkeypatch):
    monkeypatch.setenv("ENABLE_TELEMETRY", "Yes")
    assert load_telemetry_settings("svc").traces_enabled is True
