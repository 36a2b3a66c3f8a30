"""Helpers that keep statement contents out of log records."""

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "[REDACTED]"
FINGERPRINT_LENGTH = 12


def hash_payload(value: Any) -> str:
    """
    SHA-256 hex digest of a payload.

    Bytes hash as-is and strings as UTF-8. Anything else is serialized to JSON
    with sorted keys first (repr() when it is not JSON-serializable), so two
    equal dicts hash the same regardless of key order.
    """

    return hashlib.sha256(_canonical_bytes(value)).hexdigest()


def redact_fields(payload: Mapping[str, Any], allowed_keys: Iterable[str]) -> dict[str, Any]:
    """Shallow copy of `payload` with every key outside `allowed_keys` masked."""

    allowed = frozenset(allowed_keys)
    return {key: value if key in allowed else REDACTED for key, value in payload.items()}


def fingerprint_narrations(narrations: Iterable[str]) -> list[str]:
    """
    Short per-narration hashes for log lines.

    Statement narrations carry account numbers and UPI handles, so logs only
    ever see a prefix of each narration's hash.
    """

    return [hash_payload(narration)[:FINGERPRINT_LENGTH] for narration in narrations]


def _canonical_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    try:
        return json.dumps(value, sort_keys=True, default=str).encode("utf-8")
    except (TypeError, ValueError):
        return repr(value).encode("utf-8")
