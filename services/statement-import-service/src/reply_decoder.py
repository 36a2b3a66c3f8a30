"""Decoding of JSON-array replies from chat completion models."""

from __future__ import annotations

import json
import re
from typing import Any, List

from errors import ReplyDecodeError

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(?P<body>.*?)\n?\s*```$", re.DOTALL)


def strip_code_fence(content: str) -> str:
    """Remove a single surrounding markdown code fence (```json ... ```), if any."""

    stripped = content.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group("body").strip()
    return stripped


def decode_json_array(content: Any) -> List[Any]:
    """
    Parse a model reply that must be a JSON array.

    Failures raise ReplyDecodeError; callers decide whether that is retryable.
    An object wrapping a single array under one key (``{"rows": [...]}``) is
    unwrapped, since models add such envelopes despite instructions.
    """

    if not isinstance(content, str):
        raise ReplyDecodeError(f"Expected string reply content, got {type(content).__name__}")

    body = strip_code_fence(content)
    if not body:
        raise ReplyDecodeError("Reply content is empty")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ReplyDecodeError(f"Reply is not valid JSON: {exc.msg}") from exc

    if isinstance(parsed, dict):
        arrays = [value for value in parsed.values() if isinstance(value, list)]
        if len(arrays) == 1:
            parsed = arrays[0]

    if not isinstance(parsed, list):
        raise ReplyDecodeError(f"Reply JSON is a {type(parsed).__name__}, expected an array")
    return parsed


def completion_content(response: Any) -> Any:
    """`choices[0].message.content` of a chat completion; ReplyDecodeError when there are no choices."""

    choices = getattr(response, "choices", None) or []
    if not choices:
        raise ReplyDecodeError("Reply has no choices")
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None)
