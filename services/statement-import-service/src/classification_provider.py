from __future__ import annotations

"""
Chat completion contract for the model-backed import stages.

Classification and PDF row extraction only need one operation from a model
provider: send a chat request and get a completion back
(`choices[0].message.content`). This module defines that request shape, the
Protocol clients satisfy, a fixture-driven mock client for offline development,
and the factory that picks a client from ProviderSettings. The `deterministic`
provider has no client at all; classification short-circuits to placeholder
results instead.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, List, Optional, Protocol, runtime_checkable

from shared.provider_settings import ProviderSettings

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
CLASSIFICATION_FIXTURE = "mock_classification_reply.json"


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str


@dataclass(slots=True)
class ChatCompletionRequest:
    """
    Provider-agnostic chat request.

    Attributes:
        model: Model identifier; clients may substitute their configured default.
        messages: Ordered system/user messages.
        temperature: Sampling temperature (0 for classification).
        max_tokens: Cap on completion length.
        stream: Always False; the stage needs the whole reply to decode it.
    """

    model: str
    messages: List[ChatMessage] = field(default_factory=list)
    temperature: float = 0.0
    max_tokens: int = 2000
    stream: bool = False


@runtime_checkable
class ChatCompletionClient(Protocol):
    """
    Anything that can answer a ChatCompletionRequest.

    `send` returns an object exposing `choices[0].message.content`. Errors are
    raised, never swallowed.
    """

    name: str

    async def send(self, request: ChatCompletionRequest) -> Any:
        ...


class MockChatClient:
    """
    Fixture-driven client used for tests and offline development.

    Replays the fixture's `reply` verbatim as the completion content so the
    stage's decoding and zipping run exactly as they would against a live model.
    """

    name = "mock"

    def __init__(self, fixture_path: str | Path | None = None):
        env_override = os.getenv("IMPORT_CLASSIFIER_FIXTURE")
        candidate = fixture_path or env_override
        if candidate is None:
            candidate = default_fixture_path(CLASSIFICATION_FIXTURE)

        self._fixture_path = Path(candidate)
        if not self._fixture_path.exists():
            raise FileNotFoundError(f"Mock chat fixture not found at {self._fixture_path}")
        self.requests: List[ChatCompletionRequest] = []

    async def send(self, request: ChatCompletionRequest) -> Any:
        self.requests.append(request)
        payload = self._load_fixture()
        reply = payload.get("reply", [])
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    def _load_fixture(self) -> dict[str, Any]:
        try:
            return json.loads(self._fixture_path.read_text())
        except json.JSONDecodeError as exc:
            raise ValueError(f"Mock chat fixture is not valid JSON: {self._fixture_path}") from exc


def default_fixture_path(filename: str) -> Path:
    service_root = Path(__file__).resolve().parents[1]
    return service_root / "tests" / "fixtures" / filename


def build_chat_client(
    settings: ProviderSettings,
    *,
    fixture_path: str | Path | None = None,
) -> Optional[ChatCompletionClient]:
    """
    Factory that instantiates the chat client for the configured provider.

    Returns None for `deterministic`, which never calls a model. `fixture_path`
    only applies to `mock` and picks the reply it replays.
    """

    normalized = (settings.provider_name or "").strip().lower()
    if normalized in ("", "deterministic"):
        return None
    if normalized == "mock":
        return MockChatClient(fixture_path)
    if normalized == "openai":
        # Imported lazily so the deterministic path never needs the SDK configured.
        from providers.openai_chat import OpenAIChatClient

        return OpenAIChatClient(settings=settings)

    raise ValueError(f"Unsupported classification provider '{settings.provider_name}'")


def resolve_model_name(settings: ProviderSettings) -> str:
    if settings.openai is not None:
        return settings.openai.model
    return DEFAULT_CHAT_MODEL
