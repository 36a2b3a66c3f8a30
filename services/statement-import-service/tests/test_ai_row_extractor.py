"""Tests for model-backed PDF row extraction."""

from __future__ import annotations

import json
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, List

import pytest

from ai_row_extractor import (
    EXTRACTION_FIXTURE_ENV,
    EXTRACTION_MAX_TOKENS,
    EXTRACTION_SYSTEM_PROMPT,
    AIRowExtractor,
    rows_from_reply,
)
from classification_provider import ChatCompletionRequest
from errors import ReplyDecodeError
from models import TransactionType
from shared.provider_settings import ProviderSettings

STATEMENT_TEXT = "01-04-2024 UPI/ZOMATO/ORDER 450.00 99,550.00\n02-04-2024 KIRANA STORE 0042 120.00 99,430.00"


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _settings(provider: str = "mock") -> ProviderSettings:
    return ProviderSettings(provider_name=provider, timeout_seconds=5.0, temperature=0.0, max_output_tokens=2000)


class _FakeClient:
    name = "fake"

    def __init__(self, content: str):
        self.content = content
        self.requests: List[ChatCompletionRequest] = []

    async def send(self, request: ChatCompletionRequest) -> Any:
        self.requests.append(request)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


@pytest.mark.anyio
async def test_request_sends_statement_text_under_the_parsing_prompt():
    client = _FakeClient("[]")
    extractor = AIRowExtractor(_settings(), client=client)

    rows = await extractor.extract(STATEMENT_TEXT)

    assert rows == []
    [request] = client.requests
    assert request.messages[0].role == "system"
    assert request.messages[0].content == EXTRACTION_SYSTEM_PROMPT
    assert request.messages[1].role == "user"
    assert request.messages[1].content == STATEMENT_TEXT
    assert request.max_tokens == EXTRACTION_MAX_TOKENS
    assert request.stream is False


@pytest.mark.anyio
async def test_fenced_reply_is_decoded():
    reply = [{"date": "2024-04-01", "amount": 450, "type": "EXPENSE", "narration": "UPI/ZOMATO/ORDER"}]
    client = _FakeClient("```json\n" + json.dumps(reply) + "\n```")
    extractor = AIRowExtractor(_settings(), client=client)

    [row] = await extractor.extract(STATEMENT_TEXT)

    assert row.narration == "UPI/ZOMATO/ORDER"
    assert row.amount == Decimal("450")
    assert row.datetime == "2024-04-01T00:00:00"
    assert row.type is TransactionType.EXPENSE
    assert row.source_row_index == 1


@pytest.mark.anyio
async def test_prose_reply_raises():
    extractor = AIRowExtractor(_settings(), client=_FakeClient("I found no transactions."))

    with pytest.raises(ReplyDecodeError):
        await extractor.extract(STATEMENT_TEXT)


def test_entries_without_a_date_or_positive_amount_are_dropped():
    rows = rows_from_reply(
        [
            {"date": None, "amount": 100, "type": "EXPENSE", "narration": "NO DATE"},
            {"date": "sometime in April", "amount": 100, "type": "EXPENSE", "narration": "BAD DATE"},
            {"date": "2024-04-01", "amount": 0, "type": "EXPENSE", "narration": "ZERO"},
            {"date": "2024-04-01", "amount": -25, "type": "EXPENSE", "narration": "NEGATIVE"},
            {"date": "2024-04-01", "amount": None, "type": "INFLOW", "narration": "OPENING BALANCE"},
            {"date": "2024-04-01", "amount": True, "type": "EXPENSE", "narration": "BOOLEAN"},
            "CLOSING BALANCE 99,430.00",
            {"date": "2024-04-05", "amount": "1,250.50", "type": "inflow", "narration": "  REFUND 77  "},
        ]
    )

    [row] = rows
    assert row.narration == "REFUND 77"
    assert row.amount == Decimal("1250.50")
    assert row.type is TransactionType.INFLOW
    assert row.source_row_index == 8
    assert row.raw_data == {"date": "2024-04-05", "narration": "REFUND 77", "amount": "1,250.50", "type": "INFLOW"}


def test_unknown_type_leaves_direction_open():
    [row] = rows_from_reply([{"date": "01/04/2024", "amount": 99, "type": "DEBIT?", "narration": "MISC"}])

    assert row.type is None
    assert row.raw_data["type"] == ""


@pytest.mark.anyio
async def test_mock_provider_replays_default_fixture(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(EXTRACTION_FIXTURE_ENV, raising=False)
    extractor = AIRowExtractor(_settings("mock"))

    rows = await extractor.extract(STATEMENT_TEXT)

    assert extractor.provider_name == "mock"
    assert [row.narration for row in rows] == ["UPI/ZOMATO/ORDER", "KIRANA STORE 0042", "NEFT SALARY ACME CORP"]
    assert [row.source_row_index for row in rows] == [2, 3, 4]


def test_fixture_path_comes_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv(EXTRACTION_FIXTURE_ENV, str(tmp_path / "missing.json"))

    with pytest.raises(FileNotFoundError):
        AIRowExtractor(_settings("mock"))


def test_deterministic_provider_cannot_extract_rows():
    with pytest.raises(ValueError):
        AIRowExtractor(_settings("deterministic"))
