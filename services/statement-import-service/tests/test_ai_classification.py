"""
Tests for the AI escalation stage.

A fake chat client stands in for the provider so reply handling can be checked
without network access.
"""

from __future__ import annotations

import json
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, List

import pytest

from ai_classification import AIClassificationStage, BATCH_SYSTEM_PROMPT
from classification_provider import ChatCompletionRequest, MockChatClient, build_chat_client
from errors import ReplyDecodeError
from models import ClassifiedBy, RawImportRow, TransactionType
from rule_classifier import classify_rows
from shared.provider_settings import BatchSettings, ProviderSettings


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _settings(provider: str = "deterministic") -> ProviderSettings:
    return ProviderSettings(provider_name=provider, timeout_seconds=5.0, temperature=0.0, max_output_tokens=2000)


def _batch_settings(batch_size: int = 25) -> BatchSettings:
    return BatchSettings(batch_size=batch_size, concurrency=1, retries=0, backoff_seconds=0.0, timeout_seconds=5.0)


def _rows(*narrations: str, transaction_type=TransactionType.EXPENSE):
    raw_rows = [
        RawImportRow(
            narration=narration,
            amount=Decimal("250.00"),
            datetime="2024-04-01T00:00:00",
            type=transaction_type,
            raw_data={"Narration": narration},
            source_row_index=index + 2,
        )
        for index, narration in enumerate(narrations)
    ]
    return classify_rows(raw_rows)


class _FakeClient:
    name = "fake"

    def __init__(self, reply: Any = None, error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.requests: List[ChatCompletionRequest] = []

    async def send(self, request: ChatCompletionRequest) -> Any:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        content = self.reply if isinstance(self.reply, str) else json.dumps(self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.mark.anyio
async def test_deterministic_provider_returns_placeholder_classification():
    stage = AIClassificationStage(_settings(), _batch_settings())
    rows = _rows("MISC TRANSFER 1", "MISC TRANSFER 1")

    results = await stage.classify(rows)

    assert stage.provider_name == "deterministic"
    for result in results:
        assert result.category == "Other"
        assert result.payment_method == "UPI"
        assert result.platform is None
        assert result.classified_by is ClassifiedBy.AI
        assert result.confidence.category == 0.75
        assert result.confidence.payment_method == 0.75
        assert result.confidence.platform == 0.0
        assert result.confidence.amount == 1.0
        assert result.recurring_flag is True


@pytest.mark.anyio
async def test_mock_client_replays_fixture(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("IMPORT_CLASSIFIER_FIXTURE", raising=False)
    client = MockChatClient()
    stage = AIClassificationStage(_settings("mock"), _batch_settings(), client=client)
    rows = _rows("KIRANA 0042", "SELF TRANSFER")

    first, second = await stage.classify(rows)

    assert stage.provider_name == "mock"
    assert len(client.requests) == 1
    assert first.category == "Shopping"
    assert first.platform == "Local Store"
    assert first.payment_method == "UPI"
    assert first.tags == ["groceries"]
    assert first.classified_by is ClassifiedBy.AI
    assert first.confidence.category == 0.75
    assert first.confidence.platform == 0.7
    assert second.category == "Other"
    assert second.platform is None
    assert second.confidence.platform is None
    assert second.payment_method == "Bank Transfer"


@pytest.mark.anyio
async def test_request_carries_system_prompt_and_indexed_rows():
    client = _FakeClient(reply=[{"index": 0, "category": "Food"}])
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    await stage.classify(_rows("CHAI POINT"))

    [request] = client.requests
    assert request.messages[0].role == "system"
    assert request.messages[0].content == BATCH_SYSTEM_PROMPT
    assert request.stream is False
    payload = json.loads(request.messages[1].content)
    assert payload == [{"index": 0, "narration": "CHAI POINT", "amount": 250.0, "type": "EXPENSE"}]


@pytest.mark.anyio
async def test_short_reply_leaves_missing_rows_unclassified():
    client = _FakeClient(reply=[{"index": 0, "category": "Food", "platform": "Chai Point"}])
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    answered, missing = await stage.classify(_rows("CHAI POINT", "MISC 991"))

    assert answered.category == "Food"
    assert answered.classified_by is ClassifiedBy.AI
    assert missing.category is None
    assert missing.payment_method is None
    assert missing.classified_by is ClassifiedBy.RULE
    assert missing.confidence.to_dict() == {}


@pytest.mark.anyio
async def test_entries_are_matched_by_index_when_reordered():
    client = _FakeClient(
        reply=[
            {"index": 1, "category": "Rent"},
            {"index": 0, "category": "Health"},
        ]
    )
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    first, second = await stage.classify(_rows("DR MEHTA", "LANDLORD KUMAR"))

    assert first.category == "Health"
    assert second.category == "Rent"


@pytest.mark.anyio
async def test_one_based_indices_fall_back_to_reply_order():
    client = _FakeClient(
        reply=[
            {"index": 1, "category": "Health"},
            {"index": 2, "category": "Rent"},
        ]
    )
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    first, second, third = await stage.classify(_rows("DR MEHTA", "LANDLORD KUMAR", "MISC 77"))

    assert first.category == "Health"
    assert second.category == "Rent"
    assert third.classified_by is ClassifiedBy.RULE
    assert third.category is None


@pytest.mark.anyio
async def test_null_like_labels_are_dropped():
    client = _FakeClient(reply=[{"index": 0, "category": "unknown", "platform": "", "payment_method": None}])
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    [result] = await stage.classify(_rows("MISC 991"))

    assert result.category is None
    assert result.platform is None
    assert result.confidence.category is None


@pytest.mark.anyio
async def test_reply_type_only_fills_a_missing_direction():
    client = _FakeClient(reply=[{"index": 0, "category": "Other", "type": "INFLOW"}])
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    [known] = await stage.classify(_rows("MISC 991"))
    [unknown] = await stage.classify(_rows("MISC 991", transaction_type=None))

    assert known.type is TransactionType.EXPENSE
    assert known.confidence.type == 1.0
    assert unknown.type is TransactionType.INFLOW
    assert unknown.confidence.type == 0.7


@pytest.mark.anyio
async def test_provider_errors_propagate():
    client = _FakeClient(error=RuntimeError("rate limited"))
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    with pytest.raises(RuntimeError, match="rate limited"):
        await stage.classify(_rows("MISC 991"))


@pytest.mark.anyio
async def test_undecodable_reply_raises():
    client = _FakeClient(reply="I could not classify these, sorry!")
    stage = AIClassificationStage(_settings(), _batch_settings(), client=client)

    with pytest.raises(ReplyDecodeError):
        await stage.classify(_rows("MISC 991"))


@pytest.mark.anyio
async def test_rows_are_split_into_batches():
    client = _FakeClient(reply=[{"index": 0, "category": "Other"}, {"index": 1, "category": "Other"}])
    stage = AIClassificationStage(_settings(), _batch_settings(batch_size=2), client=client)
    progress = []

    results = await stage.classify(
        _rows("A ROW", "B ROW", "C ROW"),
        on_progress=lambda done, total: progress.append((done, total)),
    )

    assert len(client.requests) == 2
    assert [result.category for result in results] == ["Other", "Other", "Other"]
    assert progress == [(2, 3), (3, 3)]


def test_build_chat_client_selects_by_provider(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("IMPORT_CLASSIFIER_FIXTURE", raising=False)

    assert build_chat_client(_settings("deterministic")) is None
    assert isinstance(build_chat_client(_settings("mock")), MockChatClient)
    with pytest.raises(ValueError):
        build_chat_client(_settings("carrier-pigeon"))


def test_mock_client_requires_existing_fixture(tmp_path):
    with pytest.raises(FileNotFoundError):
        MockChatClient(fixture_path=tmp_path / "missing.json")
