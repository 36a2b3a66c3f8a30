"""
AI escalation stage for rows the rule classifier could not settle.

Rows are sent to the configured chat client in batches through `BatchQueue`.
Provider errors and undecodable replies propagate so the queue can retry them
and the pipeline can fail the session; only a reply that is too short (or has
non-object entries) degrades to an unclassified placeholder for those rows.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from dataclasses import replace
from typing import Any, List, Optional

from shared.observability.privacy import fingerprint_narrations, hash_payload
from shared.provider_settings import BatchSettings, ProviderSettings

from batch_queue import BatchCallback, BatchQueue, BatchQueueConfig, ProgressCallback
from classification_provider import (
    ChatCompletionClient,
    ChatCompletionRequest,
    ChatMessage,
    build_chat_client,
    resolve_model_name,
)
from models import ClassifiedBy, ClassifiedRow, ConfidenceScores, TransactionType
from reply_decoder import completion_content, decode_json_array

logger = logging.getLogger(__name__)

AI_CATEGORY_CONFIDENCE = 0.75
AI_PLATFORM_CONFIDENCE = 0.7
AI_PAYMENT_METHOD_CONFIDENCE = 0.7
AI_TYPE_CONFIDENCE = 0.7

PLACEHOLDER_CATEGORY = "Other"
PLACEHOLDER_PAYMENT_METHOD = "UPI"
PLACEHOLDER_CONFIDENCE = 0.75

BATCH_SYSTEM_PROMPT = """You are a financial transaction classifier. Given a JSON array of bank transactions, return a JSON array of classifications in the same order.

For each transaction, return:
{
  "index": number,             // the index of the input transaction
  "category": string | null,   // Food, Transport, Shopping, Entertainment, Travel, Health, Utilities, Rent, Salary, EMI, Insurance, Education, Other, or null
  "platform": string | null,   // merchant name, normalized (e.g. "Swiggy", "Netflix")
  "payment_method": string | null, // UPI, Credit Card, Debit Card, Bank Transfer, Cash, or null
  "tags": string[],
  "type": "EXPENSE" | "INFLOW"
}

Return ONLY a valid JSON array. No markdown, no explanation."""


class AIClassificationStage:
    """
    Batched AI classification over already rule-classified rows.

    With the `deterministic` provider there is no client; every row gets the
    fixed placeholder classification and nothing leaves the process.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        batch_settings: BatchSettings,
        client: Optional[ChatCompletionClient] = None,
    ) -> None:
        self._settings = settings
        self._batch_settings = batch_settings
        self._client = client if client is not None else build_chat_client(settings)
        self._model = resolve_model_name(settings)

    @property
    def provider_name(self) -> str:
        return self._client.name if self._client is not None else "deterministic"

    @property
    def batch_settings(self) -> BatchSettings:
        return self._batch_settings

    async def classify(
        self,
        rows: Sequence[ClassifiedRow],
        *,
        on_progress: Optional[ProgressCallback] = None,
        on_batch: Optional[BatchCallback] = None,
    ) -> List[ClassifiedRow]:
        queue: BatchQueue[ClassifiedRow, ClassifiedRow] = BatchQueue(
            BatchQueueConfig(
                handler=self.classify_batch,
                batch_size=self._batch_settings.batch_size,
                concurrency=self._batch_settings.concurrency,
                retries=self._batch_settings.retries,
                backoff_seconds=self._batch_settings.backoff_seconds,
                timeout_seconds=self._batch_settings.timeout_seconds,
                on_progress=on_progress,
                on_batch=on_batch,
            )
        )
        return await queue.enqueue(list(rows))

    async def classify_batch(self, batch: List[ClassifiedRow]) -> List[ClassifiedRow]:
        if self._client is None:
            return [placeholder_classification(row) for row in batch]

        user_content = json.dumps(
            [
                {
                    "index": position,
                    "narration": row.narration,
                    "amount": float(row.amount) if row.amount is not None else None,
                    "type": row.type.value if row.type is not None else None,
                }
                for position, row in enumerate(batch)
            ]
        )
        request = ChatCompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(role="system", content=BATCH_SYSTEM_PROMPT),
                ChatMessage(role="user", content=user_content),
            ],
            temperature=self._settings.temperature,
            max_tokens=self._settings.max_output_tokens,
            stream=False,
        )

        start_time = time.perf_counter()
        response = await self._client.send(request)
        latency_ms = round((time.perf_counter() - start_time) * 1000, 2)

        logger.debug(
            {
                "event": "ai_classification_batch",
                "provider": self._client.name,
                "narrations": fingerprint_narrations(row.narration for row in batch),
            }
        )

        entries = decode_json_array(completion_content(response))
        aligned = _align_entries(entries, len(batch))
        missing = sum(1 for entry in aligned if entry is None)

        logger.info(
            {
                "event": "ai_classification_request",
                "provider": self._client.name,
                "model": self._model,
                "batch_size": len(batch),
                "reply_entries": len(entries),
                "missing_entries": missing,
                "prompt_hash": hash_payload(user_content),
                "latency_ms": latency_ms,
            }
        )

        return [
            unclassified_fallback(row) if entry is None else _apply_entry(row, entry)
            for row, entry in zip(batch, aligned)
        ]


def placeholder_classification(row: ClassifiedRow) -> ClassifiedRow:
    """Fixed offline classification used by the deterministic provider."""

    return replace(
        row,
        category=PLACEHOLDER_CATEGORY,
        platform=None,
        payment_method=PLACEHOLDER_PAYMENT_METHOD,
        notes=None,
        tags=[],
        confidence=ConfidenceScores(
            amount=row.confidence.amount,
            datetime=row.confidence.datetime,
            type=row.confidence.type,
            category=PLACEHOLDER_CONFIDENCE,
            platform=0.0,
            payment_method=PLACEHOLDER_CONFIDENCE,
        ),
        classified_by=ClassifiedBy.AI,
    )


def unclassified_fallback(row: ClassifiedRow) -> ClassifiedRow:
    """Row the model did not answer for. Tagged RULE because no AI value was set."""

    return replace(
        row,
        category=None,
        platform=None,
        payment_method=None,
        notes=None,
        tags=[],
        confidence=ConfidenceScores(),
        classified_by=ClassifiedBy.RULE,
    )


def _align_entries(entries: List[Any], size: int) -> List[Optional[dict[str, Any]]]:
    """
    Line reply entries up with the request rows.

    Entries are matched by their `index` when every object entry carries a
    distinct in-range one and index 0 is among them, otherwise by array
    position. A reply numbered from 1 therefore falls back to position instead
    of shifting every entry one row down. Non-object entries and positions past
    the end of the reply come back as None.
    """

    objects = [entry for entry in entries if isinstance(entry, dict)]
    indices = [entry.get("index") for entry in objects]
    by_index = (
        bool(objects)
        and all(isinstance(index, int) and not isinstance(index, bool) and 0 <= index < size for index in indices)
        and len(set(indices)) == len(indices)
        and 0 in indices
    )

    aligned: List[Optional[dict[str, Any]]] = [None] * size
    if by_index:
        for entry in objects:
            aligned[entry["index"]] = entry
        return aligned

    for position, entry in enumerate(entries[:size]):
        if isinstance(entry, dict):
            aligned[position] = entry
    return aligned


def _apply_entry(row: ClassifiedRow, entry: dict[str, Any]) -> ClassifiedRow:
    category = _clean_label(entry.get("category"))
    platform = _clean_label(entry.get("platform"))
    payment_method = _clean_label(entry.get("payment_method"))
    transaction_type = _parse_type(entry.get("type"))
    tags = [str(tag).strip() for tag in entry.get("tags") or [] if str(tag).strip()]

    type_confidence = row.confidence.type
    if type_confidence is None and transaction_type is not None:
        type_confidence = AI_TYPE_CONFIDENCE

    classified = replace(
        row,
        category=category,
        platform=platform,
        payment_method=payment_method,
        tags=tags,
        confidence=ConfidenceScores(
            amount=row.confidence.amount,
            datetime=row.confidence.datetime,
            type=type_confidence,
            category=AI_CATEGORY_CONFIDENCE if category else None,
            platform=AI_PLATFORM_CONFIDENCE if platform else None,
            payment_method=AI_PAYMENT_METHOD_CONFIDENCE if payment_method else None,
        ),
        classified_by=ClassifiedBy.AI,
    )
    # Only fill in a missing direction; statement columns beat the model.
    if row.type is None:
        classified = classified.with_type(transaction_type)
    return classified


def _clean_label(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    if not cleaned or cleaned.lower() in {"null", "none", "unknown"}:
        return None
    return cleaned


def _parse_type(value: Any) -> Optional[TransactionType]:
    if not isinstance(value, str):
        return None
    try:
        return TransactionType(value.strip().upper())
    except ValueError:
        return None
