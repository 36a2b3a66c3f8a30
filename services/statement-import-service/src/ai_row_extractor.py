"""
Model-backed row extraction for PDF statements.

Extracted PDF text keeps none of the statement's table layout, so instead of
matching lines the whole text goes to the chat client with a fixed parsing
prompt. The reply is a JSON array of `{date, amount, type, narration}` objects;
only entries with a date and a positive amount become rows. Provider errors and
undecodable replies propagate, which fails the import session.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Sequence
from typing import Any, List, Optional

from shared.observability.privacy import hash_payload
from shared.provider_settings import ProviderSettings

from classification_provider import (
    ChatCompletionClient,
    ChatCompletionRequest,
    ChatMessage,
    build_chat_client,
    default_fixture_path,
    resolve_model_name,
)
from models import RawImportRow, TransactionType
from parsers.bank_formats import parse_amount, parse_statement_date
from reply_decoder import completion_content, decode_json_array

logger = logging.getLogger(__name__)

EXTRACTION_MAX_TOKENS = 4000
EXTRACTION_FIXTURE = "mock_pdf_rows_reply.json"
EXTRACTION_FIXTURE_ENV = "IMPORT_PDF_EXTRACTOR_FIXTURE"

EXTRACTION_SYSTEM_PROMPT = """You are a bank statement parser. Extract all financial transactions from the raw text of a bank statement PDF.

Return a JSON array where each element has:
- "date": string in "YYYY-MM-DD" format
- "amount": positive number (no sign)
- "type": "EXPENSE" (debit/withdrawal) or "INFLOW" (credit/deposit)
- "narration": transaction description exactly as shown

Rules:
- Skip: opening balance, closing balance, statement headers, account info, and any row without a clear date and amount
- Debits / withdrawals are EXPENSE; credits / deposits are INFLOW
- Return ONLY a valid JSON array. No markdown, no explanation."""


class AIRowExtractor:
    """Turns statement text into raw rows with one chat completion."""

    def __init__(self, settings: ProviderSettings, client: Optional[ChatCompletionClient] = None) -> None:
        if client is None:
            fixture = os.getenv(EXTRACTION_FIXTURE_ENV) or default_fixture_path(EXTRACTION_FIXTURE)
            client = build_chat_client(settings, fixture_path=fixture)
        if client is None:
            raise ValueError("PDF row extraction needs a chat provider; 'deterministic' has none")

        self._settings = settings
        self._client = client
        self._model = resolve_model_name(settings)

    @property
    def provider_name(self) -> str:
        return self._client.name

    async def extract(self, text: str) -> List[RawImportRow]:
        request = ChatCompletionRequest(
            model=self._model,
            messages=[
                ChatMessage(role="system", content=EXTRACTION_SYSTEM_PROMPT),
                ChatMessage(role="user", content=text),
            ],
            temperature=self._settings.temperature,
            max_tokens=max(self._settings.max_output_tokens, EXTRACTION_MAX_TOKENS),
            stream=False,
        )

        start_time = time.perf_counter()
        response = await self._client.send(request)
        entries = decode_json_array(completion_content(response))
        rows = rows_from_reply(entries)

        logger.info(
            {
                "event": "pdf_row_extraction",
                "provider": self._client.name,
                "model": self._model,
                "reply_entries": len(entries),
                "row_count": len(rows),
                "dropped_entries": len(entries) - len(rows),
                "prompt_hash": hash_payload(text),
                "latency_ms": round((time.perf_counter() - start_time) * 1000, 2),
            }
        )
        return rows


def rows_from_reply(entries: Sequence[Any]) -> List[RawImportRow]:
    """
    Keep the reply entries that describe a transaction.

    An entry needs a parseable date and a positive amount; everything else
    (balances, headers, non-objects) is dropped. Rows are numbered by their
    position in the reply, starting at 1.
    """

    rows: List[RawImportRow] = []
    for position, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            continue
        raw_amount = entry.get("amount")
        if isinstance(raw_amount, bool):
            continue
        amount = parse_amount(raw_amount)
        date = parse_statement_date(entry.get("date"))
        if amount is None or amount <= 0 or date is None:
            continue

        narration = str(entry.get("narration") or "").strip()
        transaction_type = _parse_type(entry.get("type"))
        rows.append(
            RawImportRow(
                narration=narration,
                amount=amount,
                datetime=date,
                type=transaction_type,
                raw_data={
                    "date": str(entry.get("date")),
                    "narration": narration,
                    "amount": str(raw_amount),
                    "type": transaction_type.value if transaction_type is not None else "",
                },
                source_row_index=position,
            )
        )
    return rows


def _parse_type(value: Any) -> Optional[TransactionType]:
    if not isinstance(value, str):
        return None
    try:
        return TransactionType(value.strip().upper())
    except ValueError:
        return None
