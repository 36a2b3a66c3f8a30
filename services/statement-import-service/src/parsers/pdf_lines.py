"""
Line-oriented parsing of extracted PDF statement text.

Statement PDFs lose their table structure on extraction, so each transaction
is recognised as a line that starts with a date and ends with one or two
amounts (transaction amount, then running balance). Lines without a leading
date are treated as wrapped narration and appended to the previous row.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Optional

from models.statement import RawImportRow, TransactionType
from parsers.bank_formats import parse_amount, parse_statement_date, split_direction_suffix

DATE_PREFIX_RE = re.compile(
    r"^(?P<date>\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}|\d{1,2}[ -][A-Za-z]{3}[ -]\d{2,4}|\d{4}-\d{2}-\d{2})\s+(?P<body>.+)$"
)
AMOUNT_TOKEN_RE = re.compile(r"(?<![\w.])-?[\d,]*\d\.\d{2}(?:\s?(?:Cr|Dr|CR|DR|cr|dr))?(?![\w.])")
SKIP_MARKERS = ("opening balance", "closing balance", "balance b/f", "balance c/f", "statement summary")
INFLOW_HINTS = ("salary", "refund", "interest credit", "reversal", "cashback", "deposit")


def parse_statement_text(text: str) -> list[RawImportRow]:
    """Turn extracted statement text into raw rows (amount/date may still be None)."""

    rows: list[RawImportRow] = []
    previous_balance: Optional[Decimal] = None

    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        if any(marker in stripped.lower() for marker in SKIP_MARKERS):
            previous_balance = _trailing_balance(stripped) or previous_balance
            continue

        match = DATE_PREFIX_RE.match(stripped)
        if match is None:
            if rows and not AMOUNT_TOKEN_RE.search(stripped):
                rows[-1].narration = f"{rows[-1].narration} {stripped}".strip()
            continue

        body = match.group("body")
        tokens = list(AMOUNT_TOKEN_RE.finditer(body))
        if not tokens:
            continue

        amount_token = tokens[-2] if len(tokens) >= 2 else tokens[-1]
        balance = parse_amount(tokens[-1].group()) if len(tokens) >= 2 else None
        narration = body[: tokens[0].start()].strip()

        _, direction = split_direction_suffix(amount_token.group())
        amount = parse_amount(amount_token.group())
        if amount is not None and amount < 0:
            direction = direction or TransactionType.EXPENSE
            amount = abs(amount)
        if direction is None and balance is not None and previous_balance is not None:
            direction = TransactionType.EXPENSE if balance < previous_balance else TransactionType.INFLOW
        if direction is None and any(hint in narration.lower() for hint in INFLOW_HINTS):
            direction = TransactionType.INFLOW
        if balance is not None:
            previous_balance = balance

        rows.append(
            RawImportRow(
                raw_data={
                    "date": match.group("date"),
                    "narration": narration,
                    "amount": amount_token.group(),
                    "balance": tokens[-1].group() if len(tokens) >= 2 else "",
                },
                amount=amount if amount else None,
                datetime=parse_statement_date(match.group("date")),
                type=direction,
                narration=narration,
                source_row_index=line_number,
            )
        )

    return rows


def _trailing_balance(line: str) -> Optional[Decimal]:
    tokens = AMOUNT_TOKEN_RE.findall(line)
    return parse_amount(tokens[-1]) if tokens else None
