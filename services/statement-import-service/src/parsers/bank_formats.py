"""
Bank format registry.

Each supported bank exports statements with a recognisable set of column
headers. `detect_bank_format` picks the first format whose required headers are
all present (priority order matters: the most specific signatures come first)
and falls back to GENERIC, which guesses columns by name.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Optional

from models.statement import BankFormatId, RawImportRow, TransactionType

DATE_FORMATS = (
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%d %b %Y",
    "%d-%b-%Y",
    "%d %b %y",
    "%d-%b-%y",
    "%d %B %Y",
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
)
CURRENCY_MARKERS = ("₹", "$", "€", "£", "INR", "Rs.", "Rs")
DEBIT_SUFFIX_RE = re.compile(r"\s*(dr|debit)\.?$", re.IGNORECASE)
CREDIT_SUFFIX_RE = re.compile(r"\s*(cr|credit)\.?$", re.IGNORECASE)

GenericDateHeaders = ("txn date", "transaction date", "tran date", "date", "value date", "posted date")
GenericNarrationHeaders = ("narration", "description", "particulars", "details", "remarks", "memo", "transaction details")
GenericDebitHeaders = ("debit", "withdrawal", "withdrawal amt.", "withdrawal amount", "debit amount", "dr")
GenericCreditHeaders = ("credit", "deposit", "deposit amt.", "deposit amount", "credit amount", "cr")
GenericAmountHeaders = ("amount", "amt", "transaction amount", "value")
GenericTypeHeaders = ("type", "dr/cr", "cr/dr", "transaction type", "debit/credit")

RowMapper = Callable[[Mapping[str, str]], RawImportRow]


@dataclass(frozen=True)
class BankFormat:
    """A bank's header signature plus the mapper that normalizes its rows."""

    id: BankFormatId
    required_headers: tuple[str, ...]
    mapper: RowMapper

    def matches(self, headers: Iterable[str]) -> bool:
        normalized = {_normalize_header(header) for header in headers if header}
        return all(required in normalized for required in self.required_headers)

    def map(self, row: Mapping[str, str], source_row_index: int = 0) -> RawImportRow:
        mapped = self.mapper(_stringify_row(row))
        mapped.source_row_index = source_row_index
        return mapped


def detect_bank_format(headers: Sequence[str]) -> BankFormat:
    """Return the first registered format whose signature matches, else GENERIC."""

    for bank_format in BANK_FORMATS:
        if bank_format.matches(headers):
            return bank_format
    return GENERIC_FORMAT


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------


def parse_amount(raw_value: object) -> Optional[Decimal]:
    """
    Parse a statement amount into a Decimal.

    Handles thousands separators, currency markers, and parenthesised negatives.
    Returns None for blanks and unparseable text. Dr/Cr suffixes are stripped;
    use `split_direction_suffix` first when the suffix carries meaning.
    """

    if raw_value is None:
        return None
    if isinstance(raw_value, Decimal):
        return raw_value
    if isinstance(raw_value, (int, float)):
        return Decimal(str(raw_value))

    text = str(raw_value).strip()
    if not text or text in {"-", "--"}:
        return None

    text, _ = split_direction_suffix(text)
    for marker in CURRENCY_MARKERS:
        text = text.replace(marker, "")
    text = text.replace(",", "").replace(" ", "")

    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]

    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return -value if negative else value


def split_direction_suffix(text: str) -> tuple[str, Optional[TransactionType]]:
    """Strip a trailing Dr/Cr marker, returning the remaining text and its direction."""

    stripped = text.strip()
    if DEBIT_SUFFIX_RE.search(stripped):
        return DEBIT_SUFFIX_RE.sub("", stripped), TransactionType.EXPENSE
    if CREDIT_SUFFIX_RE.search(stripped):
        return CREDIT_SUFFIX_RE.sub("", stripped), TransactionType.INFLOW
    return stripped, None


def parse_statement_date(raw_value: object) -> Optional[str]:
    """Parse a statement date into an ISO-8601 date-time at midnight."""

    if raw_value is None:
        return None
    if isinstance(raw_value, datetime):
        return raw_value.strftime("%Y-%m-%dT00:00:00")

    text = " ".join(str(raw_value).split())
    if not text:
        return None

    candidates = [text]
    first_token = text.split(" ")[0]
    if first_token != text:
        candidates.append(first_token)

    for candidate in candidates:
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(candidate, fmt)
            except ValueError:
                continue
            return parsed.strftime("%Y-%m-%dT00:00:00")
    return None


def resolve_debit_credit(
    debit_raw: object,
    credit_raw: object,
) -> tuple[Optional[Decimal], Optional[TransactionType]]:
    """
    Resolve a debit/credit column pair.

    A positive debit wins, then a positive credit. Rows with neither resolve to
    (None, None) so the parser drops them.
    """

    debit = parse_amount(debit_raw)
    credit = parse_amount(credit_raw)
    if debit is not None and debit > 0:
        return debit, TransactionType.EXPENSE
    if credit is not None and credit > 0:
        return credit, TransactionType.INFLOW
    return None, None


def resolve_signed_amount(
    amount_raw: object,
    type_raw: object = None,
) -> tuple[Optional[Decimal], Optional[TransactionType]]:
    """
    Resolve a single amount column.

    Direction comes from an explicit type column, else a Dr/Cr suffix, else the
    sign (negative means money out). The returned amount is always positive.
    """

    text = "" if amount_raw is None else str(amount_raw)
    _, suffix_direction = split_direction_suffix(text)
    amount = parse_amount(text)
    if amount is None or amount == 0:
        return None, None

    direction = _parse_type_marker(type_raw) or suffix_direction
    if direction is None:
        direction = TransactionType.EXPENSE if amount < 0 else TransactionType.INFLOW
    return abs(amount), direction


def _parse_type_marker(raw_value: object) -> Optional[TransactionType]:
    if raw_value is None:
        return None
    marker = str(raw_value).strip().lower()
    if marker in {"dr", "debit", "d", "withdrawal", "expense", "out"}:
        return TransactionType.EXPENSE
    if marker in {"cr", "credit", "c", "deposit", "inflow", "in"}:
        return TransactionType.INFLOW
    return None


def _normalize_header(header: object) -> str:
    return " ".join(str(header).split()).lower()


def _stringify_row(row: Mapping[str, object]) -> dict[str, str]:
    stringified: dict[str, str] = {}
    for key, value in row.items():
        if key is None:
            continue
        stringified[str(key)] = "" if value is None else str(value).strip()
    return stringified


def _lookup(row: Mapping[str, str], *headers: str) -> str:
    """Case-insensitive column lookup returning the first non-empty match."""

    by_normalized = {_normalize_header(key): value for key, value in row.items()}
    for header in headers:
        value = by_normalized.get(header)
        if value:
            return value
    return ""


# ---------------------------------------------------------------------------
# Bank specific mappers
# ---------------------------------------------------------------------------


def _debit_credit_mapper(
    *,
    date_headers: tuple[str, ...],
    narration_headers: tuple[str, ...],
    debit_headers: tuple[str, ...],
    credit_headers: tuple[str, ...],
) -> RowMapper:
    def mapper(row: Mapping[str, str]) -> RawImportRow:
        amount, transaction_type = resolve_debit_credit(
            _lookup(row, *debit_headers),
            _lookup(row, *credit_headers),
        )
        return RawImportRow(
            raw_data=dict(row),
            amount=amount,
            datetime=parse_statement_date(_lookup(row, *date_headers)),
            type=transaction_type,
            narration=_lookup(row, *narration_headers),
        )

    return mapper


HDFC_FORMAT = BankFormat(
    id=BankFormatId.HDFC,
    required_headers=("narration", "withdrawal amt.", "deposit amt."),
    mapper=_debit_credit_mapper(
        date_headers=("date", "value dat", "value date"),
        narration_headers=("narration",),
        debit_headers=("withdrawal amt.",),
        credit_headers=("deposit amt.",),
    ),
)

ICICI_FORMAT = BankFormat(
    id=BankFormatId.ICICI,
    required_headers=("transaction date", "value date", "description", "debit", "credit"),
    mapper=_debit_credit_mapper(
        date_headers=("transaction date", "value date"),
        narration_headers=("description", "transaction remarks"),
        debit_headers=("debit",),
        credit_headers=("credit",),
    ),
)

AXIS_FORMAT = BankFormat(
    id=BankFormatId.AXIS,
    required_headers=("tran date", "particulars"),
    mapper=_debit_credit_mapper(
        date_headers=("tran date",),
        narration_headers=("particulars",),
        debit_headers=("debit", "dr"),
        credit_headers=("credit", "cr"),
    ),
)

SBI_FORMAT = BankFormat(
    id=BankFormatId.SBI,
    required_headers=("txn date", "description", "debit", "credit"),
    mapper=_debit_credit_mapper(
        date_headers=("txn date", "value date"),
        narration_headers=("description",),
        debit_headers=("debit",),
        credit_headers=("credit",),
    ),
)

KOTAK_FORMAT = BankFormat(
    id=BankFormatId.KOTAK,
    required_headers=("transaction date", "debit amount", "credit amount"),
    mapper=_debit_credit_mapper(
        date_headers=("transaction date", "value date"),
        narration_headers=("description", "narration"),
        debit_headers=("debit amount",),
        credit_headers=("credit amount",),
    ),
)


# ---------------------------------------------------------------------------
# Generic fallback
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _GenericColumns:
    date: Optional[str]
    narration: Optional[str]
    debit: Optional[str]
    credit: Optional[str]
    amount: Optional[str]
    type: Optional[str]


@lru_cache(maxsize=64)
def _guess_columns(headers: tuple[str, ...]) -> _GenericColumns:
    normalized = {_normalize_header(header): header for header in headers}

    def exact(candidates: tuple[str, ...]) -> Optional[str]:
        for candidate in candidates:
            if candidate in normalized:
                return normalized[candidate]
        return None

    def containing(keywords: tuple[str, ...], exclude: set[Optional[str]]) -> Optional[str]:
        for keyword in keywords:
            for lowered, original in normalized.items():
                if original in exclude:
                    continue
                if keyword in lowered:
                    return original
        return None

    date_col = exact(GenericDateHeaders) or containing(("date",), set())
    narration_col = exact(GenericNarrationHeaders) or containing(
        ("narration", "description", "particulars", "details", "remarks"), {date_col}
    )
    debit_col = exact(GenericDebitHeaders) or containing(("debit", "withdrawal"), {date_col, narration_col})
    credit_col = exact(GenericCreditHeaders) or containing(("credit", "deposit"), {date_col, narration_col})
    taken = {date_col, narration_col, debit_col, credit_col}
    amount_col = exact(GenericAmountHeaders) or containing(("amount",), taken)
    type_col = exact(GenericTypeHeaders)

    return _GenericColumns(
        date=date_col,
        narration=narration_col,
        debit=debit_col,
        credit=credit_col,
        amount=amount_col if amount_col not in taken else None,
        type=type_col,
    )


def _map_generic(row: Mapping[str, str]) -> RawImportRow:
    columns = _guess_columns(tuple(row.keys()))

    amount: Optional[Decimal] = None
    transaction_type: Optional[TransactionType] = None
    if columns.debit or columns.credit:
        amount, transaction_type = resolve_debit_credit(
            row.get(columns.debit, "") if columns.debit else "",
            row.get(columns.credit, "") if columns.credit else "",
        )
    if amount is None and columns.amount:
        amount, transaction_type = resolve_signed_amount(
            row.get(columns.amount, ""),
            row.get(columns.type) if columns.type else None,
        )

    if columns.narration:
        narration = row.get(columns.narration, "")
    else:
        used = {columns.date, columns.debit, columns.credit, columns.amount, columns.type}
        narration = " ".join(value for key, value in row.items() if key not in used and value)

    return RawImportRow(
        raw_data=dict(row),
        amount=amount,
        datetime=parse_statement_date(row.get(columns.date, "")) if columns.date else None,
        type=transaction_type,
        narration=narration,
    )


GENERIC_FORMAT = BankFormat(id=BankFormatId.GENERIC, required_headers=(), mapper=_map_generic)

# Most specific first; GENERIC is the fallback and is not part of the scan.
BANK_FORMATS: tuple[BankFormat, ...] = (
    HDFC_FORMAT,
    ICICI_FORMAT,
    AXIS_FORMAT,
    SBI_FORMAT,
    KOTAK_FORMAT,
)
