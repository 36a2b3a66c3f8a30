from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from enum import Enum
from typing import Any


class TransactionType(str, Enum):
    EXPENSE = "EXPENSE"
    INFLOW = "INFLOW"


class ClassifiedBy(str, Enum):
    """Which stage last set a row's category/platform/payment method."""

    RULE = "RULE"
    AI = "AI"
    MANUAL = "MANUAL"


class BankFormatId(str, Enum):
    HDFC = "HDFC"
    ICICI = "ICICI"
    AXIS = "AXIS"
    SBI = "SBI"
    KOTAK = "KOTAK"
    PDF = "PDF"
    GENERIC = "GENERIC"


CONFIDENCE_FIELDS = ("amount", "datetime", "type", "category", "platform", "payment_method")


@dataclass(slots=True)
class RawImportRow:
    """One statement line after format-specific extraction, before classification."""

    narration: str
    amount: Decimal | None = None
    datetime: str | None = None
    type: TransactionType | None = None
    raw_data: dict[str, str] = field(default_factory=dict)
    source_row_index: int = 0

    @property
    def is_complete(self) -> bool:
        return self.amount is not None and self.datetime is not None


@dataclass(frozen=True, slots=True)
class ConfidenceScores:
    """
    Sparse per-field confidence in [0, 1].

    `None` means the field was not evaluated; `score()` treats it as 0 so
    callers never have to special-case missing keys.
    """

    amount: float | None = None
    datetime: float | None = None
    type: float | None = None
    category: float | None = None
    platform: float | None = None
    payment_method: float | None = None

    def score(self, name: str) -> float:
        if name not in CONFIDENCE_FIELDS:
            raise KeyError(name)
        value = getattr(self, name)
        return 0.0 if value is None else value

    def all_at_least(self, threshold: float) -> bool:
        return all(self.score(name) >= threshold for name in CONFIDENCE_FIELDS)

    def to_dict(self) -> dict[str, float]:
        return {item.name: getattr(self, item.name) for item in fields(self) if getattr(self, item.name) is not None}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "ConfidenceScores":
        payload = payload or {}
        values = {}
        for name in CONFIDENCE_FIELDS:
            raw = payload.get(name)
            if raw is not None:
                values[name] = float(raw)
        return cls(**values)


@dataclass(slots=True)
class ClassifiedRow:
    """A RawImportRow plus classification results and provenance."""

    row: RawImportRow
    category: str | None = None
    platform: str | None = None
    payment_method: str | None = None
    notes: str | None = None
    tags: list[str] = field(default_factory=list)
    recurring_flag: bool = False
    confidence: ConfidenceScores = field(default_factory=ConfidenceScores)
    classified_by: ClassifiedBy = ClassifiedBy.RULE

    @property
    def narration(self) -> str:
        return self.row.narration

    @property
    def amount(self) -> Decimal | None:
        return self.row.amount

    @property
    def datetime(self) -> str | None:
        return self.row.datetime

    @property
    def type(self) -> TransactionType | None:
        return self.row.type

    @property
    def source_row_index(self) -> int:
        return self.row.source_row_index

    def with_type(self, transaction_type: TransactionType | None) -> "ClassifiedRow":
        if transaction_type is None or transaction_type == self.row.type:
            return self
        return replace(self, row=replace(self.row, type=transaction_type))


@dataclass(slots=True)
class ParsedStatement:
    """Result of decoding an uploaded statement file."""

    format: BankFormatId
    rows: list[RawImportRow] = field(default_factory=list)
