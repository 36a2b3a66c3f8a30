from models.statement import (
    CONFIDENCE_FIELDS,
    BankFormatId,
    ClassifiedBy,
    ClassifiedRow,
    ConfidenceScores,
    ParsedStatement,
    RawImportRow,
    TransactionType,
)

__all__ = [
    "CONFIDENCE_FIELDS",
    "BankFormatId",
    "ClassifiedBy",
    "ClassifiedRow",
    "ConfidenceScores",
    "ParsedStatement",
    "RawImportRow",
    "TransactionType",
]
