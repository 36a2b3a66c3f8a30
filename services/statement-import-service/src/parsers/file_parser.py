from __future__ import annotations

import csv
import logging
from datetime import date, datetime
from io import BytesIO, StringIO
from typing import List, Optional, Sequence

from errors import EmptyFileError, FileParseError, NoDataRowsError, UnsupportedFileTypeError
from models.statement import BankFormatId, ParsedStatement, RawImportRow
from parsers.bank_formats import BANK_FORMATS, detect_bank_format
from parsers.pdf_extractor import extract_pdf_text
from parsers.pdf_lines import parse_statement_text

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPES = {
    "text/csv",
    "application/csv",
    "text/plain",
}
XLSX_CONTENT_TYPES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
XLS_CONTENT_TYPES = {
    "application/vnd.ms-excel",
}
PDF_CONTENT_TYPES = {
    "application/pdf",
}
HEADER_SCAN_LIMIT = 25


def determine_file_kind(filename: str | None, content_type: str | None = None) -> Optional[str]:
    """Map an upload to `csv`, `xlsx`, `xls`, or `pdf`; None when unsupported."""

    lowered_name = (filename or "").lower()
    lowered_type = (content_type or "").lower().split(";")[0].strip()

    for extension in ("csv", "xlsx", "xls", "pdf"):
        if lowered_name.endswith(f".{extension}"):
            return extension
    if lowered_type in CSV_CONTENT_TYPES:
        return "csv"
    if lowered_type in XLSX_CONTENT_TYPES:
        return "xlsx"
    if lowered_type in XLS_CONTENT_TYPES:
        return "xls"
    if lowered_type in PDF_CONTENT_TYPES:
        return "pdf"
    return None


def parse_file(
    file_bytes: bytes,
    filename: str,
    *,
    content_type: str | None = None,
    password: str | None = None,
) -> ParsedStatement:
    """
    Decode an uploaded statement into normalized raw rows.

    Rows whose amount or date could not be resolved are dropped. Raises
    EmptyFileError for an empty upload, NoDataRowsError when nothing usable
    survives mapping, PdfPasswordError for locked PDFs, and FileParseError for
    any other decoding failure.
    """

    if not file_bytes:
        raise EmptyFileError("Uploaded file is empty.")

    kind = determine_file_kind(filename, content_type)
    if kind is None:
        raise UnsupportedFileTypeError("Unsupported file type. Upload CSV, XLS, XLSX or PDF.")

    if kind == "pdf":
        return _parse_pdf(file_bytes, password)

    if kind == "csv":
        table = _read_csv_table(file_bytes)
    elif kind == "xlsx":
        table = _read_xlsx_table(file_bytes)
    else:
        table = _read_xls_table(file_bytes)

    if not any(any(cell for cell in row) for row in table):
        raise EmptyFileError("Uploaded file is empty.")

    header_index = _locate_header_row(table)
    headers = _normalize_headers(table[header_index])
    bank_format = detect_bank_format(headers)

    rows: List[RawImportRow] = []
    dropped = 0
    for offset, raw_row in enumerate(table[header_index + 1 :], start=header_index + 2):
        if not any(cell for cell in raw_row):
            continue
        row = {header: value for header, value in zip(headers, raw_row) if header}
        mapped = bank_format.map(row, source_row_index=offset)
        if not mapped.is_complete:
            dropped += 1
            continue
        rows.append(mapped)

    logger.info(
        {
            "event": "statement_parsed",
            "file_kind": kind,
            "bank_format": bank_format.id.value,
            "row_count": len(rows),
            "dropped_rows": dropped,
        }
    )

    if not rows:
        raise NoDataRowsError("File has no data rows.")
    return ParsedStatement(format=bank_format.id, rows=rows)


def _parse_pdf(file_bytes: bytes, password: str | None) -> ParsedStatement:
    text = extract_pdf_text(file_bytes, password)
    parsed_rows = parse_statement_text(text)
    rows = [row for row in parsed_rows if row.is_complete]

    logger.info(
        {
            "event": "statement_parsed",
            "file_kind": "pdf",
            "bank_format": BankFormatId.PDF.value,
            "row_count": len(rows),
            "dropped_rows": len(parsed_rows) - len(rows),
        }
    )

    if not rows:
        raise NoDataRowsError("File has no data rows.")
    return ParsedStatement(format=BankFormatId.PDF, rows=rows)


def _decode_bytes(file_bytes: bytes) -> str:
    for encoding in ("utf-8-sig", "utf-8", "cp1252"):
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return file_bytes.decode("latin-1")


def _read_csv_table(file_bytes: bytes) -> List[List[str]]:
    text_buffer = _decode_bytes(file_bytes)
    if not text_buffer.strip():
        raise EmptyFileError("Uploaded file is empty.")
    try:
        return [[cell.strip() for cell in row] for row in csv.reader(StringIO(text_buffer))]
    except csv.Error as exc:
        raise FileParseError(f"Could not read CSV file: {exc}") from exc


def _read_xlsx_table(file_bytes: bytes) -> List[List[str]]:
    from openpyxl import load_workbook

    try:
        workbook = load_workbook(BytesIO(file_bytes), data_only=True, read_only=True)
    except Exception as exc:
        raise FileParseError("Could not read XLSX workbook.") from exc

    try:
        sheet = workbook.worksheets[0]
        return [[_cell_to_text(cell) for cell in row] for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _read_xls_table(file_bytes: bytes) -> List[List[str]]:
    import xlrd

    try:
        book = xlrd.open_workbook(file_contents=file_bytes)
    except xlrd.XLRDError as exc:
        raise FileParseError("Could not read XLS workbook.") from exc

    sheet = book.sheet_by_index(0)
    table: List[List[str]] = []
    for row_idx in range(sheet.nrows):
        cells: List[str] = []
        for cell in sheet.row(row_idx):
            if cell.ctype == xlrd.XL_CELL_DATE:
                cells.append(_cell_to_text(xlrd.xldate_as_datetime(cell.value, book.datemode)))
            else:
                cells.append(_cell_to_text(cell.value))
        table.append(cells)
    return table


def _cell_to_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _normalize_headers(header_row: Sequence[object]) -> List[str]:
    return ["" if cell is None else str(cell).strip() for cell in header_row]


def _locate_header_row(table: Sequence[Sequence[str]]) -> int:
    """
    Find the header row, skipping account preambles some banks prepend.

    Prefers a row matching a known bank signature, then the first row with a
    date-like column and at least three filled cells.
    """

    window = list(enumerate(table[:HEADER_SCAN_LIMIT]))
    for index, row in window:
        headers = _normalize_headers(row)
        if any(bank_format.matches(headers) for bank_format in BANK_FORMATS):
            return index
    for index, row in window:
        filled = [cell for cell in row if cell]
        if len(filled) >= 3 and any("date" in cell.lower() for cell in filled):
            return index
    for index, row in window:
        if any(cell for cell in row):
            return index
    return 0
