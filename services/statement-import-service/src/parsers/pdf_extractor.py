"""Text extraction for PDF bank statements."""

from __future__ import annotations

import logging
import re
from io import BytesIO
from typing import Optional

import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect
from pdfplumber.utils.exceptions import PdfminerException

from errors import EmptyFileError, FileParseError, PdfPasswordError

logger = logging.getLogger(__name__)


def extract_pdf_text(file_bytes: bytes, password: Optional[str] = None) -> str:
    """
    Return the statement text, one visual line per text line, pages separated by a blank line.

    Raises PdfPasswordError (PASSWORD_REQUIRED when no password was given,
    WRONG_PASSWORD otherwise) for encrypted documents, and FileParseError for
    anything else pdfplumber cannot open.
    """

    if not file_bytes:
        raise EmptyFileError("Uploaded file is empty.")

    pages: list[str] = []
    try:
        with pdfplumber.open(BytesIO(file_bytes), password=password or "") as pdf:
            for page in pdf.pages:
                text = page.extract_text() or ""
                lines = [_normalize_space(line) for line in text.splitlines()]
                pages.append("\n".join(line for line in lines if line))
    except (PDFPasswordIncorrect, PdfminerException) as exc:
        if not _is_password_error(exc):
            logger.warning({"event": "pdf_extraction_failed", "error_type": type(exc).__name__})
            raise FileParseError("Could not read PDF statement.") from exc
        code = PdfPasswordError.WRONG_PASSWORD if password else PdfPasswordError.PASSWORD_REQUIRED
        logger.info({"event": "pdf_password_error", "code": code})
        raise PdfPasswordError(code) from exc
    except Exception as exc:
        logger.warning({"event": "pdf_extraction_failed", "error_type": type(exc).__name__})
        raise FileParseError("Could not read PDF statement.") from exc

    return "\n\n".join(pages)


def _is_password_error(exc: BaseException) -> bool:
    candidates = [exc, exc.__cause__, *(arg for arg in exc.args if isinstance(arg, BaseException))]
    return any(isinstance(candidate, PDFPasswordIncorrect) for candidate in candidates)


def _normalize_space(text: str) -> str:
    return re.sub(r"[ \t]+", " ", text.replace("\u00a0", " ")).strip()
