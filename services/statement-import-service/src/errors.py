"""Error taxonomy for the statement import service.

Every error a caller can act on derives from `ImportServiceError` and carries a
stable `code` plus the HTTP status the transport layer should map it to.
"""

from __future__ import annotations


class ImportServiceError(Exception):
    code = "import_error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InvalidInputError(ImportServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class UnsupportedFileTypeError(ImportServiceError):
    code = "UNSUPPORTED_FILE_TYPE"
    status_code = 422


class FileParseError(ImportServiceError):
    code = "PARSE_ERROR"
    status_code = 400


class EmptyFileError(FileParseError):
    code = "EMPTY_FILE"


class NoDataRowsError(FileParseError):
    code = "NO_DATA_ROWS"


class PdfPasswordError(FileParseError):
    """Raised when a PDF statement needs a password, or the given one is wrong."""

    PASSWORD_REQUIRED = "PASSWORD_REQUIRED"
    WRONG_PASSWORD = "WRONG_PASSWORD"

    def __init__(self, code: str) -> None:
        if code not in (self.PASSWORD_REQUIRED, self.WRONG_PASSWORD):
            raise ValueError(f"Unknown PDF password error code '{code}'")
        message = "PDF is password protected." if code == self.PASSWORD_REQUIRED else "PDF password is incorrect."
        super().__init__(message, code=code)


class NotFoundError(ImportServiceError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(ImportServiceError):
    code = "CONFLICT"
    status_code = 409


class ReplyDecodeError(ValueError):
    """AI provider reply could not be decoded into a JSON array."""


class BatchTimeoutError(TimeoutError):
    """A batch handler did not finish before its timeout."""
