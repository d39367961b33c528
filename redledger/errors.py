"""
Error types and user-facing error formatting.
"""
from typing import Literal, Optional

ErrorCode = Literal[
    "PATH_TRAVERSAL",
    "FILE_NOT_FOUND",
    "PERMISSION_DENIED",
    "WORKSPACE_NOT_SET",
    "API_ERROR",
    "NETWORK_ERROR",
    "INVALID_INPUT",
    "DATABASE_ERROR",
    "USER_DENIED",
    "UNKNOWN",
]

ERROR_MESSAGES: dict[str, str] = {
    "PATH_TRAVERSAL": "Access denied: path is outside workspace",
    "FILE_NOT_FOUND": "File not found",
    "PERMISSION_DENIED": "Permission denied",
    "WORKSPACE_NOT_SET": "No workspace folder selected. Open one in Settings.",
    "API_ERROR": "The AI provider returned an error",
    "NETWORK_ERROR": "Network error - check your connection",
    "INVALID_INPUT": "Invalid input",
    "DATABASE_ERROR": "Database error",
    "USER_DENIED": "Operation cancelled by user",
    "UNKNOWN": "An unexpected error occurred",
}

GENERIC_ERROR_MESSAGE = ERROR_MESSAGES["UNKNOWN"]


class RedLedgerError(Exception):
    """Base error carrying an optional machine-readable code."""

    code: Optional[ErrorCode] = None

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class StorageError(RedLedgerError):
    """Raised by the persistence gateway on database I/O failure."""

    code = "DATABASE_ERROR"


class NotFoundError(RedLedgerError, LookupError):
    """Raised when a conversation or message the caller relies on is missing."""


def format_error(err: object) -> str:
    """Format any error shape into a user-friendly string."""
    if isinstance(err, BaseException):
        code = getattr(err, "code", None)
        if isinstance(code, str) and code in ERROR_MESSAGES:
            detail = str(err)
            return f"{ERROR_MESSAGES[code]}: {detail}" if detail else ERROR_MESSAGES[code]
        return str(err) or GENERIC_ERROR_MESSAGE

    if isinstance(err, str):
        return err or GENERIC_ERROR_MESSAGE

    if isinstance(err, dict):
        message = err.get("message")
        if isinstance(message, str):
            return message
        code = err.get("code")
        if isinstance(code, str) and code in ERROR_MESSAGES:
            return ERROR_MESSAGES[code]

    return GENERIC_ERROR_MESSAGE
