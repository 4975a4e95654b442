"""Custom exceptions for the Noteshelf persistence core.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every failure raised by the note
store is one of the storage kinds below, with the low-level cause kept
on ``original_error`` for logging.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_VALIDATION_FAILED = 1002

    # Storage errors (4xxx)
    STORAGE_CONNECTION_FAILED = 4001
    STORAGE_QUERY_FAILED = 4002
    STORAGE_MIGRATION_FAILED = 4003
    STORAGE_UNSUPPORTED_VERSION = 4004

    # Image errors (5xxx)
    IMAGE_IMPORT_FAILED = 5001


class NoteshelfError(Exception):
    """Base exception for all Noteshelf errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.NOTE_VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class StorageError(NoteshelfError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_QUERY_FAILED,
        original_error: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class DatabaseConnectionError(StorageError):
    """Raised when the storage engine cannot be opened.

    Covers missing permissions, a corrupt file or a full disk. Every store
    call fails with this until the underlying problem is resolved.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = "open",
        path: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            operation=operation,
            code=ErrorCode.STORAGE_CONNECTION_FAILED,
            original_error=original_error,
        )
        self.path = path
        if path:
            # Don't expose full paths in error messages
            self.details["path_hint"] = path.replace("\\", "/").split("/")[-1]


class QueryError(StorageError):
    """Raised when an individual statement fails.

    Attributes:
        query: The offending statement or search text, when known.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        query: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            operation=operation,
            code=ErrorCode.STORAGE_QUERY_FAILED,
            original_error=original_error,
        )
        self.query = query
        if query:
            self.details["query"] = query[:200]


class MigrationError(StorageError):
    """Raised when a schema upgrade step fails.

    Attributes:
        from_version: Schema version the database was at.
        to_version: Schema version that was being reached.
    """

    def __init__(
        self,
        message: str,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
        code: ErrorCode = ErrorCode.STORAGE_MIGRATION_FAILED,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            operation="migrate",
            code=code,
            original_error=original_error,
        )
        self.from_version = from_version
        self.to_version = to_version
        self.details["from_version"] = from_version
        self.details["to_version"] = to_version


class ImageIOError(NoteshelfError):
    """Raised when an image file cannot be copied or removed."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.IMAGE_IMPORT_FAILED,
        original_error: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {}
        if path:
            details["path_hint"] = path.replace("\\", "/").split("/")[-1]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.path = path
        self.original_error = original_error
