"""
Error taxonomy shared by every service.

Each error carries a short machine-checkable category plus a human readable
message. The HTTP layer maps ``status_code`` directly onto the response.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Machine-checkable error kinds."""
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    STORAGE = "storage"
    RECONCILIATION = "reconciliation"


class MarkerEditorError(Exception):
    """Base class for all errors surfaced by the marker services."""

    category: ErrorCategory = ErrorCategory.STORAGE
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"category": self.category.value, "message": self.message}


class MarkerValidationError(MarkerEditorError, ValueError):
    """Bad range, bad id, unsupported marker type, or wrong item type."""
    category = ErrorCategory.VALIDATION
    status_code = 400


class MarkerConflictError(MarkerEditorError):
    """The requested change would overlap an existing marker or collapse one."""
    category = ErrorCategory.CONFLICT
    status_code = 409


class NotFoundError(MarkerEditorError):
    """Unknown marker, item, or library section."""
    category = ErrorCategory.NOT_FOUND
    status_code = 404


class StorageError(MarkerEditorError):
    """The underlying database is unreachable or rejected a statement."""
    category = ErrorCategory.STORAGE
    status_code = 500

    @classmethod
    def from_db_error(cls, error: Exception, context: str) -> "StorageError":
        return cls(f"{context}: {error}")


class ReconciliationError(MarkerEditorError):
    """Purge detection housekeeping failed. Logged, never surfaced to callers."""
    category = ErrorCategory.RECONCILIATION
    status_code = 500
