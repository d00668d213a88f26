"""
Statement error types.

Every failure surfaced to a statement caller carries a stable category.
"""

from enum import Enum
from typing import Any, Dict


class ErrorCategory(Enum):
    """Machine-checkable failure categories."""
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    UPSTREAM_FAILURE = "upstream_failure"


class StatementError(Exception):
    """Base error for statement requests."""
    category: ErrorCategory = ErrorCategory.UPSTREAM_FAILURE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as a response payload."""
        return {
            "success": False,
            "category": self.category.value,
            "message": self.message,
        }


class InvalidArgument(StatementError):
    """Raised before any fetch when request input is malformed."""
    category = ErrorCategory.INVALID_ARGUMENT


class NotFound(StatementError):
    """Raised when the requested organization does not exist."""
    category = ErrorCategory.NOT_FOUND


class UpstreamFailure(StatementError):
    """Raised when the underlying data fetch fails or times out."""
    category = ErrorCategory.UPSTREAM_FAILURE
