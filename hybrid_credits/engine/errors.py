"""Error taxonomy for credit and quota operations.

Every failure the engine raises is a CreditEngineError subclass carrying a
machine-readable code, a category and retry guidance, so callers can switch
on the code and the UI layer can serialize the error without knowing the
exception types.

Usage:
    from hybrid_credits.engine.errors import InsufficientCreditsError

    try:
        await engine.consume()
    except CreditEngineError as e:
        if e.retriable:
            schedule_retry()
        return e.to_response()
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error classification.

    - VALIDATION: Caller provided bad input
    - RESOURCE: Balance or record related (not enough credits, exists)
    - EXECUTION: Operation partially completed
    - SYSTEM: Transient infrastructure failure
    """

    VALIDATION = "validation"
    RESOURCE = "resource"
    EXECUTION = "execution"
    SYSTEM = "system"


class ErrorCode(str, Enum):
    """Specific error codes for programmatic handling."""

    # Validation errors
    INVALID_ARGUMENT = "invalid_argument"
    INVALID_BALANCE = "invalid_balance"

    # Resource errors
    INSUFFICIENT_CREDITS = "insufficient_credits"
    QUOTA_EXCEEDED = "quota_exceeded"
    ALREADY_EXISTS = "already_exists"

    # Execution errors
    MIGRATION_INCOMPLETE = "migration_incomplete"

    # System errors
    UNAVAILABLE = "unavailable"


@dataclass
class ErrorResponse:
    """Standardized error response.

    All error responses include:
    - success: Always False
    - error: Human-readable message
    - code: Machine-readable error code
    - category: Error category (validation, resource, etc.)
    - retriable: Whether the operation should be retried
    - details: Optional additional context
    """

    success: bool = False
    error: str = ""
    code: str = ""
    category: str = ""
    retriable: bool = False
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for serialization."""
        result: dict[str, object] = {
            "success": self.success,
            "error": self.error,
            "code": self.code,
            "category": self.category,
            "retriable": self.retriable,
        }
        if self.details:
            result["details"] = self.details
        return result


class CreditEngineError(Exception):
    """Base class for all credit engine failures."""

    code: ErrorCode = ErrorCode.INVALID_ARGUMENT
    category: ErrorCategory = ErrorCategory.VALIDATION
    retriable: bool = False
    default_message: str = "Credit operation failed"

    def __init__(self, message: str | None = None, **details: object) -> None:
        self.message = message or self.default_message
        self.details = dict(details)
        super().__init__(self.message)

    def to_response(self) -> dict[str, object]:
        """Serialize as an ErrorResponse dict."""
        return ErrorResponse(
            error=self.message,
            code=self.code.value,
            category=self.category.value,
            retriable=self.retriable,
            details=self.details or None,
        ).to_dict()


class InsufficientCreditsError(CreditEngineError):
    """No credit left for a paid operation."""

    code = ErrorCode.INSUFFICIENT_CREDITS
    category = ErrorCategory.RESOURCE
    default_message = "You don't have enough credits. Purchase more to continue!"


class QuotaExceededError(CreditEngineError):
    """Daily free quota used up."""

    code = ErrorCode.QUOTA_EXCEEDED
    category = ErrorCategory.RESOURCE
    default_message = "Daily limit reached. Please try again tomorrow or upgrade to Premium."


class UnavailableError(CreditEngineError):
    """Remote ledger unreachable, timed out, or returned corrupt data."""

    code = ErrorCode.UNAVAILABLE
    category = ErrorCategory.SYSTEM
    retriable = True
    default_message = "Balance service is unavailable. Please try again."


class ConflictError(CreditEngineError):
    """Remote record already exists."""

    code = ErrorCode.ALREADY_EXISTS
    category = ErrorCategory.RESOURCE
    default_message = "A balance record already exists for this identity"


class MigrationIncompleteError(CreditEngineError):
    """Anonymous balance could not be moved to the authenticated account."""

    code = ErrorCode.MIGRATION_INCOMPLETE
    category = ErrorCategory.EXECUTION
    default_message = "Failed to migrate your credits. Please contact support."


class InvalidBalanceError(CreditEngineError, ValueError):
    """A balance value would be negative or otherwise invalid."""

    code = ErrorCode.INVALID_BALANCE
    category = ErrorCategory.VALIDATION
    default_message = "Balance values must not be negative"
