"""
Error taxonomy.

Every error raised by the services is an AppError carrying the HTTP status
and a stable machine-readable code. The API layer turns them into JSON
responses with a single exception handler.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class AppError(Exception):
    """Base class for all expected application errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"


class AuthError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class ExternalServiceError(AppError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"


class LedgerAuthExpiredError(ExternalServiceError):
    """Ledger credentials can no longer be refreshed; reconnect required."""

    code = "LEDGER_AUTH_EXPIRED"


class LedgerTransientError(ExternalServiceError):
    """Network failure, rate limiting or a 5xx from the ledger."""

    code = "LEDGER_UNAVAILABLE"


class LedgerRejectedError(ExternalServiceError):
    """The ledger refused the request permanently (4xx)."""

    code = "LEDGER_REJECTED"


class IntegrityWarningKind(str, Enum):
    NEGATIVE_MARGIN = "negative_margin"
    BUY_EXCEEDS_SALE = "buy_exceeds_sale"
    ZERO_SALE_AMOUNT = "zero_sale_amount"
    UNVERIFIED_AUTHENTICITY = "unverified_authenticity"


@dataclass(frozen=True)
class DataIntegrityWarning:
    """Non-fatal finding on a sale. Recorded, never raised."""

    kind: IntegrityWarningKind
    message: str
