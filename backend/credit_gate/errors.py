"""
Credit Gate Errors

Every failure the core reports is a CreditGateError subclass carrying a
stable code, a user-facing message, an HTTP status and optional details.
"""

from typing import Any, Dict, Optional

from .config import ERROR_CODES


class CreditGateError(Exception):
    """Base error for ledger, token and rate-limit failures."""

    code = "CREDIT_GATE_ERROR"
    status_code = 500

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or ERROR_CODES.get(self.code, "Request failed")
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API error envelope."""
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class InsufficientCredits(CreditGateError):
    """Raised when a debit would take the balance below zero. Never retried automatically."""

    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, required: int, current: int):
        self.required = required
        self.current = current
        super().__init__(
            f"This service costs {required} credits, but you only have {current} credits.",
            {"required": required, "current": current},
        )


class InvalidToken(CreditGateError):
    """Expired, revoked or unrecognized renewal credential."""

    code = "INVALID_TOKEN"
    status_code = 401

    def __init__(self, reason: str = "unrecognized"):
        # reason stays server-side; the client only needs to re-authenticate
        self.reason = reason
        super().__init__()


class RateLimited(CreditGateError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Too many requests. Please try again in {retry_after_seconds} seconds.",
            {"retry_after": retry_after_seconds},
        )


class StorageUnavailable(CreditGateError):
    """
    Infrastructure fault talking to the ledger or token store.

    outcome_unknown is set when a mutating call timed out: the caller must
    treat the operation as not having succeeded.
    """

    code = "STORAGE_UNAVAILABLE"
    status_code = 503

    def __init__(self, cause: Optional[BaseException] = None, outcome_unknown: bool = False):
        self.cause = cause
        self.outcome_unknown = outcome_unknown
        super().__init__()

    def to_dict(self) -> Dict[str, Any]:
        # Internal storage details never reach the client
        return {"success": False, "error": {"code": self.code, "message": self.message}}


class AccountNotFound(CreditGateError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__()
