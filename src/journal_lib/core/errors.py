"""
Exception hierarchy shared by the journal services.

Services raise these; the data-service maps them onto HTTP status codes
(see ``services/data/main.py``).  ``to_dict()`` is the JSON body.
"""

from typing import Any, Optional


class JournalError(Exception):
    """Base class for all expected, user-facing failures."""

    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(JournalError):
    """Input rejected by validation."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(JournalError):
    status_code = 404

    def __init__(self, message: str, **kwargs):
        super().__init__(message, "NOT_FOUND", kwargs.get("details"))


class ConflictError(JournalError):
    """The record is not in a state that allows the operation."""

    status_code = 409

    def __init__(self, message: str, **kwargs):
        super().__init__(message, "CONFLICT", kwargs.get("details"))


class LimitExceededError(JournalError):
    status_code = 429

    def __init__(self, message: str, **kwargs):
        super().__init__(message, "LIMIT_EXCEEDED", kwargs.get("details"))


class SignatureVerificationError(JournalError):
    """Webhook payload signature did not verify."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, "SIGNATURE_VERIFICATION_FAILED", kwargs.get("details"))
