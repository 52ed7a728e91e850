"""Domain exceptions for the payment/booking pipeline and the standard error envelope."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class BookingPipelineError(Exception):
    """Base class for errors raised while confirming a payment or materializing its booking."""

    code = "BOOKING_PIPELINE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details or None)


class AuthenticationError(BookingPipelineError):
    """The signal could not be authenticated (signature, freshness or live/test mode)."""

    code = "AUTHENTICATION_FAILED"
    status_code = 401


class InvalidSignatureError(AuthenticationError):
    code = "STRIPE_SIGNATURE_INVALID"
    status_code = 400


class PaymentModeMismatchError(AuthenticationError):
    """A live event reached a test deployment or vice versa."""

    code = "PAYMENT_MODE_MISMATCH"


class NotVerifiedError(BookingPipelineError):
    """The gateway does not (yet) confirm a successful, positive charge."""

    code = "PAYMENT_NOT_VERIFIED"
    status_code = 409


class MissingContactError(BookingPipelineError):
    """No session and no usable email: the payment cannot be attributed to a user."""

    code = "MISSING_CONTACT"
    status_code = 422


class IncompleteMetadataError(BookingPipelineError):
    """The payment lacks the data needed to build a booking. Terminal for that payment."""

    code = "INCOMPLETE_BOOKING_METADATA"
    status_code = 422


class PaymentNotFoundError(BookingPipelineError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404


class CredentialIssueError(BookingPipelineError):
    """The access-control subsystem could not issue a PIN. Safe to retry."""

    code = "LOCK_CREDENTIAL_UNAVAILABLE"
    status_code = 503


class ConflictRetry(BookingPipelineError):
    """A concurrent writer won a uniqueness race; callers re-read the winner."""

    code = "CONFLICT_RETRY"
    status_code = 409


__all__ = [
    "error_response",
    "BookingPipelineError",
    "AuthenticationError",
    "InvalidSignatureError",
    "PaymentModeMismatchError",
    "NotVerifiedError",
    "MissingContactError",
    "IncompleteMetadataError",
    "PaymentNotFoundError",
    "CredentialIssueError",
    "ConflictRetry",
]
