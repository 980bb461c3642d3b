"""
Structured error classes for entitlement lifecycle and enforcement.

Each error carries the HTTP status its surface maps it to, so routes can
translate without re-deciding.
"""

from typing import Optional
from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "entitlement_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": self.message,
        }


class AuthenticationError(EntitlementError):
    """Shared secret missing or mismatched on a billing event."""

    http_status = status.HTTP_401_UNAUTHORIZED
    error_code = "unauthorized"


class ValidationError(EntitlementError):
    """Required input is missing or malformed."""

    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "invalid_request"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class PayloadValidationError(ValidationError):
    """Billing event body could not be parsed or lacks required fields."""

    error_code = "invalid_payload"


class NotFoundError(EntitlementError):
    """Referenced subscriber does not exist."""

    http_status = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class InfrastructureError(EntitlementError):
    """
    Store or secret configuration unavailable.

    Never converted into a grant: the gate denies, the verifier answers 503.
    """

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "service_unavailable"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class ConcurrentUpdateError(EntitlementError):
    """Compare-and-swap on a subscriber kept losing to concurrent writers."""

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "concurrent_update"

    def __init__(self, subscriber_id: str, attempts: int):
        self.subscriber_id = subscriber_id
        self.attempts = attempts
        super().__init__(
            f"Subscriber {subscriber_id} changed concurrently; gave up after {attempts} attempts"
        )
