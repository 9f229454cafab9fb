"""
Domain exceptions for the Marketplace Bookings Service.
Every guard in the service layer raises one of these before mutating state;
the API layer renders them into the standard error envelope.
"""

from typing import Optional, Dict, Any


class MarketplaceError(Exception):
    """Base class for errors surfaced to API clients."""

    error_code = "MARKETPLACE_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {
            "error_code": self.error_code,
            "error_message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(MarketplaceError):
    error_code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(MarketplaceError):
    error_code = "FORBIDDEN"
    status_code = 403


class InvalidStateError(MarketplaceError):
    """Operation is not allowed from the entity's current state."""

    error_code = "INVALID_STATE"
    status_code = 409


class AlreadyCheckedInError(InvalidStateError):
    error_code = "ALREADY_CHECKED_IN"


class ConflictError(MarketplaceError):
    """Uniqueness or concurrent-modification conflict."""

    error_code = "CONFLICT"
    status_code = 409


class CapacityExceededError(MarketplaceError):
    error_code = "CAPACITY_EXCEEDED"
    status_code = 409


class ValidationError(MarketplaceError):
    error_code = "VALIDATION_ERROR"
    status_code = 422


class LockAcquisitionError(MarketplaceError):
    """Entity lock could not be obtained within the blocking timeout."""

    error_code = "RESOURCE_BUSY"
    status_code = 503
