"""
Error Taxonomy for Bandwidth Rail

Every failure surfaced to a partner or contributor is one of these.
The API layer maps `status_code` onto the HTTP response and renders
`{"success": false, "error": message}`.
"""

from typing import Any, Dict, Optional


class RailError(Exception):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


class AuthError(RailError):
    """Bad or missing partner credentials or contributor token."""
    status_code = 401


class ValidationError(RailError):
    """Malformed input, out-of-range amount, or missing payment detail."""
    status_code = 400


class NotFoundError(RailError):
    """Referenced partner, contributor or payout does not exist."""
    status_code = 404


class ResourceUnavailable(RailError):
    """No contributor is able to carry the request."""
    status_code = 503


class InsufficientFunds(RailError):
    """Partner balance cannot cover the computed cost."""
    status_code = 500


class ExternalServiceError(RailError):
    """Traffic relay or payment rail failed or timed out."""
    status_code = 500


class PaymentOutcomeUnknown(ExternalServiceError):
    """
    The payment rail may or may not have moved the money.

    Raised on timeouts after the request was sent. The payout is left in
    `processing` for reconciliation.
    """


class InvalidTransition(ValidationError):
    """Payout status change that is not a forward transition."""
