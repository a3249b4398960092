"""
Error taxonomy for the RentPay client.

User-facing:
    ValidationError      -- local, pre-network, scoped to one form field
    SubmissionRejected   -- the backend refused a payment; message is verbatim

Recovered internally (never shown unless every channel is down):
    TransportError       -- network failure, timeout, 5xx, malformed body
    StaleUpdateDiscarded -- an update failed the acceptance rule
"""

from __future__ import annotations

from typing import Optional


class RentPayError(Exception):
    """Base exception for all RentPay client errors."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


# ---------------------------------------------------------------------------
# Local validation
# ---------------------------------------------------------------------------


class ValidationError(RentPayError):
    """Raised before any network call when a draft field is invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)

    def __repr__(self) -> str:
        return f"ValidationError(field={self.field!r}, message={self.message!r})"


class SubmissionInFlight(ValidationError):
    """Raised when a payment is submitted while another is still outstanding."""

    def __init__(self, message: str = "A payment is already being processed."):
        super().__init__("form", message)


# ---------------------------------------------------------------------------
# Backend responses
# ---------------------------------------------------------------------------


class ApiError(RentPayError):
    """Raised on a non-retryable 4xx response."""
    pass


class AuthenticationError(ApiError):
    """Raised on 401/403 responses."""
    pass


class NotFoundError(ApiError):
    """Raised on 404 responses."""
    pass


class SubmissionRejected(ApiError):
    """Raised when the backend refuses a payment submission."""
    pass


class TransportError(RentPayError):
    """Raised on network errors, timeouts, and 5xx after all retries."""
    pass


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class StaleUpdateDiscarded(RentPayError):
    """Raised inside the acceptance check when a candidate must be dropped.

    ``outcome`` carries the reason as an ``UpdateOutcome`` value.
    """

    def __init__(self, message: str, outcome: Optional[str] = None):
        self.outcome = outcome
        super().__init__(message)


class ResetNotAllowed(RentPayError):
    """Raised when a reset is attempted mid-submission or after teardown."""
    pass
