"""Error taxonomy for the payments domain.

Every error carries a short, stable ``code`` so the HTTP layer can map it
to a status code and a response body without string matching. Errors that
wrap a gateway response keep the raw payload in ``details`` for operators.
"""

from typing import Any, Optional


class PaymentError(Exception):
    """Base class for all payments errors."""

    code = "PAYMENT_ERROR"

    def __init__(self, message: str = "", details: Optional[Any] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


class ValidationError(PaymentError):
    """Malformed or missing caller input. Never retried automatically."""

    code = "VALIDATION_ERROR"


class ConfigurationError(PaymentError):
    """Gateway credentials or other required settings are missing."""

    code = "CONFIGURATION_ERROR"


class PaymentDeclinedError(PaymentError):
    """The gateway refused to capture the order.

    Attributes:
        status: Raw status string reported by the gateway (e.g. ``DECLINED``).
    """

    code = "PAYMENT_DECLINED"

    def __init__(self, status: str, details: Optional[Any] = None):
        super().__init__(f"capture not completed: {status}", details)
        self.status = status


class PayoutFailedError(PaymentError):
    """The gateway refused a payout batch."""

    code = "PAYOUT_FAILED"


class NotFoundError(PaymentError):
    """A referenced Order or Payout does not exist."""

    code = "NOT_FOUND"


class InvalidStateError(PaymentError):
    """The requested transition is illegal from the current state."""

    code = "INVALID_STATE"


class DuplicateCaptureError(InvalidStateError):
    """A capture for the same remote order was already recorded by another writer."""

    code = "DUPLICATE_CAPTURE"


class StoreError(PaymentError):
    """The ledger store is unavailable or rejected a write."""

    code = "STORE_UNAVAILABLE"


class GatewayError(PaymentError):
    """Transport-level failure talking to the payment gateway."""

    code = "UPSTREAM_UNAVAILABLE"


class GatewayUnavailableError(GatewayError):
    """Retries exhausted, circuit open, or authentication rejected."""

    code = "UPSTREAM_UNAVAILABLE"


class CaptureOutcomeUnknownError(GatewayError):
    """A capture call timed out or failed mid-flight.

    Money may or may not have moved. Callers must re-query the remote order
    (see ``OrderLifecycleService.resolve_capture``) instead of retrying.
    """

    code = "CAPTURE_OUTCOME_UNKNOWN"
