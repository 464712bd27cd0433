"""Domain exception taxonomy for the credit ledger and billing engines.

Every error carries a stable machine-readable ``code`` and an HTTP
``status_code`` hint so the API layer can render it without a lookup table.
Store-level exceptions (``SQLAlchemyError``) are never wrapped; they
propagate unchanged and are reported as generic failures at the boundary.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for all domain errors."""

    code: str = "LEDGER_ERROR"
    status_code: int = 400

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Client-visible payload for this error."""
        return {"detail": self.message, "code": self.code}


# ---------------------------------------------------------------------------
# Lookup failures
# ---------------------------------------------------------------------------


class NotFound(LedgerError):
    code = "NOT_FOUND"
    status_code = 404


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"


class SubscriptionNotFound(NotFound):
    code = "SUBSCRIPTION_NOT_FOUND"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"


class CredentialNotFound(NotFound):
    code = "CREDENTIAL_NOT_FOUND"


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class Forbidden(LedgerError):
    code = "FORBIDDEN"
    status_code = 403


class InvalidInput(LedgerError):
    code = "INVALID_INPUT"
    status_code = 400


class InvalidTier(InvalidInput):
    code = "INVALID_TIER"


class DecryptionError(InvalidInput):
    code = "DECRYPTION_ERROR"


class InvalidPaymentMethod(LedgerError):
    code = "INVALID_PAYMENT_METHOD"
    status_code = 400


class AmountMismatch(LedgerError):
    """Confirmed amount differs from the amount stored at prepare time."""

    code = "AMOUNT_MISMATCH"
    status_code = 400

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Payment amount mismatch: expected {expected}, received {received}")
        self.expected = expected
        self.received = received


# ---------------------------------------------------------------------------
# Balance and payment state
# ---------------------------------------------------------------------------


class InsufficientCredits(LedgerError):
    """Raised when a debit would take a balance below zero.

    ``needed`` is the shortfall a caller has to top up before retrying.
    """

    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, required: int, current: int) -> None:
        super().__init__(f"Insufficient credits: {required} required, {current} available")
        self.required = required
        self.current = current
        self.needed = max(required - current, 0)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(required=self.required, current=self.current, needed=self.needed)
        return payload


class AlreadyProcessed(LedgerError):
    code = "ALREADY_PROCESSED"
    status_code = 409


class AlreadyPaid(AlreadyProcessed):
    code = "ALREADY_PAID"


class PaymentRequired(LedgerError):
    code = "PAYMENT_REQUIRED"
    status_code = 402


class UpstreamFailure(LedgerError):
    """A payment-gateway call failed.

    ``message`` is the gateway's own error text when it supplied one.
    """

    code = "UPSTREAM_FAILURE"
    status_code = 502

    def __init__(self, message: str | None, *, code: str | None = None) -> None:
        super().__init__(message or "The payment provider could not process the request.", code=code)
