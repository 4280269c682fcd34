"""Error taxonomy for token validation and reconciliation.

Every failure the core can produce is a `PaymentError` carrying an `ErrorKind`.
The reconciler turns these into a `Rejected` outcome; only the kind, a user
message and a log severity leave the core.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    MISSING_TOKEN = "missing_token"
    INVALID_FORMAT = "invalid_format"
    TRANSPORT_ERROR = "transport_error"
    TOKEN_NOT_FOUND = "token_not_found"
    AUTH_KEY_MISMATCH = "auth_key_mismatch"
    MALFORMED_RESPONSE = "malformed_response"
    UNEXPECTED_STATUS = "unexpected_status"
    RATE_LIMITED = "rate_limited"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    ORDER_NOT_FOUND = "order_not_found"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    ALREADY_PROCESSED = "already_processed"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    STORE_ERROR = "store_error"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SECURITY = "security"


CONTACT_SUPPORT = "Payment could not be processed. Please contact the store administrator."
TRY_AGAIN_SHORTLY = "Too many payment attempts. Please try again shortly."
PROVIDER_UNAVAILABLE = "Payment service temporarily unavailable. Please try again in a few minutes."

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.MISSING_TOKEN: CONTACT_SUPPORT,
    ErrorKind.INVALID_FORMAT: CONTACT_SUPPORT,
    ErrorKind.TRANSPORT_ERROR: PROVIDER_UNAVAILABLE,
    ErrorKind.DEADLINE_EXCEEDED: PROVIDER_UNAVAILABLE,
    ErrorKind.TOKEN_NOT_FOUND: "Payment validation failed: The payment token has expired or is invalid.",
    ErrorKind.AUTH_KEY_MISMATCH: CONTACT_SUPPORT,
    ErrorKind.MALFORMED_RESPONSE: CONTACT_SUPPORT,
    ErrorKind.UNEXPECTED_STATUS: CONTACT_SUPPORT,
    ErrorKind.RATE_LIMITED: TRY_AGAIN_SHORTLY,
    ErrorKind.PROVIDER_RATE_LIMITED: TRY_AGAIN_SHORTLY,
    ErrorKind.ORDER_NOT_FOUND: "Failed to locate your order. Please contact customer support.",
    ErrorKind.OWNERSHIP_MISMATCH: "You do not have permission to process this order.",
    ErrorKind.AMOUNT_MISMATCH: (
        "Your payment amount did not match the order total. "
        "Your order is on hold pending manual verification."
    ),
    ErrorKind.ALREADY_PROCESSED: "This order has already been processed or canceled.",
    ErrorKind.STORE_ERROR: CONTACT_SUPPORT,
}

SEVERITY: dict[ErrorKind, Severity] = {
    ErrorKind.MISSING_TOKEN: Severity.WARNING,
    ErrorKind.INVALID_FORMAT: Severity.WARNING,
    ErrorKind.TRANSPORT_ERROR: Severity.WARNING,
    ErrorKind.DEADLINE_EXCEEDED: Severity.WARNING,
    ErrorKind.TOKEN_NOT_FOUND: Severity.WARNING,
    ErrorKind.AUTH_KEY_MISMATCH: Severity.ERROR,
    ErrorKind.MALFORMED_RESPONSE: Severity.ERROR,
    ErrorKind.UNEXPECTED_STATUS: Severity.ERROR,
    ErrorKind.RATE_LIMITED: Severity.WARNING,
    ErrorKind.PROVIDER_RATE_LIMITED: Severity.WARNING,
    ErrorKind.ORDER_NOT_FOUND: Severity.ERROR,
    ErrorKind.OWNERSHIP_MISMATCH: Severity.SECURITY,
    ErrorKind.AMOUNT_MISMATCH: Severity.ERROR,
    ErrorKind.ALREADY_PROCESSED: Severity.INFO,
    ErrorKind.STORE_ERROR: Severity.ERROR,
}

PAYMENT_SUCCESS_MESSAGE = "Payment successful! Thank you for your order."
PAYMENT_CANCELLED_MESSAGE = (
    "Your Fleeca Bank payment was canceled. Please try again or select a different payment method."
)
REFUND_NOT_SUPPORTED = "Fleeca Bank does not support automated refunds. Please process the refund manually in-game."


def user_message(kind: ErrorKind) -> str:
    return USER_MESSAGES.get(kind, CONTACT_SUPPORT)


class PaymentError(Exception):
    """Base class for classified validation/reconciliation failures."""

    kind: ErrorKind = ErrorKind.UNEXPECTED_STATUS

    def __init__(self, message: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}


class MissingToken(PaymentError):
    kind = ErrorKind.MISSING_TOKEN


class InvalidFormat(PaymentError):
    kind = ErrorKind.INVALID_FORMAT


class TransportError(PaymentError):
    """Network-level failure; nothing was decided, the customer may retry."""

    kind = ErrorKind.TRANSPORT_ERROR


class TokenNotFound(PaymentError):
    kind = ErrorKind.TOKEN_NOT_FOUND


class AuthKeyMismatch(PaymentError):
    kind = ErrorKind.AUTH_KEY_MISMATCH


class MalformedResponse(PaymentError):
    kind = ErrorKind.MALFORMED_RESPONSE


class UnexpectedStatus(PaymentError):
    kind = ErrorKind.UNEXPECTED_STATUS

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(
            f"Unexpected response from Fleeca API: {status_code}",
            {"code": status_code, "body": body},
        )
        self.status_code = status_code
        self.body = body


class ProviderRateLimited(PaymentError):
    kind = ErrorKind.PROVIDER_RATE_LIMITED


class DeadlineExceeded(PaymentError):
    kind = ErrorKind.DEADLINE_EXCEEDED
