"""Standard error codes for the donation ledger.

All services raise DonationLedgerError with one of these codes so the HTTP
layer can map failures to consistent responses.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """Standard error codes."""

    # Webhook error codes (ERR_WEBHOOK_001-ERR_WEBHOOK_003)
    INVALID_WEBHOOK_SIGNATURE = "ERR_WEBHOOK_001"
    INVALID_EVENT_PAYLOAD = "ERR_WEBHOOK_002"
    WEBHOOK_PROCESSING_FAILED = "ERR_WEBHOOK_003"

    # Configuration error codes (ERR_CONFIG_001)
    WEBHOOK_SECRET_UNAVAILABLE = "ERR_CONFIG_001"

    # Store error codes (ERR_STORE_001)
    CONCURRENT_MODIFICATION = "ERR_STORE_001"


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Invalid webhook signature",
    ErrorCode.INVALID_EVENT_PAYLOAD: "Webhook payload could not be parsed",
    ErrorCode.WEBHOOK_PROCESSING_FAILED: "Webhook processing failed",
    ErrorCode.WEBHOOK_SECRET_UNAVAILABLE: "Webhook signing secret could not be loaded",
    ErrorCode.CONCURRENT_MODIFICATION: "Record was modified concurrently, retries exhausted",
}

# Recovery suggestions for operators
ERROR_RECOVERY: dict[ErrorCode, str] = {
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Verify webhook secret configuration",
    ErrorCode.INVALID_EVENT_PAYLOAD: "Check the event payload sent by Stripe",
    ErrorCode.WEBHOOK_PROCESSING_FAILED: "Stripe will redeliver the event automatically",
    ErrorCode.WEBHOOK_SECRET_UNAVAILABLE: "Check SSM access; Stripe will redeliver the event",
    ErrorCode.CONCURRENT_MODIFICATION: "Stripe will redeliver the event automatically",
}


class ErrorResponse(BaseModel):
    """Standard error body returned by the API."""

    model_config = ConfigDict(strict=True)

    success: bool = False
    error_code: ErrorCode
    message: str
    recovery: str
    details: Optional[dict[str, str]] = None

    @classmethod
    def from_code(
        cls,
        code: ErrorCode,
        details: Optional[dict[str, str]] = None,
    ) -> "ErrorResponse":
        """Create an ErrorResponse from an error code.

        Args:
            code: The error code
            details: Optional additional context about the error

        Returns:
            An ErrorResponse with the message and recovery hint for the code.
        """
        return cls(
            error_code=code,
            message=ERROR_MESSAGES[code],
            recovery=ERROR_RECOVERY[code],
            details=details,
        )


class DonationLedgerError(Exception):
    """Exception raised by ledger operations.

    Caught by the API layer and converted to an ErrorResponse.
    """

    def __init__(
        self,
        code: ErrorCode,
        details: Optional[dict[str, str]] = None,
    ):
        self.code = code
        self.message = ERROR_MESSAGES[code]
        self.recovery = ERROR_RECOVERY[code]
        self.details = details
        super().__init__(self.message)

    def to_error_response(self) -> ErrorResponse:
        """Convert this exception to an ErrorResponse body."""
        return ErrorResponse.from_code(self.code, self.details)


# Stripe error codes that indicate a transient failure
STRIPE_RETRYABLE_ERRORS: set[str] = {
    "processing_error",
    "rate_limit",
    "lock_timeout",
    "api_connection_error",
}


def is_stripe_error_retryable(stripe_error_code: Optional[str]) -> bool:
    """Check if a Stripe error is likely transient and retryable.

    Args:
        stripe_error_code: The Stripe error code.

    Returns:
        True if the error may be resolved by retrying.
    """
    return stripe_error_code in STRIPE_RETRYABLE_ERRORS if stripe_error_code else False
