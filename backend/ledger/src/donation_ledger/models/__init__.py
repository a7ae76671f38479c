"""Pydantic models for donation ledger entities and Stripe payloads."""

from .donation import DEFAULT_DONATION_TYPE_LABEL, Donation
from .enums import (
    DonationFrequency,
    EmailTemplate,
    PaymentStatus,
    ProcessingResult,
    ProcessingState,
    SubscriptionStatus,
    WebhookEventType,
)
from .errors import (
    ERROR_MESSAGES,
    ERROR_RECOVERY,
    DonationLedgerError,
    ErrorCode,
    ErrorResponse,
    is_stripe_error_retryable,
)
from .recurring_donation import RecurringDonation
from .stripe_events import (
    Charge,
    CheckoutSession,
    Customer,
    Dispute,
    DonationMetadata,
    Invoice,
    PaymentIntent,
    PaymentMethod,
    StripeEvent,
    Subscription,
)
from .webhook_event import DispatchResult, LedgerCheck, WebhookEventRecord

__all__ = [
    # Entities
    "DEFAULT_DONATION_TYPE_LABEL",
    "Donation",
    "RecurringDonation",
    "WebhookEventRecord",
    "LedgerCheck",
    "DispatchResult",
    # Enums
    "DonationFrequency",
    "EmailTemplate",
    "PaymentStatus",
    "ProcessingResult",
    "ProcessingState",
    "SubscriptionStatus",
    "WebhookEventType",
    # Errors
    "DonationLedgerError",
    "ErrorCode",
    "ErrorResponse",
    "ERROR_MESSAGES",
    "ERROR_RECOVERY",
    "is_stripe_error_retryable",
    # Stripe payloads
    "Charge",
    "CheckoutSession",
    "Customer",
    "Dispute",
    "DonationMetadata",
    "Invoice",
    "PaymentIntent",
    "PaymentMethod",
    "StripeEvent",
    "Subscription",
]
