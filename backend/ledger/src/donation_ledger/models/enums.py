"""Enumeration types for donation ledger data models."""

from enum import Enum


class WebhookEventType(str, Enum):
    """Stripe event types routed to a handler.

    Any other event type is acknowledged without processing.
    """

    CHECKOUT_COMPLETED = "checkout.session.completed"
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    DISPUTE_CREATED = "charge.dispute.created"

    @classmethod
    def parse(cls, value: str | None) -> "WebhookEventType | None":
        """Return the matching event type, or None for unrecognized types."""
        try:
            return cls(value)
        except ValueError:
            return None


class ProcessingState(str, Enum):
    """Lifecycle of a webhook event in the idempotency ledger.

    An event ID with no ledger record has not been seen yet.
    """

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingResult(str, Enum):
    """Outcome reported back to the webhook caller."""

    SUCCESS = "success"
    SKIPPED = "skipped"  # Recognized event, nothing to do (business-rule skip)
    DUPLICATE = "duplicate"  # Event ID already completed
    IGNORED = "ignored"  # Unrecognized event type


class PaymentStatus(str, Enum):
    """Payment status of a recorded donation."""

    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a recurring donation.

    Transitions: active <-> past_due, and either -> cancelled (terminal).
    """

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "SubscriptionStatus") -> bool:
        """Check whether moving from this status to target is allowed."""
        if self == target:
            return True
        return target in _ALLOWED_TRANSITIONS[self]

    @classmethod
    def from_stripe(cls, stripe_status: str | None) -> "SubscriptionStatus":
        """Map a Stripe subscription status onto the ledger's statuses."""
        return _STRIPE_STATUS_MAP.get(stripe_status or "", cls.ACTIVE)


_ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.CANCELLED: frozenset(),
}

_STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


class DonationFrequency(str, Enum):
    """Billing interval of a recurring donation."""

    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: str | None) -> "DonationFrequency":
        """Parse a frequency from metadata, defaulting to monthly."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.MONTHLY


class EmailTemplate(str, Enum):
    """Template identifiers understood by the email dispatcher."""

    ONE_TIME_RECEIPT = "one-time-receipt"
    RECURRING_WELCOME = "recurring-welcome"
    RECURRING_RECEIPT = "recurring-receipt"
    PAYMENT_FAILED = "payment-failed"
    SUBSCRIPTION_CANCELLED = "subscription-cancelled"
    SUBSCRIPTION_UPDATED = "subscription-updated"
    REFUND_CONFIRMATION = "refund-confirmation"
    DISPUTE_ALERT = "dispute-alert"
