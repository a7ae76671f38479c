"""Typed views of the Stripe objects carried by webhook events.

Only the fields the ledger reads are declared; everything else Stripe sends
is ignored. Expandable references (``"cus_123"`` or ``{"id": "cus_123", ...}``)
are normalised to the ID string.
"""

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from .enums import DonationFrequency

DEFAULT_CURRENCY = "aud"


def _expandable_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


StripeId = Annotated[str | None, BeforeValidator(_expandable_id)]


class StripePayload(BaseModel):
    """Base for Stripe objects: lax parsing, unknown fields ignored."""

    model_config = ConfigDict(extra="ignore")


class DonationMetadata(StripePayload):
    """Donation details attached as Stripe metadata at checkout."""

    donor_name: str | None = None
    donor_email: str | None = None
    donor_phone: str | None = None
    campaign_id: str | None = None
    campaign_name: str | None = None
    donation_type_id: str | None = None
    donation_type_label: str | None = None
    frequency: str | None = None
    is_recurring: str | None = None
    donor_message: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def recurring(self) -> bool:
        return (self.is_recurring or "").lower() == "true"

    @property
    def donation_frequency(self) -> DonationFrequency:
        return DonationFrequency.parse(self.frequency)


class StripeEvent(StripePayload):
    """Webhook event envelope."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def data_object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


class _WithMetadata(StripePayload):
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value or {}

    @property
    def donation_metadata(self) -> DonationMetadata:
        return DonationMetadata.model_validate(self.metadata)


class CustomerDetails(StripePayload):
    email: str | None = None
    name: str | None = None
    phone: str | None = None


class CheckoutSession(_WithMetadata):
    id: str
    mode: str | None = None
    payment_status: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    payment_intent: StripeId = None
    subscription: StripeId = None
    customer: StripeId = None
    customer_details: CustomerDetails | None = None


class PaymentError(StripePayload):
    code: str | None = None
    message: str | None = None


class PaymentIntent(_WithMetadata):
    id: str
    amount: int = 0
    currency: str = DEFAULT_CURRENCY
    invoice: StripeId = None
    customer: StripeId = None
    payment_method: StripeId = None
    latest_charge: StripeId = None
    last_payment_error: PaymentError | None = None


class Price(StripePayload):
    unit_amount: int | None = None


class SubscriptionItem(StripePayload):
    price: Price | None = None


class SubscriptionItems(StripePayload):
    data: list[SubscriptionItem] = Field(default_factory=list)


class Subscription(_WithMetadata):
    id: str
    customer: StripeId = None
    status: str | None = None
    currency: str = DEFAULT_CURRENCY
    items: SubscriptionItems | None = None

    @property
    def unit_amount(self) -> int:
        """Installment amount of the first subscription item."""
        if self.items and self.items.data and self.items.data[0].price:
            return self.items.data[0].price.unit_amount or 0
        return 0


class SubscriptionDetails(StripePayload):
    subscription: StripeId = None


class InvoiceParent(StripePayload):
    subscription_details: SubscriptionDetails | None = None


class Invoice(StripePayload):
    id: str
    subscription: StripeId = None
    parent: InvoiceParent | None = None
    customer: StripeId = None
    customer_email: str | None = None
    customer_name: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = DEFAULT_CURRENCY
    payment_intent: StripeId = None
    charge: StripeId = None
    billing_reason: str | None = None
    attempt_count: int | None = None
    next_payment_attempt: int | None = None
    last_finalization_error: PaymentError | None = None

    @property
    def subscription_id(self) -> str | None:
        """Subscription ID at the top level or nested under parent (newer API versions)."""
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    @property
    def is_first_invoice(self) -> bool:
        return self.billing_reason == "subscription_create"


class Charge(_WithMetadata):
    id: str
    payment_intent: StripeId = None
    invoice: StripeId = None
    customer: StripeId = None
    amount: int = 0
    amount_refunded: int = 0
    currency: str = DEFAULT_CURRENCY
    receipt_url: str | None = None


class EvidenceDetails(StripePayload):
    due_by: int | None = None


class Dispute(StripePayload):
    id: str
    charge: StripeId = None
    payment_intent: StripeId = None
    amount: int = 0
    currency: str = DEFAULT_CURRENCY
    reason: str | None = None
    evidence_details: EvidenceDetails | None = None


class CardDetails(StripePayload):
    brand: str | None = None
    last4: str | None = None


class PaymentMethod(StripePayload):
    id: str
    type: str = "card"
    card: CardDetails | None = None


class Customer(StripePayload):
    id: str
    email: str | None = None
    name: str | None = None
