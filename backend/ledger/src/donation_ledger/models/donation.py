"""Donation model for captured payments."""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import DonationFrequency, PaymentStatus

DEFAULT_DONATION_TYPE_LABEL = "General Donation"


class Donation(BaseModel):
    """One captured payment: a one-time gift or one recurring installment.

    Amounts are stored in minor units (cents) of the payment currency.
    At most one Donation exists per Stripe PaymentIntent.
    """

    donation_id: str = Field(
        ...,
        description="Document key derived from the Stripe payment reference",
        examples=["DON-pi_3ABC123DEF456"],
    )
    receipt_number: str = Field(
        ...,
        description="Sequential, year-scoped receipt number",
        examples=["RCP-2025-00042"],
    )

    # Donor
    donor_name: str | None = None
    donor_email: str | None = None
    donor_phone: str | None = None
    is_anonymous: bool = False

    # Payment
    amount: int = Field(..., ge=0, description="Amount in minor units")
    currency: str = Field(default="AUD", description="Upper-case ISO currency code")
    payment_status: PaymentStatus = PaymentStatus.SUCCEEDED
    is_recurring: bool = False
    recurring_frequency: DonationFrequency | None = None

    # Stripe linkage
    stripe_payment_intent_id: str | None = Field(
        default=None,
        examples=["pi_3ABC123DEF456"],
    )
    stripe_checkout_session_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_invoice_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_charge_id: str | None = None
    stripe_receipt_url: str | None = None
    payment_method_type: str = "card"
    card_last4: str | None = None
    card_brand: str | None = None

    # Designation
    donation_type_id: str | None = None
    donation_type_label: str = DEFAULT_DONATION_TYPE_LABEL
    campaign_id: str | None = None
    campaign_name: str | None = None
    donor_message: str | None = None
    source_event_type: str | None = Field(
        default=None,
        description="Webhook event type that recorded this donation",
    )

    # Receipt email tracking
    receipt_email_sent: bool = False
    receipt_sent_at: datetime | None = None

    # Refunds and disputes
    refund_amount: int | None = Field(default=None, ge=0)
    refunded_at: datetime | None = None
    dispute_id: str | None = None
    dispute_reason: str | None = None
    dispute_amount: int | None = Field(default=None, ge=0)
    disputed_at: datetime | None = None

    # Campaign bookkeeping markers (amounts already applied to the campaign total)
    campaign_credited: int | None = None
    campaign_refund_reversed: int | None = None
    campaign_dispute_reversed: int | None = None

    # Timestamps
    donation_date: str = Field(
        ...,
        description="Organization-local date of the payment (YYYY-MM-DD)",
    )
    created_at: datetime
    completed_at: datetime | None = None
    updated_at: datetime | None = None

    def to_item(self) -> dict:
        """Serialize for DynamoDB (omits None so sparse indexes stay sparse)."""
        return self.model_dump(mode="json", exclude_none=True)
