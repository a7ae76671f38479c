"""Recurring donation (subscription) model."""

from datetime import datetime

from pydantic import BaseModel, Field

from .donation import DEFAULT_DONATION_TYPE_LABEL
from .enums import DonationFrequency, SubscriptionStatus


class RecurringDonation(BaseModel):
    """A recurring donation, keyed by its Stripe subscription ID."""

    subscription_id: str = Field(
        ...,
        description="Stripe subscription ID (sub_xxx)",
        examples=["sub_1ABC123DEF456"],
    )
    stripe_customer_id: str | None = None

    donor_name: str | None = None
    donor_email: str | None = None

    amount: int = Field(..., ge=0, description="Installment amount in minor units")
    currency: str = "AUD"
    frequency: DonationFrequency = DonationFrequency.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    next_payment_date: str | None = Field(
        default=None,
        description="Organization-local date of the next installment (YYYY-MM-DD)",
    )

    donation_type_id: str | None = None
    donation_type_label: str = DEFAULT_DONATION_TYPE_LABEL
    campaign_id: str | None = None

    last_payment_at: datetime | None = None
    last_payment_donation_id: str | None = None
    payment_attempt_count: int = Field(default=0, ge=0)
    payment_error_message: str | None = None
    last_payment_error_at: datetime | None = None

    welcome_email_sent: bool = False
    cancellation_email_sent: bool = False
    cancelled_at: datetime | None = None
    total_donated: int | None = None

    created_at: datetime
    started_at: datetime | None = None
    updated_at: datetime | None = None

    def to_item(self) -> dict:
        """Serialize for DynamoDB."""
        return self.model_dump(mode="json", exclude_none=True)
