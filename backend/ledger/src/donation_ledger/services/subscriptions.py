"""Recurring donation lifecycle driven by Stripe subscription and invoice events.

Status moves active <-> past_due, and either -> cancelled, which is terminal.
Every write below is conditional on the record not being cancelled, so a
late or redelivered event can never resurrect a cancelled subscription.
"""

import datetime as dt
from typing import Any

from boto3.dynamodb.conditions import Attr

from ..models.donation import DEFAULT_DONATION_TYPE_LABEL
from ..models.enums import (
    DonationFrequency,
    EmailTemplate,
    PaymentStatus,
    ProcessingResult,
    SubscriptionStatus,
)
from ..models.recurring_donation import RecurringDonation
from ..models.stripe_events import Customer, Invoice, Subscription
from ..utils.donors import is_receipt_deliverable, normalize_email
from ..utils.logging import get_logger, log_donation_operation
from .dynamodb import DynamoDBService, get_dynamodb_service
from .email_dispatcher import EmailDispatcher, get_email_dispatcher
from .stripe_service import StripeService, StripeServiceError, get_stripe_service
from .timezone_service import TimezoneService, get_timezone_service

logger = get_logger(__name__)

URGENT_ATTEMPT_THRESHOLD = 3
DEFAULT_PAYMENT_ERROR = "Payment failed"

HandlerResult = tuple[ProcessingResult, str | None]


class SubscriptionManager:
    """Owns the ``recurring-donations`` table."""

    RECURRING_DONATIONS_TABLE = "recurring-donations"
    DONATIONS_TABLE = "donations"
    SUBSCRIPTION_INDEX = "subscription-index"

    def __init__(
        self,
        db: DynamoDBService | None = None,
        stripe_service: StripeService | None = None,
        emails: EmailDispatcher | None = None,
        timezone_service: TimezoneService | None = None,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._stripe = stripe_service or get_stripe_service()
        self._emails = emails or get_email_dispatcher()
        self._timezone = timezone_service or get_timezone_service()

    def get_recurring_donation(self, subscription_id: str) -> RecurringDonation | None:
        item = self._db.get_item(
            self.RECURRING_DONATIONS_TABLE,
            {"subscription_id": subscription_id},
            consistent_read=True,
        )
        return RecurringDonation.model_validate(item) if item else None

    def _lookup_customer(self, customer_id: str | None) -> Customer | None:
        if not customer_id:
            return None
        try:
            return self._stripe.retrieve_customer(customer_id)
        except StripeServiceError as e:
            logger.warning("Customer lookup failed for %s: %s", customer_id, e)
            return None

    def _set_flag(self, subscription_id: str, flag: str) -> None:
        self._db.update_item(
            self.RECURRING_DONATIONS_TABLE,
            {"subscription_id": subscription_id},
            f"SET {flag} = :true, updated_at = :now",
            {":true": True, ":now": dt.datetime.now(dt.UTC).isoformat()},
        )

    # Subscription events

    def handle_subscription_created(self, subscription: Subscription) -> HandlerResult:
        """Create the recurring donation record and send the welcome email.

        Args:
            subscription: Stripe subscription from the event

        Returns:
            Tuple of (processing_result, message)
        """
        metadata = subscription.donation_metadata
        frequency = metadata.donation_frequency
        donor_email = normalize_email(metadata.donor_email)
        donor_name = metadata.donor_name

        if donor_email is None:
            customer = self._lookup_customer(subscription.customer)
            if customer is not None:
                donor_email = normalize_email(customer.email)
                donor_name = donor_name or customer.name

        now = dt.datetime.now(dt.UTC)
        record = RecurringDonation(
            subscription_id=subscription.id,
            stripe_customer_id=subscription.customer,
            donor_name=donor_name,
            donor_email=donor_email,
            amount=subscription.unit_amount,
            currency=subscription.currency.upper(),
            frequency=frequency,
            status=SubscriptionStatus.ACTIVE,
            next_payment_date=self._timezone.next_payment_date(frequency),
            donation_type_id=metadata.donation_type_id,
            donation_type_label=metadata.donation_type_label or DEFAULT_DONATION_TYPE_LABEL,
            campaign_id=metadata.campaign_id,
            created_at=now,
            started_at=now,
            updated_at=now,
        )

        created = self._db.put_item(
            self.RECURRING_DONATIONS_TABLE,
            record.to_item(),
            condition_expression="attribute_not_exists(subscription_id)",
        )
        if created:
            log_donation_operation(
                logger,
                "create_recurring_donation",
                subscription_id=subscription.id,
                amount_cents=record.amount,
                status=record.status.value,
                frequency=frequency.value,
            )
        else:
            existing = self.get_recurring_donation(subscription.id)
            if existing is None:
                raise RuntimeError(f"Recurring donation {subscription.id} vanished")
            logger.info("Recurring donation %s already exists", subscription.id)
            record = existing

        if record.welcome_email_sent:
            return ProcessingResult.SUCCESS, "Recurring donation already recorded"

        if not is_receipt_deliverable(record.donor_email):
            logger.info("No deliverable email for subscription %s", subscription.id)
            return ProcessingResult.SUCCESS, "Recurring donation recorded"

        sent = self._emails.send(
            EmailTemplate.RECURRING_WELCOME,
            record.donor_email,
            {
                "donor_name": record.donor_name or "Donor",
                "amount": record.amount,
                "currency": record.currency,
                "frequency": record.frequency.value,
                "donation_type": record.donation_type_label,
                "next_payment_date": record.next_payment_date,
                "start_date": self._timezone.today_iso(),
            },
        )
        if sent:
            self._set_flag(subscription.id, "welcome_email_sent")
        return ProcessingResult.SUCCESS, "Recurring donation recorded"

    def record_installment(
        self,
        subscription_id: str,
        donation_id: str,
        frequency: DonationFrequency,
    ) -> bool:
        """Advance a subscription after a successful installment.

        Sets the next payment date, links the installment, and clears a
        past-due state back to active.

        Args:
            subscription_id: Stripe subscription ID
            donation_id: Donation recorded for this installment
            frequency: Billing interval

        Returns:
            True if the record was updated, False if it is missing or cancelled
        """
        now = dt.datetime.now(dt.UTC).isoformat()
        attrs = self._db.update_item(
            self.RECURRING_DONATIONS_TABLE,
            {"subscription_id": subscription_id},
            "SET last_payment_at = :now, last_payment_donation_id = :donation_id, "
            "next_payment_date = :next, payment_attempt_count = :zero, "
            "#status = :active, updated_at = :now "
            "REMOVE payment_error_message",
            {
                ":now": now,
                ":donation_id": donation_id,
                ":next": self._timezone.next_payment_date(frequency),
                ":zero": 0,
                ":active": SubscriptionStatus.ACTIVE.value,
                ":cancelled": SubscriptionStatus.CANCELLED.value,
            },
            {"#status": "status"},
            condition_expression="attribute_exists(subscription_id) AND #status <> :cancelled",
        )
        if attrs is None:
            logger.warning(
                "Recurring donation %s missing or cancelled, installment %s not linked",
                subscription_id,
                donation_id,
            )
            return False

        log_donation_operation(
            logger,
            "record_installment",
            donation_id=donation_id,
            subscription_id=subscription_id,
            status=SubscriptionStatus.ACTIVE.value,
            next_payment_date=attrs.get("next_payment_date"),
        )
        return True

    def handle_invoice_payment_failed(self, invoice: Invoice) -> HandlerResult:
        """Move a subscription to past_due and notify the donor.

        Args:
            invoice: Stripe invoice from the event

        Returns:
            Tuple of (processing_result, message)
        """
        subscription_id = invoice.subscription_id
        if not subscription_id:
            return ProcessingResult.SKIPPED, "Invoice is not for a subscription"

        existing = self.get_recurring_donation(subscription_id)
        if existing is None:
            logger.warning("Payment failed for unknown subscription %s", subscription_id)
            return ProcessingResult.SKIPPED, f"Subscription {subscription_id} not found"

        attempt_count = invoice.attempt_count or existing.payment_attempt_count + 1
        error_message = (
            invoice.last_finalization_error.message
            if invoice.last_finalization_error and invoice.last_finalization_error.message
            else DEFAULT_PAYMENT_ERROR
        )
        already_notified = (
            existing.status == SubscriptionStatus.PAST_DUE
            and existing.payment_attempt_count == attempt_count
        )

        attrs = self._db.update_item(
            self.RECURRING_DONATIONS_TABLE,
            {"subscription_id": subscription_id},
            "SET #status = :past_due, payment_attempt_count = :attempts, "
            "payment_error_message = :error, last_payment_error_at = :now, updated_at = :now",
            {
                ":past_due": SubscriptionStatus.PAST_DUE.value,
                ":attempts": attempt_count,
                ":error": error_message,
                ":now": dt.datetime.now(dt.UTC).isoformat(),
                ":cancelled": SubscriptionStatus.CANCELLED.value,
            },
            {"#status": "status"},
            condition_expression="attribute_exists(subscription_id) AND #status <> :cancelled",
        )
        if attrs is None:
            logger.warning("Subscription %s is cancelled, failure not recorded", subscription_id)
            return ProcessingResult.SKIPPED, "Subscription already cancelled"

        urgent = attempt_count >= URGENT_ATTEMPT_THRESHOLD
        log_donation_operation(
            logger,
            "record_payment_failure",
            subscription_id=subscription_id,
            amount_cents=invoice.amount_due,
            status=SubscriptionStatus.PAST_DUE.value,
            attempt_count=attempt_count,
            urgent=urgent,
        )

        if already_notified:
            return ProcessingResult.SUCCESS, "Payment failure already recorded"

        customer = self._lookup_customer(invoice.customer)
        email = (
            (customer.email if customer else None)
            or invoice.customer_email
            or existing.donor_email
        )
        if not is_receipt_deliverable(email):
            logger.error("No email found for customer %s", invoice.customer)
            return ProcessingResult.SUCCESS, "Payment failure recorded"

        next_retry = None
        if invoice.next_payment_attempt:
            next_retry = (
                dt.datetime.fromtimestamp(invoice.next_payment_attempt, dt.UTC)
                .astimezone(self._timezone.get_timezone())
                .date()
                .isoformat()
            )

        self._emails.send(
            EmailTemplate.PAYMENT_FAILED,
            email,
            {
                "donor_name": (customer.name if customer else None)
                or existing.donor_name
                or "Donor",
                "amount": invoice.amount_due,
                "currency": invoice.currency.upper(),
                "frequency": existing.frequency.value,
                "attempt_count": attempt_count,
                "urgent": urgent,
                "next_retry_date": next_retry,
                "error_message": error_message,
            },
        )
        return ProcessingResult.SUCCESS, "Payment failure recorded"

    def handle_subscription_updated(self, subscription: Subscription) -> HandlerResult:
        """Apply amount, frequency and status changes from Stripe.

        Args:
            subscription: Stripe subscription from the event

        Returns:
            Tuple of (processing_result, message)
        """
        existing = self.get_recurring_donation(subscription.id)
        if existing is None:
            logger.warning("Update for unknown subscription %s", subscription.id)
            return ProcessingResult.SKIPPED, f"Subscription {subscription.id} not found"

        if existing.status == SubscriptionStatus.CANCELLED:
            return ProcessingResult.SKIPPED, "Subscription already cancelled"

        metadata = subscription.donation_metadata
        new_amount = subscription.unit_amount or existing.amount
        new_frequency = (
            metadata.donation_frequency if metadata.frequency else existing.frequency
        )
        new_status = SubscriptionStatus.from_stripe(subscription.status)
        if not existing.status.can_transition_to(new_status):
            logger.warning(
                "Ignoring status change %s -> %s for %s",
                existing.status.value,
                new_status.value,
                subscription.id,
            )
            new_status = existing.status

        amount_changed = new_amount != existing.amount
        frequency_changed = new_frequency != existing.frequency
        status_changed = new_status != existing.status

        if not (amount_changed or frequency_changed or status_changed):
            return ProcessingResult.SKIPPED, "No meaningful change"

        now = dt.datetime.now(dt.UTC).isoformat()
        update = "SET #amount = :amount, #frequency = :frequency, #status = :status, updated_at = :now"
        values: dict[str, Any] = {
            ":amount": new_amount,
            ":frequency": new_frequency.value,
            ":status": new_status.value,
            ":now": now,
            ":cancelled": SubscriptionStatus.CANCELLED.value,
        }
        if frequency_changed:
            update += ", next_payment_date = :next"
            values[":next"] = self._timezone.next_payment_date(new_frequency)
        if new_status == SubscriptionStatus.CANCELLED:
            update += ", cancelled_at = if_not_exists(cancelled_at, :now)"

        attrs = self._db.update_item(
            self.RECURRING_DONATIONS_TABLE,
            {"subscription_id": subscription.id},
            update,
            values,
            {"#status": "status", "#amount": "amount", "#frequency": "frequency"},
            condition_expression="attribute_exists(subscription_id) AND #status <> :cancelled",
        )
        if attrs is None:
            return ProcessingResult.SKIPPED, "Subscription already cancelled"

        changes: list[str] = []
        if amount_changed:
            changes.append(f"Amount: {existing.amount / 100:.2f} -> {new_amount / 100:.2f}")
        if frequency_changed:
            changes.append(f"Frequency: {existing.frequency.value} -> {new_frequency.value}")
        if status_changed:
            changes.append(f"Status: {existing.status.value} -> {new_status.value}")

        log_donation_operation(
            logger,
            "update_recurring_donation",
            subscription_id=subscription.id,
            amount_cents=new_amount,
            status=new_status.value,
            changes="; ".join(changes),
        )

        if (amount_changed or frequency_changed) and is_receipt_deliverable(
            existing.donor_email
        ):
            self._emails.send(
                EmailTemplate.SUBSCRIPTION_UPDATED,
                existing.donor_email,
                {
                    "donor_name": existing.donor_name or "Donor",
                    "amount": new_amount,
                    "currency": existing.currency,
                    "frequency": new_frequency.value,
                    "changes": changes,
                },
            )
        return ProcessingResult.SUCCESS, "; ".join(changes)

    def total_donated(self, subscription_id: str) -> int:
        """Sum of succeeded installments recorded for a subscription."""
        items = self._db.query_by_gsi(
            self.DONATIONS_TABLE,
            self.SUBSCRIPTION_INDEX,
            "stripe_subscription_id",
            subscription_id,
            filter_expression=Attr("payment_status").eq(PaymentStatus.SUCCEEDED.value),
        )
        return sum(int(item.get("amount", 0)) for item in items)

    def handle_subscription_deleted(self, subscription: Subscription) -> HandlerResult:
        """Cancel a recurring donation (terminal) and send the cancellation email.

        Args:
            subscription: Stripe subscription from the event

        Returns:
            Tuple of (processing_result, message)
        """
        existing = self.get_recurring_donation(subscription.id)
        if existing is None:
            logger.warning("Cancellation for unknown subscription %s", subscription.id)
            return ProcessingResult.SKIPPED, f"Subscription {subscription.id} not found"

        total = self.total_donated(subscription.id)
        self._db.update_item(
            self.RECURRING_DONATIONS_TABLE,
            {"subscription_id": subscription.id},
            "SET #status = :cancelled, cancelled_at = if_not_exists(cancelled_at, :now), "
            "total_donated = :total, updated_at = :now",
            {
                ":cancelled": SubscriptionStatus.CANCELLED.value,
                ":now": dt.datetime.now(dt.UTC).isoformat(),
                ":total": total,
            },
            {"#status": "status"},
        )
        log_donation_operation(
            logger,
            "cancel_recurring_donation",
            subscription_id=subscription.id,
            amount_cents=total,
            status=SubscriptionStatus.CANCELLED.value,
        )

        if existing.cancellation_email_sent:
            return ProcessingResult.SUCCESS, "Subscription cancelled"

        metadata = subscription.donation_metadata
        email = normalize_email(metadata.donor_email) or existing.donor_email
        if not is_receipt_deliverable(email):
            return ProcessingResult.SUCCESS, "Subscription cancelled"

        sent = self._emails.send(
            EmailTemplate.SUBSCRIPTION_CANCELLED,
            email,
            {
                "donor_name": metadata.donor_name or existing.donor_name or "Donor",
                "amount": subscription.unit_amount or existing.amount,
                "currency": existing.currency,
                "frequency": existing.frequency.value,
                "donation_type": existing.donation_type_label,
                "total_donated": total,
                "start_date": (existing.started_at or existing.created_at).date().isoformat(),
            },
        )
        if sent:
            self._set_flag(subscription.id, "cancellation_email_sent")
        return ProcessingResult.SUCCESS, "Subscription cancelled"
