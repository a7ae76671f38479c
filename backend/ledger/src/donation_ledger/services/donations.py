"""Donation records: one-time gifts, recurring installments, refunds and disputes.

A donation's key is derived from the Stripe payment it records
(``DON-{payment_intent_id}``), so the checkout, payment-intent and invoice
paths converge on the same record. Creation is lookup-before-insert followed
by a conditional put; a retried event reuses the existing record and only
finishes the steps that did not complete (campaign credit, receipt email).
"""

import datetime as dt
import logging
import os
import time
from collections.abc import Callable
from typing import Any

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    wait_incrementing,
)

from ..models.donation import DEFAULT_DONATION_TYPE_LABEL, Donation
from ..models.enums import EmailTemplate, PaymentStatus, ProcessingResult
from ..models.stripe_events import (
    Charge,
    CheckoutSession,
    Dispute,
    Invoice,
    PaymentIntent,
    PaymentMethod,
)
from ..utils.donors import is_anonymous_donor, is_receipt_deliverable, normalize_email
from ..utils.logging import get_logger, log_donation_operation
from .campaigns import CampaignAggregator, CampaignGuard
from .dynamodb import DynamoDBService, get_dynamodb_service
from .email_dispatcher import EmailDispatcher, get_email_dispatcher
from .receipts import ReceiptNumberGenerator
from .stripe_service import StripeService, StripeServiceError, get_stripe_service
from .subscriptions import HandlerResult, SubscriptionManager
from .timezone_service import TimezoneService, get_timezone_service

logger = get_logger(__name__)

DONATION_ID_PREFIX = "DON"

# Campaign bookkeeping markers on the donation item
CREDIT_MARKER = "campaign_credited"
REFUND_MARKER = "campaign_refund_reversed"
DISPUTE_MARKER = "campaign_dispute_reversed"

# Dispute lookup: 3 attempts, sleeping 1s then 2s between them
DISPUTE_LOOKUP_ATTEMPTS = 3
DISPUTE_LOOKUP_BACKOFF_SECONDS = 1.0


def donation_key(payment_intent_id: str | None, fallback_id: str) -> str:
    """Derive the donation ID from the payment it records."""
    return f"{DONATION_ID_PREFIX}-{payment_intent_id or fallback_id}"


def _now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def _recording_result(donation: Donation, created: bool) -> HandlerResult:
    """SUCCESS for a new record, SKIPPED when an earlier event already wrote it."""
    if created:
        return ProcessingResult.SUCCESS, f"Donation {donation.donation_id} recorded"
    return ProcessingResult.SKIPPED, f"Donation {donation.donation_id} already recorded"


class DonationRecordManager:
    """Owns the ``donations`` table."""

    DONATIONS_TABLE = "donations"
    PAYMENT_INTENT_INDEX = "payment_intent-index"

    def __init__(
        self,
        db: DynamoDBService | None = None,
        stripe_service: StripeService | None = None,
        receipts: ReceiptNumberGenerator | None = None,
        campaigns: CampaignAggregator | None = None,
        subscriptions: SubscriptionManager | None = None,
        emails: EmailDispatcher | None = None,
        timezone_service: TimezoneService | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._stripe = stripe_service or get_stripe_service()
        self._timezone = timezone_service or get_timezone_service()
        self._emails = emails or get_email_dispatcher()
        self._receipts = receipts or ReceiptNumberGenerator(self._db, self._timezone)
        self._campaigns = campaigns or CampaignAggregator(self._db)
        self._subscriptions = subscriptions or SubscriptionManager(
            self._db, self._stripe, self._emails, self._timezone
        )
        self._sleep = sleep
        self._dispute_alert_email = os.getenv("DISPUTE_ALERT_EMAIL")

    # Lookups

    def get_donation(self, donation_id: str) -> Donation | None:
        item = self._db.get_item(
            self.DONATIONS_TABLE, {"donation_id": donation_id}, consistent_read=True
        )
        return Donation.model_validate(item) if item else None

    def find_by_payment_intent(self, payment_intent_id: str) -> Donation | None:
        """Find the donation recording a payment intent.

        Tries the derived key first, then the payment-intent index for
        records keyed by an invoice or session ID.
        """
        donation = self.get_donation(donation_key(payment_intent_id, payment_intent_id))
        if donation is not None:
            return donation
        items = self._db.query_by_gsi(
            self.DONATIONS_TABLE,
            self.PAYMENT_INTENT_INDEX,
            "stripe_payment_intent_id",
            payment_intent_id,
        )
        return Donation.model_validate(items[0]) if items else None

    def _lookup_payment_method(self, payment_method_id: str | None) -> PaymentMethod | None:
        if not payment_method_id:
            return None
        try:
            return self._stripe.retrieve_payment_method(payment_method_id)
        except StripeServiceError as e:
            logger.warning("Payment method lookup failed for %s: %s", payment_method_id, e)
            return None

    def _lookup_intent_payment_method(
        self, payment_intent_id: str | None
    ) -> PaymentMethod | None:
        if not payment_intent_id:
            return None
        try:
            intent = self._stripe.retrieve_payment_intent(payment_intent_id)
        except StripeServiceError as e:
            logger.warning("Payment intent lookup failed for %s: %s", payment_intent_id, e)
            return None
        return self._lookup_payment_method(intent.payment_method)

    def _lookup_receipt_url(self, charge_id: str | None) -> str | None:
        if not charge_id:
            return None
        try:
            return self._stripe.retrieve_charge(charge_id).receipt_url
        except StripeServiceError as e:
            logger.warning("Could not retrieve charge %s for receipt URL: %s", charge_id, e)
            return None

    # Recording

    def _record(
        self,
        donation_id: str,
        payment_intent_id: str | None,
        build: Callable[[str], Donation],
    ) -> tuple[Donation, bool]:
        """Insert a donation unless one already records this payment.

        Args:
            donation_id: Derived document key
            payment_intent_id: Stripe payment intent, if any
            build: Builds the donation given its receipt number

        Returns:
            Tuple of (donation, created)
        """
        existing = self.get_donation(donation_id)
        if existing is None and payment_intent_id:
            existing = self.find_by_payment_intent(payment_intent_id)
        if existing is not None:
            logger.info("Donation %s already recorded", existing.donation_id)
            return existing, False

        donation = build(self._receipts.next_receipt_number())
        created = self._db.put_item(
            self.DONATIONS_TABLE,
            donation.to_item(),
            condition_expression="attribute_not_exists(donation_id)",
        )
        if not created:
            logger.warning(
                "Donation %s inserted concurrently, receipt %s unused",
                donation_id,
                donation.receipt_number,
            )
            winner = self.get_donation(donation_id)
            if winner is None:
                raise RuntimeError(f"Donation {donation_id} vanished after conflict")
            return winner, False

        log_donation_operation(
            logger,
            "record_donation",
            donation_id=donation.donation_id,
            subscription_id=donation.stripe_subscription_id,
            campaign_id=donation.campaign_id,
            amount_cents=donation.amount,
            status=donation.payment_status.value,
            receipt_number=donation.receipt_number,
        )
        return donation, True

    def _credit_campaign(self, donation: Donation) -> None:
        if not donation.campaign_id or donation.amount <= 0:
            return
        self._campaigns.adjust_total(
            donation.campaign_id,
            donation.amount,
            CampaignGuard(
                donation_id=donation.donation_id,
                marker=CREDIT_MARKER,
                target=donation.amount,
            ),
        )

    def _send_receipt(
        self,
        donation: Donation,
        template: EmailTemplate,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """Send a receipt once; the outcome is stored on the donation."""
        if donation.receipt_email_sent:
            return True
        if not is_receipt_deliverable(donation.donor_email):
            logger.info("No receipt for %s: anonymous or no valid email", donation.donation_id)
            return False

        data: dict[str, Any] = {
            "donor_name": donation.donor_name or "Donor",
            "amount": donation.amount,
            "currency": donation.currency,
            "receipt_number": donation.receipt_number,
            "date": donation.donation_date,
            "donation_type": donation.donation_type_label,
            "campaign_name": donation.campaign_name,
            "card_last4": donation.card_last4,
            "card_brand": donation.card_brand,
            "receipt_url": donation.stripe_receipt_url,
        }
        data.update(extra or {})

        sent = self._emails.send(template, donation.donor_email, data)
        now = _now_iso()
        self._db.update_item(
            self.DONATIONS_TABLE,
            {"donation_id": donation.donation_id},
            "SET receipt_email_sent = :sent, receipt_sent_at = :sent_at, updated_at = :now",
            {":sent": sent, ":sent_at": now if sent else None, ":now": now},
        )
        return sent

    # Event handlers

    def handle_checkout_completed(self, session: CheckoutSession) -> HandlerResult:
        """Record a one-time donation from a completed checkout.

        Subscription checkouts are acknowledged without a record: the
        recurring donation and its welcome email come from
        customer.subscription.created.

        Args:
            session: Stripe checkout session from the event

        Returns:
            Tuple of (processing_result, message)
        """
        if session.mode == "subscription":
            return (
                ProcessingResult.SKIPPED,
                "Subscription checkout is handled by customer.subscription.created",
            )
        if session.mode != "payment":
            logger.warning("Unexpected checkout mode %s for %s", session.mode, session.id)
            return ProcessingResult.SKIPPED, f"Unsupported checkout mode: {session.mode}"
        if session.payment_status not in (None, "paid", "no_payment_required"):
            return (
                ProcessingResult.SKIPPED,
                f"Payment status is '{session.payment_status}', not 'paid'",
            )

        metadata = session.donation_metadata
        details = session.customer_details
        donor_email = normalize_email(
            (details.email if details else None) or metadata.donor_email
        )
        donor_name = (details.name if details else None) or metadata.donor_name
        donation_id = donation_key(session.payment_intent, session.id)

        def build(receipt_number: str) -> Donation:
            payment_method = self._lookup_intent_payment_method(session.payment_intent)
            card = payment_method.card if payment_method else None
            return Donation(
                donation_id=donation_id,
                receipt_number=receipt_number,
                donor_name=donor_name,
                donor_email=donor_email,
                donor_phone=(details.phone if details else None) or metadata.donor_phone,
                is_anonymous=is_anonymous_donor(donor_email, donor_name),
                amount=session.amount_total or 0,
                currency=(session.currency or "aud").upper(),
                stripe_payment_intent_id=session.payment_intent,
                stripe_checkout_session_id=session.id,
                stripe_customer_id=session.customer,
                payment_method_type=payment_method.type if payment_method else "card",
                card_last4=card.last4 if card else None,
                card_brand=card.brand if card else None,
                donation_type_id=metadata.donation_type_id,
                donation_type_label=metadata.donation_type_label
                or DEFAULT_DONATION_TYPE_LABEL,
                campaign_id=metadata.campaign_id,
                campaign_name=metadata.campaign_name,
                donor_message=metadata.donor_message,
                source_event_type="checkout.session.completed",
                donation_date=self._timezone.today_iso(),
                created_at=dt.datetime.now(dt.UTC),
                completed_at=dt.datetime.now(dt.UTC),
            )

        donation, created = self._record(donation_id, session.payment_intent, build)
        self._credit_campaign(donation)
        self._send_receipt(donation, EmailTemplate.ONE_TIME_RECEIPT)
        return _recording_result(donation, created)

    def handle_payment_succeeded(self, intent: PaymentIntent) -> HandlerResult:
        """Fallback recording for payments that never produced a checkout event.

        Skipped when the payment belongs to an invoice or a recurring
        donation, or when a donation already records it.

        Args:
            intent: Stripe payment intent from the event

        Returns:
            Tuple of (processing_result, message)
        """
        if intent.invoice:
            return ProcessingResult.SKIPPED, "Invoice payment handled by invoice.payment_succeeded"

        metadata = intent.donation_metadata
        if metadata.recurring:
            return ProcessingResult.SKIPPED, "Recurring payment handled by invoice events"

        charge: Charge | None = None
        if intent.latest_charge:
            charge = self._stripe.retrieve_charge(intent.latest_charge)
            if charge.invoice:
                return ProcessingResult.SKIPPED, "Charge belongs to an invoice"

        if self.find_by_payment_intent(intent.id) is not None:
            return ProcessingResult.SKIPPED, "Donation already recorded for payment intent"

        donor_email = normalize_email(metadata.donor_email)
        donor_name = metadata.donor_name
        donation_id = donation_key(intent.id, intent.id)

        def build(receipt_number: str) -> Donation:
            payment_method = self._lookup_payment_method(intent.payment_method)
            card = payment_method.card if payment_method else None
            return Donation(
                donation_id=donation_id,
                receipt_number=receipt_number,
                donor_name=donor_name,
                donor_email=donor_email,
                donor_phone=metadata.donor_phone,
                is_anonymous=is_anonymous_donor(donor_email, donor_name),
                amount=intent.amount,
                currency=intent.currency.upper(),
                stripe_payment_intent_id=intent.id,
                stripe_customer_id=intent.customer,
                stripe_charge_id=charge.id if charge else None,
                stripe_receipt_url=charge.receipt_url if charge else None,
                payment_method_type=payment_method.type if payment_method else "card",
                card_last4=card.last4 if card else None,
                card_brand=card.brand if card else None,
                donation_type_id=metadata.donation_type_id,
                donation_type_label=metadata.donation_type_label
                or DEFAULT_DONATION_TYPE_LABEL,
                campaign_id=metadata.campaign_id,
                campaign_name=metadata.campaign_name,
                donor_message=metadata.donor_message,
                source_event_type="payment_intent.succeeded",
                donation_date=self._timezone.today_iso(),
                created_at=dt.datetime.now(dt.UTC),
                completed_at=dt.datetime.now(dt.UTC),
            )

        donation, created = self._record(donation_id, intent.id, build)
        self._credit_campaign(donation)
        self._send_receipt(donation, EmailTemplate.ONE_TIME_RECEIPT)
        return _recording_result(donation, created)

    def handle_payment_failed(self, intent: PaymentIntent) -> HandlerResult:
        error = intent.last_payment_error
        logger.warning(
            "Payment failed for %s: %s (%s)",
            intent.id,
            error.message if error else "unknown error",
            error.code if error else "no code",
        )
        return ProcessingResult.SUCCESS, "Payment failure logged"

    def handle_invoice_payment_succeeded(self, invoice: Invoice) -> HandlerResult:
        """Record one installment of a recurring donation.

        Args:
            invoice: Stripe invoice from the event

        Returns:
            Tuple of (processing_result, message)
        """
        subscription_id = invoice.subscription_id
        if not subscription_id:
            return ProcessingResult.SKIPPED, "Invoice is not for a subscription"
        if invoice.amount_paid <= 0:
            return ProcessingResult.SKIPPED, "Invoice has no amount paid"

        subscription = self._stripe.retrieve_subscription(subscription_id)
        metadata = subscription.donation_metadata
        frequency = metadata.donation_frequency
        donor_email = normalize_email(metadata.donor_email)
        donor_name = metadata.donor_name
        donation_id = donation_key(invoice.payment_intent, invoice.id)

        def build(receipt_number: str) -> Donation:
            payment_method = self._lookup_intent_payment_method(invoice.payment_intent)
            card = payment_method.card if payment_method else None
            return Donation(
                donation_id=donation_id,
                receipt_number=receipt_number,
                donor_name=donor_name,
                donor_email=donor_email,
                donor_phone=metadata.donor_phone,
                is_anonymous=is_anonymous_donor(donor_email, donor_name),
                amount=invoice.amount_paid,
                currency=invoice.currency.upper(),
                is_recurring=True,
                recurring_frequency=frequency,
                stripe_payment_intent_id=invoice.payment_intent,
                stripe_subscription_id=subscription_id,
                stripe_invoice_id=invoice.id,
                stripe_customer_id=subscription.customer or invoice.customer,
                stripe_charge_id=invoice.charge,
                stripe_receipt_url=self._lookup_receipt_url(invoice.charge),
                payment_method_type=payment_method.type if payment_method else "card",
                card_last4=card.last4 if card else None,
                card_brand=card.brand if card else None,
                donation_type_id=metadata.donation_type_id,
                donation_type_label=metadata.donation_type_label
                or DEFAULT_DONATION_TYPE_LABEL,
                campaign_id=metadata.campaign_id,
                campaign_name=metadata.campaign_name,
                source_event_type="invoice.payment_succeeded",
                donation_date=self._timezone.today_iso(),
                created_at=dt.datetime.now(dt.UTC),
                completed_at=dt.datetime.now(dt.UTC),
            )

        donation, created = self._record(donation_id, invoice.payment_intent, build)
        self._subscriptions.record_installment(subscription_id, donation.donation_id, frequency)
        self._credit_campaign(donation)

        if invoice.is_first_invoice:
            logger.info("First invoice %s: welcome email covers the receipt", invoice.id)
        else:
            self._send_receipt(
                donation,
                EmailTemplate.RECURRING_RECEIPT,
                {
                    "frequency": frequency.value,
                    "next_payment_date": self._timezone.next_payment_date(frequency),
                },
            )
        return _recording_result(donation, created)

    def handle_charge_refunded(self, charge: Charge) -> HandlerResult:
        """Mark a donation refunded and reverse it from the campaign total.

        ``amount_refunded`` is cumulative, so a second partial refund only
        reverses the increase over what was already reversed.

        Args:
            charge: Stripe charge from the event

        Returns:
            Tuple of (processing_result, message)
        """
        if not charge.payment_intent:
            logger.warning("Refunded charge %s has no payment intent", charge.id)
            return ProcessingResult.SKIPPED, "Charge has no payment intent"

        donation = self.find_by_payment_intent(charge.payment_intent)
        if donation is None:
            logger.warning("No donation found for refunded payment %s", charge.payment_intent)
            return ProcessingResult.SKIPPED, "Donation not found for refunded charge"

        refunded = min(charge.amount_refunded, donation.amount)
        now = _now_iso()
        newly_recorded = self._db.update_item(
            self.DONATIONS_TABLE,
            {"donation_id": donation.donation_id},
            "SET payment_status = :refunded, refund_amount = :amount, "
            "refunded_at = :now, updated_at = :now",
            {
                ":refunded": PaymentStatus.REFUNDED.value,
                ":amount": refunded,
                ":now": now,
            },
            condition_expression="attribute_not_exists(refund_amount) OR refund_amount < :amount",
        )
        log_donation_operation(
            logger,
            "record_refund",
            donation_id=donation.donation_id,
            campaign_id=donation.campaign_id,
            amount_cents=refunded,
            status=PaymentStatus.REFUNDED.value,
            already_recorded=newly_recorded is None,
        )

        if donation.campaign_id and refunded > 0:
            self._campaigns.adjust_total(
                donation.campaign_id,
                -refunded,
                CampaignGuard(
                    donation_id=donation.donation_id,
                    marker=REFUND_MARKER,
                    target=refunded,
                ),
            )

        if newly_recorded is not None and is_receipt_deliverable(donation.donor_email):
            self._emails.send(
                EmailTemplate.REFUND_CONFIRMATION,
                donation.donor_email,
                {
                    "donor_name": donation.donor_name or "Donor",
                    "amount": refunded,
                    "currency": donation.currency,
                    "receipt_number": donation.receipt_number,
                    "original_date": donation.donation_date,
                },
            )
        return ProcessingResult.SUCCESS, f"Donation {donation.donation_id} refunded"

    def _find_with_retry(self, payment_intent_id: str) -> Donation | None:
        retrying = Retrying(
            stop=stop_after_attempt(DISPUTE_LOOKUP_ATTEMPTS),
            wait=wait_incrementing(
                start=DISPUTE_LOOKUP_BACKOFF_SECONDS,
                increment=DISPUTE_LOOKUP_BACKOFF_SECONDS,
            ),
            retry=retry_if_result(lambda donation: donation is None),
            retry_error_callback=lambda retry_state: None,
            before_sleep=before_sleep_log(logger, logging.INFO),
            sleep=self._sleep,
        )
        return retrying(self.find_by_payment_intent, payment_intent_id)

    def handle_dispute_created(self, dispute: Dispute) -> HandlerResult:
        """Mark a donation disputed and alert the organization.

        The donation may not be written yet when the dispute arrives, so the
        lookup retries a bounded number of times before giving up.

        Args:
            dispute: Stripe dispute from the event

        Returns:
            Tuple of (processing_result, message)
        """
        payment_intent_id = dispute.payment_intent
        if not payment_intent_id and dispute.charge:
            payment_intent_id = self._stripe.retrieve_charge(dispute.charge).payment_intent
        if not payment_intent_id:
            logger.warning("Dispute %s has no resolvable payment intent", dispute.id)
            return ProcessingResult.SKIPPED, "Dispute has no payment intent"

        donation = self._find_with_retry(payment_intent_id)
        if donation is None:
            logger.warning(
                "Unresolved dispute %s: no donation for %s after %d attempts",
                dispute.id,
                payment_intent_id,
                DISPUTE_LOOKUP_ATTEMPTS,
            )
            return ProcessingResult.SKIPPED, "Donation not found for dispute"

        disputed = min(dispute.amount, donation.amount)
        now = _now_iso()
        newly_recorded = self._db.update_item(
            self.DONATIONS_TABLE,
            {"donation_id": donation.donation_id},
            "SET payment_status = :disputed, dispute_id = :dispute_id, "
            "dispute_reason = :reason, dispute_amount = :amount, "
            "disputed_at = :now, updated_at = :now",
            {
                ":disputed": PaymentStatus.DISPUTED.value,
                ":dispute_id": dispute.id,
                ":reason": dispute.reason or "unknown",
                ":amount": disputed,
                ":now": now,
            },
            condition_expression="attribute_not_exists(dispute_id) OR dispute_id <> :dispute_id",
        )
        log_donation_operation(
            logger,
            "record_dispute",
            donation_id=donation.donation_id,
            campaign_id=donation.campaign_id,
            amount_cents=disputed,
            status=PaymentStatus.DISPUTED.value,
            dispute_id=dispute.id,
        )

        if donation.campaign_id and disputed > 0:
            self._campaigns.adjust_total(
                donation.campaign_id,
                -disputed,
                CampaignGuard(
                    donation_id=donation.donation_id,
                    marker=DISPUTE_MARKER,
                    target=disputed,
                ),
            )

        if newly_recorded is not None:
            logger.error(
                "ADMIN ALERT: dispute %s created for donation %s (receipt %s, amount %d, reason %s)",
                dispute.id,
                donation.donation_id,
                donation.receipt_number,
                dispute.amount,
                dispute.reason,
            )
            if self._dispute_alert_email:
                self._send_dispute_alert(dispute, donation)

        if donation.stripe_subscription_id:
            logger.warning(
                "Subscription %s related to dispute %s - consider manual review",
                donation.stripe_subscription_id,
                dispute.id,
            )
        return ProcessingResult.SUCCESS, f"Donation {donation.donation_id} disputed"

    def _send_dispute_alert(self, dispute: Dispute, donation: Donation) -> None:
        due_by = None
        if dispute.evidence_details and dispute.evidence_details.due_by:
            due_by = (
                dt.datetime.fromtimestamp(dispute.evidence_details.due_by, dt.UTC)
                .astimezone(self._timezone.get_timezone())
                .date()
                .isoformat()
            )
        self._emails.send(
            EmailTemplate.DISPUTE_ALERT,
            self._dispute_alert_email,
            {
                "dispute_id": dispute.id,
                "dispute_amount": dispute.amount,
                "currency": dispute.currency.upper(),
                "dispute_reason": dispute.reason,
                "dispute_due_date": due_by,
                "donor_email": donation.donor_email or "N/A",
                "donor_name": donation.donor_name,
                "receipt_number": donation.receipt_number,
            },
        )
