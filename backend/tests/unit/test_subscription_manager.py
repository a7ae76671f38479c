"""Unit tests for SubscriptionManager.

Test categories:
- customer.subscription.created (record + welcome email)
- invoice.payment_failed (past_due + notification)
- customer.subscription.updated (diffing)
- customer.subscription.deleted (terminal cancellation)
"""

from typing import Any
from unittest.mock import MagicMock

import pytest

import webhook_payloads as payloads
from donation_ledger.models.enums import (
    DonationFrequency,
    EmailTemplate,
    ProcessingResult,
    SubscriptionStatus,
)
from donation_ledger.models.stripe_events import Invoice, Subscription
from donation_ledger.services.subscriptions import SubscriptionManager

SUBSCRIPTION_ID = "sub_test_001"


def _sent(mock_emails: MagicMock, template: EmailTemplate) -> list[Any]:
    return [c for c in mock_emails.send.call_args_list if c.args[0] == template]


def _subscription(**kwargs: Any) -> Subscription:
    return Subscription.model_validate(payloads.subscription(**kwargs))


@pytest.fixture
def created(subscription_manager: SubscriptionManager) -> None:
    subscription_manager.handle_subscription_created(_subscription())


# === customer.subscription.created ===


class TestSubscriptionCreated:
    def test_creates_active_record(
        self, subscription_manager: SubscriptionManager, mock_emails: MagicMock
    ) -> None:
        result, _ = subscription_manager.handle_subscription_created(_subscription())

        assert result == ProcessingResult.SUCCESS
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.amount == 2500
        assert record.currency == "AUD"
        assert record.frequency == DonationFrequency.MONTHLY
        assert record.donor_email == "aisha@example.com"
        assert record.campaign_id == "camp_ramadan"
        assert record.next_payment_date is not None
        assert record.welcome_email_sent is True

        welcome = _sent(mock_emails, EmailTemplate.RECURRING_WELCOME)
        assert len(welcome) == 1
        assert welcome[0].args[1] == "aisha@example.com"
        assert welcome[0].args[2]["frequency"] == "monthly"

    def test_redelivery_sends_one_welcome(
        self, subscription_manager: SubscriptionManager, mock_emails: MagicMock
    ) -> None:
        subscription_manager.handle_subscription_created(_subscription())
        subscription_manager.handle_subscription_created(_subscription())

        assert len(_sent(mock_emails, EmailTemplate.RECURRING_WELCOME)) == 1

    def test_failed_welcome_is_retried_on_redelivery(
        self, subscription_manager: SubscriptionManager, mock_emails: MagicMock
    ) -> None:
        mock_emails.send.return_value = False
        subscription_manager.handle_subscription_created(_subscription())
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None and record.welcome_email_sent is False

        mock_emails.send.return_value = True
        subscription_manager.handle_subscription_created(_subscription())

        assert len(_sent(mock_emails, EmailTemplate.RECURRING_WELCOME)) == 2
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None and record.welcome_email_sent is True

    def test_email_falls_back_to_stripe_customer(
        self, subscription_manager: SubscriptionManager, mock_stripe: MagicMock
    ) -> None:
        subscription_manager.handle_subscription_created(_subscription(metadata={}))

        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.donor_email == "customer@example.com"
        assert record.donor_name == "Stripe Customer"
        assert record.donation_type_label == "General Donation"
        mock_stripe.retrieve_customer.assert_called_once_with("cus_donor")


# === invoice.payment_failed ===


class TestInvoicePaymentFailed:
    def test_moves_to_past_due_and_notifies(
        self,
        subscription_manager: SubscriptionManager,
        created: None,
        mock_emails: MagicMock,
    ) -> None:
        result, _ = subscription_manager.handle_invoice_payment_failed(
            Invoice.model_validate(payloads.invoice(attempt_count=1))
        )

        assert result == ProcessingResult.SUCCESS
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.payment_attempt_count == 1
        assert record.payment_error_message == "Payment failed"
        assert record.last_payment_error_at is not None

        failures = _sent(mock_emails, EmailTemplate.PAYMENT_FAILED)
        assert len(failures) == 1
        assert failures[0].args[1] == "customer@example.com"
        assert failures[0].args[2]["urgent"] is False

    def test_third_attempt_is_urgent(
        self,
        subscription_manager: SubscriptionManager,
        created: None,
        mock_emails: MagicMock,
    ) -> None:
        subscription_manager.handle_invoice_payment_failed(
            Invoice.model_validate(payloads.invoice(attempt_count=3))
        )

        failures = _sent(mock_emails, EmailTemplate.PAYMENT_FAILED)
        assert failures[0].args[2]["urgent"] is True
        assert failures[0].args[2]["attempt_count"] == 3

    def test_redelivered_failure_notifies_once(
        self,
        subscription_manager: SubscriptionManager,
        created: None,
        mock_emails: MagicMock,
    ) -> None:
        failure = Invoice.model_validate(payloads.invoice(attempt_count=2))

        subscription_manager.handle_invoice_payment_failed(failure)
        subscription_manager.handle_invoice_payment_failed(failure)

        assert len(_sent(mock_emails, EmailTemplate.PAYMENT_FAILED)) == 1

    def test_attempt_count_defaults_to_previous_plus_one(
        self, subscription_manager: SubscriptionManager, created: None
    ) -> None:
        subscription_manager.handle_invoice_payment_failed(
            Invoice.model_validate(payloads.invoice(invoice_id="in_a"))
        )
        subscription_manager.handle_invoice_payment_failed(
            Invoice.model_validate(payloads.invoice(invoice_id="in_b"))
        )

        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.payment_attempt_count == 2

    def test_installment_recovers_past_due(
        self, subscription_manager: SubscriptionManager, created: None
    ) -> None:
        subscription_manager.handle_invoice_payment_failed(
            Invoice.model_validate(payloads.invoice(attempt_count=1))
        )

        linked = subscription_manager.record_installment(
            SUBSCRIPTION_ID, "DON-pi_inv_002", DonationFrequency.MONTHLY
        )

        assert linked is True
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.payment_attempt_count == 0
        assert record.payment_error_message is None
        assert record.last_payment_donation_id == "DON-pi_inv_002"

    def test_unknown_subscription_is_skipped(
        self, subscription_manager: SubscriptionManager, mock_emails: MagicMock
    ) -> None:
        result, _ = subscription_manager.handle_invoice_payment_failed(
            Invoice.model_validate(payloads.invoice(subscription_id="sub_unknown"))
        )

        assert result == ProcessingResult.SKIPPED
        mock_emails.send.assert_not_called()


# === customer.subscription.updated ===


class TestSubscriptionUpdated:
    def test_amount_change_is_applied_and_emailed(
        self,
        subscription_manager: SubscriptionManager,
        created: None,
        mock_emails: MagicMock,
    ) -> None:
        result, message = subscription_manager.handle_subscription_updated(
            _subscription(unit_amount=5000)
        )

        assert result == ProcessingResult.SUCCESS
        assert message == "Amount: 25.00 -> 50.00"
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.amount == 5000
        updates = _sent(mock_emails, EmailTemplate.SUBSCRIPTION_UPDATED)
        assert len(updates) == 1
        assert updates[0].args[2]["changes"] == ["Amount: 25.00 -> 50.00"]

    def test_frequency_change_moves_next_payment_date(
        self, subscription_manager: SubscriptionManager, created: None
    ) -> None:
        subscription_manager.handle_subscription_updated(
            _subscription(metadata={**payloads.DONOR_METADATA, "frequency": "weekly"})
        )

        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.frequency == DonationFrequency.WEEKLY
        assert record.next_payment_date == subscription_manager._timezone.next_payment_date(
            DonationFrequency.WEEKLY
        )

    def test_no_meaningful_change_is_skipped(
        self,
        subscription_manager: SubscriptionManager,
        created: None,
        mock_emails: MagicMock,
    ) -> None:
        result, _ = subscription_manager.handle_subscription_updated(_subscription())

        assert result == ProcessingResult.SKIPPED
        assert _sent(mock_emails, EmailTemplate.SUBSCRIPTION_UPDATED) == []

    def test_stripe_past_due_status(
        self, subscription_manager: SubscriptionManager, created: None
    ) -> None:
        subscription_manager.handle_subscription_updated(_subscription(status="past_due"))

        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.status == SubscriptionStatus.PAST_DUE

    def test_stripe_canceled_status_cancels(
        self, subscription_manager: SubscriptionManager, created: None
    ) -> None:
        subscription_manager.handle_subscription_updated(_subscription(status="canceled"))

        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.status == SubscriptionStatus.CANCELLED
        assert record.cancelled_at is not None

    def test_unknown_subscription_is_skipped(
        self, subscription_manager: SubscriptionManager
    ) -> None:
        result, _ = subscription_manager.handle_subscription_updated(
            _subscription(subscription_id="sub_unknown")
        )

        assert result == ProcessingResult.SKIPPED


# === customer.subscription.deleted ===


@pytest.fixture
def installments(table: Any) -> None:
    donations = table("donations")
    for donation_id, status in (("DON-pi_a", "succeeded"), ("DON-pi_b", "succeeded"), ("DON-pi_c", "refunded")):
        donations.put_item(
            Item={
                "donation_id": donation_id,
                "receipt_number": f"RCP-2025-{donation_id[-1]}",
                "amount": 2500,
                "payment_status": status,
                "stripe_subscription_id": SUBSCRIPTION_ID,
            }
        )
    donations.put_item(
        Item={
            "donation_id": "DON-pi_other",
            "receipt_number": "RCP-2025-other",
            "amount": 9900,
            "payment_status": "succeeded",
            "stripe_subscription_id": "sub_other",
        }
    )


class TestSubscriptionDeleted:
    def test_cancels_with_total_and_email(
        self,
        subscription_manager: SubscriptionManager,
        created: None,
        installments: None,
        mock_emails: MagicMock,
    ) -> None:
        result, _ = subscription_manager.handle_subscription_deleted(
            _subscription(status="canceled")
        )

        assert result == ProcessingResult.SUCCESS
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.status == SubscriptionStatus.CANCELLED
        assert record.total_donated == 5000
        assert record.cancelled_at is not None
        assert record.cancellation_email_sent is True

        cancellations = _sent(mock_emails, EmailTemplate.SUBSCRIPTION_CANCELLED)
        assert len(cancellations) == 1
        assert cancellations[0].args[2]["total_donated"] == 5000

    def test_redelivery_sends_one_cancellation(
        self,
        subscription_manager: SubscriptionManager,
        created: None,
        mock_emails: MagicMock,
    ) -> None:
        subscription_manager.handle_subscription_deleted(_subscription(status="canceled"))
        first = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)

        subscription_manager.handle_subscription_deleted(_subscription(status="canceled"))
        second = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)

        assert len(_sent(mock_emails, EmailTemplate.SUBSCRIPTION_CANCELLED)) == 1
        assert first is not None and second is not None
        assert second.cancelled_at == first.cancelled_at

    def test_cancelled_is_terminal(
        self, subscription_manager: SubscriptionManager, created: None
    ) -> None:
        subscription_manager.handle_subscription_deleted(_subscription(status="canceled"))

        updated, _ = subscription_manager.handle_subscription_updated(
            _subscription(status="active", unit_amount=9000)
        )
        failed, _ = subscription_manager.handle_invoice_payment_failed(
            Invoice.model_validate(payloads.invoice(attempt_count=1))
        )
        linked = subscription_manager.record_installment(
            SUBSCRIPTION_ID, "DON-pi_late", DonationFrequency.MONTHLY
        )

        assert updated == ProcessingResult.SKIPPED
        assert failed == ProcessingResult.SKIPPED
        assert linked is False
        record = subscription_manager.get_recurring_donation(SUBSCRIPTION_ID)
        assert record is not None
        assert record.status == SubscriptionStatus.CANCELLED
        assert record.amount == 2500

    def test_unknown_subscription_is_skipped(
        self, subscription_manager: SubscriptionManager
    ) -> None:
        result, _ = subscription_manager.handle_subscription_deleted(
            _subscription(subscription_id="sub_unknown")
        )

        assert result == ProcessingResult.SKIPPED
