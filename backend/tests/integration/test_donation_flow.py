"""Integration tests for complete donation flows through the dispatcher.

Tests verify the ledger end to end on moto DynamoDB:
1. Redelivered and overlapping events converge on one donation
2. Recurring donation lifecycle from creation to cancellation
3. Campaign totals stay equal to succeeded minus reversed amounts
4. Receipt numbers are unique and sequential
"""

from typing import Any
from unittest.mock import MagicMock

import pytest

import webhook_payloads as payloads
from donation_ledger.models.enums import EmailTemplate, ProcessingResult, SubscriptionStatus
from donation_ledger.services.campaigns import CampaignAggregator
from donation_ledger.services.subscriptions import SubscriptionManager
from donation_ledger.services.timezone_service import TimezoneService
from donation_ledger.services.webhook_dispatcher import WebhookDispatcher

pytestmark = pytest.mark.integration

CAMPAIGN_ID = "camp_ramadan"


def _templates(mock_emails: MagicMock) -> list[EmailTemplate]:
    return [c.args[0] for c in mock_emails.send.call_args_list]


def _donations(table: Any) -> list[dict[str, Any]]:
    return table("donations").scan()["Items"]


class TestOneTimeDonationFlow:
    def test_repeated_delivery_records_once(
        self,
        dispatcher: WebhookDispatcher,
        campaigns: CampaignAggregator,
        campaign: dict[str, Any],
        mock_emails: MagicMock,
        table: Any,
    ) -> None:
        event = payloads.make_event(
            "checkout.session.completed", payloads.checkout_session(), "evt_once"
        )

        results = [dispatcher.dispatch(event).processing_result for _ in range(5)]

        assert results == [ProcessingResult.SUCCESS] + [ProcessingResult.DUPLICATE] * 4
        assert len(_donations(table)) == 1
        assert campaigns.get_current_amount(CAMPAIGN_ID) == 5000
        assert _templates(mock_emails) == [EmailTemplate.ONE_TIME_RECEIPT]

    @pytest.mark.parametrize("checkout_first", [True, False])
    def test_checkout_and_payment_intent_converge(
        self,
        checkout_first: bool,
        dispatcher: WebhookDispatcher,
        campaigns: CampaignAggregator,
        campaign: dict[str, Any],
        mock_emails: MagicMock,
        table: Any,
    ) -> None:
        checkout = payloads.make_event(
            "checkout.session.completed", payloads.checkout_session(), "evt_cs"
        )
        intent = payloads.make_event(
            "payment_intent.succeeded", payloads.payment_intent(), "evt_pi"
        )
        ordered = [checkout, intent] if checkout_first else [intent, checkout]

        for event in ordered:
            dispatcher.dispatch(event)

        donations = _donations(table)
        assert len(donations) == 1
        assert donations[0]["donation_id"] == "DON-pi_test_001"
        assert campaigns.get_current_amount(CAMPAIGN_ID) == 5000
        assert _templates(mock_emails) == [EmailTemplate.ONE_TIME_RECEIPT]


class TestRecurringDonationFlow:
    def test_subscription_lifecycle(
        self,
        dispatcher: WebhookDispatcher,
        subscription_manager: SubscriptionManager,
        campaigns: CampaignAggregator,
        campaign: dict[str, Any],
        mock_emails: MagicMock,
        table: Any,
    ) -> None:
        events = [
            payloads.make_event(
                "customer.subscription.created", payloads.subscription(), "evt_sub_created"
            ),
            payloads.make_event(
                "invoice.payment_succeeded",
                payloads.invoice(
                    invoice_id="in_1",
                    payment_intent="pi_inv_1",
                    billing_reason="subscription_create",
                ),
                "evt_inv_1",
            ),
            payloads.make_event(
                "invoice.payment_failed",
                payloads.invoice(invoice_id="in_2", payment_intent="pi_inv_2", attempt_count=1),
                "evt_inv_2_failed",
            ),
            payloads.make_event(
                "invoice.payment_succeeded",
                payloads.invoice(invoice_id="in_2", payment_intent="pi_inv_2"),
                "evt_inv_2",
            ),
            payloads.make_event(
                "customer.subscription.updated",
                payloads.subscription(unit_amount=4000),
                "evt_sub_updated",
            ),
            payloads.make_event(
                "customer.subscription.deleted",
                payloads.subscription(unit_amount=4000, status="canceled"),
                "evt_sub_deleted",
            ),
        ]

        results = [dispatcher.dispatch(e).processing_result for e in events]

        assert results == [ProcessingResult.SUCCESS] * len(events)
        record = subscription_manager.get_recurring_donation("sub_test_001")
        assert record is not None
        assert record.status == SubscriptionStatus.CANCELLED
        assert record.amount == 4000
        assert record.total_donated == 5000
        assert record.last_payment_donation_id == "DON-pi_inv_2"
        assert record.payment_attempt_count == 0
        assert len(_donations(table)) == 2
        assert campaigns.get_current_amount(CAMPAIGN_ID) == 5000
        assert _templates(mock_emails) == [
            EmailTemplate.RECURRING_WELCOME,
            EmailTemplate.PAYMENT_FAILED,
            EmailTemplate.RECURRING_RECEIPT,
            EmailTemplate.SUBSCRIPTION_UPDATED,
            EmailTemplate.SUBSCRIPTION_CANCELLED,
        ]

        # Late events after cancellation leave the record cancelled
        late = payloads.make_event(
            "invoice.payment_failed",
            payloads.invoice(invoice_id="in_3", attempt_count=1),
            "evt_inv_3_failed",
        )
        assert dispatcher.dispatch(late).processing_result == ProcessingResult.SKIPPED
        record = subscription_manager.get_recurring_donation("sub_test_001")
        assert record is not None
        assert record.status == SubscriptionStatus.CANCELLED


class TestCampaignConservation:
    def test_total_equals_succeeded_minus_reversed(
        self,
        dispatcher: WebhookDispatcher,
        campaigns: CampaignAggregator,
        campaign: dict[str, Any],
    ) -> None:
        events = [
            payloads.make_event(
                "checkout.session.completed",
                payloads.checkout_session(
                    session_id="cs_a", payment_intent="pi_a", amount_total=5000
                ),
                "evt_a",
            ),
            payloads.make_event(
                "checkout.session.completed",
                payloads.checkout_session(
                    session_id="cs_b", payment_intent="pi_b", amount_total=2500
                ),
                "evt_b",
            ),
            payloads.make_event(
                "checkout.session.completed",
                payloads.checkout_session(
                    session_id="cs_c", payment_intent="pi_c", amount_total=1000
                ),
                "evt_c",
            ),
            payloads.make_event(
                "charge.refunded",
                payloads.charge(
                    charge_id="ch_a", payment_intent="pi_a", amount=5000, amount_refunded=1000
                ),
                "evt_refund_a",
            ),
            payloads.make_event(
                "charge.dispute.created",
                payloads.dispute(dispute_id="dp_b", charge_id="ch_b", payment_intent="pi_b", amount=2500),
                "evt_dispute_b",
            ),
        ]

        for event in events:
            dispatcher.dispatch(event)
        assert campaigns.get_current_amount(CAMPAIGN_ID) == 5000 + 2500 + 1000 - 1000 - 2500

        # Redelivering everything under new event IDs changes nothing
        for event in events:
            dispatcher.dispatch({**event, "id": f"{event['id']}_again"})
        assert campaigns.get_current_amount(CAMPAIGN_ID) == 5000


class TestReceiptNumbering:
    def test_receipts_are_unique_and_sequential(
        self,
        dispatcher: WebhookDispatcher,
        timezone_service: TimezoneService,
        table: Any,
    ) -> None:
        for n in range(1, 6):
            dispatcher.dispatch(
                payloads.make_event(
                    "checkout.session.completed",
                    payloads.checkout_session(session_id=f"cs_{n}", payment_intent=f"pi_{n}"),
                    f"evt_{n}",
                )
            )

        year = timezone_service.current_year()
        receipts = sorted(d["receipt_number"] for d in _donations(table))
        assert receipts == [f"RCP-{year}-{n:05d}" for n in range(1, 6)]

    def test_counter_rolls_over_by_year(self, table: Any, receipts: Any) -> None:
        table("receipt-counters").put_item(Item={"counter_year": 2025, "last_number": 812})

        assert receipts.next_receipt_number(2025) == "RCP-2025-00813"
        assert receipts.next_receipt_number(2026) == "RCP-2026-00001"
