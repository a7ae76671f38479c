"""Pytest configuration and fixtures for the donation ledger backend tests.

This module provides reusable fixtures for testing:
- DynamoDB mocking with moto (all ledger tables)
- Service instances wired to the mocked tables
- MagicMock stand-ins for Stripe lookups and email delivery
"""

import os
from typing import Any, Generator
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("DYNAMODB_TABLE_PREFIX", "test-donations")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret_for_testing")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_abc123")
os.environ.setdefault("DEFAULT_ORGANIZATION_TIMEZONE", "Australia/Sydney")

if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from donation_ledger.models.stripe_events import (  # noqa: E402
    CardDetails,
    Charge,
    Customer,
    PaymentIntent,
    PaymentMethod,
    Subscription,
)
from donation_ledger.services.campaigns import CampaignAggregator  # noqa: E402
from donation_ledger.services.donations import DonationRecordManager  # noqa: E402
from donation_ledger.services.dynamodb import (  # noqa: E402
    DynamoDBService,
    reset_dynamodb_service,
)
from donation_ledger.services.email_dispatcher import (  # noqa: E402
    EmailDispatcher,
    get_email_dispatcher,
)
from donation_ledger.services.idempotency import IdempotencyLedger  # noqa: E402
from donation_ledger.services.receipts import ReceiptNumberGenerator  # noqa: E402
from donation_ledger.services.ssm_service import get_ssm_service  # noqa: E402
from donation_ledger.services.stripe_service import (  # noqa: E402
    StripeService,
    get_stripe_service,
)
from donation_ledger.services.subscriptions import SubscriptionManager  # noqa: E402
from donation_ledger.services.timezone_service import (  # noqa: E402
    TimezoneService,
    reset_timezone_service,
)
from donation_ledger.services.webhook_dispatcher import WebhookDispatcher  # noqa: E402

TABLE_PREFIX = os.environ["DYNAMODB_TABLE_PREFIX"]
REGION = os.environ["AWS_DEFAULT_REGION"]


# === Singleton Reset ===


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset module singletons before and after each test.

    Tests using mock_aws need fresh clients created inside the mock context
    rather than ones cached by a previous test.
    """

    def _reset() -> None:
        reset_dynamodb_service()
        reset_timezone_service()
        get_stripe_service.cache_clear()
        get_email_dispatcher.cache_clear()
        get_ssm_service.cache_clear()

    _reset()
    yield
    _reset()


# === DynamoDB Fixtures ===


def _simple_table(name: str, key: str, key_type: str = "S") -> dict[str, Any]:
    return {
        "TableName": f"{TABLE_PREFIX}-{name}",
        "KeySchema": [{"AttributeName": key, "KeyType": "HASH"}],
        "AttributeDefinitions": [{"AttributeName": key, "AttributeType": key_type}],
        "BillingMode": "PAY_PER_REQUEST",
    }


def create_ledger_tables(client: Any) -> None:
    """Create every table the ledger uses."""
    client.create_table(**_simple_table("stripe-webhook-events", "event_id"))
    client.create_table(**_simple_table("recurring-donations", "subscription_id"))
    client.create_table(**_simple_table("campaigns", "campaign_id"))
    client.create_table(**_simple_table("receipt-counters", "counter_year", "N"))
    client.create_table(**_simple_table("settings", "setting_id"))
    client.create_table(
        TableName=f"{TABLE_PREFIX}-donations",
        KeySchema=[{"AttributeName": "donation_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "donation_id", "AttributeType": "S"},
            {"AttributeName": "stripe_payment_intent_id", "AttributeType": "S"},
            {"AttributeName": "stripe_subscription_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "payment_intent-index",
                "KeySchema": [
                    {"AttributeName": "stripe_payment_intent_id", "KeyType": "HASH"}
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "subscription-index",
                "KeySchema": [
                    {"AttributeName": "stripe_subscription_id", "KeyType": "HASH"}
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def ledger_tables() -> Generator[Any, None, None]:
    """Mocked DynamoDB with all ledger tables; yields the boto3 resource."""
    with mock_aws():
        client = boto3.client("dynamodb", region_name=REGION)
        create_ledger_tables(client)
        yield boto3.resource("dynamodb", region_name=REGION)


@pytest.fixture
def table(ledger_tables: Any) -> Any:
    """Return a table accessor: table("donations") -> boto3 Table."""

    def _table(name: str) -> Any:
        return ledger_tables.Table(f"{TABLE_PREFIX}-{name}")

    return _table


@pytest.fixture
def db(ledger_tables: Any) -> DynamoDBService:
    return DynamoDBService()


@pytest.fixture
def campaign(table: Any) -> dict[str, Any]:
    """A campaign with a zero running total."""
    item = {"campaign_id": "camp_ramadan", "name": "Ramadan Appeal", "current_amount": 0}
    table("campaigns").put_item(Item=item)
    return item


# === Collaborator Mocks ===


@pytest.fixture
def mock_stripe() -> MagicMock:
    """StripeService stand-in returning realistic lookup results."""
    stripe_service = MagicMock(spec=StripeService)
    stripe_service.retrieve_payment_intent.side_effect = lambda pi_id: PaymentIntent(
        id=pi_id, payment_method="pm_card_visa"
    )
    stripe_service.retrieve_payment_method.return_value = PaymentMethod(
        id="pm_card_visa",
        type="card",
        card=CardDetails(brand="visa", last4="4242"),
    )
    stripe_service.retrieve_charge.side_effect = lambda charge_id: Charge(
        id=charge_id,
        receipt_url=f"https://pay.stripe.com/receipts/{charge_id}",
    )
    stripe_service.retrieve_customer.side_effect = lambda customer_id: Customer(
        id=customer_id, email="customer@example.com", name="Stripe Customer"
    )
    stripe_service.retrieve_subscription.side_effect = lambda sub_id: Subscription.model_validate(
        {
            "id": sub_id,
            "customer": "cus_donor",
            "status": "active",
            "currency": "aud",
            "items": {"data": [{"price": {"unit_amount": 2500}}]},
            "metadata": {
                "donor_name": "Aisha Rahman",
                "donor_email": "aisha@example.com",
                "frequency": "monthly",
                "campaign_id": "camp_ramadan",
                "donation_type_label": "Zakat",
            },
        }
    )
    return stripe_service


@pytest.fixture
def mock_emails() -> MagicMock:
    """EmailDispatcher stand-in that accepts every message."""
    emails = MagicMock(spec=EmailDispatcher)
    emails.send.return_value = True
    return emails


@pytest.fixture
def mock_sleep() -> MagicMock:
    return MagicMock()


# === Service Fixtures ===


@pytest.fixture
def timezone_service(db: DynamoDBService) -> TimezoneService:
    return TimezoneService(db)


@pytest.fixture
def ledger(db: DynamoDBService) -> IdempotencyLedger:
    return IdempotencyLedger(db)


@pytest.fixture
def receipts(db: DynamoDBService, timezone_service: TimezoneService) -> ReceiptNumberGenerator:
    return ReceiptNumberGenerator(db, timezone_service)


@pytest.fixture
def campaigns(db: DynamoDBService) -> CampaignAggregator:
    return CampaignAggregator(db)


@pytest.fixture
def subscription_manager(
    db: DynamoDBService,
    mock_stripe: MagicMock,
    mock_emails: MagicMock,
    timezone_service: TimezoneService,
) -> SubscriptionManager:
    return SubscriptionManager(db, mock_stripe, mock_emails, timezone_service)


@pytest.fixture
def donation_manager(
    db: DynamoDBService,
    mock_stripe: MagicMock,
    mock_emails: MagicMock,
    timezone_service: TimezoneService,
    receipts: ReceiptNumberGenerator,
    campaigns: CampaignAggregator,
    subscription_manager: SubscriptionManager,
    mock_sleep: MagicMock,
) -> DonationRecordManager:
    return DonationRecordManager(
        db=db,
        stripe_service=mock_stripe,
        receipts=receipts,
        campaigns=campaigns,
        subscriptions=subscription_manager,
        emails=mock_emails,
        timezone_service=timezone_service,
        sleep=mock_sleep,
    )


@pytest.fixture
def dispatcher(
    ledger: IdempotencyLedger,
    donation_manager: DonationRecordManager,
    subscription_manager: SubscriptionManager,
) -> WebhookDispatcher:
    return WebhookDispatcher(ledger, donation_manager, subscription_manager)
