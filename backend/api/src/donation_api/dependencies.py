"""FastAPI dependency providers for ledger services.

Service instances are cached with @lru_cache so warm Lambda invocations reuse
clients and the organization timezone cache.

Service Dependency Graph:
    DynamoDBService (singleton via get_dynamodb_service)
        ├── IdempotencyLedger
        ├── SubscriptionManager ── StripeService, EmailDispatcher, TimezoneService
        └── DonationRecordManager ── SubscriptionManager, ReceiptNumberGenerator,
                                     CampaignAggregator
    WebhookDispatcher ── IdempotencyLedger, DonationRecordManager, SubscriptionManager

Testing:
    Override get_webhook_dispatcher / get_stripe_service via
    app.dependency_overrides, and call reset_services() between tests.
"""

from functools import lru_cache

from donation_ledger.services.donations import DonationRecordManager
from donation_ledger.services.dynamodb import get_dynamodb_service, reset_dynamodb_service
from donation_ledger.services.email_dispatcher import get_email_dispatcher
from donation_ledger.services.idempotency import IdempotencyLedger
from donation_ledger.services.ssm_service import get_ssm_service
from donation_ledger.services.stripe_service import StripeService, get_stripe_service
from donation_ledger.services.subscriptions import SubscriptionManager
from donation_ledger.services.timezone_service import (
    get_timezone_service,
    reset_timezone_service,
)
from donation_ledger.services.webhook_dispatcher import WebhookDispatcher


def get_stripe() -> StripeService:
    return get_stripe_service()


@lru_cache
def get_subscription_manager() -> SubscriptionManager:
    return SubscriptionManager(
        db=get_dynamodb_service(),
        stripe_service=get_stripe_service(),
        emails=get_email_dispatcher(),
        timezone_service=get_timezone_service(),
    )


@lru_cache
def get_donation_manager() -> DonationRecordManager:
    return DonationRecordManager(
        db=get_dynamodb_service(),
        stripe_service=get_stripe_service(),
        subscriptions=get_subscription_manager(),
        emails=get_email_dispatcher(),
        timezone_service=get_timezone_service(),
    )


@lru_cache
def get_webhook_dispatcher() -> WebhookDispatcher:
    """Get cached WebhookDispatcher wired to the shared services."""
    return WebhookDispatcher(
        ledger=IdempotencyLedger(get_dynamodb_service()),
        donations=get_donation_manager(),
        subscriptions=get_subscription_manager(),
    )


def reset_services() -> None:
    """Clear all cached service instances.

    Call this in test fixtures to ensure clean state between tests.
    """
    get_webhook_dispatcher.cache_clear()
    get_donation_manager.cache_clear()
    get_subscription_manager.cache_clear()
    get_stripe_service.cache_clear()
    get_email_dispatcher.cache_clear()
    get_ssm_service.cache_clear()
    reset_timezone_service()
    reset_dynamodb_service()
