"""Backend services for the donation ledger."""

from .campaigns import AdjustmentOutcome, AdjustmentResult, CampaignAggregator, CampaignGuard
from .donations import DonationRecordManager, donation_key
from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .email_dispatcher import EmailDispatcher, get_email_dispatcher
from .idempotency import IdempotencyLedger
from .receipts import ReceiptNumberGenerator, format_receipt_number
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .stripe_service import StripeService, StripeServiceError, get_stripe_service
from .subscriptions import SubscriptionManager
from .timezone_service import (
    TimezoneService,
    add_frequency_interval,
    get_timezone_service,
    reset_timezone_service,
)
from .webhook_dispatcher import WebhookDispatcher

__all__ = [
    "AdjustmentOutcome",
    "AdjustmentResult",
    "CampaignAggregator",
    "CampaignGuard",
    "DonationRecordManager",
    "donation_key",
    "DynamoDBService",
    "get_dynamodb_service",
    "reset_dynamodb_service",
    "EmailDispatcher",
    "get_email_dispatcher",
    "IdempotencyLedger",
    "ReceiptNumberGenerator",
    "format_receipt_number",
    "SSMService",
    "SSMServiceError",
    "get_ssm_service",
    "StripeService",
    "StripeServiceError",
    "get_stripe_service",
    "SubscriptionManager",
    "TimezoneService",
    "add_frequency_interval",
    "get_timezone_service",
    "reset_timezone_service",
    "WebhookDispatcher",
]
