"""Stripe webhook endpoint.

Does NOT require authentication: payloads are signed by Stripe and verified
against the webhook secret before anything is dispatched.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from donation_api.dependencies import get_stripe, get_webhook_dispatcher
from donation_ledger.models.enums import ProcessingResult
from donation_ledger.models.errors import DonationLedgerError, ErrorCode
from donation_ledger.services.ssm_service import SSMServiceError
from donation_ledger.services.stripe_service import StripeService, StripeServiceError
from donation_ledger.services.webhook_dispatcher import WebhookDispatcher
from donation_ledger.utils.logging import get_logger, log_webhook_event

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

STRIPE_SIGNATURE_HEADER = "Stripe-Signature"


class WebhookResponse(BaseModel):
    """Acknowledgement returned to Stripe."""

    received: bool
    event_id: str | None = None
    event_type: str | None = None
    processing_result: ProcessingResult
    message: str | None = None


class WebhookErrorResponse(BaseModel):
    """Error body for rejected or failed deliveries."""

    success: bool = False
    error_code: str
    message: str
    recovery: str | None = None


@router.post(
    "/webhooks/stripe",
    summary="Receive Stripe webhook events",
    description="""
Endpoint for Stripe webhook events covering one-time donations, recurring
donations (subscriptions and invoices), refunds and disputes.

**No authentication required** - the Stripe-Signature header is verified.

**Idempotent**: an event ID that already completed returns 200 with
'duplicate'. Unrecognized event types return 200 with 'ignored'.
""",
    response_model=WebhookResponse,
    responses={
        200: {"description": "Event processed or acknowledged", "model": WebhookResponse},
        400: {"description": "Missing or invalid signature", "model": WebhookErrorResponse},
        500: {
            "description": "Processing failed or signing secret unavailable; Stripe will retry",
            "model": WebhookErrorResponse,
        },
    },
)
async def handle_stripe_webhook(
    request: Request,
    stripe_service: StripeService = Depends(get_stripe),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> WebhookResponse:
    """Verify the signature and dispatch the event."""
    signature = request.headers.get(STRIPE_SIGNATURE_HEADER)
    if not signature:
        logger.warning("Webhook request missing Stripe-Signature header")
        raise DonationLedgerError(
            ErrorCode.INVALID_WEBHOOK_SIGNATURE,
            details={"message": "Missing Stripe-Signature header"},
        )

    # Raw body: the signature covers the exact bytes sent
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_signature(payload, signature)
    except SSMServiceError as e:
        logger.error("Webhook secret unavailable: %s", e)
        raise DonationLedgerError(ErrorCode.WEBHOOK_SECRET_UNAVAILABLE) from e
    except StripeServiceError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise DonationLedgerError(
            ErrorCode.INVALID_WEBHOOK_SIGNATURE,
            details={"message": "Invalid webhook signature"},
        ) from e

    log_webhook_event(logger, event.get("type"), event.get("id"), result="received")

    result = await run_in_threadpool(dispatcher.dispatch, event)

    return WebhookResponse(
        received=True,
        event_id=result.event_id,
        event_type=result.event_type,
        processing_result=result.processing_result,
        message=result.message,
    )
