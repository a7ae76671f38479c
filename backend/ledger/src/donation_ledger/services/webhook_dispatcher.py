"""Routes verified Stripe events to their handlers under the idempotency ledger.

Separate from HTTP routing so it can be unit tested without a server and
reused by any transport.
"""

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from ..models.enums import ProcessingResult, WebhookEventType
from ..models.errors import DonationLedgerError, ErrorCode
from ..models.stripe_events import (
    Charge,
    CheckoutSession,
    Dispute,
    Invoice,
    PaymentIntent,
    StripeEvent,
    Subscription,
)
from ..models.webhook_event import DispatchResult
from ..utils.logging import get_logger, log_webhook_event
from .donations import DonationRecordManager
from .idempotency import IdempotencyLedger
from .subscriptions import HandlerResult, SubscriptionManager

logger = get_logger(__name__)

Handler = Callable[[Any], HandlerResult]


class WebhookDispatcher:
    """Dispatches each recognized event type to exactly one handler.

    Flow per event:
    1. Unrecognized type: acknowledged as ignored, no ledger record
    2. Already completed: acknowledged as duplicate
    3. Otherwise: mark started, run handler, mark completed
    4. Handler failure: mark failed and raise so Stripe redelivers
    """

    def __init__(
        self,
        ledger: IdempotencyLedger | None = None,
        donations: DonationRecordManager | None = None,
        subscriptions: SubscriptionManager | None = None,
    ) -> None:
        self._ledger = ledger or IdempotencyLedger()
        self._subscriptions = subscriptions or SubscriptionManager()
        self._donations = donations or DonationRecordManager(
            subscriptions=self._subscriptions
        )
        self._routes: dict[WebhookEventType, tuple[type[BaseModel], Handler]] = {
            WebhookEventType.CHECKOUT_COMPLETED: (
                CheckoutSession,
                self._donations.handle_checkout_completed,
            ),
            WebhookEventType.PAYMENT_SUCCEEDED: (
                PaymentIntent,
                self._donations.handle_payment_succeeded,
            ),
            WebhookEventType.PAYMENT_FAILED: (
                PaymentIntent,
                self._donations.handle_payment_failed,
            ),
            WebhookEventType.SUBSCRIPTION_CREATED: (
                Subscription,
                self._subscriptions.handle_subscription_created,
            ),
            WebhookEventType.SUBSCRIPTION_UPDATED: (
                Subscription,
                self._subscriptions.handle_subscription_updated,
            ),
            WebhookEventType.SUBSCRIPTION_DELETED: (
                Subscription,
                self._subscriptions.handle_subscription_deleted,
            ),
            WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: (
                Invoice,
                self._donations.handle_invoice_payment_succeeded,
            ),
            WebhookEventType.INVOICE_PAYMENT_FAILED: (
                Invoice,
                self._subscriptions.handle_invoice_payment_failed,
            ),
            WebhookEventType.CHARGE_REFUNDED: (
                Charge,
                self._donations.handle_charge_refunded,
            ),
            WebhookEventType.DISPUTE_CREATED: (
                Dispute,
                self._donations.handle_dispute_created,
            ),
        }
        missing = set(WebhookEventType) - set(self._routes)
        if missing:
            raise ValueError(f"No handler for event types: {sorted(m.value for m in missing)}")

    @property
    def routes(self) -> dict[WebhookEventType, tuple[type[BaseModel], Handler]]:
        return dict(self._routes)

    def dispatch(self, event: dict[str, Any]) -> DispatchResult:
        """Process one verified Stripe event.

        Args:
            event: Event dictionary as returned by signature verification

        Returns:
            DispatchResult for the HTTP response

        Raises:
            DonationLedgerError: INVALID_EVENT_PAYLOAD if the envelope or
                object cannot be parsed, WEBHOOK_PROCESSING_FAILED if the
                handler fails
        """
        try:
            envelope = StripeEvent.model_validate(event)
        except ValidationError as e:
            logger.warning("Malformed webhook envelope: %s", e)
            raise DonationLedgerError(ErrorCode.INVALID_EVENT_PAYLOAD) from e

        event_type = WebhookEventType.parse(envelope.type)
        if event_type is None:
            log_webhook_event(logger, envelope.type, envelope.id, result="ignored")
            return DispatchResult(
                event_id=envelope.id,
                event_type=envelope.type,
                processing_result=ProcessingResult.IGNORED,
                message=f"Event type {envelope.type} is not handled",
            )

        check = self._ledger.check_processed(envelope.id)
        if check.already_completed:
            return self._duplicate(envelope)

        if self._ledger.mark_started(envelope.id, envelope.type) is None:
            return self._duplicate(envelope)

        model, handler = self._routes[event_type]
        try:
            payload = model.model_validate(envelope.data_object)
        except ValidationError as e:
            self._ledger.mark_failed(envelope.id, f"Invalid payload: {e}")
            log_webhook_event(logger, envelope.type, envelope.id, result="error", error=str(e))
            raise DonationLedgerError(
                ErrorCode.INVALID_EVENT_PAYLOAD,
                details={"event_id": envelope.id},
            ) from e

        try:
            result, message = handler(payload)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            self._ledger.mark_failed(envelope.id, error)
            log_webhook_event(logger, envelope.type, envelope.id, result="error", error=error)
            raise DonationLedgerError(
                ErrorCode.WEBHOOK_PROCESSING_FAILED,
                details={"event_id": envelope.id, "event_type": envelope.type},
            ) from e

        self._ledger.mark_completed(envelope.id)
        log_webhook_event(
            logger, envelope.type, envelope.id, result=result.value, detail=message
        )
        return DispatchResult(
            event_id=envelope.id,
            event_type=envelope.type,
            processing_result=result,
            message=message,
        )

    def _duplicate(self, envelope: StripeEvent) -> DispatchResult:
        log_webhook_event(logger, envelope.type, envelope.id, result="duplicate")
        return DispatchResult(
            event_id=envelope.id,
            event_type=envelope.type,
            processing_result=ProcessingResult.DUPLICATE,
            message="Event already processed",
        )
