"""Idempotency ledger for Stripe webhook events.

Every event ID gets one record in the ``stripe-webhook-events`` table. The
record moves started -> completed, or started -> failed -> started on
redelivery. A completed record is final and blocks reprocessing.
"""

import datetime as dt

from botocore.exceptions import ClientError

from ..models.enums import ProcessingState
from ..models.webhook_event import LedgerCheck, WebhookEventRecord
from ..utils.logging import get_logger
from .dynamodb import DynamoDBService, get_dynamodb_service

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 1000


class IdempotencyLedger:
    """Tracks processing state per Stripe event ID."""

    WEBHOOK_EVENTS_TABLE = "stripe-webhook-events"

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    def get_event(self, event_id: str) -> WebhookEventRecord | None:
        """Read the ledger record for an event (audit and debugging).

        Args:
            event_id: Stripe event ID

        Returns:
            The record, or None if the event has never been seen
        """
        item = self._db.get_item(
            self.WEBHOOK_EVENTS_TABLE, {"event_id": event_id}, consistent_read=True
        )
        return WebhookEventRecord.model_validate(item) if item else None

    def check_processed(self, event_id: str) -> LedgerCheck:
        """Check whether an event has already completed.

        Store errors propagate so the caller answers with a retryable failure.

        Args:
            event_id: Stripe event ID

        Returns:
            LedgerCheck with already_completed and the current record
        """
        record = self.get_event(event_id)
        return LedgerCheck(
            already_completed=record is not None and record.is_completed,
            record=record,
        )

    def mark_started(self, event_id: str, event_type: str) -> WebhookEventRecord | None:
        """Record the start of a processing attempt.

        Creates the record on first sighting and increments attempt_count on
        every call. The write is conditional on the record not being completed,
        so two deliveries racing past check_processed cannot both start after
        one of them has finished.

        Args:
            event_id: Stripe event ID
            event_type: Stripe event type

        Returns:
            The updated record, or None if the event is already completed
        """
        now = dt.datetime.now(dt.UTC).isoformat()
        attrs = self._db.update_item(
            self.WEBHOOK_EVENTS_TABLE,
            {"event_id": event_id},
            "SET event_type = if_not_exists(event_type, :event_type), "
            "created_at = if_not_exists(created_at, :now), "
            "processing_state = :started, "
            "processing_started_at = :now, "
            "updated_at = :now "
            "ADD attempt_count :one",
            {
                ":event_type": event_type,
                ":now": now,
                ":started": ProcessingState.STARTED.value,
                ":completed": ProcessingState.COMPLETED.value,
                ":one": 1,
            },
            condition_expression=(
                "attribute_not_exists(event_id) OR processing_state <> :completed"
            ),
        )
        if attrs is None:
            logger.info("Event %s already completed, not starting", event_id)
            return None

        record = WebhookEventRecord.model_validate(attrs)
        if record.attempt_count > 1:
            logger.info(
                "Event %s processing attempt %d (previous: %s)",
                event_id,
                record.attempt_count,
                record.last_error or "no error recorded",
            )
        return record

    def mark_completed(self, event_id: str) -> None:
        """Mark an event completed. Idempotent; keeps the first completed_at.

        Failures are logged and swallowed: the handler's effects are already
        applied and guarded by their own conditional writes.
        """
        now = dt.datetime.now(dt.UTC).isoformat()
        try:
            self._db.update_item(
                self.WEBHOOK_EVENTS_TABLE,
                {"event_id": event_id},
                "SET processing_state = :completed, "
                "completed_at = if_not_exists(completed_at, :now), "
                "updated_at = :now "
                "REMOVE last_error",
                {
                    ":completed": ProcessingState.COMPLETED.value,
                    ":now": now,
                },
            )
        except ClientError as e:
            logger.error("Failed to mark event %s completed: %s", event_id, e)

    def mark_failed(self, event_id: str, error_message: str) -> None:
        """Record a failed attempt. Never overwrites a completed record.

        A failed record does not block the next delivery from starting.
        """
        now = dt.datetime.now(dt.UTC).isoformat()
        try:
            attrs = self._db.update_item(
                self.WEBHOOK_EVENTS_TABLE,
                {"event_id": event_id},
                "SET processing_state = :failed, last_error = :error, updated_at = :now",
                {
                    ":failed": ProcessingState.FAILED.value,
                    ":completed": ProcessingState.COMPLETED.value,
                    ":error": error_message[:MAX_ERROR_LENGTH],
                    ":now": now,
                },
                condition_expression=(
                    "attribute_exists(event_id) AND processing_state <> :completed"
                ),
            )
        except ClientError as e:
            logger.error("Failed to mark event %s failed: %s", event_id, e)
            return
        if attrs is None:
            logger.warning("Event %s not marked failed (missing or completed)", event_id)
