"""Stripe webhook event record for idempotency and auditing."""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import ProcessingResult, ProcessingState


class WebhookEventRecord(BaseModel):
    """Ledger entry for a received Stripe webhook event.

    Used for:
    - Idempotency: an event ID applies its effects at most once
    - Auditing: records are never deleted
    - Debugging: attempt counts and the last error of failed deliveries
    """

    event_id: str = Field(
        ...,
        description="Stripe event ID (evt_xxx)",
        examples=["evt_1ABC123DEF456"],
    )
    event_type: str = Field(
        ...,
        description="Stripe event type",
        examples=["checkout.session.completed", "charge.refunded"],
    )
    processing_state: ProcessingState = Field(
        ...,
        description="started, completed or failed",
    )
    attempt_count: int = Field(default=1, ge=1, description="Processing attempts so far")
    created_at: datetime = Field(..., description="First sighting of the event")
    processing_started_at: datetime | None = Field(
        default=None,
        description="Start of the most recent processing attempt",
    )
    completed_at: datetime | None = Field(
        default=None,
        description="When processing completed",
    )
    updated_at: datetime | None = Field(default=None)
    last_error: str | None = Field(
        default=None,
        description="Error details of the last failed attempt",
    )

    @property
    def is_completed(self) -> bool:
        return self.processing_state == ProcessingState.COMPLETED


class LedgerCheck(BaseModel):
    """Result of an idempotency pre-check."""

    already_completed: bool
    record: WebhookEventRecord | None = None


class DispatchResult(BaseModel):
    """Outcome of dispatching one webhook event."""

    event_id: str | None = None
    event_type: str | None = None
    processing_result: ProcessingResult
    message: str | None = None
