"""Campaign running totals.

A campaign's ``current_amount`` is the sum of its succeeded donations minus
refunded and disputed amounts. Adjustments are optimistic read-modify-write
cycles on the campaign's ``version`` attribute, so concurrent webhook
deliveries never lose an update.
"""

import datetime as dt
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
)

from ..models.errors import DonationLedgerError, ErrorCode
from ..utils.logging import get_logger, log_donation_operation
from .dynamodb import DynamoDBService, get_dynamodb_service

logger = get_logger(__name__)

MAX_ADJUST_ATTEMPTS = 5


class AdjustmentOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    CAMPAIGN_NOT_FOUND = "campaign_not_found"


class CampaignGuard(BaseModel):
    """Donation-side marker that makes an adjustment apply at most once.

    ``marker`` is a numeric attribute on the donation recording the amount
    already applied to the campaign for one kind of adjustment (credit,
    refund reversal, dispute reversal). ``target`` is the value the marker
    holds once this adjustment is applied.
    """

    donation_id: str
    marker: str
    target: int = Field(..., ge=0)


class AdjustmentResult(BaseModel):
    outcome: AdjustmentOutcome
    campaign_id: str
    delta: int = 0
    current_amount: int | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == AdjustmentOutcome.APPLIED


class CampaignAggregator:
    """Applies signed deltas to campaign totals."""

    CAMPAIGNS_TABLE = "campaigns"
    DONATIONS_TABLE = "donations"

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    def get_current_amount(self, campaign_id: str) -> int | None:
        item = self._db.get_item(
            self.CAMPAIGNS_TABLE, {"campaign_id": campaign_id}, consistent_read=True
        )
        if item is None:
            return None
        return int(item.get("current_amount", 0))

    def adjust_total(
        self,
        campaign_id: str,
        delta: int,
        guard: CampaignGuard | None = None,
    ) -> AdjustmentResult:
        """Add a signed delta to a campaign's running total.

        With a guard, the sign of ``delta`` gives the direction and the
        magnitude is ``guard.target`` minus the marker's current value, read
        on every attempt. The marker is written in the same transaction as
        the campaign total.

        Args:
            campaign_id: Campaign to adjust
            delta: Signed amount in minor units
            guard: Optional donation marker for at-most-once application

        Returns:
            AdjustmentResult describing what happened

        Raises:
            DonationLedgerError: CONCURRENT_MODIFICATION after repeated conflicts
        """
        retrying = Retrying(
            stop=stop_after_attempt(MAX_ADJUST_ATTEMPTS),
            retry=retry_if_result(lambda result: result is None),
            before_sleep=before_sleep_log(logger, logging.INFO),
        )
        try:
            return retrying(self._try_adjust, campaign_id, delta, guard)
        except RetryError:
            logger.error("Campaign %s: retries exhausted", campaign_id)
            raise DonationLedgerError(
                ErrorCode.CONCURRENT_MODIFICATION,
                details={"campaign_id": campaign_id},
            ) from None

    def _try_adjust(
        self,
        campaign_id: str,
        delta: int,
        guard: CampaignGuard | None,
    ) -> AdjustmentResult | None:
        """One read-modify-write cycle; None when the transaction conflicted."""
        campaign = self._db.get_item(
            self.CAMPAIGNS_TABLE, {"campaign_id": campaign_id}, consistent_read=True
        )
        if campaign is None:
            logger.warning("Campaign %s not found, total not adjusted", campaign_id)
            return AdjustmentResult(
                outcome=AdjustmentOutcome.CAMPAIGN_NOT_FOUND, campaign_id=campaign_id
            )

        previous_marker: int | None = None
        effective = delta
        if guard is not None:
            previous_marker = self._read_marker(guard)
            remaining = guard.target - (previous_marker or 0)
            if remaining <= 0:
                logger.info(
                    "Campaign %s adjustment %s already applied for %s",
                    campaign_id,
                    guard.marker,
                    guard.donation_id,
                )
                return AdjustmentResult(
                    outcome=AdjustmentOutcome.ALREADY_APPLIED,
                    campaign_id=campaign_id,
                    current_amount=int(campaign.get("current_amount", 0)),
                )
            effective = remaining if delta >= 0 else -remaining

        current = int(campaign.get("current_amount", 0))
        new_amount = current + effective

        items = [self._campaign_update(campaign_id, new_amount, campaign.get("version"))]
        if guard is not None:
            items.append(self._marker_update(guard, previous_marker))

        if not self._db.transact_write(items):
            logger.info("Campaign %s update conflicted", campaign_id)
            return None

        if new_amount < 0:
            logger.warning("Campaign %s total is negative: %d", campaign_id, new_amount)
        log_donation_operation(
            logger,
            "adjust_campaign_total",
            donation_id=guard.donation_id if guard else None,
            campaign_id=campaign_id,
            amount_cents=effective,
            current_amount=new_amount,
        )
        return AdjustmentResult(
            outcome=AdjustmentOutcome.APPLIED,
            campaign_id=campaign_id,
            delta=effective,
            current_amount=new_amount,
        )

    def _read_marker(self, guard: CampaignGuard) -> int | None:
        donation = self._db.get_item(
            self.DONATIONS_TABLE, {"donation_id": guard.donation_id}, consistent_read=True
        )
        value = (donation or {}).get(guard.marker)
        return int(value) if value is not None else None

    def _campaign_update(
        self, campaign_id: str, new_amount: int, version: Any
    ) -> dict[str, Any]:
        values: dict[str, Any] = {
            ":amount": new_amount,
            ":now": dt.datetime.now(dt.UTC).isoformat(),
        }
        if version is None:
            condition = "attribute_exists(campaign_id) AND attribute_not_exists(#version)"
            values[":next"] = 1
        else:
            condition = "attribute_exists(campaign_id) AND #version = :version"
            values[":version"] = version
            values[":next"] = int(version) + 1

        return {
            "Update": {
                "TableName": self.CAMPAIGNS_TABLE,
                "Key": {"campaign_id": campaign_id},
                "UpdateExpression": (
                    "SET current_amount = :amount, #version = :next, updated_at = :now"
                ),
                "ConditionExpression": condition,
                "ExpressionAttributeNames": {"#version": "version"},
                "ExpressionAttributeValues": values,
            }
        }

    def _marker_update(
        self, guard: CampaignGuard, previous: int | None
    ) -> dict[str, Any]:
        values: dict[str, Any] = {
            ":target": guard.target,
            ":now": dt.datetime.now(dt.UTC).isoformat(),
        }
        if previous is None:
            condition = "attribute_exists(donation_id) AND attribute_not_exists(#marker)"
        else:
            condition = "attribute_exists(donation_id) AND #marker = :previous"
            values[":previous"] = previous

        return {
            "Update": {
                "TableName": self.DONATIONS_TABLE,
                "Key": {"donation_id": guard.donation_id},
                "UpdateExpression": "SET #marker = :target, updated_at = :now",
                "ConditionExpression": condition,
                "ExpressionAttributeNames": {"#marker": guard.marker},
                "ExpressionAttributeValues": values,
            }
        }
