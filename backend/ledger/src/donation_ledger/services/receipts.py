"""Sequential, year-scoped receipt numbers (RCP-2025-00042)."""

import datetime as dt
import logging

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
)

from ..models.errors import DonationLedgerError, ErrorCode
from ..utils.logging import get_logger
from .dynamodb import DynamoDBService, get_dynamodb_service
from .timezone_service import TimezoneService, get_timezone_service

logger = get_logger(__name__)

RECEIPT_PREFIX = "RCP"
MAX_COUNTER_ATTEMPTS = 10


def format_receipt_number(year: int, sequence: int) -> str:
    return f"{RECEIPT_PREFIX}-{year}-{sequence:05d}"


class ReceiptNumberGenerator:
    """Allocates receipt numbers from a per-year counter item.

    Each allocation is a read followed by a put conditional on the value
    read, so concurrent callers never receive the same number. The counter
    for a new year starts at 1.
    """

    RECEIPT_COUNTERS_TABLE = "receipt-counters"

    def __init__(
        self,
        db: DynamoDBService | None = None,
        timezone_service: TimezoneService | None = None,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._timezone = timezone_service or get_timezone_service()

    def next_receipt_number(self, year: int | None = None) -> str:
        """Allocate the next receipt number.

        Args:
            year: Receipt year. Defaults to the current year in the
                organization timezone.

        Returns:
            Formatted receipt number

        Raises:
            DonationLedgerError: CONCURRENT_MODIFICATION if the counter
                stayed contended for every attempt
        """
        counter_year = year or self._timezone.current_year()
        retrying = Retrying(
            stop=stop_after_attempt(MAX_COUNTER_ATTEMPTS),
            retry=retry_if_result(lambda receipt_number: receipt_number is None),
            before_sleep=before_sleep_log(logger, logging.INFO),
        )
        try:
            return retrying(self._try_allocate, counter_year)
        except RetryError:
            logger.error("Receipt counter %d: retries exhausted", counter_year)
            raise DonationLedgerError(
                ErrorCode.CONCURRENT_MODIFICATION,
                details={"counter_year": str(counter_year)},
            ) from None

    def _try_allocate(self, counter_year: int) -> str | None:
        """Claim the next sequence number; None when another writer won."""
        key = {"counter_year": counter_year}
        item = self._db.get_item(self.RECEIPT_COUNTERS_TABLE, key, consistent_read=True)
        previous = int(item["last_number"]) if item else 0
        sequence = previous + 1

        new_item = {
            "counter_year": counter_year,
            "last_number": sequence,
            "updated_at": dt.datetime.now(dt.UTC).isoformat(),
        }
        if item:
            written = self._db.put_item(
                self.RECEIPT_COUNTERS_TABLE,
                new_item,
                condition_expression="last_number = :previous",
                expression_attribute_values={":previous": previous},
            )
        else:
            written = self._db.put_item(
                self.RECEIPT_COUNTERS_TABLE,
                new_item,
                condition_expression="attribute_not_exists(counter_year)",
            )

        if not written:
            logger.info("Receipt counter %d contended", counter_year)
            return None
        return format_receipt_number(counter_year, sequence)
