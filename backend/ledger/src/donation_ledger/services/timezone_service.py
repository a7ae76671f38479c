"""Organization timezone lookup and calendar arithmetic.

The timezone lives in the ``settings`` table and is read through a
process-wide cache. Receipt years, donation dates and next payment dates are
all computed in this zone.
"""

import calendar
import datetime as dt
import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from botocore.exceptions import BotoCoreError, ClientError

from ..models.enums import DonationFrequency
from ..utils.logging import get_logger
from .dynamodb import DynamoDBService, get_dynamodb_service

logger = get_logger(__name__)

DEFAULT_ORGANIZATION_TIMEZONE = "Australia/Sydney"
ORGANIZATION_SETTING_ID = "organization"

_timezone_service_instance: "TimezoneService | None" = None


def get_timezone_service() -> "TimezoneService":
    """Get or create the process-wide TimezoneService."""
    global _timezone_service_instance
    if _timezone_service_instance is None:
        _timezone_service_instance = TimezoneService()
    return _timezone_service_instance


def reset_timezone_service() -> None:
    """Drop the singleton and its cache (for testing only)."""
    global _timezone_service_instance
    _timezone_service_instance = None


def _add_months(start: dt.date, months: int) -> dt.date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return dt.date(year, month, day)


def add_frequency_interval(start: dt.date, frequency: DonationFrequency) -> dt.date:
    """Advance a date by one billing interval.

    Month and year steps clamp to the last day of the target month, so
    Jan 31 + 1 month is Feb 28 (or 29) and Feb 29 + 1 year is Feb 28.

    Args:
        start: Date to advance from
        frequency: Billing interval

    Returns:
        The next billing date
    """
    if frequency == DonationFrequency.WEEKLY:
        return start + dt.timedelta(days=7)
    if frequency == DonationFrequency.FORTNIGHTLY:
        return start + dt.timedelta(days=14)
    if frequency == DonationFrequency.YEARLY:
        return _add_months(start, 12)
    return _add_months(start, 1)


class TimezoneService:
    """Read-through cache of the organization timezone."""

    SETTINGS_TABLE = "settings"

    def __init__(
        self,
        db: DynamoDBService | None = None,
        default_timezone: str | None = None,
    ) -> None:
        self._db = db
        self._default_timezone = default_timezone or os.getenv(
            "DEFAULT_ORGANIZATION_TIMEZONE", DEFAULT_ORGANIZATION_TIMEZONE
        )
        self._cached: ZoneInfo | None = None

    @property
    def default_timezone(self) -> ZoneInfo:
        return ZoneInfo(self._default_timezone)

    def get_timezone(self, refresh: bool = False) -> ZoneInfo:
        """Return the organization timezone, reading the store at most once.

        A store failure or an unknown zone name yields the default zone,
        which is not cached so the next call tries the store again.

        Args:
            refresh: Force a re-read from the store

        Returns:
            The organization's ZoneInfo
        """
        if self._cached is not None and not refresh:
            return self._cached

        db = self._db or get_dynamodb_service()
        try:
            item = db.get_item(self.SETTINGS_TABLE, {"setting_id": ORGANIZATION_SETTING_ID})
        except (ClientError, BotoCoreError) as e:
            logger.warning("Could not read organization timezone, using default: %s", e)
            return self.default_timezone

        name = (item or {}).get("timezone") or self._default_timezone
        try:
            zone = ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Invalid organization timezone %r, using default", name)
            return self.default_timezone

        self._cached = zone
        logger.info("Organization timezone cached: %s", name)
        return zone

    def invalidate_timezone_cache(self) -> None:
        self._cached = None

    def now(self) -> dt.datetime:
        return dt.datetime.now(self.get_timezone())

    def today(self) -> dt.date:
        return self.now().date()

    def today_iso(self) -> str:
        return self.today().isoformat()

    def current_year(self) -> int:
        return self.today().year

    def next_payment_date(
        self,
        frequency: DonationFrequency,
        from_date: dt.date | None = None,
    ) -> str:
        """Next installment date as YYYY-MM-DD in the organization timezone."""
        start = from_date or self.today()
        return add_frequency_interval(start, frequency).isoformat()
