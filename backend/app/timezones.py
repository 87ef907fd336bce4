"""
Marketplace timezones and conversions between account-local wall time and UTC.

Report periods are labelled in the advertiser's local time, so period starts
and refresh times are stored as naive local wall times. Every comparison
against "now" goes through the account zone first.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

COUNTRY_TIMEZONES = {
    "US": "America/Los_Angeles",
    "CA": "America/Los_Angeles",
    "MX": "America/Los_Angeles",
    "GB": "Europe/London",
    "DE": "Europe/London",
    "FR": "Europe/London",
    "IT": "Europe/London",
    "ES": "Europe/London",
    "JP": "Asia/Tokyo",
}

DEFAULT_TIMEZONE = "UTC"


def get_timezone_for_country(country_code: Optional[str]) -> ZoneInfo:
    """Resolve an account's reporting timezone. Unknown countries report in UTC."""
    name = COUNTRY_TIMEZONES.get((country_code or "").upper(), DEFAULT_TIMEZONE)
    return ZoneInfo(name)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def local_to_utc(local: datetime, tz: ZoneInfo) -> datetime:
    """Localise a naive wall time in ``tz`` and return the aware UTC instant."""
    return local.replace(tzinfo=tz).astimezone(timezone.utc)


def utc_to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    """Convert an instant to a naive wall time in ``tz``."""
    return ensure_aware(instant).astimezone(tz).replace(tzinfo=None)


def local_now(tz: ZoneInfo, now: Optional[datetime] = None) -> datetime:
    return utc_to_local(now or datetime.now(timezone.utc), tz)


def is_valid_local_time(local: datetime, tz: ZoneInfo) -> bool:
    """False for wall times skipped by a DST spring-forward transition."""
    return utc_to_local(local_to_utc(local, tz), tz) == local
