"""
Time buckets for report rows.

Reports label rows with local wall time in the account's marketplace zone.
Buckets keep the local date/hour labels and store the matching UTC instant,
resolved with the zone's offset at that instant so DST days come out right.
"""

import re
from datetime import datetime
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo

from app.timezones import local_to_utc

_HOUR_VALUE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}):")
_DATE_VALUE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class HourlyBucket(NamedTuple):
    bucket_start: datetime  # naive UTC
    bucket_date: str
    bucket_hour: int


class DailyBucket(NamedTuple):
    bucket_start: datetime  # naive UTC instant of local midnight
    bucket_date: str


def normalize_hourly_value(hour_value: str, date_value: Optional[str] = None) -> str:
    """Turn a bare hour ("7") plus date.value into an ISO local timestamp."""
    hour_value = str(hour_value)
    if "T" in hour_value or " " in hour_value.strip():
        return hour_value
    if not date_value:
        raise ValueError(f"Missing date.value for hour.value: {hour_value}")
    try:
        hour = int(float(hour_value))
    except ValueError:
        raise ValueError(f"Invalid hour.value format: {hour_value}")
    return f"{date_value}T{hour:02d}:00:00"


def parse_hourly_timestamp(hour_value: str, tz: ZoneInfo) -> HourlyBucket:
    match = _HOUR_VALUE_RE.match(hour_value)
    if not match:
        raise ValueError(f"Invalid hour.value format: {hour_value}")
    bucket_date = match.group(1)
    bucket_hour = int(match.group(2))
    local = datetime.strptime(bucket_date, "%Y-%m-%d").replace(hour=bucket_hour)
    bucket_start = local_to_utc(local, tz).replace(tzinfo=None)
    return HourlyBucket(bucket_start, bucket_date, bucket_hour)


def parse_daily_timestamp(date_value: str, tz: ZoneInfo) -> DailyBucket:
    date_value = date_value[:10]
    if not _DATE_VALUE_RE.match(date_value):
        raise ValueError(f"Invalid date.value format: {date_value}")
    local = datetime.strptime(date_value, "%Y-%m-%d")
    return DailyBucket(local_to_utc(local, tz).replace(tzinfo=None), date_value)
