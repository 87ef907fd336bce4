"""
Eligibility / offset calculator for report datasets.

The Ads API publishes fresher numbers for a period at fixed delays after it
closes. A dataset is re-requested once per offset: when the period's age has
reached an offset that the last report request did not yet cover.

period_start and last_report_created_at are naive local wall times in the
account zone. They are localised and converted to UTC before any difference
is taken, so DST transitions do not shift ages by an hour.
"""

import math
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from app.models import AggregationType
from app.timezones import ensure_aware, local_to_utc, utc_to_local

ELIGIBLE_OFFSETS_HOURS: dict[AggregationType, tuple[int, ...]] = {
    AggregationType.DAILY: tuple(days * 24 for days in (1, 3, 5, 7, 14, 30, 60)),
    AggregationType.HOURLY: (24, 72, 312),
}

DEFAULT_POLL_INTERVAL = timedelta(minutes=5)


def _offsets(aggregation: str) -> tuple[int, ...]:
    return ELIGIBLE_OFFSETS_HOURS[AggregationType(aggregation)]


def hours_between(start_local: datetime, end: datetime, tz: ZoneInfo) -> int:
    """Whole hours from a local wall time to an instant (floored)."""
    delta = ensure_aware(end) - local_to_utc(start_local, tz)
    return math.floor(delta.total_seconds() / 3600)


def matching_offset(period_start: datetime, aggregation: str, now: datetime, tz: ZoneInfo) -> Optional[int]:
    """Largest offset the period has aged past, or None if it is younger than all of them."""
    age_hours = hours_between(period_start, now, tz)
    reached = [offset for offset in _offsets(aggregation) if offset <= age_hours]
    return max(reached) if reached else None


def is_eligible(
    period_start: datetime,
    aggregation: str,
    last_report_created_at: Optional[datetime],
    now: datetime,
    tz: ZoneInfo,
) -> bool:
    offset = matching_offset(period_start, aggregation, now, tz)
    if offset is None:
        return False
    if last_report_created_at is None:
        return True
    last_age_hours = hours_between(period_start, local_to_utc(last_report_created_at, tz), tz)
    return last_age_hours < offset


def next_refresh_time(
    period_start: datetime,
    aggregation: str,
    last_report_created_at: Optional[datetime],
    now: datetime,
    tz: ZoneInfo,
    report_id: Optional[str] = None,
    poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
) -> Optional[datetime]:
    """
    When the dataset should next be looked at, as a naive local wall time.

    In-flight reports are polled again after ``poll_interval``. Otherwise this
    is the first offset either not yet reached, or reached but not captured by
    the last request. None means every offset has been captured.
    """
    now = ensure_aware(now)
    if report_id:
        return utc_to_local(now + poll_interval, tz)

    age_hours = hours_between(period_start, now, tz)
    last_age_hours = None
    if last_report_created_at is not None:
        last_age_hours = hours_between(period_start, local_to_utc(last_report_created_at, tz), tz)

    start_utc = local_to_utc(period_start, tz)
    for offset in _offsets(aggregation):
        if offset > age_hours or last_age_hours is None or last_age_hours < offset:
            return utc_to_local(start_utc + timedelta(hours=offset), tz)
    return None
