"""
Decide what a dataset needs next: request a report, process a finished one,
give up on a dead one, or nothing. Reads live report status but never writes.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from app.ads_client import AmazonAdsClient, ReportStatus
from app.models import DatasetStatus, ReportDatasetMetadata
from app.services.eligibility import hours_between, is_eligible

logger = logging.getLogger(__name__)

DEFAULT_HANDLE_TIMEOUT = timedelta(hours=6)
TERMINAL_FAILURE_STATUSES = ("FAILED", "CANCELLED")
# Dataset statuses showing a download/parse of the current report was already tried
PROCESS_ATTEMPTED_STATUSES = (DatasetStatus.FAILED.value, DatasetStatus.PARSING.value)


class NextAction(str, enum.Enum):
    CREATE = "create"
    PROCESS = "process"
    RETRY = "retry"
    NONE = "none"


@dataclass
class ActionDecision:
    action: NextAction
    report_status: Optional[ReportStatus] = None
    reason: Optional[str] = None


def _handle_age_hours(dataset: ReportDatasetMetadata, now: datetime, tz: ZoneInfo) -> Optional[int]:
    if dataset.last_report_created_at is None:
        return None
    return hours_between(dataset.last_report_created_at, now, tz)


async def get_next_action(
    dataset: ReportDatasetMetadata,
    client: AmazonAdsClient,
    now: datetime,
    tz: ZoneInfo,
    profile_id: Optional[str] = None,
    handle_timeout: timedelta = DEFAULT_HANDLE_TIMEOUT,
) -> ActionDecision:
    if dataset.report_id:
        report_status = await client.retrieve_report(dataset.report_id, profile_id=profile_id)
        age = _handle_age_hours(dataset, now, tz)
        timed_out = age is not None and age >= handle_timeout.total_seconds() / 3600

        if report_status is not None and report_status.is_completed:
            # A finished report that keeps failing to process is dropped once the handle times out
            if timed_out and dataset.status in PROCESS_ATTEMPTED_STATUSES:
                reason = f"Report {dataset.report_id} could not be processed within {age}h"
                if dataset.error:
                    reason = f"{reason}: {dataset.error}"
                return ActionDecision(NextAction.RETRY, report_status, reason)
            return ActionDecision(NextAction.PROCESS, report_status)

        if report_status is not None and report_status.status in TERMINAL_FAILURE_STATUSES:
            reason = f"Report {dataset.report_id} ended with status {report_status.status}"
            if report_status.failure_reason:
                reason = f"{reason}: {report_status.failure_reason}"
            return ActionDecision(NextAction.RETRY, report_status, reason)

        if timed_out:
            state = report_status.status if report_status else "not found"
            return ActionDecision(
                NextAction.RETRY,
                report_status,
                f"Report {dataset.report_id} still {state} after {age}h",
            )
        return ActionDecision(NextAction.NONE, report_status)

    if is_eligible(dataset.period_start, dataset.aggregation, dataset.last_report_created_at, now, tz):
        return ActionDecision(NextAction.CREATE)
    return ActionDecision(NextAction.NONE)
