"""
Report Dataset Registry — backfill and every mutation of report_dataset_metadata.

All writes are single-row (or primary-key-set) UPDATE ... RETURNING statements
so each one yields the resulting row for the dataset event bus. Callers own
the transaction: functions here flush through the session, never commit.
Change events are queued on the session and published only once it commits;
a rollback discards them.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import event, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from app.errors import DatasetBusyError, NotFoundError
from app.models import (
    AdvertiserAccount,
    AggregationType,
    DatasetStatus,
    EntityType,
    ReportDatasetMetadata,
)
from app.services.eligibility import next_refresh_time
from app.services.events import DatasetChangeEvent, dataset_events
from app.timezones import get_timezone_for_country, is_valid_local_time, local_now
from app.utils import utcnow

logger = logging.getLogger(__name__)

# How far back each aggregation is tracked
BACKFILL_HORIZON: dict[AggregationType, timedelta] = {
    AggregationType.HOURLY: timedelta(days=14),
    AggregationType.DAILY: timedelta(days=15 * 30),
}

BACKFILL_BATCH_SIZE = 1000

DATASET_PAIRS: tuple[tuple[AggregationType, EntityType], ...] = tuple(
    (aggregation, entity_type)
    for aggregation in (AggregationType.HOURLY, AggregationType.DAILY)
    for entity_type in (EntityType.TARGET, EntityType.PRODUCT)
)

M = ReportDatasetMetadata

PENDING_EVENTS_KEY = "pending_dataset_events"


def _publish(db: AsyncSession, row: ReportDatasetMetadata) -> None:
    db.info.setdefault(PENDING_EVENTS_KEY, []).append(DatasetChangeEvent.from_row(row))


@event.listens_for(Session, "after_commit")
def publish_committed_events(session) -> None:
    for change in session.info.pop(PENDING_EVENTS_KEY, []):
        dataset_events.publish(change)


@event.listens_for(Session, "after_rollback")
def discard_rolled_back_events(session) -> None:
    dropped = session.info.pop(PENDING_EVENTS_KEY, [])
    if dropped:
        logger.debug(f"Discarded {len(dropped)} dataset events from a rolled back transaction")


# ══════════════════════════════════════════════════════════════════════
#  BACKFILL
# ══════════════════════════════════════════════════════════════════════

def current_period_start(aggregation: str, now_local: datetime) -> datetime:
    """Start of the period containing ``now_local`` (top of hour / local midnight)."""
    if AggregationType(aggregation) is AggregationType.HOURLY:
        return now_local.replace(minute=0, second=0, microsecond=0)
    return now_local.replace(hour=0, minute=0, second=0, microsecond=0)


def iter_period_starts(aggregation: str, now_local: datetime, tz: ZoneInfo) -> Iterator[datetime]:
    """Walk period starts backwards from the current period to the horizon (inclusive)."""
    aggregation = AggregationType(aggregation)
    step = timedelta(hours=1) if aggregation is AggregationType.HOURLY else timedelta(days=1)
    period = current_period_start(aggregation, now_local)
    earliest = period - BACKFILL_HORIZON[aggregation]
    while period >= earliest:
        # Skip wall times that do not exist (DST spring-forward gap)
        if aggregation is AggregationType.DAILY or is_valid_local_time(period, tz):
            yield period
        period -= step


async def backfill(
    db: AsyncSession,
    account_id: str,
    country_code: str,
    now: Optional[datetime] = None,
) -> int:
    """
    Ensure a dataset row exists for every period inside the horizon for all four
    (aggregation, entity type) pairs. Existing rows are never touched.
    Returns the number of rows inserted.
    """
    tz = get_timezone_for_country(country_code)
    now = now or datetime.now(timezone.utc)
    now_local = local_now(tz, now)
    created_at = utcnow()
    inserted = 0

    for aggregation, entity_type in DATASET_PAIRS:
        values = [
            {
                "uid": uuid.uuid4(),
                "account_id": account_id,
                "country_code": country_code,
                "period_start": period,
                "aggregation": aggregation.value,
                "entity_type": entity_type.value,
                "status": DatasetStatus.MISSING.value,
                "refreshing": False,
                "next_refresh_at": next_refresh_time(period, aggregation, None, now, tz),
                "created_at": created_at,
                "updated_at": created_at,
            }
            for period in iter_period_starts(aggregation, now_local, tz)
        ]
        for i in range(0, len(values), BACKFILL_BATCH_SIZE):
            stmt = (
                insert(M)
                .values(values[i:i + BACKFILL_BATCH_SIZE])
                .on_conflict_do_nothing(constraint="uq_report_dataset_key")
                .returning(M.uid)
            )
            result = await db.execute(stmt)
            inserted += len(result.all())

    if inserted:
        logger.info(f"Backfill for {account_id} ({country_code}): {inserted} new dataset rows")
    return inserted


# ══════════════════════════════════════════════════════════════════════
#  READS
# ══════════════════════════════════════════════════════════════════════

async def get_dataset(db: AsyncSession, uid: uuid.UUID) -> ReportDatasetMetadata:
    result = await db.execute(select(M).where(M.uid == uid))
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFoundError(f"Report dataset {uid} not found")
    return row


async def list_datasets(
    db: AsyncSession,
    account_id: Optional[str] = None,
    aggregation: Optional[str] = None,
    entity_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Sequence[ReportDatasetMetadata]:
    stmt = select(M)
    if account_id:
        stmt = stmt.where(M.account_id == account_id)
    if aggregation:
        stmt = stmt.where(M.aggregation == aggregation)
    if entity_type:
        stmt = stmt.where(M.entity_type == entity_type)
    if status:
        stmt = stmt.where(M.status == status)
    stmt = stmt.order_by(M.period_start.desc(), M.aggregation, M.entity_type).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return result.scalars().all()


async def count_refreshing(db: AsyncSession, account_id: str, aggregation: str, entity_type: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(M).where(
            M.account_id == account_id,
            M.aggregation == aggregation,
            M.entity_type == entity_type,
            M.refreshing.is_(True),
        )
    )
    return result.scalar() or 0


async def select_due(
    db: AsyncSession,
    account_id: str,
    aggregation: str,
    entity_type: str,
    now_local: datetime,
    limit: int,
) -> Sequence[ReportDatasetMetadata]:
    """
    Idle datasets that need work: in-flight reports first (they always need a
    status check), then the newest periods whose refresh time has come.
    """
    if limit <= 0:
        return []
    stmt = (
        select(M)
        .where(
            M.account_id == account_id,
            M.aggregation == aggregation,
            M.entity_type == entity_type,
            M.refreshing.is_(False),
            or_(M.report_id.is_not(None), M.next_refresh_at <= now_local),
        )
        .order_by(M.report_id.is_(None), M.period_start.desc(), M.next_refresh_at.asc().nulls_last())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


async def list_enabled_accounts(db: AsyncSession) -> Sequence[AdvertiserAccount]:
    result = await db.execute(
        select(AdvertiserAccount).where(AdvertiserAccount.enabled.is_(True)).order_by(AdvertiserAccount.ads_account_id)
    )
    return result.scalars().all()


async def get_account(db: AsyncSession, ads_account_id: str) -> AdvertiserAccount:
    result = await db.execute(select(AdvertiserAccount).where(AdvertiserAccount.ads_account_id == ads_account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError(f"Advertiser account {ads_account_id} not found")
    return account


# ══════════════════════════════════════════════════════════════════════
#  MUTATIONS
# ══════════════════════════════════════════════════════════════════════

async def _update_one(db: AsyncSession, uid: uuid.UUID, *conditions, **values) -> Optional[ReportDatasetMetadata]:
    """Update one dataset. Returns None when no row matched the uid and ``conditions``."""
    stmt = (
        update(M)
        .where(M.uid == uid, *conditions)
        .values(**values)
        .returning(M)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    row = result.scalar_one_or_none()
    if row is not None:
        _publish(db, row)
    return row


async def _update_existing(db: AsyncSession, uid: uuid.UUID, **values) -> ReportDatasetMetadata:
    row = await _update_one(db, uid, **values)
    if row is None:
        raise NotFoundError(f"Report dataset {uid} not found")
    return row


async def mark_refreshing(db: AsyncSession, uids: Sequence[uuid.UUID], now: Optional[datetime] = None) -> list[ReportDatasetMetadata]:
    """
    Claim datasets for a worker. Only rows that are still idle are updated, so
    of two concurrent schedulers exactly one gets each row back.
    """
    if not uids:
        return []
    stmt = (
        update(M)
        .where(M.uid.in_(list(uids)), M.refreshing.is_(False))
        .values(refreshing=True, refreshing_since=now or utcnow())
        .returning(M)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    rows = list(result.scalars().all())
    for row in rows:
        _publish(db, row)
    return rows


async def finish_refresh(db: AsyncSession, uid: uuid.UUID, next_refresh_at: Optional[datetime]) -> ReportDatasetMetadata:
    return await _update_existing(db, uid, refreshing=False, refreshing_since=None, next_refresh_at=next_refresh_at)


async def set_status(db: AsyncSession, uid: uuid.UUID, status: str, error: Optional[str] = None) -> ReportDatasetMetadata:
    return await _update_existing(db, uid, status=DatasetStatus(status).value, error=error)


async def record_error(db: AsyncSession, uid: uuid.UUID, message: str) -> ReportDatasetMetadata:
    """Record an error without changing status."""
    return await _update_existing(db, uid, error=message)


async def record_report_created(
    db: AsyncSession,
    uid: uuid.UUID,
    report_id: str,
    created_at_local: datetime,
    next_refresh_at: Optional[datetime],
) -> ReportDatasetMetadata:
    return await _update_existing(
        db, uid,
        report_id=report_id,
        status=DatasetStatus.FETCHING.value,
        last_report_created_at=created_at_local,
        next_refresh_at=next_refresh_at,
        error=None,
    )


async def mark_processed(db: AsyncSession, uid: uuid.UUID, report_id: str, rows_processed: int) -> ReportDatasetMetadata:
    return await _update_existing(
        db, uid,
        status=DatasetStatus.COMPLETED.value,
        report_id=None,
        last_processed_report_id=report_id,
        rows_processed=rows_processed,
        error=None,
    )


async def mark_failed(db: AsyncSession, uid: uuid.UUID, message: str) -> ReportDatasetMetadata:
    return await _update_existing(db, uid, status=DatasetStatus.FAILED.value, error=message)


async def clear_report_handle(
    db: AsyncSession,
    uid: uuid.UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    require_idle: bool = False,
) -> ReportDatasetMetadata:
    """
    Drop the in-flight report. The last request time is cleared as well, so the
    current offset counts as not captured and the dataset is requested again.
    With a reason the dataset is marked failed, otherwise it goes back to missing.

    With ``require_idle`` the update only applies while no worker holds the
    dataset; DatasetBusyError is raised otherwise.
    """
    dataset = await get_dataset(db, uid)
    tz = get_timezone_for_country(dataset.country_code)
    next_refresh_at = next_refresh_time(
        dataset.period_start, dataset.aggregation, None, now or datetime.now(timezone.utc), tz,
    )
    conditions = [M.refreshing.is_(False)] if require_idle else []
    row = await _update_one(
        db, uid, *conditions,
        report_id=None,
        last_report_created_at=None,
        next_refresh_at=next_refresh_at,
        status=(DatasetStatus.FAILED if reason else DatasetStatus.MISSING).value,
        error=reason,
    )
    if row is None:
        if require_idle:
            raise DatasetBusyError(f"Report dataset {uid} is refreshing")
        raise NotFoundError(f"Report dataset {uid} not found")
    return row


async def recover_stale_refreshing(
    db: AsyncSession,
    older_than: datetime,
    exclude: Iterable[uuid.UUID] = (),
) -> int:
    """
    Release datasets left refreshing by a worker that died (crash, redeploy).
    ``older_than`` is naive UTC; datasets in ``exclude`` are left claimed.
    Returns the number of rows released.
    """
    conditions = [
        M.refreshing.is_(True),
        or_(M.refreshing_since.is_(None), M.refreshing_since < older_than),
    ]
    exclude = list(exclude)
    if exclude:
        conditions.append(M.uid.not_in(exclude))
    stmt = (
        update(M)
        .where(*conditions)
        .values(refreshing=False, refreshing_since=None)
        .returning(M)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    rows = list(result.scalars().all())
    for row in rows:
        _publish(db, row)
    if rows:
        logger.warning(f"Released {len(rows)} datasets stuck refreshing since before {older_than.isoformat()}")
    return len(rows)
