"""
Admission-controlled scheduler for report datasets.

Per account and (aggregation, entity type) pair, at most
``max_concurrent_reports`` datasets are refreshing at once. Due datasets are
claimed with a conditional update and handed to the worker as tracked
asyncio tasks; a failing task is logged and never affects its siblings.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session
from app.models import ReportDatasetMetadata
from app.services import registry
from app.services.report_worker import ReportWorker
from app.timezones import get_timezone_for_country, local_now
from app.utils import utcnow

logger = logging.getLogger(__name__)

MAX_CONCURRENT_REPORTS = 5
STALE_REFRESHING_AFTER = timedelta(minutes=30)


class ReportScheduler:
    def __init__(
        self,
        worker: ReportWorker,
        session_factory: async_sessionmaker = async_session,
        max_concurrent_reports: int = MAX_CONCURRENT_REPORTS,
        stale_after: timedelta = STALE_REFRESHING_AFTER,
    ):
        self.worker = worker
        self.session_factory = session_factory
        self.max_concurrent_reports = max_concurrent_reports
        self.stale_after = stale_after
        # Running worker tasks and the dataset each one holds
        self._tasks: dict[asyncio.Task, uuid.UUID] = {}

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run_for_account(self, account_id: str, country_code: str, now: Optional[datetime] = None) -> dict:
        """Backfill the account, then claim and dispatch due datasets for every pair."""
        now = now or datetime.now(timezone.utc)
        tz = get_timezone_for_country(country_code)
        dispatched: dict[str, int] = {}

        async with self.session_factory() as db:
            inserted = await registry.backfill(db, account_id, country_code, now)
            await db.commit()

            for aggregation, entity_type in registry.DATASET_PAIRS:
                claimed = await self._admit(db, account_id, aggregation.value, entity_type.value, local_now(tz, now))
                await db.commit()
                for dataset in claimed:
                    self._spawn(dataset.uid)
                dispatched[f"{aggregation.value}/{entity_type.value}"] = len(claimed)

        total = sum(dispatched.values())
        if total:
            logger.info(f"Account {account_id}: dispatched {total} datasets {dispatched}")
        return {"account_id": account_id, "backfilled": inserted, "dispatched": dispatched}

    async def _admit(
        self,
        db: AsyncSession,
        account_id: str,
        aggregation: str,
        entity_type: str,
        now_local: datetime,
    ) -> list[ReportDatasetMetadata]:
        refreshing = await registry.count_refreshing(db, account_id, aggregation, entity_type)
        slots = self.max_concurrent_reports - refreshing
        if slots <= 0:
            logger.debug(f"Account {account_id} {aggregation}/{entity_type}: no slots ({refreshing} refreshing)")
            return []

        due = await registry.select_due(db, account_id, aggregation, entity_type, now_local, limit=slots)
        if not due:
            return []
        claimed = await registry.mark_refreshing(db, [d.uid for d in due], utcnow())
        if len(claimed) < len(due):
            logger.info(
                f"Account {account_id} {aggregation}/{entity_type}: "
                f"{len(due) - len(claimed)} datasets claimed by another scheduler"
            )
        return claimed

    def _spawn(self, uid: uuid.UUID) -> None:
        task = asyncio.create_task(self._run_worker(uid), name=f"report-dataset-{uid}")
        self._tasks[task] = uid
        task.add_done_callback(lambda t: self._tasks.pop(t, None))

    async def _run_worker(self, uid: uuid.UUID) -> None:
        try:
            await self.worker.refresh(uid)
        except Exception:
            logger.exception(f"Report dataset {uid} refresh failed")

    async def run_all_accounts(self) -> list[dict]:
        """
        Scheduler pass over every enabled advertiser account. Each pass first
        releases claims abandoned by a worker that is no longer running.
        """
        try:
            await self.recover_stale()
        except Exception:
            logger.exception("Stale dataset recovery failed")

        async with self.session_factory() as db:
            accounts = [(a.ads_account_id, a.country_code) for a in await registry.list_enabled_accounts(db)]

        results = []
        for account_id, country_code in accounts:
            try:
                results.append(await self.run_for_account(account_id, country_code))
            except Exception as e:
                logger.exception(f"Scheduler run failed for account {account_id}")
                results.append({"account_id": account_id, "error": str(e)})
        return results

    async def recover_stale(self, stale_after: Optional[timedelta] = None) -> int:
        """Release stale claims. Datasets held by this process's own running workers are kept."""
        cutoff = utcnow() - (stale_after or self.stale_after)
        async with self.session_factory() as db:
            released = await registry.recover_stale_refreshing(db, cutoff, exclude=set(self._tasks.values()))
            await db.commit()
        return released

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for in-flight workers. Returns how many were still running at the timeout."""
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return len(pending)

    async def shutdown(self, timeout: float = 60) -> None:
        pending = await self.drain(timeout)
        if pending:
            logger.warning(f"Shutdown: {pending} dataset refreshes still running after {timeout}s, cancelling")
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)


def start_interval_scheduler(report_scheduler: ReportScheduler, minutes: int = 5) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        report_scheduler.run_all_accounts,
        IntervalTrigger(minutes=minutes),
        id="update_report_datasets",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Report dataset scheduler started (every {minutes} min)")
    return scheduler
