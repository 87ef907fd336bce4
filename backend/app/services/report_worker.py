"""
Per-dataset worker. Runs one refresh for a dataset the scheduler has claimed:
ask the state machine what to do, do it, and always release the claim.
"""

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.ads_client import AmazonAdsClient
from app.database import async_session
from app.errors import ExternalApiError, IngestionError, NotFoundError
from app.models import AggregationType, DatasetStatus, ReportDatasetMetadata
from app.report_configs import get_report_config
from app.services import registry
from app.services.eligibility import DEFAULT_POLL_INTERVAL, next_refresh_time
from app.services.report_parser import ReportParser
from app.services.state_machine import DEFAULT_HANDLE_TIMEOUT, ActionDecision, NextAction, get_next_action
from app.timezones import get_timezone_for_country, local_now

logger = logging.getLogger(__name__)


def report_date_range(period_start: datetime, aggregation: str) -> tuple[str, str]:
    """
    Dates sent with the report request. Daily: the period's date. Hourly: the
    period's date through the date of the following hour (crosses midnight at 23:00).
    """
    start: date = period_start.date()
    if AggregationType(aggregation) is AggregationType.HOURLY:
        end = (period_start + timedelta(hours=1)).date()
    else:
        end = start
    return start.isoformat(), end.isoformat()


class ReportWorker:
    def __init__(
        self,
        client: AmazonAdsClient,
        parser: ReportParser,
        session_factory: async_sessionmaker = async_session,
        poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
        handle_timeout: timedelta = DEFAULT_HANDLE_TIMEOUT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.parser = parser
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.handle_timeout = handle_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def refresh(self, uid: uuid.UUID) -> NextAction:
        """
        Advance one claimed dataset. Errors while processing are recorded on the
        dataset and re-raised; refreshing is cleared on every path.
        """
        async with self.session_factory() as db:
            dataset = await registry.get_dataset(db, uid)
            tz = get_timezone_for_country(dataset.country_code)
            now = self._clock()
            # Until something decides otherwise, keep the current schedule
            next_refresh_at = dataset.next_refresh_at
            action = NextAction.NONE
            try:
                profile_id = await self._profile_id(db, dataset.account_id)
                decision = await get_next_action(
                    dataset, self.client, now, tz,
                    profile_id=profile_id, handle_timeout=self.handle_timeout,
                )
                action = decision.action
                logger.info(
                    f"Dataset {uid} ({dataset.account_id} {dataset.aggregation}/{dataset.entity_type} "
                    f"{dataset.period_start.isoformat()}): {action.value}"
                )
                next_refresh_at = await self._run(db, dataset, decision, now, tz)
            except Exception as e:
                await db.rollback()
                next_refresh_at = local_now(tz, now + self.poll_interval)
                if isinstance(e, ExternalApiError) and e.is_rate_limited:
                    logger.warning(f"Dataset {uid} rate limited, will retry: {e}")
                    await registry.record_error(db, uid, str(e))
                    await db.commit()
                    return action
                logger.error(f"Dataset {uid} refresh failed: {e}")
                await registry.mark_failed(db, uid, str(e))
                await db.commit()
                raise
            finally:
                await registry.finish_refresh(db, uid, next_refresh_at)
                await db.commit()
            return action

    async def _profile_id(self, db: AsyncSession, account_id: str) -> Optional[str]:
        try:
            account = await registry.get_account(db, account_id)
        except NotFoundError:
            return None
        return account.profile_id

    async def _run(self, db: AsyncSession, dataset: ReportDatasetMetadata, decision: ActionDecision, now: datetime, tz) -> Optional[datetime]:
        """Carry out the decision and return the next refresh time (local naive)."""
        if decision.action is NextAction.CREATE:
            return await self._create_report(db, dataset, now, tz)
        if decision.action is NextAction.PROCESS:
            return await self._process_report(db, dataset, decision, now, tz)
        if decision.action is NextAction.RETRY:
            logger.warning(f"Dataset {dataset.uid}: {decision.reason}")
            row = await registry.clear_report_handle(db, dataset.uid, reason=decision.reason, now=now)
            return row.next_refresh_at
        return next_refresh_time(
            dataset.period_start, dataset.aggregation, dataset.last_report_created_at, now, tz,
            report_id=dataset.report_id, poll_interval=self.poll_interval,
        )

    async def _create_report(self, db: AsyncSession, dataset: ReportDatasetMetadata, now: datetime, tz) -> Optional[datetime]:
        config = get_report_config(dataset.aggregation, dataset.entity_type)
        start_date, end_date = report_date_range(dataset.period_start, dataset.aggregation)
        try:
            report_id = await self.client.create_report(
                dataset.account_id, start_date, end_date, list(config.fields), config.format,
            )
        except IngestionError as e:
            # Status stays as it was; the dataset is picked up again at its refresh time
            logger.warning(f"Create report failed for dataset {dataset.uid}: {e}")
            await registry.record_error(db, dataset.uid, f"Create report failed: {e}")
            return next_refresh_time(
                dataset.period_start, dataset.aggregation, dataset.last_report_created_at, now, tz,
                poll_interval=self.poll_interval,
            )

        next_refresh_at = local_now(tz, now + self.poll_interval)
        await registry.record_report_created(db, dataset.uid, report_id, local_now(tz, now), next_refresh_at)
        await db.commit()
        return next_refresh_at

    async def _process_report(
        self,
        db: AsyncSession,
        dataset: ReportDatasetMetadata,
        decision: ActionDecision,
        now: datetime,
        tz,
    ) -> Optional[datetime]:
        report_id = dataset.report_id
        await registry.set_status(db, dataset.uid, DatasetStatus.PARSING.value)
        await db.commit()

        rows = await self.parser.parse(db, dataset, decision.report_status)
        updated = await registry.mark_processed(db, dataset.uid, report_id, rows)
        await db.commit()
        logger.info(f"Dataset {dataset.uid}: report {report_id} processed, {rows} rows")
        return next_refresh_time(
            updated.period_start, updated.aggregation, updated.last_report_created_at, now, tz,
            poll_interval=self.poll_interval,
        )
