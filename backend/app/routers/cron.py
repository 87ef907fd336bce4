"""
Cron / Scheduled Jobs — endpoints for an external cron (e.g. Upstash QStash).

These run the same scheduler pass as the in-process interval job, for
deployments that disable SCHEDULER_ENABLED and trigger from outside.

  POST /api/cron/report-datasets
  Header: X-Cron-Secret: <CRON_SECRET>
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from app.auth import require_cron_secret
from app.database import async_session
from app.errors import NotFoundError
from app.services import registry
from app.services.scheduler import ReportScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def get_report_scheduler(request: Request) -> ReportScheduler:
    scheduler = getattr(request.app.state, "report_scheduler", None)
    if scheduler is None:
        raise HTTPException(503, "Report scheduler is not running")
    return scheduler


@router.post("/report-datasets")
async def cron_report_datasets(
    _: None = Depends(require_cron_secret),
    scheduler: ReportScheduler = Depends(get_report_scheduler),
):
    """Scheduler pass over every enabled advertiser account."""
    try:
        results = await scheduler.run_all_accounts()
        logger.info(f"Cron report datasets completed for {len(results)} accounts")
        return {"status": "ok", "accounts": results}
    except Exception as e:
        logger.exception("Cron report datasets failed")
        raise HTTPException(500, str(e))


@router.post("/report-datasets/{account_id}")
async def cron_report_datasets_for_account(
    account_id: str,
    _: None = Depends(require_cron_secret),
    scheduler: ReportScheduler = Depends(get_report_scheduler),
):
    """Scheduler pass for a single advertiser account."""
    try:
        async with async_session() as db:
            account = await registry.get_account(db, account_id)
            country_code = account.country_code
        result = await scheduler.run_for_account(account_id, country_code)
        return {"status": "ok", "result": result}
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except Exception as e:
        logger.exception(f"Cron report datasets failed for {account_id}")
        raise HTTPException(500, str(e))


@router.post("/recover-stale")
async def cron_recover_stale(
    _: None = Depends(require_cron_secret),
    scheduler: ReportScheduler = Depends(get_report_scheduler),
):
    """Release datasets left refreshing by a dead worker."""
    try:
        released = await scheduler.recover_stale()
        return {"status": "ok", "released": released}
    except Exception as e:
        logger.exception("Cron stale recovery failed")
        raise HTTPException(500, str(e))
