"""
Report Datasets Router — inspect dataset lifecycle state, manage the advertiser
accounts the scheduler ingests, and reset a dataset's report handle.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import DatasetBusyError, NotFoundError
from app.models import AdvertiserAccount, AggregationType, DatasetStatus, EntityType
from app.services import registry
from app.timezones import COUNTRY_TIMEZONES
from app.utils import parse_uuid, safe_error_detail

logger = logging.getLogger(__name__)
router = APIRouter()


def _serialize_dataset(d) -> dict:
    return {
        "uid": str(d.uid),
        "account_id": d.account_id,
        "country_code": d.country_code,
        "period_start": d.period_start.isoformat(),
        "aggregation": d.aggregation,
        "entity_type": d.entity_type,
        "status": d.status,
        "refreshing": d.refreshing,
        "refreshing_since": d.refreshing_since.isoformat() if d.refreshing_since else None,
        "report_id": d.report_id,
        "last_processed_report_id": d.last_processed_report_id,
        "last_report_created_at": d.last_report_created_at.isoformat() if d.last_report_created_at else None,
        "next_refresh_at": d.next_refresh_at.isoformat() if d.next_refresh_at else None,
        "error": d.error,
        "rows_processed": d.rows_processed,
        "updated_at": d.updated_at.isoformat() if d.updated_at else None,
    }


def _serialize_account(a: AdvertiserAccount) -> dict:
    return {
        "id": str(a.id),
        "ads_account_id": a.ads_account_id,
        "account_name": a.account_name,
        "country_code": a.country_code,
        "profile_id": a.profile_id,
        "enabled": a.enabled,
    }


# ── Datasets ──────────────────────────────────────────────────────────

@router.get("/datasets")
async def list_datasets(
    account_id: Optional[str] = Query(None),
    aggregation: Optional[AggregationType] = Query(None),
    entity_type: Optional[EntityType] = Query(None),
    status: Optional[DatasetStatus] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List report datasets, newest periods first."""
    rows = await registry.list_datasets(
        db,
        account_id=account_id,
        aggregation=aggregation.value if aggregation else None,
        entity_type=entity_type.value if entity_type else None,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return [_serialize_dataset(d) for d in rows]


@router.get("/datasets/{uid}")
async def get_dataset(uid: str, db: AsyncSession = Depends(get_db)):
    try:
        dataset = await registry.get_dataset(db, parse_uuid(uid, "uid"))
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    return _serialize_dataset(dataset)


@router.post("/datasets/{uid}/reset")
async def reset_dataset(uid: str, db: AsyncSession = Depends(get_db)):
    """
    Drop the dataset's in-flight report (if any) and make the current offset
    requestable again. Refused while a worker holds the dataset.
    """
    try:
        dataset = await registry.clear_report_handle(db, parse_uuid(uid, "uid"), require_idle=True)
        logger.info(f"Dataset {uid} reset by operator")
        return _serialize_dataset(dataset)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except DatasetBusyError:
        raise HTTPException(409, "Dataset is refreshing; try again once the worker finishes")
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e))


# ── Advertiser accounts ───────────────────────────────────────────────

class AdvertiserAccountCreate(BaseModel):
    ads_account_id: str
    country_code: str
    account_name: Optional[str] = None
    profile_id: Optional[str] = None
    enabled: bool = True


class AdvertiserAccountUpdate(BaseModel):
    account_name: Optional[str] = None
    profile_id: Optional[str] = None
    enabled: Optional[bool] = None


@router.get("/accounts")
async def list_accounts(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(AdvertiserAccount).order_by(AdvertiserAccount.ads_account_id))
    return [_serialize_account(a) for a in result.scalars().all()]


@router.post("/accounts")
async def create_account(payload: AdvertiserAccountCreate, db: AsyncSession = Depends(get_db)):
    country_code = payload.country_code.upper()
    if country_code not in COUNTRY_TIMEZONES:
        logger.warning(f"Unknown country {country_code} for {payload.ads_account_id}; reports will be bucketed in UTC")
    existing = await db.execute(
        select(AdvertiserAccount).where(AdvertiserAccount.ads_account_id == payload.ads_account_id)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(409, f"Advertiser account {payload.ads_account_id} already exists")
    account = AdvertiserAccount(
        ads_account_id=payload.ads_account_id,
        country_code=country_code,
        account_name=payload.account_name,
        profile_id=payload.profile_id,
        enabled=payload.enabled,
    )
    db.add(account)
    await db.flush()
    return _serialize_account(account)


@router.patch("/accounts/{ads_account_id}")
async def update_account(ads_account_id: str, payload: AdvertiserAccountUpdate, db: AsyncSession = Depends(get_db)):
    try:
        account = await registry.get_account(db, ads_account_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(account, field, value)
    await db.flush()
    return _serialize_account(account)


# ── Throttling ────────────────────────────────────────────────────────

@router.get("/throttle")
async def throttle_status(request: Request):
    """Current Ads API rate-limiter state."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise HTTPException(503, "Rate limiter is not running")
    return limiter.snapshot()
