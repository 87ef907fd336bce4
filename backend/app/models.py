"""
Amazon Ads Report Ingestion — Database Models
Report dataset lifecycle, time-bucketed performance aggregates and the
advertiser/target tables used for entity resolution.
"""

import uuid
import enum
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    String, Text, Integer, BigInteger, Boolean, DateTime, Numeric,
    Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID
from app.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class AggregationType(str, enum.Enum):
    HOURLY = "hourly"
    DAILY = "daily"


class EntityType(str, enum.Enum):
    TARGET = "target"
    PRODUCT = "product"


class DatasetStatus(str, enum.Enum):
    MISSING = "missing"
    FETCHING = "fetching"
    PARSING = "parsing"
    COMPLETED = "completed"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  ADVERTISER ACCOUNTS & TARGETS
# ══════════════════════════════════════════════════════════════════════

class AdvertiserAccount(Base):
    """Advertiser accounts the scheduler ingests reports for."""
    __tablename__ = "advertiser_accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ads_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=True)
    country_code: Mapped[str] = mapped_column(String(8), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("ads_account_id", name="uq_advertiser_accounts_ads_account_id"),
        Index("ix_advertiser_accounts_enabled", "enabled"),
    )


class Target(Base):
    """Sponsored Products targets, populated by the entity sync. Used to resolve report rows."""
    __tablename__ = "targets"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    ad_group_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_product: Mapped[str] = mapped_column(String(64), nullable=True)
    state: Mapped[str] = mapped_column(String(50), nullable=True)
    negative: Mapped[bool] = mapped_column(Boolean, default=False)
    target_match_type: Mapped[str] = mapped_column(String(64), nullable=True)  # EXACT, PRODUCT_SIMILAR, SEARCH_CLOSE_MATCH...
    target_asin: Mapped[str] = mapped_column(String(32), nullable=True)
    target_keyword: Mapped[str] = mapped_column(Text, nullable=True)
    target_type: Mapped[str] = mapped_column(String(64), nullable=True)  # KEYWORD, PRODUCT, AUTO
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("target_id", name="uq_targets_target_id"),
        Index("ix_targets_ad_group_id", "ad_group_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  REPORT DATASETS
# ══════════════════════════════════════════════════════════════════════

class ReportDatasetMetadata(Base):
    """
    One row per (account, period, aggregation, entity type).

    period_start, last_report_created_at and next_refresh_at are naive local
    wall times in the account's timezone. refreshing_since, created_at and
    updated_at are naive UTC.
    """
    __tablename__ = "report_dataset_metadata"

    uid: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    country_code: Mapped[str] = mapped_column(String(8), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    aggregation: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DatasetStatus.MISSING.value, nullable=False)
    refreshing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refreshing_since: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    report_id: Mapped[str] = mapped_column(String(255), nullable=True)
    last_processed_report_id: Mapped[str] = mapped_column(String(255), nullable=True)
    last_report_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    next_refresh_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    error: Mapped[str] = mapped_column(Text, nullable=True)
    rows_processed: Mapped[int] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "period_start", "aggregation", "entity_type",
            name="uq_report_dataset_key",
        ),
        Index("ix_report_dataset_refreshing", "account_id", "aggregation", "entity_type", "refreshing"),
        Index("ix_report_dataset_next_refresh_at", "next_refresh_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  PERFORMANCE AGGREGATES
# ══════════════════════════════════════════════════════════════════════

class PerformanceHourly(Base):
    """Hourly Sponsored Products metrics bucketed at the UTC instant of the local hour."""
    __tablename__ = "performance_hourly"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    bucket_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # UTC
    bucket_date: Mapped[str] = mapped_column(String(10), nullable=False)  # local YYYY-MM-DD
    bucket_hour: Mapped[int] = mapped_column(Integer, nullable=False)  # local 0-23
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_group_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_match_type: Mapped[str] = mapped_column(String(64), nullable=True)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    spend: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    sales: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "bucket_start", "ad_id", "entity_type", "entity_id",
            name="uq_performance_hourly_bucket",
        ),
        Index("ix_performance_hourly_account_date", "account_id", "bucket_date"),
    )


class PerformanceDaily(Base):
    """Daily Sponsored Products metrics bucketed at local midnight."""
    __tablename__ = "performance_daily"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    bucket_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # UTC instant of local midnight
    bucket_date: Mapped[str] = mapped_column(String(10), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_group_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_match_type: Mapped[str] = mapped_column(String(64), nullable=True)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    spend: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    sales: Mapped[Decimal] = mapped_column(Numeric(14, 4), default=0)
    orders: Mapped[int] = mapped_column(Integer, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "bucket_date", "ad_id", "entity_type", "entity_id",
            name="uq_performance_daily_bucket",
        ),
        Index("ix_performance_daily_account_date", "account_id", "bucket_date"),
    )
