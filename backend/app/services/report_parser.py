"""
Report Parser — turns a completed report into performance aggregate rows.

Download the GZIP_JSON part, validate every row against the dataset's schema,
resolve each row to its target or product, then upsert in batches. Nothing is
written unless every row validated and resolved.
"""

import gzip
import json
import logging
import uuid
from decimal import Decimal
from typing import Any

from pydantic import ValidationError
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.ads_client import AmazonAdsClient, ReportStatus
from app.errors import NoDownloadUrlError, ReportValidationError, ResolutionError
from app.models import AggregationType, EntityType, PerformanceDaily, PerformanceHourly, ReportDatasetMetadata
from app.report_configs import ReportConfig, ReportRow, get_report_config
from app.services.bucketing import parse_daily_timestamp, parse_hourly_timestamp
from app.services.target_lookup import TargetCache
from app.timezones import get_timezone_for_country
from app.utils import utcnow

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 1000

MEASURE_COLUMNS = (
    "campaign_id", "ad_group_id", "target_match_type",
    "impressions", "clicks", "spend", "sales", "orders", "synced_at",
)


def decode_report(payload: bytes, config: ReportConfig) -> list[ReportRow]:
    """Gunzip, parse JSON and validate rows. Raises ReportValidationError."""
    try:
        text = gzip.decompress(payload).decode("utf-8")
    except (OSError, EOFError, UnicodeDecodeError) as e:
        raise ReportValidationError(f"Report payload is not valid gzip: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ReportValidationError(f"Report payload is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise ReportValidationError(f"Expected a JSON array of rows, got {type(data).__name__}")
    try:
        return config.validate_rows(data)
    except ValidationError as e:
        raise ReportValidationError(
            f"{config.aggregation.value}/{config.entity_type.value} report failed validation: "
            f"{e.error_count()} errors, first: {e.errors()[0]['loc']} {e.errors()[0]['msg']}"
        ) from e


def _measures(row: ReportRow) -> dict[str, Any]:
    return {
        "impressions": row.impressions,
        "clicks": row.clicks,
        "spend": Decimal(str(row.total_cost)),
        "sales": Decimal(str(row.sales)),
        "orders": row.purchases,
    }


def _bucket_values(row: ReportRow, aggregation: AggregationType, tz) -> dict[str, Any]:
    if aggregation is AggregationType.HOURLY:
        bucket = parse_hourly_timestamp(row.hour_value, tz)
        return {
            "bucket_start": bucket.bucket_start,
            "bucket_date": bucket.bucket_date,
            "bucket_hour": bucket.bucket_hour,
        }
    bucket = parse_daily_timestamp(row.date_value, tz)
    return {"bucket_start": bucket.bucket_start, "bucket_date": bucket.bucket_date}


class ReportParser:
    """Parses completed reports into performance_hourly / performance_daily."""

    def __init__(self, client: AmazonAdsClient, batch_size: int = UPSERT_BATCH_SIZE):
        self.client = client
        self.batch_size = batch_size

    async def parse(self, db: AsyncSession, dataset: ReportDatasetMetadata, report_status: ReportStatus) -> int:
        """Returns the number of aggregate rows written."""
        url = report_status.download_url
        if not url:
            raise NoDownloadUrlError(f"Report {report_status.report_id} is COMPLETED but has no download URL")

        config = get_report_config(dataset.aggregation, dataset.entity_type)
        logger.info(f"Downloading report {report_status.report_id} for dataset {dataset.uid}")
        payload = await self.client.download_report(url)
        rows = decode_report(payload, config)
        logger.info(f"Parsed {len(rows)} rows from report {report_status.report_id}")

        values = await self.build_values(db, dataset, config, rows)
        await self.upsert(db, config.aggregation, values)
        return len(values)

    async def build_values(
        self,
        db: AsyncSession,
        dataset: ReportDatasetMetadata,
        config: ReportConfig,
        rows: list[ReportRow],
    ) -> list[dict[str, Any]]:
        tz = get_timezone_for_country(dataset.country_code)
        synced_at = utcnow()

        cache = None
        if config.entity_type is EntityType.TARGET:
            cache = await TargetCache.build(db, {row.ad_group_id for row in rows})

        values = []
        for row in rows:
            if cache is not None:
                resolved = cache.resolve(row)
                entity_id, match_type = resolved.entity_id, resolved.match_type
            else:
                entity_id = row.advertised_product_id
                match_type = None
                if not entity_id:
                    raise ResolutionError("Product report row has no advertisedProduct.id", row=row.model_dump(by_alias=True))

            try:
                bucket_values = _bucket_values(row, config.aggregation, tz)
            except ValueError as e:
                raise ReportValidationError(str(e)) from e

            values.append({
                "id": uuid.uuid4(),
                "account_id": dataset.account_id,
                **bucket_values,
                "campaign_id": row.campaign_id,
                "ad_group_id": row.ad_group_id,
                "ad_id": row.ad_id,
                "entity_type": config.entity_type.value,
                "entity_id": entity_id,
                "target_match_type": match_type,
                **_measures(row),
                "synced_at": synced_at,
            })
        return _dedupe(values, config.aggregation)

    async def upsert(self, db: AsyncSession, aggregation: AggregationType, values: list[dict[str, Any]]) -> None:
        if aggregation is AggregationType.HOURLY:
            table, constraint = PerformanceHourly, "uq_performance_hourly_bucket"
        else:
            table, constraint = PerformanceDaily, "uq_performance_daily_bucket"

        for i in range(0, len(values), self.batch_size):
            batch = values[i:i + self.batch_size]
            stmt = insert(table).values(batch)
            stmt = stmt.on_conflict_do_update(
                constraint=constraint,
                set_={col: getattr(stmt.excluded, col) for col in MEASURE_COLUMNS},
            )
            await db.execute(stmt)
            logger.info(f"Upserted {len(batch)} rows into {table.__tablename__}")


def _dedupe(values: list[dict[str, Any]], aggregation: AggregationType) -> list[dict[str, Any]]:
    """
    A single INSERT ... ON CONFLICT cannot touch the same key twice. Rows that
    share a bucket key (e.g. two search terms on one keyword) are summed.
    """
    date_col = "bucket_start" if aggregation is AggregationType.HOURLY else "bucket_date"
    merged: dict[tuple, dict[str, Any]] = {}
    for v in values:
        key = (v["account_id"], v[date_col], v["ad_id"], v["entity_type"], v["entity_id"])
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(v)
            continue
        for col in ("impressions", "clicks", "spend", "sales", "orders"):
            existing[col] += v[col]
    return list(merged.values())
