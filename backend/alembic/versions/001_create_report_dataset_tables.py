"""Create report dataset, performance aggregate, advertiser account and target tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _performance_columns() -> list:
    return [
        sa.Column("campaign_id", sa.String(255), nullable=False),
        sa.Column("ad_group_id", sa.String(255), nullable=False),
        sa.Column("ad_id", sa.String(255), nullable=False),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("target_match_type", sa.String(64), nullable=True),
        sa.Column("impressions", sa.BigInteger(), nullable=True),
        sa.Column("clicks", sa.Integer(), nullable=True),
        sa.Column("spend", sa.Numeric(14, 4), nullable=True),
        sa.Column("sales", sa.Numeric(14, 4), nullable=True),
        sa.Column("orders", sa.Integer(), nullable=True),
        sa.Column("synced_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "advertiser_accounts" not in existing:
        op.create_table(
            "advertiser_accounts",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("ads_account_id", sa.String(255), nullable=False),
            sa.Column("account_name", sa.String(255), nullable=True),
            sa.Column("country_code", sa.String(8), nullable=False),
            sa.Column("profile_id", sa.String(255), nullable=True),
            sa.Column("enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("ads_account_id", name="uq_advertiser_accounts_ads_account_id"),
        )
        op.create_index("ix_advertiser_accounts_enabled", "advertiser_accounts", ["enabled"])

    if "targets" not in existing:
        op.create_table(
            "targets",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("target_id", sa.String(255), nullable=False),
            sa.Column("campaign_id", sa.String(255), nullable=True),
            sa.Column("ad_group_id", sa.String(255), nullable=False),
            sa.Column("ad_product", sa.String(64), nullable=True),
            sa.Column("state", sa.String(50), nullable=True),
            sa.Column("negative", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("target_match_type", sa.String(64), nullable=True),
            sa.Column("target_asin", sa.String(32), nullable=True),
            sa.Column("target_keyword", sa.Text(), nullable=True),
            sa.Column("target_type", sa.String(64), nullable=True),
            sa.Column("synced_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("target_id", name="uq_targets_target_id"),
        )
        op.create_index("ix_targets_ad_group_id", "targets", ["ad_group_id"])

    if "report_dataset_metadata" not in existing:
        op.create_table(
            "report_dataset_metadata",
            sa.Column("uid", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("account_id", sa.String(255), nullable=False),
            sa.Column("country_code", sa.String(8), nullable=False),
            sa.Column("period_start", sa.DateTime(), nullable=False),
            sa.Column("aggregation", sa.String(16), nullable=False),
            sa.Column("entity_type", sa.String(16), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="missing"),
            sa.Column("refreshing", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("refreshing_since", sa.DateTime(), nullable=True),
            sa.Column("report_id", sa.String(255), nullable=True),
            sa.Column("last_processed_report_id", sa.String(255), nullable=True),
            sa.Column("last_report_created_at", sa.DateTime(), nullable=True),
            sa.Column("next_refresh_at", sa.DateTime(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("rows_processed", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("uid"),
            sa.UniqueConstraint(
                "account_id", "period_start", "aggregation", "entity_type",
                name="uq_report_dataset_key",
            ),
        )
        op.create_index(
            "ix_report_dataset_refreshing", "report_dataset_metadata",
            ["account_id", "aggregation", "entity_type", "refreshing"],
        )
        op.create_index("ix_report_dataset_next_refresh_at", "report_dataset_metadata", ["next_refresh_at"])

    if "performance_hourly" not in existing:
        op.create_table(
            "performance_hourly",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("account_id", sa.String(255), nullable=False),
            sa.Column("bucket_start", sa.DateTime(), nullable=False),
            sa.Column("bucket_date", sa.String(10), nullable=False),
            sa.Column("bucket_hour", sa.Integer(), nullable=False),
            *_performance_columns(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "account_id", "bucket_start", "ad_id", "entity_type", "entity_id",
                name="uq_performance_hourly_bucket",
            ),
        )
        op.create_index("ix_performance_hourly_account_date", "performance_hourly", ["account_id", "bucket_date"])

    if "performance_daily" not in existing:
        op.create_table(
            "performance_daily",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("account_id", sa.String(255), nullable=False),
            sa.Column("bucket_start", sa.DateTime(), nullable=False),
            sa.Column("bucket_date", sa.String(10), nullable=False),
            *_performance_columns(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "account_id", "bucket_date", "ad_id", "entity_type", "entity_id",
                name="uq_performance_daily_bucket",
            ),
        )
        op.create_index("ix_performance_daily_account_date", "performance_daily", ["account_id", "bucket_date"])


def downgrade() -> None:
    op.drop_table("performance_daily")
    op.drop_table("performance_hourly")
    op.drop_table("report_dataset_metadata")
    op.drop_table("targets")
    op.drop_table("advertiser_accounts")
