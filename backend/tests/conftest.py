"""
Shared fixtures: anyio backend, a fake session factory and dataset rows.
"""

import uuid
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models import DatasetStatus, ReportDatasetMetadata


@pytest.fixture
def anyio_backend():
    return "asyncio"


def fake_session() -> AsyncMock:
    """An AsyncSession stand-in with a real ``info`` dict and a sync ``add``."""
    session = AsyncMock()
    session.add = MagicMock()
    session.info = {}
    return session


class FakeSessionFactory:
    """Stands in for async_sessionmaker: every call yields the same fake session."""

    def __init__(self):
        self.session = fake_session()

    def __call__(self):
        return self

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


def build_dataset(**overrides) -> ReportDatasetMetadata:
    values = dict(
        uid=uuid.uuid4(),
        account_id="amzn1.ads-account.g.test",
        country_code="US",
        period_start=datetime(2025, 1, 8),
        aggregation="daily",
        entity_type="target",
        status=DatasetStatus.MISSING.value,
        refreshing=True,
        refreshing_since=None,
        report_id=None,
        last_processed_report_id=None,
        last_report_created_at=None,
        next_refresh_at=datetime(2025, 1, 9),
        error=None,
        rows_processed=None,
    )
    values.update(overrides)
    return ReportDatasetMetadata(**values)


@pytest.fixture
def make_dataset():
    return build_dataset


def result_with_rows(rows):
    """A Result-like mock whose scalars().all() / scalar_one_or_none() return ``rows``."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(rows)
    result.scalar_one_or_none.return_value = rows[0] if rows else None
    result.all.return_value = list(rows)
    return result
