"""
Tests for the operator endpoints (datasets, throttle).
"""

import pytest
from unittest.mock import AsyncMock, patch
from httpx import AsyncClient, ASGITransport

from app.auth import require_auth
from app.database import get_db
from app.errors import DatasetBusyError, NotFoundError
from app.rate_limiter import AdaptiveRateLimiter
from app.services import registry
from conftest import build_dataset


@pytest.fixture
def api():
    from app.main import app

    async def fake_db():
        yield AsyncMock()

    app.dependency_overrides[require_auth] = lambda: "test"
    app.dependency_overrides[get_db] = fake_db
    yield app
    app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_get_dataset(api):
    dataset = build_dataset(report_id="rep-1", status="fetching")
    with patch.object(registry, "get_dataset", AsyncMock(return_value=dataset)):
        async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
            response = await client.get(f"/api/datasets/{dataset.uid}")
    assert response.status_code == 200
    data = response.json()
    assert data["uid"] == str(dataset.uid)
    assert data["report_id"] == "rep-1"
    assert data["period_start"] == "2025-01-08T00:00:00"


@pytest.mark.anyio
async def test_get_dataset_not_found(api):
    uid = build_dataset().uid
    with patch.object(registry, "get_dataset", AsyncMock(side_effect=NotFoundError("gone"))):
        async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
            response = await client.get(f"/api/datasets/{uid}")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_invalid_uid_is_rejected(api):
    async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
        response = await client.get("/api/datasets/not-a-uuid")
    assert response.status_code == 400


@pytest.mark.anyio
async def test_reset_refused_while_refreshing(api):
    dataset = build_dataset(refreshing=True, report_id="rep-1")
    busy = AsyncMock(side_effect=DatasetBusyError("refreshing"))
    with patch.object(registry, "clear_report_handle", busy):
        async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
            response = await client.post(f"/api/datasets/{dataset.uid}/reset")
    assert response.status_code == 409
    assert busy.await_args.kwargs["require_idle"] is True


@pytest.mark.anyio
async def test_reset_of_unknown_dataset(api):
    uid = build_dataset().uid
    with patch.object(registry, "clear_report_handle", AsyncMock(side_effect=NotFoundError("gone"))):
        async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
            response = await client.post(f"/api/datasets/{uid}/reset")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_reset_clears_report_handle(api):
    dataset = build_dataset(refreshing=False, report_id="rep-1")
    cleared = build_dataset(uid=dataset.uid, refreshing=False, report_id=None, status="missing")
    with patch.object(registry, "clear_report_handle", AsyncMock(return_value=cleared)) as clear:
        async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
            response = await client.post(f"/api/datasets/{dataset.uid}/reset")
    assert response.status_code == 200
    assert response.json()["report_id"] is None
    assert response.json()["status"] == "missing"
    clear.assert_awaited_once()
    assert clear.await_args.args[1] == dataset.uid


@pytest.mark.anyio
async def test_throttle_snapshot(api):
    api.state.rate_limiter = AdaptiveRateLimiter(max_concurrent=2, min_interval=0.5)
    try:
        async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as client:
            response = await client.get("/api/throttle")
    finally:
        del api.state.rate_limiter
    assert response.status_code == 200
    data = response.json()
    assert data["max_concurrent"] == 2
    assert data["min_interval_seconds"] == 0.5
    assert data["reset_pending"] is False
