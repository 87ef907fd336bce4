"""
Tests for the per-dataset worker. The registry is mocked; the state machine
and eligibility calculator run for real.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, DEFAULT, patch

import pytest

from app.ads_client import ReportStatus
from app.errors import ExternalApiError, NotFoundError, ReportValidationError
from app.report_configs import get_report_config
from app.services import registry
from app.services.report_worker import ReportWorker, report_date_range
from app.services.state_machine import NextAction
from conftest import build_dataset

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)  # 04:00 in Los Angeles
POLL_AGAIN = datetime(2025, 1, 10, 4, 5)


def _patched_registry():
    return patch.multiple(
        registry,
        new_callable=AsyncMock,
        get_dataset=DEFAULT,
        get_account=DEFAULT,
        finish_refresh=DEFAULT,
        record_error=DEFAULT,
        record_report_created=DEFAULT,
        set_status=DEFAULT,
        mark_processed=DEFAULT,
        mark_failed=DEFAULT,
        clear_report_handle=DEFAULT,
    )


def _worker(session_factory, client=None, parser=None):
    return ReportWorker(client or AsyncMock(), parser or AsyncMock(), session_factory=session_factory, clock=lambda: NOW)


def _in_flight_dataset():
    return build_dataset(
        report_id="rep-1",
        status="fetching",
        last_report_created_at=datetime(2025, 1, 10, 3, 0),
    )


def test_report_date_range():
    assert report_date_range(datetime(2025, 1, 8), "daily") == ("2025-01-08", "2025-01-08")
    assert report_date_range(datetime(2025, 1, 8, 10), "hourly") == ("2025-01-08", "2025-01-08")
    assert report_date_range(datetime(2025, 1, 8, 23), "hourly") == ("2025-01-08", "2025-01-09")


@pytest.mark.anyio
async def test_eligible_dataset_requests_report(session_factory):
    dataset = build_dataset(period_start=datetime(2025, 1, 8))
    client = AsyncMock()
    client.create_report.return_value = "rep-new"
    db = session_factory.session

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].side_effect = NotFoundError("no account row")
        action = await _worker(session_factory, client).refresh(dataset.uid)

    assert action is NextAction.CREATE
    client.create_report.assert_awaited_once_with(
        dataset.account_id, "2025-01-08", "2025-01-08",
        list(get_report_config("daily", "target").fields), "GZIP_JSON",
    )
    reg["record_report_created"].assert_awaited_once_with(
        db, dataset.uid, "rep-new", datetime(2025, 1, 10, 4, 0), POLL_AGAIN,
    )
    reg["finish_refresh"].assert_awaited_once_with(db, dataset.uid, POLL_AGAIN)


@pytest.mark.anyio
async def test_create_failure_keeps_status_and_records_error(session_factory):
    dataset = build_dataset(period_start=datetime(2025, 1, 8))
    client = AsyncMock()
    client.create_report.side_effect = ExternalApiError("POST failed: 500", status_code=500)

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].side_effect = NotFoundError("no account row")
        action = await _worker(session_factory, client).refresh(dataset.uid)

    assert action is NextAction.CREATE
    message = reg["record_error"].await_args.args[2]
    assert message.startswith("Create report failed")
    reg["set_status"].assert_not_awaited()
    reg["mark_failed"].assert_not_awaited()
    reg["finish_refresh"].assert_awaited_once()


@pytest.mark.anyio
async def test_completed_report_is_parsed(session_factory):
    dataset = _in_flight_dataset()
    client = AsyncMock()
    client.retrieve_report.return_value = ReportStatus("rep-1", "COMPLETED", ["https://x/part"])
    parser = AsyncMock()
    parser.parse.return_value = 42
    db = session_factory.session

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].return_value = AsyncMock(profile_id="987")
        reg["mark_processed"].return_value = build_dataset(
            period_start=dataset.period_start, last_report_created_at=dataset.last_report_created_at,
        )
        action = await _worker(session_factory, client, parser).refresh(dataset.uid)

    assert action is NextAction.PROCESS
    client.retrieve_report.assert_awaited_once_with("rep-1", profile_id="987")
    reg["set_status"].assert_awaited_once_with(db, dataset.uid, "parsing")
    reg["mark_processed"].assert_awaited_once_with(db, dataset.uid, "rep-1", 42)
    # 24h offset captured at age 51h; next is the 72h offset
    reg["finish_refresh"].assert_awaited_once_with(db, dataset.uid, datetime(2025, 1, 11, 0, 0))


@pytest.mark.anyio
async def test_processing_failure_marks_failed_and_reraises(session_factory):
    dataset = _in_flight_dataset()
    client = AsyncMock()
    client.retrieve_report.return_value = ReportStatus("rep-1", "COMPLETED", ["https://x/part"])
    parser = AsyncMock()
    parser.parse.side_effect = ReportValidationError("bad report")
    db = session_factory.session

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].side_effect = NotFoundError("no account row")
        with pytest.raises(ReportValidationError):
            await _worker(session_factory, client, parser).refresh(dataset.uid)

    db.rollback.assert_awaited()
    reg["mark_failed"].assert_awaited_once_with(db, dataset.uid, "bad report")
    reg["mark_processed"].assert_not_awaited()
    reg["finish_refresh"].assert_awaited_once_with(db, dataset.uid, POLL_AGAIN)


@pytest.mark.anyio
async def test_failed_report_is_retried(session_factory):
    dataset = _in_flight_dataset()
    client = AsyncMock()
    client.retrieve_report.return_value = ReportStatus("rep-1", "FAILED", failure_reason="Internal error")

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].side_effect = NotFoundError("no account row")
        reg["clear_report_handle"].return_value = build_dataset(next_refresh_at=datetime(2025, 1, 9))
        action = await _worker(session_factory, client).refresh(dataset.uid)

    assert action is NextAction.RETRY
    assert "FAILED" in reg["clear_report_handle"].await_args.kwargs["reason"]
    reg["finish_refresh"].assert_awaited_once_with(session_factory.session, dataset.uid, datetime(2025, 1, 9))


@pytest.mark.anyio
async def test_pending_report_is_polled_again(session_factory):
    dataset = _in_flight_dataset()
    client = AsyncMock()
    client.retrieve_report.return_value = ReportStatus("rep-1", "PROCESSING")

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].side_effect = NotFoundError("no account row")
        action = await _worker(session_factory, client).refresh(dataset.uid)

    assert action is NextAction.NONE
    reg["finish_refresh"].assert_awaited_once_with(session_factory.session, dataset.uid, POLL_AGAIN)


@pytest.mark.anyio
async def test_rate_limited_status_check_is_not_a_failure(session_factory):
    dataset = _in_flight_dataset()
    client = AsyncMock()
    client.retrieve_report.side_effect = ExternalApiError("POST failed: 429", status_code=429)

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].side_effect = NotFoundError("no account row")
        await _worker(session_factory, client).refresh(dataset.uid)

    reg["record_error"].assert_awaited_once()
    reg["mark_failed"].assert_not_awaited()
    reg["finish_refresh"].assert_awaited_once_with(session_factory.session, dataset.uid, POLL_AGAIN)


@pytest.mark.anyio
async def test_report_failing_to_parse_past_timeout_is_dropped(session_factory):
    # Parsing has failed before and the handle is 8h old (20:00 the previous day, local)
    dataset = build_dataset(
        report_id="rep-1",
        status="failed",
        error="Target not found",
        last_report_created_at=datetime(2025, 1, 9, 20, 0),
    )
    client = AsyncMock()
    client.retrieve_report.return_value = ReportStatus("rep-1", "COMPLETED", ["https://x/part"])
    parser = AsyncMock()

    with _patched_registry() as reg:
        reg["get_dataset"].return_value = dataset
        reg["get_account"].side_effect = NotFoundError("no account row")
        reg["clear_report_handle"].return_value = build_dataset(next_refresh_at=datetime(2025, 1, 9))
        action = await _worker(session_factory, client, parser).refresh(dataset.uid)

    assert action is NextAction.RETRY
    parser.parse.assert_not_awaited()
    reg["clear_report_handle"].assert_awaited_once()
    assert "could not be processed" in reg["clear_report_handle"].await_args.kwargs["reason"]
    reg["finish_refresh"].assert_awaited_once_with(session_factory.session, dataset.uid, datetime(2025, 1, 9))
