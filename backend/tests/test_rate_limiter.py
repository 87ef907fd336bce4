"""
Tests for the adaptive Ads API rate limiter.
"""

import asyncio
import time
from datetime import datetime, timezone

import httpx
import pytest

from app.rate_limiter import AdaptiveRateLimiter, parse_retry_after


def test_parse_retry_after_seconds():
    assert parse_retry_after("120") == 120.0
    assert parse_retry_after(" 3 ") == 3.0


def test_parse_retry_after_rejects_non_positive_and_garbage():
    assert parse_retry_after("0") is None
    assert parse_retry_after("-5") is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("") is None
    assert parse_retry_after(None) is None


def test_parse_retry_after_http_date():
    now = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    assert parse_retry_after("Wed, 01 Jan 2025 00:00:30 GMT", now=now) == 30.0
    assert parse_retry_after("Tue, 31 Dec 2024 23:59:00 GMT", now=now) is None


@pytest.mark.anyio
async def test_rate_limit_widens_spacing_to_retry_after():
    limiter = AdaptiveRateLimiter(min_interval=0.5, retry_buffer=0.1)
    wait = limiter.handle_rate_limit("2")
    assert wait == 2.0
    assert limiter.min_interval == pytest.approx(2.1)
    assert limiter.reset_pending is True
    assert limiter.snapshot()["rate_limited_count"] == 1
    limiter._reset_handle.cancel()


@pytest.mark.anyio
async def test_missing_retry_after_doubles_previous_wait():
    limiter = AdaptiveRateLimiter(default_backoff=5.0)
    assert limiter.handle_rate_limit(None) == 5.0
    assert limiter.handle_rate_limit("garbage") == 10.0
    assert limiter.handle_rate_limit("3") == 3.0
    assert limiter.handle_rate_limit(None) == 6.0
    limiter._reset_handle.cancel()


@pytest.mark.anyio
async def test_new_rate_limit_supersedes_reset_timer():
    limiter = AdaptiveRateLimiter()
    limiter.handle_rate_limit("10")
    first = limiter._reset_handle
    limiter.handle_rate_limit("20")
    assert first.cancelled()
    assert limiter._reset_handle is not first
    assert limiter.min_interval == pytest.approx(20.1)
    limiter._reset_handle.cancel()


@pytest.mark.anyio
async def test_reset_restores_baseline():
    limiter = AdaptiveRateLimiter(min_interval=0.0, default_backoff=0.01)
    limiter.handle_rate_limit(None)
    assert limiter.min_interval > 0
    await asyncio.sleep(0.05)
    assert limiter.min_interval == 0.0
    assert limiter.reset_pending is False
    assert limiter.snapshot()["last_backoff_seconds"] is None


@pytest.mark.anyio
async def test_call_returns_429_and_backs_off():
    limiter = AdaptiveRateLimiter(min_interval=0.0, retry_buffer=0.1)

    async def send():
        return httpx.Response(429, headers={"Retry-After": "1"})

    response = await limiter.call(send)
    assert response.status_code == 429
    assert limiter.rate_limited_count == 1
    assert limiter.min_interval == pytest.approx(1.1)
    limiter._reset_handle.cancel()


@pytest.mark.anyio
async def test_concurrency_is_capped():
    limiter = AdaptiveRateLimiter(max_concurrent=2, min_interval=0.0)
    active = 0
    peak = 0

    async def send():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return httpx.Response(200)

    await asyncio.gather(*(limiter.call(send) for _ in range(6)))
    assert peak == 2
    assert limiter.snapshot()["in_flight"] == 0


@pytest.mark.anyio
async def test_call_starts_are_spaced():
    limiter = AdaptiveRateLimiter(max_concurrent=5, min_interval=0.05)
    starts = []

    async def send():
        starts.append(time.monotonic())
        return httpx.Response(200)

    await asyncio.gather(*(limiter.call(send) for _ in range(3)))
    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert all(gap >= 0.045 for gap in gaps)
