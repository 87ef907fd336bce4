"""
Adaptive rate limiter for Amazon Ads API calls.

One instance is shared by every caller in the process. It caps concurrent
calls, spaces call starts by a minimum interval, and widens that interval when
the API answers 429 until a reset timer restores the baseline.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header into a positive number of seconds.
    Accepts delta-seconds ("120") or an HTTP-date. Anything else returns None.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = int(value)
        return float(seconds) if seconds > 0 else None
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    wait = (retry_at - now).total_seconds()
    return wait if wait > 0 else None


class AdaptiveRateLimiter:
    """Concurrency cap + minimum start spacing, widened on 429 responses."""

    def __init__(
        self,
        max_concurrent: int = 2,
        min_interval: float = 0.5,
        retry_buffer: float = 0.1,
        default_backoff: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_concurrent = max_concurrent
        self.baseline_interval = min_interval
        self.min_interval = min_interval
        self.retry_buffer = retry_buffer
        self.default_backoff = default_backoff
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._next_start = 0.0
        self._last_wait: Optional[float] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._in_flight = 0
        self.rate_limited_count = 0

    async def _wait_for_turn(self) -> None:
        async with self._spacing_lock:
            delay = self._next_start - self._clock()
            if delay > 0:
                await asyncio.sleep(delay)
            self._next_start = self._clock() + self.min_interval

    async def call(self, send: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``send`` under the limiter. A response with status 429 widens the
        spacing for later calls and is returned to the caller unchanged.
        """
        async with self._semaphore:
            await self._wait_for_turn()
            self._in_flight += 1
            try:
                response = await send()
            finally:
                self._in_flight -= 1
        if getattr(response, "status_code", None) == 429:
            headers = getattr(response, "headers", None) or {}
            self.handle_rate_limit(headers.get("Retry-After"))
        return response

    def handle_rate_limit(self, retry_after: Optional[str] = None, now: Optional[datetime] = None) -> float:
        """
        Widen the spacing after a 429 and schedule the reset back to baseline.
        Returns the wait (seconds) that was applied.
        """
        wait = parse_retry_after(retry_after, now)
        if wait is None:
            wait = self._last_wait * 2 if self._last_wait else self.default_backoff
        self._last_wait = wait
        self.rate_limited_count += 1

        self.min_interval = wait + self.retry_buffer
        self._next_start = max(self._next_start, self._clock() + self.min_interval)
        logger.warning(
            f"Amazon Ads API rate limited (Retry-After={retry_after!r}); "
            f"spacing calls {self.min_interval:.1f}s apart for {wait:.1f}s"
        )

        if self._reset_handle is not None:
            self._reset_handle.cancel()
        loop = asyncio.get_running_loop()
        self._reset_handle = loop.call_later(wait, self._reset)
        return wait

    def _reset(self) -> None:
        self.min_interval = self.baseline_interval
        self._last_wait = None
        self._reset_handle = None
        logger.info(f"Amazon Ads API spacing restored to {self.baseline_interval:.1f}s")

    @property
    def reset_pending(self) -> bool:
        return self._reset_handle is not None

    def snapshot(self) -> dict[str, Any]:
        return {
            "max_concurrent": self.max_concurrent,
            "in_flight": self._in_flight,
            "min_interval_seconds": self.min_interval,
            "baseline_interval_seconds": self.baseline_interval,
            "last_backoff_seconds": self._last_wait,
            "reset_pending": self.reset_pending,
            "rate_limited_count": self.rate_limited_count,
        }
