"""Fitbit Web API health source — intraday heart rate and calories.

Uses the intraday time-series endpoints restricted to a time range:

* Heart rate: ``/1/user/-/activities/heart/date/{date}/1d/1sec/time/{start}/{end}.json``
* Calories:   ``/1/user/-/activities/calories/date/{date}/1d/1min/time/{start}/{end}.json``

Background delivery uses the Fitbit Subscriptions API: Fitbit POSTs a
notification list to our subscriber endpoint, which forwards each entry to
:meth:`FitbitHealthSource.notify_changed`.

See: https://dev.fitbit.com/build/reference/web-api/intraday/
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Iterator
from zoneinfo import ZoneInfo

import httpx
import structlog

from sleep_sentinel.collectors.base import DataChangeCallback, HealthDataSource
from sleep_sentinel.config import get_settings
from sleep_sentinel.models import SignalKind

logger = structlog.get_logger(__name__)


# ── Fitbit endpoint templates ─────────────────────────────────
# {date} is YYYY-MM-DD, {start}/{end} are HH:MM in the user's local time.

_INTRADAY_ENDPOINTS: dict[SignalKind, str] = {
    SignalKind.HEART_RATE: "/1/user/-/activities/heart/date/{date}/1d/1sec/time/{start}/{end}.json",
    SignalKind.ACTIVE_ENERGY: "/1/user/-/activities/calories/date/{date}/1d/1min/time/{start}/{end}.json",
}

_DATASET_KEYS: dict[SignalKind, str] = {
    SignalKind.HEART_RATE: "activities-heart-intraday",
    SignalKind.ACTIVE_ENERGY: "activities-calories-intraday",
}

# Subscription collection types → signal kinds they can affect.
_COLLECTION_KINDS: dict[str, list[SignalKind]] = {
    "activities": [SignalKind.HEART_RATE, SignalKind.ACTIVE_ENERGY],
}


# ── Rate-limit tracker ────────────────────────────────────────


class _RateLimited(Exception):
    """The rate-limit window is exhausted for longer than we are willing to wait."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limited for {retry_after:.0f}s")
        self.retry_after = retry_after


class _RateLimiter:
    """Track Fitbit rate-limit headers and enforce back-off.

    Fitbit returns these headers on every response:
      fitbit-rate-limit-limit       – requests allowed per hour
      fitbit-rate-limit-remaining   – requests remaining in window
      fitbit-rate-limit-reset       – seconds until the window resets

    Waits up to ``max_wait`` seconds are slept through; longer ones raise
    :class:`_RateLimited` so callers can degrade instead of blocking until
    the hourly window resets.
    """

    def __init__(self, max_per_hour: int = 150, *, max_wait: float = 30.0) -> None:
        self.limit = max_per_hour
        self.remaining = max_per_hour
        self.reset_at: float = 0.0
        self.max_wait = max_wait

    def update(self, headers: httpx.Headers) -> None:
        if "fitbit-rate-limit-remaining" in headers:
            self.remaining = int(headers["fitbit-rate-limit-remaining"])
        if "fitbit-rate-limit-limit" in headers:
            self.limit = int(headers["fitbit-rate-limit-limit"])
        if "fitbit-rate-limit-reset" in headers:
            self.reset_at = time.monotonic() + int(headers["fitbit-rate-limit-reset"])

    def exhaust(self, retry_after: float) -> None:
        """Record a 429: no requests left until *retry_after* seconds from now."""
        self.remaining = 0
        self.reset_at = time.monotonic() + retry_after

    def seconds_until_reset(self) -> float:
        """Seconds to wait before the next request, ``0`` when not near the limit."""
        if self.remaining > 1:
            return 0.0
        return max(0.0, self.reset_at - time.monotonic())

    async def wait_if_needed(self) -> None:
        """Sleep if we're close to the rate limit, or raise if the wait is too long."""
        wait = self.seconds_until_reset()
        if wait <= 0:
            return
        if wait > self.max_wait:
            raise _RateLimited(wait)
        logger.warning("fitbit.rate_limit_near", wait_seconds=round(wait, 1))
        await asyncio.sleep(wait)


# ── Helpers ───────────────────────────────────────────────────


def _day_segments(start: datetime, end: datetime) -> Iterator[tuple[str, str, str]]:
    """Split ``[start, end]`` into per-day ``(date, HH:MM, HH:MM)`` segments.

    Intraday endpoints are scoped to one calendar day, so a window crossing
    midnight needs one request per day.
    """
    cursor = start
    while cursor <= end:
        day_end = datetime.combine(cursor.date(), datetime.max.time(), tzinfo=cursor.tzinfo)
        segment_end = min(end, day_end)
        yield (
            cursor.strftime("%Y-%m-%d"),
            cursor.strftime("%H:%M"),
            segment_end.strftime("%H:%M"),
        )
        cursor = datetime.combine(
            cursor.date() + timedelta(days=1), datetime.min.time(), tzinfo=cursor.tzinfo
        )


def parse_intraday(kind: SignalKind, data: dict[str, Any]) -> list[float]:
    """Extract numeric values from an intraday response body."""
    dataset = data.get(_DATASET_KEYS[kind], {}).get("dataset", [])
    values: list[float] = []
    for point in dataset:
        value = point.get("value")
        if value is None:
            continue
        try:
            values.append(float(value))
        except (TypeError, ValueError):
            logger.debug("fitbit.bad_sample", kind=kind.value, value=value)
    return values


# ── Source ────────────────────────────────────────────────────


class FitbitHealthSource(HealthDataSource):
    """Reads recent heart-rate and calorie samples from the Fitbit Web API.

    Every failure (no token, 401, network error, malformed body) yields an
    empty sample list: the detector treats it as "no signal".

    Usage::

        source = FitbitHealthSource(access_token="...")
        bpm = await source.fetch_samples(SignalKind.HEART_RATE, start, end)
    """

    name = "fitbit"

    def __init__(
        self,
        access_token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._access_token = access_token or settings.fitbit_access_token
        self._user_tz = ZoneInfo(settings.fitbit_user_timezone)
        self._rate_limiter = _RateLimiter(
            settings.fitbit_rate_limit_per_hour,
            max_wait=settings.fitbit_max_rate_limit_wait,
        )
        self._subscribers: dict[SignalKind, list[DataChangeCallback]] = defaultdict(list)
        self._client = client or httpx.AsyncClient(
            base_url=settings.fitbit_api_base_url,
            headers={"Authorization": f"Bearer {self._access_token}"},
            timeout=settings.fitbit_request_timeout,
        )

    # ── Internal request wrapper ──────────────────────────────

    async def _request(self, url: str) -> dict[str, Any]:
        """GET a Fitbit endpoint with rate-limit tracking.

        A 429 whose reset is within ``fitbit_max_rate_limit_wait`` is waited
        out and retried once.  A longer one is recorded on the limiter and
        raised as :class:`_RateLimited`, so later calls skip the request
        until the window resets.
        """
        await self._rate_limiter.wait_if_needed()

        resp = await self._client.get(url)
        self._rate_limiter.update(resp.headers)

        if resp.status_code == 429:
            reset = int(resp.headers.get("fitbit-rate-limit-reset", "60"))
            self._rate_limiter.exhaust(reset)
            if reset > self._rate_limiter.max_wait:
                raise _RateLimited(reset)
            logger.warning("fitbit.rate_limit_retry", retry_after=reset)
            await asyncio.sleep(reset)
            resp = await self._client.get(url)
            self._rate_limiter.update(resp.headers)

        resp.raise_for_status()
        return resp.json()

    # ── Fetch ─────────────────────────────────────────────────

    async def fetch_samples(
        self,
        kind: SignalKind,
        window_start: datetime,
        window_end: datetime,
    ) -> list[float]:
        if not self._access_token:
            logger.warning("fitbit.no_access_token", kind=kind.value)
            return []

        # Naive datetimes are taken to already be in the user's local time.
        if window_start.tzinfo is not None:
            window_start = window_start.astimezone(self._user_tz)
        if window_end.tzinfo is not None:
            window_end = window_end.astimezone(self._user_tz)

        endpoint = _INTRADAY_ENDPOINTS[kind]
        values: list[float] = []
        try:
            for date, start, end in _day_segments(window_start, window_end):
                data = await self._request(endpoint.format(date=date, start=start, end=end))
                values.extend(parse_intraday(kind, data))
        except _RateLimited as exc:
            logger.warning(
                "fitbit.rate_limited",
                kind=kind.value,
                retry_after=round(exc.retry_after, 1),
            )
            return []
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "fitbit.fetch_unavailable",
                kind=kind.value,
                status=exc.response.status_code,
            )
            return []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("fitbit.fetch_failed", kind=kind.value, error=str(exc))
            return []

        logger.debug("fitbit.fetched", kind=kind.value, count=len(values))
        return values

    # ── Subscriptions ─────────────────────────────────────────

    def subscribe(self, kind: SignalKind, callback: DataChangeCallback) -> None:
        self._subscribers[kind].append(callback)
        logger.debug("fitbit.subscribed", kind=kind.value)

    async def notify_changed(self, collection_type: str) -> int:
        """Fan a subscription notification out to matching subscribers.

        Returns the number of callbacks invoked.
        """
        kinds = _COLLECTION_KINDS.get(collection_type, [])
        invoked = 0
        for kind in kinds:
            for callback in list(self._subscribers[kind]):
                try:
                    await callback(kind)
                except Exception as exc:
                    logger.error("fitbit.subscriber_error", kind=kind.value, error=str(exc))
                invoked += 1
        if not kinds:
            logger.debug("fitbit.ignored_collection", collection_type=collection_type)
        return invoked

    @staticmethod
    def verify_subscriber(code: str) -> bool:
        """Check the ``verify`` code Fitbit sends when validating the subscriber URL."""
        expected = get_settings().fitbit_subscriber_verification_code
        return bool(expected) and code == expected

    async def close(self) -> None:
        await self._client.aclose()
