"""Tests for data models, health sources and the source registry."""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from pydantic import ValidationError

from sleep_sentinel.collectors.fitbit import FitbitHealthSource, _day_segments, parse_intraday
from sleep_sentinel.collectors.memory import InMemoryHealthSource
from sleep_sentinel.collectors.registry import available_sources, get_source
from sleep_sentinel.models import DetectionConfig, SignalKind, SleepAlert, SleepState, SleepStateKind

T0 = datetime(2024, 5, 1, 22, 0, tzinfo=UTC)


class TestModels:
    def test_awake_has_no_probability(self):
        assert SleepState.awake().candidate_probability is None
        with pytest.raises(ValidationError):
            SleepState(kind=SleepStateKind.AWAKE, probability=0.5)

    def test_drowsy_requires_probability(self):
        with pytest.raises(ValidationError):
            SleepState(kind=SleepStateKind.DROWSY)

    def test_probability_bounds(self):
        with pytest.raises(ValidationError):
            SleepState.likely_asleep(1.2)

    def test_alert_defaults(self):
        alert = SleepAlert(source="poll")
        assert alert.id  # auto-generated UUID
        assert alert.timestamp is not None
        assert alert.message == "Sleep signature detected. Time to move!"

    def test_negative_duration_rejected(self):
        with pytest.raises(ValidationError):
            DetectionConfig(confirmation_window=timedelta(minutes=-1))

    def test_signal_units(self):
        assert SignalKind.HEART_RATE.unit == "bpm"
        assert SignalKind.ACTIVE_ENERGY.unit == "kcal"


# ── In-memory source ─────────────────────────────────────────


class TestInMemorySource:
    async def test_fetch_filters_by_window(self, memory_source):
        memory_source.record(SignalKind.HEART_RATE, [70.0], timestamp=T0 - timedelta(minutes=20))
        memory_source.record(SignalKind.HEART_RATE, [55.0, 54.0], timestamp=T0 - timedelta(minutes=5))
        memory_source.record(SignalKind.HEART_RATE, [80.0], timestamp=T0 + timedelta(minutes=1))

        values = await memory_source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(minutes=15), T0)
        assert values == [55.0, 54.0]

    async def test_window_bounds_are_inclusive(self, memory_source):
        memory_source.record(SignalKind.ACTIVE_ENERGY, [1.0], timestamp=T0)
        assert await memory_source.fetch_samples(SignalKind.ACTIVE_ENERGY, T0, T0) == [1.0]

    async def test_kinds_are_independent(self, memory_source):
        memory_source.record(SignalKind.HEART_RATE, [60.0], timestamp=T0)
        assert await memory_source.fetch_samples(SignalKind.ACTIVE_ENERGY, T0, T0) == []

    async def test_add_samples_notifies_subscribers(self, memory_source):
        seen: list[SignalKind] = []

        async def on_change(kind):
            seen.append(kind)

        memory_source.subscribe(SignalKind.ACTIVE_ENERGY, on_change)
        assert await memory_source.add_samples(SignalKind.ACTIVE_ENERGY, [0.2, 0.3], timestamp=T0) == 2
        await memory_source.add_samples(SignalKind.HEART_RATE, [50.0], timestamp=T0)
        await memory_source.add_samples(SignalKind.ACTIVE_ENERGY, [], timestamp=T0)
        assert seen == [SignalKind.ACTIVE_ENERGY]

    async def test_failing_subscriber_does_not_stop_others(self, memory_source):
        seen: list[str] = []

        async def broken(kind):
            raise RuntimeError("boom")

        async def healthy(kind):
            seen.append("ok")

        memory_source.subscribe(SignalKind.HEART_RATE, broken)
        memory_source.subscribe(SignalKind.HEART_RATE, healthy)
        await memory_source.add_samples(SignalKind.HEART_RATE, [50.0], timestamp=T0)
        assert seen == ["ok"]

    async def test_prune_and_clear(self):
        source = InMemoryHealthSource(retention=timedelta(hours=3))
        source.record(SignalKind.HEART_RATE, [70.0], timestamp=T0 - timedelta(hours=2))
        source.record(SignalKind.HEART_RATE, [60.0], timestamp=T0)
        assert source.prune(T0 - timedelta(hours=1)) == 1
        assert await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(days=1), T0) == [60.0]
        source.clear()
        assert await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(days=1), T0) == []

    async def test_ingest_drops_samples_past_retention(self):
        source = InMemoryHealthSource(retention=timedelta(minutes=30))
        source.record(SignalKind.HEART_RATE, [70.0], timestamp=T0 - timedelta(minutes=45))
        source.record(SignalKind.ACTIVE_ENERGY, [1.5], timestamp=T0 - timedelta(minutes=40))
        source.record(SignalKind.HEART_RATE, [65.0], timestamp=T0 - timedelta(minutes=20))
        assert source.sample_count == 3

        await source.add_samples(SignalKind.HEART_RATE, [55.0], timestamp=T0)

        # Every kind is pruned against the newest timestamp seen.
        assert source.sample_count == 2
        day = (T0 - timedelta(days=1), T0)
        assert await source.fetch_samples(SignalKind.HEART_RATE, *day) == [65.0, 55.0]
        assert await source.fetch_samples(SignalKind.ACTIVE_ENERGY, *day) == []

    async def test_late_samples_do_not_move_the_cutoff(self):
        source = InMemoryHealthSource(retention=timedelta(minutes=30))
        source.record(SignalKind.HEART_RATE, [55.0], timestamp=T0)
        source.record(SignalKind.HEART_RATE, [60.0], timestamp=T0 - timedelta(minutes=10))
        source.record(SignalKind.HEART_RATE, [99.0], timestamp=T0 - timedelta(hours=2))
        assert await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(days=1), T0) == [55.0, 60.0]

    def test_retention_never_shorter_than_lookback(self):
        source = InMemoryHealthSource(retention=timedelta(minutes=1))
        assert source.retention == timedelta(minutes=15)
        assert InMemoryHealthSource().retention == timedelta(minutes=60)


# ── Fitbit source ────────────────────────────────────────────


def _intraday_body(kind: SignalKind, values: list) -> dict:
    key = "activities-heart-intraday" if kind is SignalKind.HEART_RATE else "activities-calories-intraday"
    return {key: {"dataset": [{"time": "22:00:00", "value": v} for v in values]}}


def _fitbit(handler, token: str = "test-token") -> FitbitHealthSource:
    client = httpx.AsyncClient(
        base_url="https://api.fitbit.test",
        transport=httpx.MockTransport(handler),
    )
    return FitbitHealthSource(access_token=token, client=client)


class TestFitbitSource:
    async def test_fetches_heart_rate_window(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_intraday_body(SignalKind.HEART_RATE, [52, 51, 50]))

        source = _fitbit(handler)
        values = await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(minutes=15), T0)
        await source.close()

        assert values == [52.0, 51.0, 50.0]
        assert len(requests) == 1
        assert requests[0].url.path == "/1/user/-/activities/heart/date/2024-05-01/1d/1sec/time/21:45/22:00.json"

    async def test_fetches_calories(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "/activities/calories/" in request.url.path
            return httpx.Response(200, json=_intraday_body(SignalKind.ACTIVE_ENERGY, [0.9, 1.1]))

        source = _fitbit(handler)
        values = await source.fetch_samples(SignalKind.ACTIVE_ENERGY, T0 - timedelta(minutes=15), T0)
        assert values == [0.9, 1.1]

    async def test_window_across_midnight_is_split(self):
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json=_intraday_body(SignalKind.HEART_RATE, [50]))

        end = datetime(2024, 5, 2, 0, 5, tzinfo=UTC)
        source = _fitbit(handler)
        values = await source.fetch_samples(SignalKind.HEART_RATE, end - timedelta(minutes=15), end)

        assert values == [50.0, 50.0]
        assert paths == [
            "/1/user/-/activities/heart/date/2024-05-01/1d/1sec/time/23:50/23:59.json",
            "/1/user/-/activities/heart/date/2024-05-02/1d/1sec/time/00:00/00:05.json",
        ]

    async def test_unauthorised_yields_empty(self):
        source = _fitbit(lambda request: httpx.Response(401, json={"errors": []}))
        assert await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(minutes=15), T0) == []

    async def test_long_rate_limit_yields_empty_without_waiting(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                429,
                headers={"fitbit-rate-limit-remaining": "0", "fitbit-rate-limit-reset": "3600"},
                json={"errors": []},
            )

        source = _fitbit(handler)
        window = (T0 - timedelta(minutes=15), T0)
        assert await asyncio.wait_for(source.fetch_samples(SignalKind.HEART_RATE, *window), timeout=1.0) == []
        assert len(requests) == 1

        # Back-off state is kept: the next fetch does not hit the API at all.
        assert await asyncio.wait_for(source.fetch_samples(SignalKind.ACTIVE_ENERGY, *window), timeout=1.0) == []
        assert len(requests) == 1

    async def test_short_rate_limit_is_retried(self):
        responses = [
            httpx.Response(429, headers={"fitbit-rate-limit-reset": "0"}),
            httpx.Response(200, json=_intraday_body(SignalKind.HEART_RATE, [49])),
        ]

        source = _fitbit(lambda request: responses.pop(0))
        values = await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(minutes=15), T0)
        assert values == [49.0]
        assert responses == []

    async def test_network_error_yields_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        source = _fitbit(handler)
        assert await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(minutes=15), T0) == []

    async def test_missing_token_skips_request(self):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        source = _fitbit(handler, token="")
        assert await source.fetch_samples(SignalKind.HEART_RATE, T0 - timedelta(minutes=15), T0) == []
        assert calls == []

    def test_parse_skips_bad_values(self):
        body = _intraday_body(SignalKind.HEART_RATE, [50, None, "n/a", "61"])
        assert parse_intraday(SignalKind.HEART_RATE, body) == [50.0, 61.0]
        assert parse_intraday(SignalKind.ACTIVE_ENERGY, {}) == []

    def test_day_segments_single_day(self):
        assert list(_day_segments(T0 - timedelta(minutes=15), T0)) == [("2024-05-01", "21:45", "22:00")]

    async def test_notification_fans_out_to_subscribers(self):
        seen: list[SignalKind] = []

        async def on_change(kind):
            seen.append(kind)

        source = _fitbit(lambda request: httpx.Response(200, json={}))
        source.subscribe(SignalKind.HEART_RATE, on_change)
        source.subscribe(SignalKind.ACTIVE_ENERGY, on_change)

        assert await source.notify_changed("activities") == 2
        assert set(seen) == {SignalKind.HEART_RATE, SignalKind.ACTIVE_ENERGY}
        assert await source.notify_changed("sleep") == 0

    def test_verify_subscriber_without_code_configured(self):
        assert FitbitHealthSource.verify_subscriber("anything") is False


# ── Registry ─────────────────────────────────────────────────


class TestSourceRegistry:
    def test_builtin_sources_available(self):
        assert {"memory", "fitbit"} <= set(available_sources())

    def test_get_memory_source(self):
        assert isinstance(get_source("memory"), InMemoryHealthSource)

    def test_unknown_source_raises(self):
        with pytest.raises(ValueError, match="No health source registered"):
            get_source("garmin")
