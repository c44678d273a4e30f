"""Tests for the retry policy, source caches and the data collector."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from foxess.models import TelemetryReading
from services.amber import AmberClient, parse_current_prices
from services.cache import SourceCache
from services.collector import DataCollector
from services.retry import FETCH_FAILED, RetryPolicy, UpstreamError, is_transient_upstream_error
from conftest import FakeDevice

T0 = 1_800_000_000.0


def _policy(delays: list, **kwargs) -> RetryPolicy:
    async def fake_sleep(seconds):
        delays.append(seconds)

    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=fake_sleep, **kwargs)


def _amber(**kwargs):
    amber = MagicMock()
    amber.is_configured = True
    amber.get_current_price = AsyncMock(**kwargs)
    amber.close = AsyncMock()
    return amber


class TestRetryPolicy:
    """Bounded retries with exponential backoff."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        delays = []
        fn = AsyncMock(return_value=42)
        assert await _policy(delays).run(fn, "test") == 42
        assert fn.await_count == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_exhausted_returns_sentinel(self):
        delays = []
        fn = AsyncMock(side_effect=UpstreamError("down", 503))
        result = await _policy(delays).run(fn, "test")
        assert result is FETCH_FAILED
        assert not result
        assert fn.await_count == 3
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self):
        delays = []
        fn = AsyncMock(side_effect=[UpstreamError("down"), {"ok": True}])
        assert await _policy(delays).run(fn, "test") == {"ok": True}
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_retryable_result_retried(self):
        delays = []
        fn = AsyncMock(side_effect=[{"errno": 503}, {"errno": 0}])
        policy = _policy(delays, is_retryable_result=lambda r: r.get("errno") in (408, 500, 502, 503))
        assert await policy.run(fn, "test") == {"errno": 0}
        assert fn.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops(self):
        delays = []
        fn = AsyncMock(side_effect=ValueError("bad request"))
        policy = _policy(delays, is_retryable_error=lambda e: not isinstance(e, ValueError))
        assert await policy.run(fn, "test") is FETCH_FAILED
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_attempt_timeout(self):
        delays = []
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(5)

        policy = _policy(delays, attempt_timeout=0.01)
        assert await policy.run(slow, "test") is FETCH_FAILED
        assert len(calls) == 3

    def test_backoff_capped(self):
        policy = RetryPolicy(base_delay=10)
        assert policy.delay_for(0) == 10
        assert policy.delay_for(10) == 30

    def test_transient_status_classes(self):
        assert is_transient_upstream_error(UpstreamError("unreachable"))
        assert is_transient_upstream_error(UpstreamError("timeout", 408))
        assert is_transient_upstream_error(UpstreamError("slow down", 429))
        assert is_transient_upstream_error(UpstreamError("bad gateway", 502))
        assert not is_transient_upstream_error(UpstreamError("bad key", 401))
        assert not is_transient_upstream_error(UpstreamError("no site", 404))


class TestSourceCache:
    """Independent freshness windows."""

    def test_fresh_until_ttl(self):
        cache = SourceCache("price", 60)
        assert cache.is_stale(T0) is True
        cache.store({"buy_price": 10}, T0)
        assert cache.get(T0 + 59) == {"buy_price": 10}
        assert cache.is_stale(T0 + 60) is True
        assert cache.get(T0 + 60) is None

    def test_invalidate(self):
        cache = SourceCache("weather", 1800)
        cache.store({"temperature": 20}, T0)
        cache.invalidate()
        assert cache.is_stale(T0) is True
        assert cache.stats(T0)["cached"] is False


class TestDataCollector:
    """Concurrent refresh of stale sources."""

    def _collector(self, amber, device=None) -> DataCollector:
        return DataCollector(device or FakeDevice(), amber=amber, retry=_policy([]))

    @pytest.mark.asyncio
    async def test_price_feed_timeout_leaves_prices_missing(self):
        amber = _amber(side_effect=UpstreamError("timeout", 408))
        collector = self._collector(amber)
        weather = AsyncMock(return_value={"temperature": 21.0, "weather_code": 3})

        with patch("services.collector.weather.get_current", weather):
            await collector.refresh(T0)
        snapshot = collector.snapshot(T0)

        assert amber.get_current_price.await_count == 3
        assert snapshot.buy_price is None
        assert snapshot.feed_in_price is None
        assert snapshot.soc == 50.0
        assert snapshot.weather_code == 3

    @pytest.mark.asyncio
    async def test_fresh_sources_not_refetched(self):
        amber = _amber(return_value={"buy_price": 12.0, "feed_in_price": 5.0})
        device = FakeDevice()
        device.get_telemetry = AsyncMock(return_value=TelemetryReading(soc=80))
        collector = self._collector(amber, device)
        weather = AsyncMock(return_value={"temperature": 21.0, "weather_code": 0})

        with patch("services.collector.weather.get_current", weather):
            await collector.refresh(T0)
            await collector.refresh(T0 + 30)
            await collector.refresh(T0 + 61)

        assert amber.get_current_price.await_count == 2
        assert device.get_telemetry.await_count == 1
        assert weather.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_entry(self):
        amber = _amber(return_value={"buy_price": 12.0, "feed_in_price": 5.0})
        collector = self._collector(amber)
        weather = AsyncMock(return_value={"temperature": 21.0, "weather_code": 0})

        with patch("services.collector.weather.get_current", weather):
            await collector.refresh(T0)
            amber.get_current_price.side_effect = UpstreamError("down", 503)
            await collector.refresh(T0 + 61)

        entry = collector.caches["price"].entry
        assert entry.value["buy_price"] == 12.0
        assert entry.fetched_at == T0
        # Stale, so price conditions see nothing this tick
        assert collector.snapshot(T0 + 61).buy_price is None

    @pytest.mark.asyncio
    async def test_ambient_falls_back_to_weather(self):
        amber = _amber(return_value={"buy_price": 12.0, "feed_in_price": 5.0})
        device = FakeDevice()
        device.telemetry = TelemetryReading(soc=60, battery_temperature=30)
        collector = self._collector(amber, device)
        weather = AsyncMock(return_value={"temperature": 18.5, "weather_code": 61})

        with patch("services.collector.weather.get_current", weather):
            await collector.refresh(T0)
        snapshot = collector.snapshot(T0)

        assert snapshot.ambient_temperature == 18.5
        assert snapshot.battery_temperature == 30
        assert snapshot.buy_price == 12.0

    @pytest.mark.asyncio
    async def test_unconfigured_price_feed_skipped(self):
        amber = _amber(return_value={})
        amber.is_configured = False
        collector = self._collector(amber)

        with patch("services.collector.weather.get_current", AsyncMock(return_value={})):
            await collector.refresh(T0)

        amber.get_current_price.assert_not_awaited()
        assert collector.caches["price"].is_stale(T0)

    @pytest.mark.asyncio
    async def test_rejected_api_key_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(401, json={"message": "Unauthorized"})

        amber = AmberClient(api_key="bad-key", base_url="https://amber.test")
        amber._site_id = "site-1"
        amber._http_client = httpx.AsyncClient(
            base_url="https://amber.test", transport=httpx.MockTransport(handler)
        )
        collector = DataCollector(FakeDevice(), amber=amber)

        assert await collector._fetch_price() is FETCH_FAILED
        assert calls == ["/sites/site-1/prices/current"]

    def test_invalidate_unknown_source(self):
        collector = self._collector(_amber())
        with pytest.raises(ValueError):
            collector.invalidate("tariff")


class TestAmberParsing:
    """Current price extraction."""

    def test_feed_in_negated(self):
        data = [
            {"type": "CurrentInterval", "channelType": "general", "perKwh": 24.5},
            {"type": "CurrentInterval", "channelType": "feedIn", "perKwh": -8.2},
            {"type": "ForecastInterval", "channelType": "general", "perKwh": 99},
        ]
        assert parse_current_prices(data) == {"buy_price": 24.5, "feed_in_price": 8.2}

    def test_missing_channels(self):
        assert parse_current_prices([]) == {"buy_price": None, "feed_in_price": None}
        assert parse_current_prices({"error": "x"}) == {"buy_price": None, "feed_in_price": None}
