"""Data collector - keeps price, telemetry and weather fresh for the automation loop."""

import asyncio
import logging
import time
from typing import Optional

from automation.models import DataSnapshot
from config import settings
from foxess.models import TelemetryReading
from services import weather
from services.amber import AmberClient
from services.cache import SourceCache
from services.retry import FETCH_FAILED, RetryPolicy, is_transient_upstream_error

logger = logging.getLogger(__name__)

PRICE = "price"
TELEMETRY = "telemetry"
WEATHER = "weather"
SOURCES = (PRICE, TELEMETRY, WEATHER)


class DataCollector:
    """Refreshes stale sources concurrently and builds DataSnapshots.

    A failed refresh leaves the previous entry in place; it stays stale, so
    it is retried next tick and its values read as None until then.
    """

    def __init__(
        self,
        device,
        amber: Optional[AmberClient] = None,
        retry: Optional[RetryPolicy] = None,
        weather_place: Optional[str] = None,
    ):
        self.device = device
        self.amber = amber or AmberClient()
        self.weather_place = weather_place or settings.weather_place
        self.retry = retry or RetryPolicy.from_settings(
            attempt_timeout=settings.gather_data_timeout_seconds,
            is_retryable_error=is_transient_upstream_error,
        )
        self.caches = {
            PRICE: SourceCache(PRICE, settings.cache_ttl_price_seconds),
            TELEMETRY: SourceCache(TELEMETRY, settings.cache_ttl_telemetry_seconds),
            WEATHER: SourceCache(WEATHER, settings.cache_ttl_weather_seconds),
        }

    async def _fetch_price(self):
        if not self.amber.is_configured:
            logger.debug("Amber not configured - skipping price fetch")
            return FETCH_FAILED
        return await self.retry.run(self.amber.get_current_price, "amber.prices")

    async def _fetch_telemetry(self):
        # The device gateway retries internally and returns None when exhausted
        reading = await self.device.get_telemetry()
        return FETCH_FAILED if reading is None else reading

    async def _fetch_weather(self):
        return await self.retry.run(lambda: weather.get_current(self.weather_place), "open-meteo")

    async def _refresh_source(self, name: str, now: float):
        fetchers = {
            PRICE: self._fetch_price,
            TELEMETRY: self._fetch_telemetry,
            WEATHER: self._fetch_weather,
        }
        value = await fetchers[name]()
        if value is FETCH_FAILED:
            logger.warning("Refresh of %s failed, values unavailable this tick", name)
            return
        self.caches[name].store(value, now)

    async def refresh(self, now: Optional[float] = None, sources: tuple = SOURCES):
        """Refresh every stale source in ``sources`` concurrently."""
        now = time.time() if now is None else now
        stale = [name for name in sources if self.caches[name].is_stale(now)]
        if not stale:
            logger.debug("All sources fresh")
            return
        logger.debug("Refreshing stale sources: %s", ", ".join(stale))
        results = await asyncio.gather(
            *(self._refresh_source(name, now) for name in stale), return_exceptions=True
        )
        for name, result in zip(stale, results):
            if isinstance(result, Exception):
                logger.error("Unexpected error refreshing %s: %s", name, result)

    def snapshot(self, now: Optional[float] = None) -> DataSnapshot:
        """Build a DataSnapshot from fresh cache entries only."""
        price = self.caches[PRICE].get(now) or {}
        telemetry: TelemetryReading = self.caches[TELEMETRY].get(now) or TelemetryReading()
        current_weather = self.caches[WEATHER].get(now) or {}

        ambient = telemetry.ambient_temperature
        if ambient is None:
            ambient = current_weather.get("temperature")

        return DataSnapshot(
            feed_in_price=price.get("feed_in_price"),
            buy_price=price.get("buy_price"),
            soc=telemetry.soc,
            battery_temperature=telemetry.battery_temperature,
            ambient_temperature=ambient,
            weather_code=current_weather.get("weather_code"),
            pv_power=telemetry.pv_power,
            load_power=telemetry.load_power,
        )

    def invalidate(self, source: Optional[str] = None):
        """Drop one cached source, or all of them."""
        if source is None:
            for cache in self.caches.values():
                cache.invalidate()
            logger.info("Cache cleared: all sources")
            return
        if source not in self.caches:
            raise ValueError(f"Unknown source '{source}'. Must be one of {', '.join(SOURCES)}")
        self.caches[source].invalidate()
        logger.info("Cache cleared: %s", source)

    def stats(self, now: Optional[float] = None) -> list[dict]:
        return [self.caches[name].stats(now) for name in SOURCES]

    async def close(self):
        await self.amber.close()
