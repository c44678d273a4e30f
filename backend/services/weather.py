"""Current weather via Open-Meteo (free, no API key)."""

import logging
from typing import Optional

import httpx

from config import settings
from services.retry import UpstreamError

logger = logging.getLogger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"

# Used when the geocoder has no match for the configured place (western Sydney)
FALLBACK_COORDS = (-33.9215, 151.0390)

# place -> (latitude, longitude); geocoding results don't change
_geocode_cache: dict[str, tuple[float, float]] = {}


async def _get_json(url: str, params: dict, timeout: float) -> dict:
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, params=params, timeout=timeout)
            response.raise_for_status()
            return response.json()
    except httpx.TimeoutException:
        raise UpstreamError(f"Weather request timeout: {url}", status_code=408)
    except httpx.HTTPStatusError as e:
        raise UpstreamError(f"Weather HTTP {e.response.status_code}", status_code=e.response.status_code)
    except (httpx.HTTPError, ValueError) as e:
        raise UpstreamError(f"Failed to fetch weather: {e}")


async def geocode(place: str, timeout: float = 10.0) -> tuple[float, float]:
    """Resolve a place name to coordinates."""
    key = place.strip().lower()
    if key in _geocode_cache:
        return _geocode_cache[key]

    data = await _get_json(
        GEOCODING_URL, {"name": place, "count": 1, "language": "en"}, timeout
    )
    results = data.get("results") or []
    if results:
        coords = (results[0]["latitude"], results[0]["longitude"])
    else:
        logger.warning("No geocoding match for '%s', using fallback coordinates", place)
        coords = FALLBACK_COORDS
    _geocode_cache[key] = coords
    return coords


async def get_current(place: Optional[str] = None, timeout: float = 10.0) -> dict:
    """Current temperature (C) and WMO weather code for a place.

    Returns ``{"temperature": float | None, "weather_code": int | None}``.
    """
    place = place or settings.weather_place
    latitude, longitude = await geocode(place, timeout)
    data = await _get_json(
        OPEN_METEO_URL,
        {
            "latitude": latitude,
            "longitude": longitude,
            "current_weather": "true",
            "temperature_unit": "celsius",
            "timezone": "auto",
        },
        timeout,
    )
    current = data.get("current_weather") or {}
    code = current.get("weathercode")
    return {
        "temperature": current.get("temperature"),
        "weather_code": int(code) if code is not None else None,
    }
