"""Amber Electric price feed client."""

import logging
from typing import Optional

import httpx

from config import settings
from services.retry import UpstreamError

logger = logging.getLogger(__name__)


class AmberClient:
    """Async client for the Amber Electric public API."""

    def __init__(self, api_key: str = "", base_url: str = "", timeout: float = 10.0):
        self.api_key = api_key or settings.amber_api_key
        self.base_url = base_url or settings.amber_base_url
        self.timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None
        self._site_id: Optional[str] = settings.amber_site_id or None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._http_client

    async def close(self):
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _get(self, path: str, params: Optional[dict] = None):
        client = await self.get_http_client()
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        try:
            response = await client.get(path, headers=headers, params=params)
            response.raise_for_status()
        except httpx.TimeoutException:
            raise UpstreamError(f"Amber request timeout: {path}", status_code=408)
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"Amber HTTP {e.response.status_code} on {path}", status_code=e.response.status_code
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to reach Amber: {e}")

        try:
            return response.json()
        except ValueError:
            raise UpstreamError(f"Non-JSON response from Amber on {path}")

    async def get_sites(self) -> list[dict]:
        """List the sites on the account."""
        data = await self._get("/sites")
        return data if isinstance(data, list) else []

    async def resolve_site_id(self) -> Optional[str]:
        """Configured site, or the first site on the account."""
        if self._site_id:
            return self._site_id
        sites = await self.get_sites()
        if sites:
            self._site_id = sites[0].get("id")
            logger.info("Using Amber site %s", self._site_id)
        return self._site_id

    async def get_current_price(self, site_id: Optional[str] = None) -> dict:
        """Current buy and feed-in prices in c/kWh.

        Returns ``{"buy_price": ..., "feed_in_price": ...}``; either may be None
        when the feed has no current interval for that channel.
        """
        site_id = site_id or await self.resolve_site_id()
        if not site_id:
            raise UpstreamError("No Amber site available")
        data = await self._get(f"/sites/{site_id}/prices/current", params={"next": 1})
        return parse_current_prices(data)


def parse_current_prices(intervals) -> dict:
    """Extract buy and feed-in prices from a /prices/current response.

    Amber reports feed-in as a negative cost when the user earns money, so
    the value is negated to make earnings positive.
    """
    prices = {"buy_price": None, "feed_in_price": None}
    if not isinstance(intervals, list):
        return prices
    for item in intervals:
        if not isinstance(item, dict) or item.get("type") != "CurrentInterval":
            continue
        per_kwh = item.get("perKwh")
        if per_kwh is None:
            continue
        if item.get("channelType") == "general" and prices["buy_price"] is None:
            prices["buy_price"] = float(per_kwh)
        elif item.get("channelType") == "feedIn" and prices["feed_in_price"] is None:
            prices["feed_in_price"] = -float(per_kwh)
    return prices
