"""FoxESS Open API client with request signing."""

import hashlib
import logging
import time
from typing import Any, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

# errno values that indicate a transient upstream condition
TRANSIENT_ERRNOS = {408, 429, 500, 502, 503, 504}


class FoxESSAPIError(Exception):
    """Raised when a FoxESS API call fails."""
    def __init__(self, message: str, errno: int = -1):
        self.errno = errno
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.errno in TRANSIENT_ERRNOS


class FoxESSClient:
    """Async client for the FoxESS Open API."""

    def __init__(
        self,
        api_key: str = "",
        device_sn: str = "",
        base_url: str = "",
        timeout: Optional[float] = None,
    ):
        self.api_key = (api_key or settings.foxess_api_key).strip()
        self.device_sn = device_sn or settings.foxess_device_sn
        self.base_url = base_url or settings.foxess_base_url
        self.timeout = timeout or settings.foxess_request_timeout_seconds
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and bool(self.device_sn)

    async def get_http_client(self) -> httpx.AsyncClient:
        """Get or create an async HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _signed_headers(self, path: str) -> dict[str, str]:
        """Build auth headers.

        The signature is MD5 over ``path\\r\\ntoken\\r\\ntimestamp`` where the
        separators are the literal four characters backslash-r-backslash-n,
        not CRLF bytes.
        """
        timestamp = str(int(time.time() * 1000))
        plain = path + r"\r\n" + self.api_key + r"\r\n" + timestamp
        signature = hashlib.md5(plain.encode("utf-8")).hexdigest()
        return {
            "token": self.api_key,
            "timestamp": timestamp,
            "signature": signature,
            "lang": "en",
            "Content-Type": "application/json",
        }

    async def post(self, path: str, payload: dict) -> Any:
        """POST to the API and return the ``result`` field.

        Raises:
            FoxESSAPIError: on timeouts (errno 408), transport failures
                (errno 500), non-JSON bodies or a non-zero errno.
        """
        if not self.is_configured:
            raise FoxESSAPIError("FoxESS API key or device serial not configured", errno=401)

        client = await self.get_http_client()
        headers = self._signed_headers(path.split("?")[0])

        try:
            response = await client.post(path, headers=headers, json=payload)
        except httpx.TimeoutException:
            raise FoxESSAPIError(f"Request timeout: {path}", errno=408)
        except httpx.HTTPError as e:
            raise FoxESSAPIError(f"Failed to reach FoxESS: {e}", errno=500)

        if response.status_code == 429 or response.status_code >= 500:
            raise FoxESSAPIError(
                f"HTTP {response.status_code} on {path}", errno=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            logger.warning("FoxESS non-JSON response on %s: %s", path, response.text[:200])
            raise FoxESSAPIError("Non-JSON response from FoxESS", errno=-1)

        errno = data.get("errno", -1)
        if errno != 0:
            raise FoxESSAPIError(
                f"FoxESS API error {errno}: {data.get('msg', 'Unknown error')}", errno=errno
            )
        return data.get("result")
