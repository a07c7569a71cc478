"""
HttpTransport - thin async wrapper over httpx.AsyncClient.

Sends one HTTP request and raises on failure:
- httpx.TimeoutException / httpx.TransportError when no response arrived
- HttpStatusError for responses with status >= 400
"""

from typing import Any

import httpx
from loguru import logger

from carelink.services.errors import HttpStatusError

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


class HttpTransport:
    """
    Wire transport used by the executor and the auth coordinator.

    Usage:
        transport = HttpTransport("https://api.example.com")
        response = await transport.send("GET", "/profile")
        await transport.close()
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {**DEFAULT_HEADERS, **(headers or {})}
        self._http_client = client
        self._owns_client = client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers,
                follow_redirects=True,
            )
        return self._http_client

    def resolve(self, url: str) -> str:
        """Absolute URL for `url` (relative paths are joined to base_url)."""
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    async def send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        response = await client.request(
            method=method,
            url=self.resolve(url),
            params=params,
            json=json_data,
            headers={**self._headers, **(headers or {})},
            timeout=timeout if timeout is not None else self._timeout,
        )
        if response.status_code >= 400:
            raise HttpStatusError(response)
        return response

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug("HttpTransport closed")


def response_data(response: httpx.Response) -> Any:
    """Decode a response body: JSON when possible, text otherwise."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
