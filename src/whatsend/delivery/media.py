"""
Media Fetcher

Downloads media referenced by a delivery job so it can be sent as bytes.
"""

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


class MediaFetchError(Exception):
    """Media could not be downloaded."""

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


@dataclass
class FetchedMedia:
    data: bytes
    mimetype: str | None


class MediaFetcher:
    """HTTP media downloader."""

    def __init__(
        self,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def fetch(self, url: str) -> FetchedMedia:
        """
        Download ``url``.

        Raises:
            MediaFetchError: Malformed URL, network error, non-2xx status or empty body
        """
        client = await self._get_client()
        try:
            response = await client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MediaFetchError(url, f"Media request failed: {e}") from e

        if response.status_code >= 400:
            raise MediaFetchError(url, f"Media request returned {response.status_code}")
        if not response.content:
            raise MediaFetchError(url, "Media response is empty")

        mimetype = response.headers.get("content-type", "").split(";")[0].strip() or None
        logger.debug("Fetched media", extra={"url": url, "size": len(response.content), "mimetype": mimetype})
        return FetchedMedia(data=response.content, mimetype=mimetype)
