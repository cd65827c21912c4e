"""
HttpClient - async HTTP GET used for the remote fallback of every source.

Maps httpx outcomes onto the fetch error taxonomy:
- 404                  -> NotFoundError
- 429                  -> RateLimitError (honours Retry-After)
- other 4xx            -> NetworkError, not retryable
- 5xx, timeouts, I/O   -> NetworkError, retryable
"""

import httpx
from loguru import logger

from dashsync.services.errors import NetworkError, NotFoundError, RateLimitError


class HttpClient:
    """
    Usage:
        async with HttpClient(timeout=15.0) as client:
            body = await client.get("https://data.example.org/casualties.json")
    """

    def __init__(
        self,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = timeout
        self._headers = headers or {}
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client; a closed client is never recreated."""
        if self._closed:
            raise NetworkError("HttpClient is closed", retryable=False)
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http_client

    async def get(
        self,
        url: str,
        source_id: str | None = None,
        key: str | None = None,
    ) -> bytes:
        """
        Fetch ``url`` and return the raw body.

        Raises:
            NotFoundError: Remote has no such resource
            RateLimitError: Remote asked us to slow down
            NetworkError: Any other transport or HTTP failure
        """
        client = await self._get_http_client()

        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request to {url} timed out", source_id=source_id, key=key
            ) from e
        except httpx.RequestError as e:
            raise NetworkError(
                f"Request to {url} failed: {e}", source_id=source_id, key=key
            ) from e

        status = response.status_code
        if status == 404:
            raise NotFoundError(f"{url} not found", source_id=source_id, key=key)
        if status == 429:
            raise RateLimitError(
                source_id=source_id,
                key=key,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 400:
            raise NetworkError(
                f"HTTP {status}: {response.text[:200]}",
                source_id=source_id,
                key=key,
                retryable=status >= 500,
            )

        logger.debug(f"GET {url} -> {status} ({len(response.content)} bytes)")
        return response.content

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
        self._http_client = None
        self._closed = True
        logger.debug("HttpClient closed")

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form; fall back to computed backoff.
        return None
