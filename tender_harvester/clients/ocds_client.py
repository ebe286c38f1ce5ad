"""
OCDS release API client for Tender Harvester.

Asynchronous HTTP client for the paginated OCDS release endpoint. Maps
HTTP statuses and transport failures onto the exception hierarchy; retry
policy lives in the orchestrator, not here.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
import orjson

from ..config import UpstreamConfig
from ..utils.exceptions import (
    APIError,
    NetworkError,
    NotFoundError,
    ParsingError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
)


logger = logging.getLogger(__name__)


@dataclass
class OCDSClientConfig:
    """Configuration for the OCDS release client.

    Attributes:
        base_url: Release listing endpoint
        timeout: Default per-request timeout in seconds
        user_agent: User-Agent header value
    """

    base_url: str = "https://ocds-api.etenders.gov.za/api/OCDSReleases"
    timeout: float = 20.0
    user_agent: str = "Tender-Harvester/0.1"

    @classmethod
    def from_env(cls) -> "OCDSClientConfig":
        """Create configuration from environment variables."""
        return cls(
            base_url=UpstreamConfig.BASE_URL,
            timeout=UpstreamConfig.REQUEST_TIMEOUT,
            user_agent=UpstreamConfig.USER_AGENT,
        )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header given in seconds.

    Args:
        value: Raw header value

    Returns:
        Seconds as float, or None when absent or not numeric
    """
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class OCDSClient:
    """Asynchronous OCDS release client.

    Features:
    - Async HTTP with aiohttp and a shared session
    - Per-request timeout
    - Status mapping: 404 not found, 429 rate limited (Retry-After), 5xx
      server error, other 4xx client error
    - JSON decoding with orjson; non-object bodies are parsing errors

    Example:
        ```python
        async with OCDSClient(OCDSClientConfig.from_env()) as client:
            payload = await client.fetch_page(1, "2025-01-01", "2025-03-31", 50)
            print(len(payload.get("releases", [])))
        ```
    """

    def __init__(
        self,
        config: Optional[OCDSClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize OCDS client.

        Args:
            config: Client configuration (defaults to OCDSClientConfig.from_env())
            session: Existing aiohttp session to reuse (not closed by the client)
        """
        self.config = config or OCDSClientConfig.from_env()
        self._session = session
        self._owns_session = session is None
        self._stats = {
            "requests_made": 0,
            "successful": 0,
            "rate_limited": 0,
            "errors": 0,
        }

        logger.info(
            "Initialized OCDSClient",
            extra={"base_url": self.config.base_url, "timeout": self.config.timeout},
        )

    async def __aenter__(self) -> "OCDSClient":
        """Enter async context manager."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure aiohttp session is initialized."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Accept": "application/json",
                    "User-Agent": self.config.user_agent,
                }
            )
            self._owns_session = True
            logger.debug("Created new aiohttp session")

    async def close(self) -> None:
        """Close aiohttp session and cleanup resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session")

    async def fetch_page(
        self,
        page_number: int,
        date_from: str,
        date_to: str,
        page_size: int,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Fetch one page of the release listing.

        Args:
            page_number: 1-based page number
            date_from: Window start (YYYY-MM-DD)
            date_to: Window end (YYYY-MM-DD)
            page_size: Records per page
            timeout: Per-request timeout override in seconds

        Returns:
            Decoded JSON object

        Raises:
            RateLimitError: 429 (retry_after from the Retry-After header)
            ServerError: 5xx
            NotFoundError: 404
            APIError: Other 4xx
            ParsingError: Body is not a JSON object
            NetworkError: Connection-level failure
            RequestTimeoutError: Request exceeded its timeout
        """
        params = {
            "PageNumber": str(page_number),
            "PageSize": str(page_size),
            "dateFrom": date_from,
            "dateTo": date_to,
        }
        return await self._get_json(
            self.config.base_url, params, timeout, page_number=page_number
        )

    async def fetch_release(self, ocid: str, timeout: Optional[float] = None) -> dict[str, Any]:
        """Fetch a single release by ocid.

        Args:
            ocid: Release identifier
            timeout: Per-request timeout override in seconds

        Returns:
            Decoded JSON object

        Raises:
            NotFoundError: Release does not exist
            (plus the errors listed for fetch_page)
        """
        url = f"{self.config.base_url.rstrip('/')}/release/{ocid}"
        return await self._get_json(url, None, timeout, resource_id=ocid)

    async def _get_json(
        self,
        url: str,
        params: Optional[dict[str, str]],
        timeout: Optional[float],
        page_number: Optional[int] = None,
        resource_id: Optional[str] = None,
    ) -> dict[str, Any]:
        await self._ensure_session()
        request_timeout = timeout if timeout is not None else self.config.timeout
        self._stats["requests_made"] += 1

        logger.debug(
            "Making OCDS API request",
            extra={"url": url, "request_params": params, "timeout": request_timeout},
        )

        try:
            async with self._session.get(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=request_timeout),
            ) as response:
                body = await response.text()
                self._raise_for_status(response, body, url, params, resource_id)

                try:
                    payload = orjson.loads(body)
                except orjson.JSONDecodeError as e:
                    self._stats["errors"] += 1
                    raise ParsingError(
                        f"Malformed JSON response: {e}",
                        source=url,
                        raw_data=body,
                    ) from e

                if not isinstance(payload, dict):
                    self._stats["errors"] += 1
                    raise ParsingError(
                        "Invalid response format: expected JSON object",
                        source=url,
                        raw_data=body,
                    )

                self._stats["successful"] += 1
                logger.debug(
                    "Request successful",
                    extra={"url": url, "content_length": len(body), "status": response.status},
                )
                return payload

        except asyncio.TimeoutError as e:
            self._stats["errors"] += 1
            raise RequestTimeoutError(
                f"Request timed out after {request_timeout}s",
                timeout=request_timeout,
                page_number=page_number,
            ) from e

        except aiohttp.ClientError as e:
            self._stats["errors"] += 1
            logger.error(
                "HTTP client error",
                extra={"url": url, "error": str(e)},
            )
            raise NetworkError(
                f"Network connection failed: {e}",
                endpoint=url,
            ) from e

    def _raise_for_status(
        self,
        response: aiohttp.ClientResponse,
        body: str,
        url: str,
        params: Optional[dict[str, str]],
        resource_id: Optional[str],
    ) -> None:
        status = response.status
        if status < 400:
            return

        self._stats["errors"] += 1

        if status == 429:
            self._stats["rate_limited"] += 1
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "Rate limit exceeded",
                extra={"url": url, "retry_after": retry_after},
            )
            raise RateLimitError(
                retry_after=retry_after,
                endpoint=url,
                response_body=body,
                request_params=params,
            )

        if status == 404:
            raise NotFoundError(
                f"Resource not found: {resource_id or url}",
                resource_id=resource_id,
                endpoint=url,
                request_params=params,
            )

        if status >= 500:
            logger.error("Server error", extra={"status": status, "url": url})
            raise ServerError(
                f"API responded with status: {status}",
                endpoint=url,
                status_code=status,
                response_body=body,
                request_params=params,
            )

        logger.error("Client error", extra={"status": status, "url": url})
        raise APIError(
            f"API responded with status: {status}",
            endpoint=url,
            status_code=status,
            response_body=body,
            request_params=params,
        )

    def get_stats(self) -> dict[str, Any]:
        """Get request statistics.

        Returns:
            Dictionary with request counters
        """
        return dict(self._stats)
