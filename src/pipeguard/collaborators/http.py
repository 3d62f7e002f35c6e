"""
aiohttp-backed Fetcher that reports failures as typed faults.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp
import structlog

from pipeguard.config.config import FetcherConfig
from pipeguard.faults import NetworkFault, ValidationFault

logger = structlog.get_logger(__name__)

# Status codes worth retrying besides 5xx
RETRYABLE_STATUS = frozenset({408, 429})


class HttpFetcher:
    """
    Fetches page content over HTTP.

    Connection problems, 5xx, 408 and 429 responses become recoverable
    NetworkFaults. Every other 4xx is a ValidationFault: the request itself
    is wrong and repeating it will not help.
    """

    def __init__(self, config: Optional[FetcherConfig] = None) -> None:
        self.config = config or FetcherConfig()
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize the HTTP client session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self.config.max_connections, ttl_dns_cache=30),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"User-Agent": self.config.user_agent},
            )
            logger.debug("HTTP fetcher initialized", timeout=self.config.timeout)

    async def close(self) -> None:
        """Close the HTTP session and clean up resources."""
        if self.session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> HttpFetcher:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def fetch(self, url: str) -> str:
        if self.session is None:
            raise RuntimeError("HTTP fetcher not initialized. Call initialize() first.")

        try:
            async with self.session.get(url) as response:
                status = response.status
                if status >= 500 or status in RETRYABLE_STATUS:
                    raise NetworkFault(
                        f"HTTP {status} from {url}",
                        details={"status": status, "retry_after": response.headers.get("Retry-After")},
                    )
                if status >= 400:
                    raise ValidationFault(f"HTTP {status} from {url}", details={"status": status})
                return await response.text(errors="replace")
        except aiohttp.InvalidURL as e:
            raise ValidationFault(f"Invalid URL: {url}") from e
        except aiohttp.ClientError as e:
            raise NetworkFault(f"{type(e).__name__} fetching {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise NetworkFault(f"Request to {url} timed out after {self.config.timeout}s") from e
