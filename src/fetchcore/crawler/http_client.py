"""
HTTP transports: a standard HTTP/1.1 client and the router the engine talks to.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import aiohttp
import structlog

from fetchcore.config.config import PoolConfig, TransportConfig
from fetchcore.crawler.multiplex import MultiplexedClient
from fetchcore.crawler.wire import describe_error, merge_headers
from fetchcore.protocols import FetchRequest, RawResponse, TransportFault
from fetchcore.utils.counters import AtomicCounter

logger = structlog.get_logger(__name__)


class HttpClient:
    """One request per connection over HTTP/1.1, backed by aiohttp."""

    def __init__(self, config: TransportConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self._requests = AtomicCounter()
        self._failures = AtomicCounter()

    async def initialize(self) -> None:
        """Create the client session."""
        if self.session is None:
            timeout = aiohttp.ClientTimeout(
                total=self.config.request_timeout,
                connect=self.config.connect_timeout,
            )
            # force_close gives each request its own connection
            connector = aiohttp.TCPConnector(limit=0, force_close=True)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                version=aiohttp.HttpVersion11,
            )
            logger.info("Standard HTTP client initialized", version="HTTP/1.1")

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None
            logger.info("Standard HTTP client closed")

    async def __aenter__(self) -> "HttpClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def send(self, request: FetchRequest, *, timeout: float) -> RawResponse:
        """Perform one request; raise TransportFault on any transport failure."""
        if self.session is None:
            await self.initialize()
        assert self.session is not None

        self._requests.increment()
        try:
            async with asyncio.timeout(timeout):
                async with self.session.request(
                    request.method,
                    request.url,
                    headers=dict(request.headers),
                    data=request.body,
                    allow_redirects=self.config.follow_redirects,
                ) as response:
                    headers = merge_headers(response.headers.items())
                    try:
                        body = await response.read()
                    except aiohttp.ClientError as e:
                        self._failures.increment()
                        raise TransportFault(
                            f"Failed to read response body: {describe_error(e)}",
                            status=response.status,
                            headers=headers,
                        ) from e
                    version = response.version
                    return RawResponse(
                        status=response.status,
                        headers=headers,
                        body=body,
                        url=str(response.url),
                        http_version=f"HTTP/{version.major}.{version.minor}" if version else "HTTP/1.1",
                    )
        except TransportFault:
            raise
        except TimeoutError as e:
            self._failures.increment()
            raise TransportFault(f"Request timed out after {timeout}s") from e
        except (aiohttp.ClientError, ValueError) as e:
            self._failures.increment()
            raise TransportFault(describe_error(e)) from e

    def get_stats(self) -> Dict[str, Any]:
        return {"requests": self._requests.value, "failures": self._failures.value}


class HttpTransport:
    """
    Routes each request to the standard or the multiplexed client.

    Multiplexed sends go to a per-host HTTP/2 client when multiplexing is
    enabled in the pool configuration; everything else uses HTTP/1.1.
    """

    def __init__(
        self,
        transport_config: TransportConfig,
        pool_config: PoolConfig,
        *,
        multiplexed_client: Optional[MultiplexedClient] = None,
    ):
        self.transport_config = transport_config
        self.pool_config = pool_config
        self.standard = HttpClient(transport_config)
        self.multiplexed: Optional[MultiplexedClient] = None
        if pool_config.multiplexing_enabled:
            self.multiplexed = multiplexed_client or MultiplexedClient(
                transport_config, max_connections_per_host=pool_config.max_connections_per_host
            )

    async def send(self, request: FetchRequest, *, timeout: float, multiplexed: bool = False) -> RawResponse:
        if multiplexed and self.multiplexed is not None:
            return await self.multiplexed.send(request, timeout=timeout)
        return await self.standard.send(request, timeout=timeout)

    async def close(self) -> None:
        await self.standard.close()
        if self.multiplexed is not None:
            await self.multiplexed.close()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"standard": self.standard.get_stats()}
        if self.multiplexed is not None:
            stats["multiplexed"] = self.multiplexed.get_stats()
        return stats
