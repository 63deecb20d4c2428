"""
HTTP/2 transport with one shared connection pool per host.

Concurrent requests to the same host share that host's httpx client, so
they ride the same negotiated connection(s). A per-host semaphore caps the
number of requests in flight to ``max_connections_per_host``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from fetchcore.config.config import TransportConfig
from fetchcore.crawler.wire import describe_error, merge_headers
from fetchcore.protocols import FetchRequest, RawResponse, TransportFault
from fetchcore.utils.counters import AtomicCounter

logger = structlog.get_logger(__name__)


def host_key(url: str) -> str:
    try:
        return urlparse(url).hostname or "unknown"
    except ValueError:
        return "unknown"


class MultiplexedClient:
    """Per-host pool of HTTP/2 clients."""

    def __init__(
        self,
        config: TransportConfig,
        *,
        max_connections_per_host: int = 4,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.max_connections_per_host = max_connections_per_host
        # Injected transport replaces the network layer (used by tests)
        self._transport = transport
        self._clients: Dict[str, httpx.AsyncClient] = {}
        self._host_semaphores: Dict[str, asyncio.Semaphore] = {}
        self._lock = asyncio.Lock()
        self._requests = AtomicCounter()
        self._failures = AtomicCounter()

    def _build_client(self) -> httpx.AsyncClient:
        limits = httpx.Limits(
            max_connections=self.max_connections_per_host,
            max_keepalive_connections=self.max_connections_per_host,
        )
        timeout = httpx.Timeout(self.config.request_timeout, connect=self.config.connect_timeout)
        return httpx.AsyncClient(
            http2=True,
            limits=limits,
            timeout=timeout,
            follow_redirects=self.config.follow_redirects,
            transport=self._transport,
        )

    async def _client_for(self, host: str) -> tuple[httpx.AsyncClient, asyncio.Semaphore]:
        async with self._lock:
            client = self._clients.get(host)
            if client is None:
                client = self._build_client()
                self._clients[host] = client
                self._host_semaphores[host] = asyncio.Semaphore(self.max_connections_per_host)
                logger.debug("Created multiplexed client", host=host, max_connections=self.max_connections_per_host)
            return client, self._host_semaphores[host]

    async def send(self, request: FetchRequest, *, timeout: float) -> RawResponse:
        """Perform one request on the host's shared client; raise TransportFault on failure."""
        client, semaphore = await self._client_for(host_key(request.url))
        self._requests.increment()

        async with semaphore:
            try:
                async with asyncio.timeout(timeout):
                    outgoing = client.build_request(
                        request.method,
                        request.url,
                        headers=dict(request.headers),
                        content=request.body,
                    )
                    response = await client.send(outgoing, stream=True)
                    headers = merge_headers(response.headers.multi_items())
                    try:
                        body = await response.aread()
                    except httpx.HTTPError as e:
                        self._failures.increment()
                        raise TransportFault(
                            f"Failed to read response body: {describe_error(e)}",
                            status=response.status_code,
                            headers=headers,
                        ) from e
                    finally:
                        await response.aclose()
            except TransportFault:
                raise
            except (TimeoutError, httpx.TimeoutException) as e:
                self._failures.increment()
                raise TransportFault(f"Request timed out after {timeout}s") from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                self._failures.increment()
                raise TransportFault(describe_error(e)) from e

        return RawResponse(
            status=response.status_code,
            headers=headers,
            body=body,
            url=str(response.url),
            http_version=response.http_version,
        )

    async def close(self) -> None:
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            self._host_semaphores.clear()
        for client in clients:
            await client.aclose()
        if clients:
            logger.info("Multiplexed clients closed", hosts=len(clients))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "hosts": len(self._clients),
            "requests": self._requests.value,
            "failures": self._failures.value,
        }

