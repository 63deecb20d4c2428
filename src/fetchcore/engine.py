"""
FetchEngine: the coordinator that turns a list of URLs into per-URL results.

A batch is grouped by host and each host group runs as one task on the
worker pool. Every URL goes through rate limiting, the transport, the
retry/backoff loop and the response processor, and always yields exactly
one FetchResult. Only a pool that cannot take work at all fails the batch.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlparse

import structlog

from fetchcore.config.config import Config, RetryPolicy
from fetchcore.crawler.http_client import HttpTransport
from fetchcore.crawler.rate_limiter import RateLimiter
from fetchcore.crawler.response_processor import ResponseProcessor
from fetchcore.crawler.retry import delay_for, is_retryable_error, should_retry
from fetchcore.crawler.wire import describe_error
from fetchcore.observability.metrics import METRICS, MetricsManager, status_class
from fetchcore.pool.health_monitor import HealthMonitor
from fetchcore.pool.worker_pool import WorkerPool
from fetchcore.protocols import (
    FetchCoreError,
    FetchRequest,
    FetchResult,
    HostBatch,
    PoolHealth,
    PoolShutdownError,
    ProcessorProtocol,
    TransportFault,
    TransportProtocol,
)
from fetchcore.utils.counters import AtomicCounter

logger = structlog.get_logger(__name__)

UNKNOWN_HOST = "unknown"

DEFAULT_HEADERS: Dict[str, str] = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}


class FetchEngineError(FetchCoreError):
    """The engine could not execute a batch at all."""


def host_of(url: str) -> str:
    """Network host of ``url``, or ``"unknown"`` when it has none or cannot be parsed."""
    try:
        return urlparse(url).hostname or UNKNOWN_HOST
    except ValueError:
        return UNKNOWN_HOST


def group_urls_by_host(urls: Iterable[str]) -> Dict[str, HostBatch]:
    """Group URLs by host, keeping first-seen order and dropping duplicates."""
    groups: Dict[str, HostBatch] = {}
    for url in urls:
        host = host_of(url)
        if host not in groups:
            groups[host] = HostBatch(host=host)
        groups[host].add(url)
    return groups


def merge_request_headers(defaults: Mapping[str, str], overrides: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Overlay per-request headers on the defaults, matching names case-insensitively."""
    merged = dict(defaults)
    for name, value in (overrides or {}).items():
        for existing in [k for k in merged if k.lower() == name.lower()]:
            del merged[existing]
        merged[name] = value
    return merged


class FetchEngine:
    """
    Fault-tolerant concurrent HTTP fetch engine.

    Usage::

        async with FetchEngine(config) as engine:
            results = await engine.fetch_all(urls)

    The engine owns its worker pool, health monitor, processing pool and
    transports; ``shutdown()`` (or leaving the context) stops all of them.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        transport: Optional[TransportProtocol] = None,
        processor: Optional[ProcessorProtocol] = None,
    ):
        self.config = config or Config()
        self._default_headers: Dict[str, str] = {"User-Agent": self.config.transport.user_agent, **DEFAULT_HEADERS}

        self._request_count = AtomicCounter()
        self._retry_count = AtomicCounter()
        self.rate_limiter = RateLimiter(self.config.pool.rate_limit_interval, counter=self._request_count)

        self.pool = WorkerPool(self.config.pool, self.config.health)
        self.monitor = HealthMonitor(self.pool, self.config.health)
        self.processor: ProcessorProtocol = processor or ResponseProcessor(self.config.pool, self.config.health)
        self.transport: TransportProtocol = transport or HttpTransport(self.config.transport, self.config.pool)
        self.metrics = MetricsManager(self.config.monitoring)

        self._started = False
        self._closed = False

        logger.info(
            "Fetch engine created",
            workers=self.config.pool.worker_count,
            max_retries=self.config.retry.max_retries,
            multiplexing=self.config.pool.multiplexing_enabled,
            concurrent_processing=self.config.pool.concurrent_processing_enabled,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.config.retry

    @property
    def request_count(self) -> int:
        """Logical fetches issued so far (retries are not counted)."""
        return self._request_count.value

    @property
    def default_headers(self) -> Dict[str, str]:
        return dict(self._default_headers)

    def configure(self, user_agent: str) -> None:
        """Set the User-Agent sent with every request."""
        self.add_default_header("User-Agent", user_agent)

    def add_default_header(self, name: str, value: str) -> None:
        """Add or replace a default outgoing header. Only allowed before the engine starts."""
        if self._started:
            raise FetchEngineError("Default headers cannot change once the engine has started")
        self._default_headers = merge_request_headers(self._default_headers, {name: value})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._closed:
            raise FetchEngineError("Engine has been shut down")
        if self._started:
            return
        self._started = True
        self.pool.start()
        self.monitor.start()
        self.metrics.start()
        logger.info("Fetch engine started")

    async def __aenter__(self) -> "FetchEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def shutdown(self) -> None:
        """
        Tear down everything the engine owns. Safe to call more than once.

        Order: processing pool, health monitor, worker pool, transports.
        """
        if self._closed:
            return
        self._closed = True
        health = self.config.health
        logger.info("Fetch engine shutting down")

        await self.processor.shutdown()
        await self.monitor.stop(timeout=health.monitor_shutdown_timeout)
        await self.pool.shutdown(grace_period=health.shutdown_grace_period)
        await self.transport.close()

        logger.info(
            "Fetch engine shut down",
            requests=self.request_count,
            retries=self._retry_count.value,
            **self.pool.snapshot().to_dict(),
        )

    # ------------------------------------------------------------------
    # Public fetch API
    # ------------------------------------------------------------------

    async def fetch(self, url: str, headers: Optional[Mapping[str, str]] = None) -> FetchResult:
        """Fetch one URL through the batch path."""
        results = await self.fetch_all([url], headers)
        return results[url]

    async def fetch_all(
        self, urls: Iterable[str], headers: Optional[Mapping[str, str]] = None
    ) -> Dict[str, FetchResult]:
        """
        Fetch every URL and return a mapping of URL to FetchResult.

        A saturated pool makes this wait for queue space. Raises
        FetchEngineError only when the pool has shut down and cannot run the
        batch at all.
        """
        urls = list(urls)
        await self.start()
        if not urls:
            return {}

        request_headers = merge_request_headers(self._default_headers, headers)
        groups = group_urls_by_host(urls)

        with structlog.contextvars.bound_contextvars(batch_id=uuid.uuid4().hex[:8]):
            logger.info("Starting batch", urls=len(urls), hosts=len(groups))

            futures: List[asyncio.Future] = []
            try:
                for batch in groups.values():
                    futures.append(
                        await self.pool.submit_wait(
                            self._fetch_host_batch, batch, request_headers, name=f"host:{batch.host}"
                        )
                    )
            except PoolShutdownError as e:
                logger.error("Worker pool rejected host task", host=batch.host, error=str(e))
                self._abandon(futures)
                raise FetchEngineError(f"Worker pool could not accept batch: {e}") from e
            except BaseException:
                self._abandon(futures)
                raise

            outcomes = await asyncio.gather(*futures, return_exceptions=True)

            results: Dict[str, FetchResult] = {}
            for batch, outcome in zip(groups.values(), outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("Host task failed", host=batch.host, error=repr(outcome))
                    for url in batch.urls:
                        results[url] = FetchResult.failure(url, f"Host task error: {outcome!r}")
                else:
                    results.update(outcome)

            for url in urls:
                if url not in results:
                    results[url] = FetchResult.failure(url, "No result produced for URL")

            successful = sum(1 for result in results.values() if result.successful)
            logger.info("Batch complete", successful=successful, total=len(results))
        return results

    async def post_json(self, url: str, body: Any, headers: Optional[Mapping[str, str]] = None) -> FetchResult:
        """POST a JSON body with the same retry and transport handling as GET."""
        await self.start()
        if isinstance(body, bytes):
            payload = body
        elif isinstance(body, str):
            payload = body.encode("utf-8")
        else:
            payload = json.dumps(body).encode("utf-8")

        request_headers = merge_request_headers(self._default_headers, headers)
        request_headers = merge_request_headers(request_headers, {"Content-Type": "application/json"})
        request = FetchRequest(url=url, headers=request_headers, method="POST", body=payload)
        return await self._fetch_with_retry(request, multiplexed=False)

    def get_pool_health(self) -> PoolHealth:
        return self.pool.snapshot()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": self.request_count,
            "retries": self._retry_count.value,
            "pool": self.pool.snapshot().to_dict(),
            "processor": self.processor.get_stats(),
            "transport": self.transport.get_stats(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _abandon(futures: List[asyncio.Future]) -> None:
        """Cancel host tasks from a batch that will not be collected."""
        for future in futures:
            future.cancel()

    async def _fetch_host_batch(self, batch: HostBatch, headers: Mapping[str, str]) -> Dict[str, FetchResult]:
        """Worker-pool task for one host group."""
        multiplexed = self.config.pool.multiplexing_enabled
        requests = [FetchRequest(url=url, headers=headers) for url in batch.urls]

        if multiplexed and len(requests) > 1:
            logger.debug("Fetching host group concurrently", host=batch.host, urls=len(requests))
            outcomes = await asyncio.gather(
                *(self._fetch_with_retry(request, multiplexed=True) for request in requests),
                return_exceptions=True,
            )
            results: Dict[str, FetchResult] = {}
            for request, outcome in zip(requests, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("Multiplexed fetch failed", url=request.url, error=repr(outcome))
                    results[request.url] = FetchResult.failure(request.url, f"Multiplexed fetch error: {outcome!r}")
                else:
                    results[request.url] = outcome
            return results

        results = {}
        for request in requests:
            results[request.url] = await self._fetch_with_retry(request, multiplexed=multiplexed)
        return results

    async def _fetch_with_retry(self, request: FetchRequest, *, multiplexed: bool) -> FetchResult:
        """One fetch task: rate limit once, then attempt until success or the policy says stop."""
        policy = self.config.retry
        await self.rate_limiter.acquire()
        METRICS["requests_total"].labels(method=request.method).inc()

        result = FetchResult(url=request.url)
        started = time.perf_counter()
        attempt = 0
        while True:
            logger.info("Fetching", url=request.url, method=request.method, attempt=attempt + 1)
            await self._attempt(request, result, multiplexed)
            result.attempts = attempt + 1

            if result.successful:
                break
            if should_retry(result, attempt, policy):
                delay = delay_for(attempt, policy)
                self._retry_count.increment()
                METRICS["retries_total"].inc()
                logger.warning(
                    "Retrying request",
                    url=request.url,
                    status=result.status_code,
                    error=result.error,
                    attempt=attempt + 1,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            transient = result.status_code in policy.retryable_status_codes or is_retryable_error(result.error, policy)
            if transient:
                logger.error(
                    "Retries exhausted",
                    url=request.url,
                    status=result.status_code,
                    error=result.error,
                    attempts=result.attempts,
                )
            else:
                logger.warning(
                    "Request failed, not retrying",
                    url=request.url,
                    status=result.status_code,
                    error=result.error,
                )
            break

        elapsed = time.perf_counter() - started
        result.duration_ms = elapsed * 1000
        METRICS["responses_total"].labels(status_class=status_class(result.status_code)).inc()
        METRICS["fetch_latency_seconds"].observe(elapsed)
        return result

    async def _attempt(self, request: FetchRequest, result: FetchResult, multiplexed: bool) -> None:
        """Run a single attempt and record its outcome on ``result``."""
        result.status_code = 0
        result.data = None
        result.headers = {}
        result.error = None

        transport_config = self.config.transport
        if self.config.pool.concurrent_processing_enabled:
            budget = transport_config.concurrent_request_timeout
        else:
            budget = None

        raw = None
        METRICS["in_flight_requests"].inc()
        try:
            async with asyncio.timeout(budget):
                raw = await self.transport.send(
                    request, timeout=transport_config.request_timeout, multiplexed=multiplexed
                )
                data = await self.processor.parse(raw.body)
        except TransportFault as fault:
            result.status_code = fault.status
            result.headers = dict(fault.headers)
            result.error = fault.description
            return
        except TimeoutError:
            result.error = f"Request timed out after {budget}s"
            return
        except Exception as e:
            logger.error("Unexpected error during attempt", url=request.url, error=repr(e))
            if raw is not None:
                result.status_code = raw.status
                result.headers = dict(raw.headers)
            result.error = describe_error(e)
            return
        finally:
            METRICS["in_flight_requests"].dec()

        result.status_code = raw.status
        result.headers = dict(raw.headers)
        result.data = data
