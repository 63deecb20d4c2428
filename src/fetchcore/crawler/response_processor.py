"""
Response body parsing, inline or on a dedicated thread pool.

Bodies larger than the configured threshold are parsed on a
ThreadPoolExecutor so downloads and parses overlap. A parse that does not
come back within the wait timeout, or that cannot be submitted because the
pool is shutting down, is redone inline rather than failing the fetch.
"""

from __future__ import annotations

import asyncio
import json
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

import structlog

from fetchcore.config.config import HealthConfig, PoolConfig
from fetchcore.observability.metrics import METRICS
from fetchcore.protocols import ParseFault
from fetchcore.utils.counters import AtomicCounter

logger = structlog.get_logger(__name__)

RAW_PREVIEW_LIMIT = 500
COMPRESSED_PREVIEW_LIMIT = 200
GZIP_LEAD_BYTE = 0x1F


def _preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...[truncated {len(text) - limit} chars]"


def parse_body(body: bytes) -> Any:
    """
    Decode a response body into a JSON value.

    Returns None for an empty or whitespace-only body. Raises ParseFault when
    the body still looks gzip/deflate compressed or cannot be decoded as JSON,
    including nesting too deep for the decoder.
    """
    if not body or not body.strip():
        return None

    text = body.decode("utf-8", errors="replace")
    if body[0] == GZIP_LEAD_BYTE:
        raise ParseFault(
            "Response appears to be compressed (GZIP/deflate) but was not properly decompressed",
            text[:COMPRESSED_PREVIEW_LIMIT],
        )

    try:
        return json.loads(text)
    except (ValueError, RecursionError) as e:
        raise ParseFault(f"Failed to parse JSON: {e}", _preview(text, RAW_PREVIEW_LIMIT)) from e


def parse_or_marker(body: bytes) -> Any:
    """Like parse_body, but a ParseFault becomes its marker value."""
    try:
        return parse_body(body)
    except ParseFault as fault:
        return fault.as_marker()


class ResponseProcessor:
    """Parses bodies, offloading large ones to a bounded processing pool."""

    def __init__(self, pool_config: PoolConfig, health_config: Optional[HealthConfig] = None):
        self.pool_config = pool_config
        self.health_config = health_config or HealthConfig()
        self.max_workers = pool_config.processing_workers or max(2, os.cpu_count() or 1)
        self._executor: Optional[ThreadPoolExecutor] = None
        if pool_config.concurrent_processing_enabled:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fetchcore-parse")
        self._shutdown = False

        self.submitted = AtomicCounter()
        self.completed = AtomicCounter()
        self.inline = AtomicCounter()
        self.fallbacks = AtomicCounter()

    def should_offload(self, body: bytes) -> bool:
        return (
            self._executor is not None
            and not self._shutdown
            and len(body) > self.pool_config.concurrent_processing_threshold
        )

    async def parse(self, body: bytes) -> Any:
        """Parse a body into a value, None, or a parse-fault marker."""
        if self.should_offload(body):
            return await self._parse_on_pool(body)
        return self._parse_inline(body)

    def _parse_inline(self, body: bytes) -> Any:
        self.inline.increment()
        METRICS["processor_tasks_total"].labels(mode="inline").inc()
        return parse_or_marker(body)

    async def _parse_on_pool(self, body: bytes) -> Any:
        assert self._executor is not None
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(self._executor, parse_or_marker, body)
        except RuntimeError as e:
            # Executor refused the work, most likely because it is shutting down
            self.fallbacks.increment()
            logger.warning("Processing pool rejected parse, parsing inline", error=str(e), size=len(body))
            return self._parse_inline(body)

        self.submitted.increment()
        METRICS["processor_tasks_total"].labels(mode="pool").inc()
        try:
            value = await asyncio.wait_for(future, timeout=self.health_config.processing_wait_timeout)
        except TimeoutError:
            self.fallbacks.increment()
            logger.warning(
                "Processing pool parse timed out, parsing inline",
                timeout=self.health_config.processing_wait_timeout,
                size=len(body),
            )
            return self._parse_inline(body)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            # The executor dropped the job, not our caller
            self.fallbacks.increment()
            logger.warning("Processing pool cancelled parse, parsing inline", size=len(body))
            return self._parse_inline(body)

        self.completed.increment()
        return value

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting parses and wait up to ``timeout`` for queued and running ones."""
        if self._shutdown:
            return
        self._shutdown = True
        if self._executor is None:
            return

        wait = self.health_config.processing_shutdown_timeout if timeout is None else timeout
        executor = self._executor
        try:
            await asyncio.wait_for(asyncio.to_thread(executor.shutdown, wait=True), timeout=wait)
        except TimeoutError:
            logger.warning("Processing pool did not stop in time", timeout=wait)
        logger.info("Processing pool shut down", **self.get_stats())

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def get_stats(self) -> Dict[str, Any]:
        return {
            "processing_workers": self.max_workers if self._executor is not None else 0,
            "submitted": self.submitted.value,
            "completed": self.completed.value,
            "inline": self.inline.value,
            "fallbacks": self.fallbacks.value,
        }
