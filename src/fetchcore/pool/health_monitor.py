"""
Periodic health checks and self-healing for the worker pool.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import psutil
import structlog

from fetchcore.config.config import HealthConfig
from fetchcore.observability.metrics import METRICS, update_process_metrics
from fetchcore.pool.worker_pool import WorkerPool
from fetchcore.protocols import PoolHealth

logger = structlog.get_logger(__name__)


class HealthMonitor:
    """Background task that checks the pool on a fixed period and repairs it."""

    def __init__(self, pool: WorkerPool, config: Optional[HealthConfig] = None):
        self.pool = pool
        self.config = config or HealthConfig()
        self._task: Optional[asyncio.Task] = None
        self.checks_run = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="fetchcore-health-monitor")
        logger.info("Health monitor started", interval=self.config.check_interval)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.config.check_interval)
            try:
                self.check()
            except Exception:
                # A failed check must never stop future checks
                logger.exception("Health check failed")

    def check(self) -> PoolHealth:
        """Run one health check; returns the snapshot taken after any repair."""
        self.pool.mark_health_check()
        self.checks_run += 1
        before = self.pool.snapshot()
        logger.debug("Pool health check", **before.to_dict())

        if before.pool_size < before.core_size:
            logger.warning(
                "Pool below core size, restarting workers",
                pool_size=before.pool_size,
                core_size=before.core_size,
            )
            started = self.pool.prestart_core_workers()
            if started:
                logger.info("Restarted workers", started=started)

        if before.queue_size > self.config.queue_high_water_mark:
            logger.warning(
                "Task queue above high-water mark, consider a larger pool",
                queue_size=before.queue_size,
                high_water_mark=self.config.queue_high_water_mark,
            )

        if before.workers_replaced > self.config.instability_factor * before.core_size:
            logger.warning(
                "High worker replacement count, possible systemic instability",
                workers_replaced=before.workers_replaced,
                core_size=before.core_size,
            )

        # Verdict reflects the pool after any repair
        repaired = self.pool.snapshot()
        degraded = repaired.pool_size < repaired.core_size or repaired.queue_size > self.config.queue_high_water_mark
        self.pool.set_degraded(degraded)
        after = self.pool.snapshot()
        METRICS["pool_size"].set(after.pool_size)
        METRICS["pool_queue_depth"].set(after.queue_size)
        try:
            update_process_metrics()
        except psutil.Error as e:
            logger.debug("Process metrics unavailable", error=str(e))
        return after

    async def stop(self, timeout: Optional[float] = None) -> None:
        if self._task is None:
            return
        wait = self.config.monitor_shutdown_timeout if timeout is None else timeout
        task, self._task = self._task, None
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=wait)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        except TimeoutError:
            logger.warning("Health monitor did not stop in time", timeout=wait)
        logger.info("Health monitor stopped", checks_run=self.checks_run)
