"""
Self-healing pool of long-lived asyncio workers.

Workers pull work items from a bounded queue. Each execution is wrapped in
a fault boundary that classifies what escaped the task:

- ordinary exceptions are logged and handed to the submitter's future; the
  worker carries on with the next item
- fatal faults (MemoryError, SystemError, WorkerFatalError) are logged as
  critical, counted as a replacement and end the worker; the exit callback
  starts a fresh worker so the pool returns to its core size

When the queue is full a submission runs on a detached overflow task
instead of being dropped. The overflow lane is capped; past the cap
``submit`` fails with PoolExhaustedError while ``submit_wait`` waits for
queue space.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from fetchcore.config.config import HealthConfig, PoolConfig
from fetchcore.observability.metrics import METRICS
from fetchcore.protocols import (
    PoolExhaustedError,
    PoolHealth,
    PoolShutdownError,
    PoolState,
    WorkerFatalError,
)
from fetchcore.utils.counters import AtomicCounter

logger = structlog.get_logger(__name__)

FATAL_FAULTS = (MemoryError, SystemError, WorkerFatalError)


@dataclass
class WorkItem:
    fn: Callable[..., Awaitable[Any]]
    args: tuple
    future: asyncio.Future
    name: str


class WorkerPool:
    """Bounded asyncio worker pool that replaces workers lost to fatal faults."""

    def __init__(self, config: PoolConfig, health_config: Optional[HealthConfig] = None):
        self.config = config
        self.health_config = health_config or HealthConfig()
        self.core_size = config.worker_count
        self._queue: asyncio.Queue[WorkItem] = asyncio.Queue(maxsize=config.queue_capacity)
        self._workers: Dict[int, asyncio.Task] = {}
        self._overflow: Set[asyncio.Task] = set()
        self._state = PoolState.CREATED

        self._next_worker_id = AtomicCounter()
        self._created = AtomicCounter()
        self._replaced = AtomicCounter()
        self._completed = AtomicCounter()
        self._active = AtomicCounter()
        self._last_health_check = datetime.now()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def accepting(self) -> bool:
        return self._state in (PoolState.CREATED, PoolState.RUNNING, PoolState.DEGRADED)

    def start(self) -> None:
        """Start the core workers. Must be called with a running event loop."""
        if self._state is not PoolState.CREATED:
            return
        self._state = PoolState.RUNNING
        started = self.prestart_core_workers()
        logger.info("Worker pool started", workers=started, queue_capacity=self.config.queue_capacity)

    def prestart_core_workers(self) -> int:
        """Start workers until the pool is back at its core size. Returns how many were started."""
        if self._state not in (PoolState.RUNNING, PoolState.DEGRADED, PoolState.SHUTTING_DOWN):
            return 0
        started = 0
        while self.pool_size < self.core_size:
            self._spawn_worker()
            started += 1
        return started

    def set_degraded(self, degraded: bool) -> None:
        """Record the health monitor's verdict. Only moves between RUNNING and DEGRADED."""
        if degraded and self._state is PoolState.RUNNING:
            self._state = PoolState.DEGRADED
        elif not degraded and self._state is PoolState.DEGRADED:
            self._state = PoolState.RUNNING

    def mark_health_check(self) -> None:
        self._last_health_check = datetime.now()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, fn: Callable[..., Awaitable[Any]], *args: Any, name: Optional[str] = None) -> asyncio.Future:
        """
        Queue ``fn(*args)`` for execution and return a future for its result.

        Raises PoolShutdownError once shutdown has begun and PoolExhaustedError
        when both the queue and the overflow lane are full.
        """
        if not self.accepting:
            raise PoolShutdownError(f"Worker pool is {self._state.value}; not accepting work")
        if self._state is PoolState.CREATED:
            self.start()

        loop = asyncio.get_running_loop()
        item = WorkItem(fn=fn, args=args, future=loop.create_future(), name=name or getattr(fn, "__name__", "task"))
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._run_overflow(item)
        METRICS["pool_queue_depth"].set(self._queue.qsize())
        return item.future

    async def submit_wait(
        self, fn: Callable[..., Awaitable[Any]], *args: Any, name: Optional[str] = None
    ) -> asyncio.Future:
        """
        Like ``submit``, but a saturated pool makes the caller wait for queue
        space instead of raising PoolExhaustedError.
        """
        try:
            return self.submit(fn, *args, name=name)
        except PoolExhaustedError:
            pass

        loop = asyncio.get_running_loop()
        item = WorkItem(fn=fn, args=args, future=loop.create_future(), name=name or getattr(fn, "__name__", "task"))
        logger.debug("Pool saturated, waiting for queue space", task=item.name, queue_size=self._queue.qsize())
        await self._queue.put(item)
        if self._state is PoolState.STOPPED:
            # Landed after the workers were cancelled; nothing will pick it up
            item.future.cancel()
        METRICS["pool_queue_depth"].set(self._queue.qsize())
        return item.future

    def _run_overflow(self, item: WorkItem) -> None:
        if len(self._overflow) >= self.config.overflow_limit:
            raise PoolExhaustedError(
                f"Task queue full ({self.config.queue_capacity}) and "
                f"overflow lane at cap ({self.config.overflow_limit})"
            )
        self._replaced.increment()
        METRICS["pool_workers_replaced_total"].inc()
        logger.warning(
            "Task queue full, running task on overflow lane",
            task=item.name,
            overflow_in_use=len(self._overflow) + 1,
        )
        task = asyncio.create_task(self._execute(item, worker_id=None), name=f"fetchcore-overflow-{item.name}")
        self._overflow.add(task)
        task.add_done_callback(self._on_overflow_exit)

    def _on_overflow_exit(self, task: asyncio.Task) -> None:
        self._overflow.discard(task)
        if not task.cancelled():
            # Already reported through the submitter's future
            task.exception()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _spawn_worker(self) -> None:
        worker_id = self._next_worker_id.get_and_increment()
        task = asyncio.create_task(self._worker_loop(worker_id), name=f"fetchcore-worker-{worker_id}")
        self._workers[worker_id] = task
        task.add_done_callback(lambda t, wid=worker_id: self._on_worker_exit(wid, t))
        self._created.increment()
        METRICS["pool_size"].set(self.pool_size)

    async def _worker_loop(self, worker_id: int) -> None:
        logger.debug("Worker started", worker_id=worker_id)
        while True:
            item = await self._queue.get()
            try:
                await self._execute(item, worker_id)
            finally:
                self._queue.task_done()

    async def _execute(self, item: WorkItem, worker_id: Optional[int]) -> None:
        """Run one item inside the fault boundary. Re-raises only fatal faults."""
        if item.future.done():
            return

        self._active.increment()
        try:
            result = await item.fn(*item.args)
        except asyncio.CancelledError:
            item.future.cancel()
            raise
        except FATAL_FAULTS as e:
            self._replaced.increment()
            METRICS["pool_workers_replaced_total"].inc()
            logger.critical(
                "Fatal fault in worker, worker will be replaced",
                worker_id=worker_id,
                task=item.name,
                error=repr(e),
            )
            if not item.future.done():
                item.future.set_exception(e)
            raise
        except Exception as e:
            logger.warning("Task failed in worker", worker_id=worker_id, task=item.name, error=repr(e))
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active.increment(-1)
            self._completed.increment()

    def _on_worker_exit(self, worker_id: int, task: asyncio.Task) -> None:
        self._workers.pop(worker_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        logger.error("Worker exited", worker_id=worker_id, error=repr(exc) if exc else None)
        if self._state is not PoolState.STOPPED and self.pool_size < self.core_size:
            self._spawn_worker()
            logger.info("Replacement worker started", pool_size=self.pool_size, core_size=self.core_size)
        METRICS["pool_size"].set(self.pool_size)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @property
    def pool_size(self) -> int:
        return sum(1 for task in self._workers.values() if not task.done())

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def workers_replaced(self) -> int:
        return self._replaced.value

    def snapshot(self) -> PoolHealth:
        return PoolHealth(
            active_workers=self._active.value,
            pool_size=self.pool_size,
            core_size=self.core_size,
            completed_tasks=self._completed.value,
            queue_size=self._queue.qsize(),
            workers_created=self._created.value,
            workers_replaced=self._replaced.value,
            last_health_check=self._last_health_check,
            state=self._state,
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self, grace_period: Optional[float] = None) -> None:
        """
        Stop accepting work, drain queued and running tasks for up to
        ``grace_period`` seconds, then cancel whatever is left.
        """
        if not self.accepting:
            return
        grace = self.health_config.shutdown_grace_period if grace_period is None else grace_period
        self._state = PoolState.SHUTTING_DOWN
        logger.info("Worker pool shutting down", queued=self._queue.qsize(), grace_period=grace)

        try:
            async with asyncio.timeout(grace):
                await self._queue.join()
                if self._overflow:
                    await asyncio.gather(*self._overflow, return_exceptions=True)
        except TimeoutError:
            logger.warning(
                "Worker pool did not drain in time, forcing shutdown",
                queued=self._queue.qsize(),
                active=self._active.value,
            )
            self._cancel_queued()

        self._state = PoolState.STOPPED
        remaining = [t for t in [*self._workers.values(), *self._overflow] if not t.done()]
        for task in remaining:
            task.cancel()
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)
        METRICS["pool_size"].set(0)
        METRICS["pool_queue_depth"].set(0)
        logger.info("Worker pool stopped", **self.snapshot().to_dict())

    def _cancel_queued(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            item.future.cancel()
            self._queue.task_done()
