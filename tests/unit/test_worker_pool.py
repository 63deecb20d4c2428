"""
Tests for the self-healing worker pool.
"""

import asyncio

import pytest
import pytest_asyncio

from fetchcore.config import HealthConfig, PoolConfig
from fetchcore.observability.metrics import METRICS
from fetchcore.pool import HealthMonitor, WorkerPool
from fetchcore.protocols import PoolExhaustedError, PoolShutdownError, PoolState, WorkerFatalError

from tests.helpers import metric_delta


async def settle(rounds: int = 5) -> None:
    """Let done-callbacks and freshly spawned workers run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def pool(cleanup_tasks):
    worker_pool = WorkerPool(PoolConfig(worker_count=3), HealthConfig(shutdown_grace_period=1.0))
    worker_pool.start()
    yield worker_pool
    await worker_pool.shutdown()


async def echo(value):
    await asyncio.sleep(0)
    return value


@pytest.mark.unit
class TestSubmission:
    @pytest.mark.asyncio
    async def test_start_creates_core_workers(self, pool):
        health = pool.snapshot()
        assert health.pool_size == 3
        assert health.workers_created == 3
        assert health.state is PoolState.RUNNING
        assert health.healthy

    @pytest.mark.asyncio
    async def test_submit_returns_result(self, pool):
        results = await asyncio.gather(*(pool.submit(echo, i) for i in range(10)))
        assert results == list(range(10))
        assert pool.snapshot().completed_tasks == 10

    @pytest.mark.asyncio
    async def test_submit_starts_a_created_pool(self):
        worker_pool = WorkerPool(PoolConfig(worker_count=2))
        assert worker_pool.state is PoolState.CREATED
        assert await worker_pool.submit(echo, "x") == "x"
        assert worker_pool.state is PoolState.RUNNING
        await worker_pool.shutdown()

    @pytest.mark.asyncio
    async def test_ordinary_fault_is_absorbed_and_worker_survives(self, pool):
        async def broken():
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await pool.submit(broken)
        await settle()

        health = pool.snapshot()
        assert health.pool_size == 3
        assert health.workers_created == 3
        assert health.workers_replaced == 0
        assert await pool.submit(echo, "still working") == "still working"


@pytest.mark.unit
class TestFatalFaults:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("fault", [WorkerFatalError("worker corrupted"), MemoryError(), SystemError("boom")])
    async def test_fatal_fault_replaces_worker(self, pool, fault):
        async def fatal():
            raise fault

        with metric_delta(METRICS["pool_workers_replaced_total"], 1):
            with pytest.raises(type(fault)):
                await pool.submit(fatal)
            await settle()

        health = pool.snapshot()
        assert health.workers_replaced == 1
        assert health.workers_created == 4
        assert health.pool_size == 3
        assert await pool.submit(echo, 1) == 1

    @pytest.mark.asyncio
    async def test_pool_at_target_after_monitor_tick(self, pool):
        """A fatal fault mid-task leaves the pool at target size after the next health check."""
        monitor = HealthMonitor(pool, HealthConfig())

        async def dies_midway():
            await asyncio.sleep(0.01)
            raise WorkerFatalError("lost state")

        before = pool.snapshot().workers_replaced
        with pytest.raises(WorkerFatalError):
            await pool.submit(dies_midway)

        health = monitor.check()
        assert health.workers_replaced >= before + 1
        assert health.pool_size >= health.core_size


@pytest.mark.unit
class TestOverflow:
    @pytest.mark.asyncio
    async def test_full_queue_uses_overflow_lane_then_exhausts(self):
        worker_pool = WorkerPool(PoolConfig(worker_count=1, queue_capacity=1, overflow_limit=1))
        worker_pool.start()
        release = asyncio.Event()
        started = asyncio.Event()

        async def blocker():
            started.set()
            await release.wait()
            return "blocked"

        first = worker_pool.submit(blocker)
        await started.wait()
        queued = worker_pool.submit(echo, "queued")
        overflow = worker_pool.submit(echo, "overflow")

        assert worker_pool.snapshot().workers_replaced == 1
        with pytest.raises(PoolExhaustedError):
            worker_pool.submit(echo, "rejected")

        assert await overflow == "overflow"
        release.set()
        assert await first == "blocked"
        assert await queued == "queued"
        await worker_pool.shutdown()

    @pytest.mark.asyncio
    async def test_submit_wait_holds_until_queue_has_space(self, cleanup_tasks):
        worker_pool = WorkerPool(PoolConfig(worker_count=1, queue_capacity=1, overflow_limit=0))
        worker_pool.start()
        release = asyncio.Event()
        started = asyncio.Event()

        async def blocker():
            started.set()
            await release.wait()
            return "blocked"

        first = worker_pool.submit(blocker)
        await started.wait()
        queued = worker_pool.submit(echo, "queued")
        waiting = asyncio.create_task(worker_pool.submit_wait(echo, "waited"))
        await settle()
        assert not waiting.done()

        release.set()
        future = await waiting
        assert await future == "waited"
        assert await first == "blocked"
        assert await queued == "queued"
        assert worker_pool.snapshot().workers_replaced == 0
        await worker_pool.shutdown()

    @pytest.mark.asyncio
    async def test_submit_wait_on_stopped_pool_raises(self, pool):
        await pool.shutdown()
        with pytest.raises(PoolShutdownError):
            await pool.submit_wait(echo, 1)


@pytest.mark.unit
class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_drains_queued_work(self):
        worker_pool = WorkerPool(PoolConfig(worker_count=1))
        worker_pool.start()

        async def slow(value):
            await asyncio.sleep(0.01)
            return value

        futures = [worker_pool.submit(slow, i) for i in range(5)]
        await worker_pool.shutdown(grace_period=5.0)

        assert [f.result() for f in futures] == list(range(5))
        assert worker_pool.state is PoolState.STOPPED
        assert worker_pool.snapshot().pool_size == 0

    @pytest.mark.asyncio
    async def test_submit_after_shutdown_raises(self, pool):
        await pool.shutdown()
        with pytest.raises(PoolShutdownError):
            pool.submit(echo, 1)

    @pytest.mark.asyncio
    async def test_grace_period_expiry_forces_stop(self):
        worker_pool = WorkerPool(PoolConfig(worker_count=1))
        worker_pool.start()
        never = asyncio.Event()

        async def stuck():
            await never.wait()

        running = worker_pool.submit(stuck)
        waiting = worker_pool.submit(echo, "never runs")
        await settle()

        await worker_pool.shutdown(grace_period=0.05)

        assert worker_pool.state is PoolState.STOPPED
        assert running.cancelled()
        assert waiting.cancelled()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, pool):
        await pool.shutdown()
        await pool.shutdown()
        assert pool.state is PoolState.STOPPED


@pytest.mark.unit
class TestSnapshot:
    @pytest.mark.asyncio
    async def test_snapshot_is_stable_without_submissions(self, pool):
        await pool.submit(echo, 1)
        first = pool.snapshot()
        second = pool.snapshot()
        assert first.completed_tasks == second.completed_tasks
        assert first.workers_replaced == second.workers_replaced
