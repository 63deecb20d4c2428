"""
Test configuration for FetchCore.

Fixtures build engines on a scripted transport with fast timings; async
fixtures depend on cleanup_tasks so no asyncio work outlives a test.
"""

import asyncio
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from fetchcore.config import Config, HealthConfig, PoolConfig, RetryPolicy, TransportConfig
from fetchcore.engine import FetchEngine

from tests.helpers.fake_transport import FakeTransport

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel any asyncio task a test created and did not finish, so a leaked
    worker or monitor cannot hang the rest of the session.
    """
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before
    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def fast_config() -> Config:
    """Config with no throttling and millisecond backoff."""
    return Config(
        retry=RetryPolicy(max_retries=3, base_delay=0.01, backoff_multiplier=2.0),
        pool=PoolConfig(worker_count=2, rate_limit_interval=0.0),
        transport=TransportConfig(request_timeout=2.0, concurrent_request_timeout=3.0),
        health=HealthConfig(check_interval=60.0, shutdown_grace_period=2.0),
    )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture
async def engine(fast_config, fake_transport, cleanup_tasks) -> AsyncGenerator[FetchEngine, None]:
    """Started engine backed by the scripted transport."""
    fetch_engine = FetchEngine(fast_config, transport=fake_transport)
    await fetch_engine.start()
    yield fetch_engine
    await fetch_engine.shutdown()
