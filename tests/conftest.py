"""
Test configuration for pipeguard.

Provides deterministic clocks, fake collaborators and container fixtures so
resilience behaviour can be exercised without real services or real sleeps.
"""

# Standard library imports
import asyncio
import random
from typing import AsyncGenerator, Dict
from unittest.mock import AsyncMock

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from pipeguard.config import Config
from pipeguard.container import ResilienceContainer
from tests.helpers import FakeClock, RecordingSleep, build_config

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


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel every asyncio task a test left behind so one test can never
    hang or leak into the next.
    """
    tasks_before = asyncio.all_tasks()
    yield
    tasks_after = asyncio.all_tasks()
    new_tasks = tasks_after - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def test_config() -> Config:
    return build_config()


@pytest_asyncio.fixture
async def container(
    test_config: Config, clock: FakeClock, recording_sleep: RecordingSleep
) -> AsyncGenerator[ResilienceContainer, None]:
    container = ResilienceContainer(
        test_config, clock=clock, monotonic=clock, sleep=recording_sleep, rng=random.Random(7)
    )
    async with container.lifecycle():
        yield container


# ============================================================================
# Collaborator fakes
# ============================================================================


@pytest.fixture
def collaborators() -> Dict[str, AsyncMock]:
    """AsyncMock collaborators that succeed by default."""
    fetcher = AsyncMock()
    fetcher.fetch.side_effect = lambda url: f"content of {url}"
    chunker = AsyncMock()
    chunker.chunk.side_effect = lambda content: [content]
    embedder = AsyncMock()
    embedder.embed.return_value = [0.1, 0.2, 0.3]
    vector_store = AsyncMock()
    vector_store.store.return_value = "ack"
    ingestion = AsyncMock()
    ingestion.start_ingestion.return_value = "job-1"
    return {
        "fetcher": fetcher,
        "chunker": chunker,
        "embedder": embedder,
        "vector_store": vector_store,
        "ingestion_trigger": ingestion,
    }
