"""
Cancellation, deadlines and graceful shutdown of pipeline runs.
"""

import asyncio
import random
import signal
import sys

import pytest

from pipeguard.container import ResilienceContainer
from pipeguard.pipeline import PipelineOrchestrator
from pipeguard.protocols import ErrorType, PipelineStage
from tests.helpers import RecordingSleep, build_config

ITEMS = [f"https://docs.example.com/page-{i:02d}" for i in range(5)]


class GatedFetcher:
    """Fetcher whose calls block until the gate opens."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.started = 0

    async def fetch(self, url):
        self.started += 1
        await self.gate.wait()
        return f"content of {url}"

    async def wait_started(self, count):
        while self.started < count:
            await asyncio.sleep(0)


@pytest.fixture
def gated():
    return GatedFetcher()


def make_orchestrator(collaborators, fetcher, clock, **pipeline):
    config = build_config(fan_out=2, **pipeline)
    container = ResilienceContainer(
        config, clock=clock, monotonic=clock, sleep=RecordingSleep(clock), rng=random.Random(7)
    )
    return PipelineOrchestrator(**{**collaborators, "fetcher": fetcher}, container=container)


def messages(report):
    return {detail.item_id: detail.error.message for detail in report.errors.details}


class TestCancelEvent:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_in_flight_items_cancelled_after_grace(self, collaborators, gated, clock):
        orchestrator = make_orchestrator(collaborators, gated, clock, shutdown_grace_period=0.01)
        cancel = asyncio.Event()

        run = asyncio.create_task(orchestrator.run_pipeline(ITEMS, cancel_event=cancel))
        await gated.wait_started(2)
        cancel.set()
        report = await run

        assert report.total_operations == 5
        assert report.failed_operations == 5
        found = messages(report)
        assert [found[item] for item in ITEMS[:2]] == ["Item interrupted by run cancellation before it finished"] * 2
        assert [found[item] for item in ITEMS[2:]] == ["Run cancelled before item started"] * 3
        assert all(d.error.error_type == ErrorType.UNKNOWN for d in report.errors.details)
        assert report.retryable_operations == tuple(ITEMS)
        assert report.ingestion.skipped_reason == "run cancelled"
        assert gated.started == 2
        # Cancelled attempts say nothing about service health
        assert orchestrator.container.get_circuit_breaker("web-fetch").failure_count == 0
        assert orchestrator.is_running is False


class TestRequestShutdown:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_no_new_stages_after_shutdown(self, collaborators, gated, clock):
        orchestrator = make_orchestrator(collaborators, gated, clock, shutdown_grace_period=5.0)

        run = asyncio.create_task(orchestrator.run_pipeline(ITEMS[:4]))
        await gated.wait_started(2)
        orchestrator.request_shutdown()
        gated.gate.set()
        report = await run

        in_flight = [d for d in report.errors.details if d.item_id in ITEMS[:2]]
        assert all(d.stages_completed == (PipelineStage.FETCH,) for d in in_flight)
        assert all("Run cancelled before attempt 1 against chunker" in d.error.message for d in in_flight)
        assert collaborators["chunker"].chunk.await_count == 0
        assert messages(report)[ITEMS[3]] == "Run cancelled before item started"
        assert report.ingestion.skipped_reason == "run cancelled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_shutdown_when_idle_is_noop(self, collaborators, clock):
        orchestrator = make_orchestrator(collaborators, collaborators["fetcher"], clock)
        orchestrator.request_shutdown()

        report = await orchestrator.run_pipeline(ITEMS[:2])
        assert report.successful_operations == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, collaborators, gated, clock):
        orchestrator = make_orchestrator(collaborators, gated, clock, shutdown_grace_period=0.01)

        run = asyncio.create_task(orchestrator.run_pipeline(ITEMS[:2]))
        await gated.wait_started(1)
        with pytest.raises(RuntimeError, match="already in progress"):
            await orchestrator.run_pipeline(ITEMS[2:])

        orchestrator.request_shutdown()
        await run


class TestDeadline:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_timeout_argument(self, collaborators, gated, clock):
        orchestrator = make_orchestrator(collaborators, gated, clock, shutdown_grace_period=0.0)

        report = await orchestrator.run_pipeline(ITEMS, timeout=0.05)

        assert report.failed_operations == 5
        assert report.successful_operations == 0
        assert sum("interrupted" in text for text in messages(report).values()) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_timeout_from_config(self, collaborators, gated, clock):
        orchestrator = make_orchestrator(collaborators, gated, clock, run_timeout=0.05, shutdown_grace_period=0.0)

        report = await asyncio.wait_for(orchestrator.run_pipeline(ITEMS), timeout=5)

        assert report.failed_operations == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fast_run_finishes_before_deadline(self, collaborators, clock):
        orchestrator = make_orchestrator(collaborators, collaborators["fetcher"], clock)

        report = await orchestrator.run_pipeline(ITEMS, timeout=5.0)

        assert report.successful_operations == 5
        assert report.ingestion.triggered is True


@pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers need a Unix event loop")
class TestSignals:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sigterm_stops_run_and_handlers_are_removed(self, collaborators, gated, clock):
        orchestrator = make_orchestrator(collaborators, gated, clock, shutdown_grace_period=0.01)

        run = asyncio.create_task(orchestrator.run_pipeline(ITEMS, handle_signals=True))
        await gated.wait_started(2)
        signal.raise_signal(signal.SIGTERM)
        report = await asyncio.wait_for(run, timeout=5)

        assert report.failed_operations == 5
        assert report.ingestion.skipped_reason == "run cancelled"
        assert asyncio.get_running_loop().remove_signal_handler(signal.SIGTERM) is False
