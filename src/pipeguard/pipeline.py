"""
Pipeline orchestration for pipeguard.

Routes every content item through fetch, chunk, embed and store, each stage
calling its collaborator through that service's ResilientInvoker, and hands
the per-item outcomes to the ResilienceReporter once the run is over.
"""

from __future__ import annotations

import asyncio
import signal
import traceback
from functools import partial
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union
from uuid import uuid4

import structlog

from pipeguard.config import (
    CHUNK_SERVICE,
    EMBED_SERVICE,
    FETCH_SERVICE,
    INGEST_SERVICE,
    STORE_SERVICE,
    Config,
    PipelineConfig,
)
from pipeguard.container import ResilienceContainer
from pipeguard.faults import ParsingFault
from pipeguard.observability.logging import bound_execution
from pipeguard.observability.metrics import METRICS
from pipeguard.protocols import (
    Chunker,
    ContentItem,
    CrawlerError,
    Embedder,
    ErrorType,
    Fetcher,
    IngestionTrigger,
    ItemOutcome,
    PipelineStage,
    SystemHealthSummary,
    VectorStore,
)
from pipeguard.reporting import IngestionSummary, PartialSuccessReport, ResilienceReporter

logger = structlog.get_logger(__name__)

ItemInput = Union[ContentItem, str]


class PipelineOrchestrator:
    """
    Runs batches of content items through the ingestion pipeline.

    Items are processed concurrently by up to ``fan_out`` workers pulling
    from a shared queue. A failing item never aborts the batch: its terminal
    CrawlerError is recorded and the worker moves on to the next item.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        chunker: Chunker,
        embedder: Embedder,
        vector_store: VectorStore,
        ingestion_trigger: Optional[IngestionTrigger] = None,
        *,
        config: Optional[Config] = None,
        container: Optional[ResilienceContainer] = None,
        reporter: Optional[ResilienceReporter] = None,
    ) -> None:
        if config is None:
            config = container.config if container is not None else Config()
        self.config = config
        self.container = container or ResilienceContainer(config)
        self.reporter = reporter or ResilienceReporter(config.reporting)

        self.fetcher = fetcher
        self.chunker = chunker
        self.embedder = embedder
        self.vector_store = vector_store
        self.ingestion_trigger = ingestion_trigger

        self.is_running = False
        self._stop_event: Optional[asyncio.Event] = None

    # --- public API ---

    async def run_pipeline(
        self,
        items: Iterable[ItemInput],
        config: Optional[PipelineConfig] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
        handle_signals: bool = False,
    ) -> PartialSuccessReport:
        """
        Process a batch and return its PartialSuccessReport.

        Item failures are reported, never raised. ``cancel_event``, ``timeout``
        (or ``run_timeout`` from config) and ``request_shutdown()`` all stop
        the run early: no new items or retries start, in-flight items get the
        grace period, and every unfinished item is reported as failed.
        """
        if self.is_running:
            raise RuntimeError("Pipeline run already in progress")

        pipeline_config = config or self.config.pipeline
        content_items = self._normalize_items(items)
        run_timeout = timeout if timeout is not None else pipeline_config.run_timeout
        execution_id = str(uuid4())

        self.container.reset_metrics()
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self.is_running = True
        if handle_signals:
            self._setup_signal_handlers()

        try:
            with bound_execution(execution_id):
                logger.info(
                    "Pipeline run started",
                    items=len(content_items),
                    fan_out=pipeline_config.fan_out,
                    timeout=run_timeout,
                )
                outcomes = await self._process_items(
                    content_items, pipeline_config, stop_event, cancel_event, run_timeout
                )
                ingestion = await self._trigger_ingestion(execution_id, outcomes, pipeline_config, stop_event)
                report = self.reporter.build_report(
                    execution_id,
                    outcomes,
                    self.container.system_health(),
                    metrics=self.container.all_metrics(),
                    ingestion=ingestion,
                )
                logger.info(
                    "Pipeline run finished",
                    successful=report.successful_operations,
                    failed=report.failed_operations,
                    partial_success=report.partial_success,
                    cancelled=stop_event.is_set(),
                )
                return report
        finally:
            if handle_signals:
                self._cleanup_signal_handlers()
            self.is_running = False
            self._stop_event = None

    def get_health(self) -> SystemHealthSummary:
        return self.container.system_health()

    def request_shutdown(self) -> None:
        """Stop the current run gracefully. No-op when idle."""
        if self._stop_event is not None and not self._stop_event.is_set():
            logger.info("Shutdown requested")
            self._stop_event.set()

    # --- run internals ---

    @staticmethod
    def _normalize_items(items: Iterable[ItemInput]) -> List[ContentItem]:
        content_items: List[ContentItem] = []
        seen: Set[str] = set()
        for item in items:
            if isinstance(item, str):
                item = ContentItem(item_id=item, url=item)
            if item.item_id in seen:
                raise ValueError(f"Duplicate item id in batch: {item.item_id}")
            seen.add(item.item_id)
            content_items.append(item)
        return content_items

    async def _process_items(
        self,
        items: Sequence[ContentItem],
        pipeline_config: PipelineConfig,
        stop_event: asyncio.Event,
        cancel_event: Optional[asyncio.Event],
        timeout: Optional[float],
    ) -> List[ItemOutcome]:
        outcomes: Dict[str, ItemOutcome] = {}
        progress: Dict[str, List[PipelineStage]] = {}
        if not items:
            return []

        queue: asyncio.Queue[ContentItem] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        num_workers = min(pipeline_config.fan_out, len(items))
        workers = {
            asyncio.create_task(self._worker(f"worker-{i}", queue, stop_event, outcomes, progress))
            for i in range(num_workers)
        }
        watchers = {asyncio.create_task(stop_event.wait())}
        if cancel_event is not None:
            watchers.add(asyncio.create_task(cancel_event.wait()))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        pending = set(workers)
        try:
            reason: Optional[str] = None
            while pending:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    reason = "timeout"
                    break
                done, _ = await asyncio.wait(
                    pending | watchers, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
                if done & watchers:
                    reason = "cancelled"
                    break

            if pending:
                await self._graceful_shutdown(reason or "cancelled", pending, stop_event, pipeline_config)
        finally:
            for task in watchers:
                task.cancel()
            for task in workers:
                if not task.done():
                    task.cancel()

        for item in items:
            if item.item_id in outcomes:
                continue
            stages = tuple(progress.get(item.item_id, ()))
            if item.item_id in progress:
                message = "Item interrupted by run cancellation before it finished"
            else:
                message = "Run cancelled before item started"
            outcomes[item.item_id] = ItemOutcome(
                item_id=item.item_id,
                stages_completed=stages,
                final_error=CrawlerError(
                    error_type=ErrorType.UNKNOWN,
                    message=message,
                    recoverable=True,
                    url=item.url,
                ),
            )
            METRICS["items_total"].labels(outcome="failure").inc()
        return list(outcomes.values())

    async def _graceful_shutdown(
        self,
        reason: str,
        pending: Set["asyncio.Task[None]"],
        stop_event: asyncio.Event,
        pipeline_config: PipelineConfig,
    ) -> None:
        """Let in-flight items finish their current attempt, then cancel what is left."""
        stop_event.set()
        grace = pipeline_config.shutdown_grace_period
        logger.warning("Stopping pipeline run", reason=reason, in_flight_workers=len(pending), grace_period=grace)

        still_running: Set[asyncio.Task[None]] = set(pending)
        if grace > 0:
            _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)
            logger.warning("Cancelled in-flight workers after grace period", cancelled=len(still_running))

    async def _worker(
        self,
        worker_id: str,
        queue: "asyncio.Queue[ContentItem]",
        stop_event: asyncio.Event,
        outcomes: Dict[str, ItemOutcome],
        progress: Dict[str, List[PipelineStage]],
    ) -> None:
        """Worker task for processing items."""
        while not stop_event.is_set():
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            stages: List[PipelineStage] = []
            progress[item.item_id] = stages
            METRICS["items_in_flight"].inc()
            try:
                outcome = await self._process_item(item, stop_event, stages)
            except Exception as e:
                logger.exception("Unexpected error while processing item", item_id=item.item_id, worker=worker_id)
                outcome = ItemOutcome(
                    item_id=item.item_id,
                    stages_completed=tuple(stages),
                    final_error=CrawlerError(
                        error_type=ErrorType.UNKNOWN,
                        message=f"{type(e).__name__}: {e}",
                        recoverable=False,
                        url=item.url,
                        stack_trace=traceback.format_exc(),
                    ),
                )
            finally:
                METRICS["items_in_flight"].dec()
                queue.task_done()

            outcomes[item.item_id] = outcome
            METRICS["items_total"].labels(outcome="success" if outcome.succeeded else "failure").inc()
            if outcome.final_error is None:
                logger.debug("Item processed", item_id=item.item_id, worker=worker_id)
            else:
                logger.info(
                    "Item failed",
                    item_id=item.item_id,
                    worker=worker_id,
                    stages_completed=[stage.value for stage in outcome.stages_completed],
                    error_type=outcome.final_error.error_type.value,
                    recoverable=outcome.final_error.recoverable,
                )

    async def _process_item(
        self, item: ContentItem, stop_event: asyncio.Event, stages: List[PipelineStage]
    ) -> ItemOutcome:
        """Fetch, chunk, embed and store one item. Each stage runs only if the previous one succeeded."""

        def failed(error: Optional[CrawlerError]) -> ItemOutcome:
            return ItemOutcome(item_id=item.item_id, stages_completed=tuple(stages), final_error=error)

        # STAGE 1: FETCH
        fetched = await self.container.get_invoker(FETCH_SERVICE).invoke(
            partial(self.fetcher.fetch, item.url),
            url=item.url,
            method="fetch",
            stop_event=stop_event,
        )
        if not fetched.ok:
            return failed(fetched.error)
        stages.append(PipelineStage.FETCH)

        # STAGE 2: CHUNK
        chunked = await self.container.get_invoker(CHUNK_SERVICE).invoke(
            partial(self._chunk, fetched.value or ""),
            url=item.url,
            method="chunk",
            stop_event=stop_event,
        )
        if not chunked.ok:
            return failed(chunked.error)
        chunks: List[str] = chunked.value or []
        stages.append(PipelineStage.CHUNK)

        # STAGE 3: EMBED
        embed_invoker = self.container.get_invoker(EMBED_SERVICE)
        vectors: List[Any] = []
        for index, text_chunk in enumerate(chunks):
            embedded = await embed_invoker.invoke(
                partial(self.embedder.embed, text_chunk),
                url=item.url,
                method="embed",
                parameters={"chunk_index": index},
                stop_event=stop_event,
            )
            if not embedded.ok:
                return failed(embedded.error)
            vectors.append(embedded.value)
        stages.append(PipelineStage.EMBED)

        # STAGE 4: STORE
        store_invoker = self.container.get_invoker(STORE_SERVICE)
        for index, (text_chunk, vector) in enumerate(zip(chunks, vectors)):
            metadata = {
                **dict(item.metadata),
                "item_id": item.item_id,
                "url": item.url,
                "chunk_index": index,
                "text": text_chunk,
            }
            stored = await store_invoker.invoke(
                partial(self.vector_store.store, vector, metadata),
                url=item.url,
                method="store",
                parameters={"chunk_index": index},
                stop_event=stop_event,
            )
            if not stored.ok:
                return failed(stored.error)
        stages.append(PipelineStage.STORE)

        return ItemOutcome(item_id=item.item_id, stages_completed=tuple(stages))

    async def _chunk(self, content: str) -> List[str]:
        chunks = await self.chunker.chunk(content)
        if not chunks:
            raise ParsingFault("Chunker produced no chunks")
        return list(chunks)

    async def _trigger_ingestion(
        self,
        execution_id: str,
        outcomes: Sequence[ItemOutcome],
        pipeline_config: PipelineConfig,
        stop_event: asyncio.Event,
    ) -> IngestionSummary:
        """Batch-level fifth stage. Its failure never changes the item counts."""
        if not pipeline_config.trigger_ingestion or self.ingestion_trigger is None:
            return IngestionSummary(skipped_reason="ingestion disabled")
        if stop_event.is_set():
            return IngestionSummary(skipped_reason="run cancelled")
        if not any(outcome.succeeded for outcome in outcomes):
            return IngestionSummary(skipped_reason="no items succeeded")

        result = await self.container.get_invoker(INGEST_SERVICE).invoke(
            partial(self.ingestion_trigger.start_ingestion, execution_id),
            method="start_ingestion",
            parameters={"batch_ref": execution_id},
            stop_event=stop_event,
        )
        if not result.ok:
            logger.error("Ingestion trigger failed", error=result.error.message if result.error else None)
            return IngestionSummary(triggered=False, error=result.error)

        job_id = str(result.value)
        logger.info("Ingestion job started", job_id=job_id)
        return IngestionSummary(triggered=True, job_id=job_id)

    # --- signals ---

    def _setup_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to request_shutdown for the duration of a run."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers not supported on this platform", signal=signum)
                return

    def _cleanup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                return
