"""Ingestion worker for DocScout.

Owns one crawl scheduler and one retrieval engine, consumes commands from a port
and posts events back to it.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Optional, Protocol, Set

from pydantic import ValidationError

from config.settings import Settings, get_settings
from indexer.errors import JobAlreadyRunning
from indexer.retrieval import RetrievalEngine
from pipelines.crawler import PageFetcher
from pipelines.models import JobConfig, JobStatus, PageStatus
from pipelines.scheduler import CrawlListener, CrawlScheduler, PageResult, PageSource
from .messages import (
    CacheStatsEvent,
    CacheStatsPayload,
    CancelCommand,
    ClearCacheCommand,
    Command,
    GetCacheStatsCommand,
    IntelligentQueryResultEvent,
    IntelligentQueryResultPayload,
    JobStatusEvent,
    JobStatusPayload,
    PageProgressEvent,
    PageProgressPayload,
    PageResultEvent,
    PageResultPayload,
    QueryCommand,
    QueryPayload,
    QueryResultEvent,
    QueryResultPayload,
    QueryStatus,
    QueryStatusEvent,
    QueryStatusPayload,
    StartCommand,
    WorkerErrorEvent,
    WorkerErrorPayload,
    event_to_message,
    parse_command,
)

logger = logging.getLogger(__name__)

CANCELLED_BY_HOST = "cancelled-by-host"
WORKER_PORT_CLOSED = "worker-port-closed"


class Port(Protocol):
    def post_message(self, message: Dict[str, Any]) -> None:
        ...


class QueuePort:
    """In-process message port backed by two asyncio queues.

    The host side calls ``send`` / ``receive``; the worker reads ``inbox`` and
    writes through ``post_message``. ``close`` ends the worker's read loop.
    """

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, message: Any) -> None:
        if self.closed:
            raise RuntimeError("Port is closed")
        self.inbox.put_nowait(message)

    async def receive(self) -> Dict[str, Any]:
        return await self.outbox.get()

    def drain(self) -> list:
        """Return every event posted so far without waiting."""
        events = []
        while not self.outbox.empty():
            events.append(self.outbox.get_nowait())
        return events

    def post_message(self, message: Dict[str, Any]) -> None:
        if self.closed:
            logger.debug(f"Dropping {message.get('type')} event on closed port")
            return
        self.outbox.put_nowait(message)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            # Wake the reader
            self.inbox.put_nowait(None)


class IngestionWorker(CrawlListener):
    """Command dispatcher and event emitter around the scheduler and the engine."""

    def __init__(self,
                 port: Port,
                 engine: Optional[RetrievalEngine] = None,
                 fetcher: Optional[PageSource] = None,
                 settings: Optional[Settings] = None,
                 storage_path: Optional[str] = None):
        self.port = port
        self.settings = settings or get_settings()
        self.storage_path = storage_path
        self.engine = engine or RetrievalEngine.from_settings(self.settings)
        self._owns_fetcher = fetcher is None
        crawl = self.settings.crawl
        self.fetcher = fetcher or PageFetcher(
            user_agent=crawl.user_agent,
            request_timeout=crawl.request_timeout,
            max_retries=crawl.max_retries,
            retry_delay=crawl.retry_delay,
            max_retry_delay=crawl.max_retry_delay,
            rate_limit=crawl.rate_limit,
            max_headings=crawl.max_headings,
        )
        self.scheduler = CrawlScheduler(self.fetcher, self.engine, listener=self)
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    async def bind(self) -> None:
        """Initialize the retrieval engine. Must complete before commands are handled."""
        await self.engine.initialize(self.storage_path)

    # Event emission

    def _emit(self, event) -> None:
        self.port.post_message(event_to_message(event))

    def page_progress(self, job_id: str, url: str, depth: int, status: PageStatus,
                      reason: Optional[str] = None) -> None:
        self._emit(PageProgressEvent(payload=PageProgressPayload(
            job_id=job_id, url=url, depth=depth, status=status, reason=reason)))

    def page_result(self, result: PageResult) -> None:
        self._emit(PageResultEvent(payload=PageResultPayload(
            job_id=result.job_id,
            url=result.url,
            depth=result.depth,
            headings=result.headings,
            raw_text=result.raw_text,
            chunks=[chunk.to_dict() for chunk in result.chunks],
            summary=result.summary.to_dict(),
        )))

    def job_status(self, job_id: str, status: JobStatus, processed_pages: int, discovered_pages: int,
                   error: Optional[str] = None, reason: Optional[str] = None) -> None:
        self._emit(JobStatusEvent(payload=JobStatusPayload(
            job_id=job_id, status=status, processed_pages=processed_pages,
            discovered_pages=discovered_pages, error=error, reason=reason)))

    def worker_error(self, message: str) -> None:
        self._emit(WorkerErrorEvent(payload=WorkerErrorPayload(message=message)))

    def _query_status(self, query_id: str, status: QueryStatus, **fields) -> None:
        self._emit(QueryStatusEvent(payload=QueryStatusPayload(
            query_id=query_id, status=status, timestamp=time.time(), **fields)))

    # Command handling

    async def handle_message(self, raw: Any) -> None:
        """Validate a raw message and dispatch it. Invalid messages are logged and ignored."""
        try:
            command = parse_command(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid message: {e.error_count()} validation error(s)")
            return
        await self.handle(command)

    async def handle(self, command: Command) -> None:
        if isinstance(command, StartCommand):
            self._start_job(command.payload)
        elif isinstance(command, CancelCommand):
            self.scheduler.cancel(CANCELLED_BY_HOST, command.payload.job_id)
        elif isinstance(command, QueryCommand):
            await self.handle_query(command.payload)
        elif isinstance(command, ClearCacheCommand):
            self.engine.clear_cache()
        elif isinstance(command, GetCacheStatsCommand):
            self._emit(CacheStatsEvent(payload=CacheStatsPayload(**self.engine.get_cache_stats())))
        else:
            raise TypeError(f"Unhandled command type: {type(command).__name__}")

    def _start_job(self, config: JobConfig) -> None:
        try:
            self.scheduler.start_job(config)
        except JobAlreadyRunning as e:
            logger.warning(f"Rejecting job {config.job_id}: {e}")
            active = self.scheduler.active_job
            self.job_status(
                config.job_id,
                JobStatus.ERROR,
                active.processed_pages if active else 0,
                active.discovered_pages if active else 0,
                error=e.reason,
            )

    async def handle_query(self, payload: QueryPayload) -> None:
        query_id = uuid.uuid4().hex
        started = time.monotonic()
        job_ids = [payload.job_id] if payload.job_id else None
        self._query_status(query_id, QueryStatus.STARTED, job_id=payload.job_id, query=payload.query)

        def on_stage(stage: str, details: Dict[str, Any]) -> None:
            self._query_status(query_id, QueryStatus(stage), job_id=payload.job_id, **details)

        try:
            if payload.intelligent:
                result = await self.engine.intelligent_retrieve(
                    payload.query, payload.limit, job_ids, on_stage=on_stage)
                self._emit(IntelligentQueryResultEvent(payload=IntelligentQueryResultPayload(
                    query_id=query_id, **result.to_dict())))
                if result.degraded:
                    self._query_status(query_id, QueryStatus.FAILED, job_id=payload.job_id,
                                       error=result.error, total_results=result.total_found,
                                       duration_ms=(time.monotonic() - started) * 1000)
                    return
            else:
                result = await self.engine.retrieve(payload.query, payload.limit, job_ids)
                on_stage(QueryStatus.RETRIEVING.value, {"retrieved_candidates": result.total_found})
                on_stage(QueryStatus.SCORING.value, {"considered_chunks": len(result.chunks)})
                self._emit(QueryResultEvent(payload=QueryResultPayload(query_id=query_id, **result.to_dict())))
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Query failed: {message}")
            self._query_status(query_id, QueryStatus.FAILED, job_id=payload.job_id, error=message)
            self.worker_error(f"Query failed: {message}")
            return

        self._query_status(query_id, QueryStatus.COMPLETED, job_id=payload.job_id,
                           total_results=result.total_found,
                           duration_ms=(time.monotonic() - started) * 1000)

    # Lifecycle

    async def run(self, port: QueuePort) -> None:
        """Read commands from ``port`` until it is closed, then shut down.

        Each message is handled in its own task so a long query does not hold up
        a cancel.
        """
        while True:
            raw = await port.inbox.get()
            if raw is None:
                break
            task = asyncio.create_task(self.handle_message(raw))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

        await self.close()

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Message handler failed: {error}", exc_info=error)
            self.worker_error(f"Message handling failed: {error}")

    async def close(self) -> None:
        """Cancel the active job with ``worker-port-closed`` and release resources."""
        if self._closed:
            return
        self._closed = True

        self.scheduler.cancel(WORKER_PORT_CLOSED)
        await self.scheduler.shutdown(WORKER_PORT_CLOSED)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._owns_fetcher:
            await self.fetcher.close()
        await self.engine.dispose()
        logger.info("Worker closed")
