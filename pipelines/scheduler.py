"""Crawl scheduler for DocScout.

Turns seed URLs into fetch / parse / chunk / index operations on a bounded pool of
asyncio workers, enforcing depth, page-count and domain policies and reporting
lifecycle events to a listener.

One job may be active per scheduler. Cancellation is cooperative: every
side-effecting step checks the job's cancellation token first, so a job emits
nothing after its terminal status.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Set, Tuple

from indexer.errors import DocScoutError, JobAlreadyRunning
from observability.logging import get_job_logger
from observability.metrics import record_job_finished, record_job_started, record_page_metrics
from .chunker import ChunkSummary, TextChunk, TextChunker, summarize_chunks
from .links import normalize_url, safe_hostname
from .models import JobConfig, JobStatus, PageStatus
from .parsers import ParsedPage

logger = logging.getLogger(__name__)

EMPTY_CONTENT = "empty-content"
PAGE_LIMIT_REACHED = "page-limit-reached"


class PageSource(Protocol):
    async def fetch_and_parse(self, url: str, user_agent: Optional[str] = None) -> Tuple[object, ParsedPage]:
        ...


class ChunkIndexer(Protocol):
    async def index_chunks(self, job_id: str, url: str, chunks: List[TextChunk]) -> None:
        ...


@dataclass
class PageResult:
    """Full payload for a successfully parsed page."""
    job_id: str
    url: str
    depth: int
    headings: List[str]
    raw_text: str
    chunks: List[TextChunk]
    summary: ChunkSummary


class CrawlListener:
    """Receives crawl lifecycle events. The default implementation ignores them."""

    def page_progress(self, job_id: str, url: str, depth: int, status: PageStatus,
                      reason: Optional[str] = None) -> None:
        pass

    def page_result(self, result: PageResult) -> None:
        pass

    def job_status(self, job_id: str, status: JobStatus, processed_pages: int, discovered_pages: int,
                   error: Optional[str] = None, reason: Optional[str] = None) -> None:
        pass

    def worker_error(self, message: str) -> None:
        pass


class CancellationToken:
    """One-shot cooperative cancellation flag carrying a reason."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str) -> bool:
        """Cancel the token. Returns False if it was already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        return True


@dataclass
class JobState:
    """Run-time record of one crawl job, owned by the scheduler."""
    config: JobConfig
    host_allow_list: Set[str]
    token: CancellationToken = field(default_factory=CancellationToken)
    visited: Set[str] = field(default_factory=set)
    processed_pages: int = 0
    discovered_pages: int = 0
    pending: int = 0
    status: JobStatus = JobStatus.RUNNING
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    workers: List[asyncio.Task] = field(default_factory=list)

    @property
    def job_id(self) -> str:
        return self.config.job_id


class JobSlot:
    """Single-slot holder for the active job with compare-and-swap semantics."""

    def __init__(self):
        self._state: Optional[JobState] = None

    @property
    def current(self) -> Optional[JobState]:
        return self._state

    def claim(self, state: JobState) -> bool:
        """Install ``state`` if the slot is free (or holds a cancelled job)."""
        if self._state is not None and not self._state.token.cancelled:
            return False
        self._state = state
        return True

    def release(self, state: JobState) -> bool:
        """Clear the slot only if it still holds ``state``."""
        if self._state is not state:
            return False
        self._state = None
        return True


class CrawlScheduler:
    """Bounded-concurrency crawl scheduler."""

    def __init__(self, fetcher: PageSource, indexer: ChunkIndexer, listener: Optional[CrawlListener] = None):
        self.fetcher = fetcher
        self.indexer = indexer
        self.listener = listener or CrawlListener()
        self._slot = JobSlot()
        self._last_state: Optional[JobState] = None

    @property
    def active_job(self) -> Optional[JobState]:
        return self._slot.current

    def start_job(self, config: JobConfig) -> JobState:
        """Start a crawl job. Must be called from a running event loop.

        Raises:
            JobAlreadyRunning: Another job is active; it is left untouched
        """
        state = JobState(config=config, host_allow_list=set(config.host_allow_list()))
        if not self._slot.claim(state):
            raise JobAlreadyRunning(self._slot.current.job_id)

        self._last_state = state
        record_job_started()
        job_logger = get_job_logger(__name__, config.job_id)
        job_logger.info(f"Starting job: {len(config.seed_urls)} seeds, "
                        f"max_depth={config.max_depth}, max_pages={config.max_pages}, "
                        f"concurrency={config.concurrency}")
        self.listener.job_status(config.job_id, JobStatus.RUNNING, 0, 0)

        state.workers = [
            asyncio.create_task(self._worker_loop(state), name=f"crawl-{config.job_id}-{i}")
            for i in range(config.concurrency)
        ]

        for url in config.seed_urls:
            self._enqueue(state, url, 0)

        # No valid seeds
        if state.pending == 0:
            self._finish(state, JobStatus.COMPLETED)

        return state

    def enqueue_link(self, url: str, depth: int) -> bool:
        """Enqueue a link for the active job. Returns True if it was queued."""
        state = self._slot.current
        if state is None:
            return False
        return self._enqueue(state, url, depth)

    def _enqueue(self, state: JobState, url: str, depth: int) -> bool:
        if state.token.cancelled:
            return False

        config = state.config
        normalized = normalize_url(url)
        if not normalized:
            logger.debug(f"Skipping invalid URL: {url}")
            return False

        if normalized in state.visited:
            return False

        if depth > config.max_depth:
            logger.debug(f"Skipping depth {depth} > max_depth {config.max_depth}: {normalized}")
            return False

        if state.processed_pages >= config.max_pages:
            logger.debug(f"Skipping, reached max_pages {config.max_pages}: {normalized}")
            return False

        host = safe_hostname(normalized)
        if not host or not (config.follow_external or host in state.host_allow_list):
            logger.debug(f"Skipping disallowed domain {host} "
                         f"(follow_external: {config.follow_external}): {normalized}")
            return False

        state.visited.add(normalized)
        state.discovered_pages += 1
        logger.debug(f"Enqueuing depth {depth} ({state.discovered_pages}/{config.max_pages}): {normalized}")
        self.listener.page_progress(config.job_id, normalized, depth, PageStatus.QUEUED)

        state.pending += 1
        state.queue.put_nowait((normalized, depth))
        return True

    async def _worker_loop(self, state: JobState):
        while True:
            item = await state.queue.get()
            if item is None:
                return

            url, depth = item
            try:
                await self.process_url(state, url, depth)
            except Exception as e:
                logger.exception(f"Unexpected error processing {url}: {e}")
            finally:
                state.pending -= 1
                if state.pending == 0 and not state.token.cancelled:
                    self._finish(state, JobStatus.COMPLETED)

    async def process_url(self, state: JobState, url: str, depth: int):
        """Fetch, parse, chunk and index one page, then enqueue its links."""
        config = state.config
        token = state.token
        if token.cancelled:
            return

        started = time.monotonic()
        self.listener.page_progress(config.job_id, url, depth, PageStatus.FETCHING)

        try:
            _, page = await self.fetcher.fetch_and_parse(url, user_agent=config.user_agent)
        except Exception as e:
            if token.cancelled:
                return
            reason = e.reason if isinstance(e, DocScoutError) else (str(e) or type(e).__name__)
            logger.warning(f"Failed to process {url}: {reason}")
            self.listener.page_progress(config.job_id, url, depth, PageStatus.FAILED, reason)
            record_page_metrics(PageStatus.FAILED.value, time.monotonic() - started)
            self._page_done(state)
            return

        if token.cancelled:
            return

        if not page.text.strip():
            self.listener.page_progress(config.job_id, url, depth, PageStatus.SKIPPED, EMPTY_CONTENT)
            record_page_metrics(PageStatus.SKIPPED.value, time.monotonic() - started)
            self._page_done(state)
            return

        chunker = TextChunker(
            tokens_per_chunk=config.tokens_per_chunk,
            overlap_tokens=config.overlap_tokens,
            min_tokens_per_chunk=config.min_tokens_per_chunk,
        )
        chunks = chunker.chunk_text(page.text, job_id=config.job_id, url=url, heading_path=page.headings[:1])
        summary = summarize_chunks(chunks)

        self.listener.page_progress(config.job_id, url, depth, PageStatus.EMBEDDING)
        try:
            await self.indexer.index_chunks(config.job_id, url, chunks)
        except Exception as e:
            if token.cancelled:
                return
            reason = str(e) or type(e).__name__
            logger.warning(f"Failed to embed chunks for {url}: {reason}")
            self.listener.page_progress(config.job_id, url, depth, PageStatus.FAILED,
                                        f"Embedding failed: {reason}")
            self.listener.worker_error(f"Failed to embed chunks for {url}: {reason}")
            record_page_metrics(PageStatus.FAILED.value, time.monotonic() - started)
            self._page_done(state)
            return

        if token.cancelled:
            return

        self.listener.page_progress(config.job_id, url, depth, PageStatus.INDEXED)
        self.listener.page_result(PageResult(
            job_id=config.job_id,
            url=url,
            depth=depth,
            headings=page.headings,
            raw_text=page.text,
            chunks=chunks,
            summary=summary,
        ))
        self.listener.page_progress(config.job_id, url, depth, PageStatus.PARSED)
        record_page_metrics(PageStatus.PARSED.value, time.monotonic() - started, len(chunks))

        if not self._page_done(state):
            return

        logger.debug(f"Found {len(page.links)} links on {url} at depth {depth}")
        for link in page.links:
            self._enqueue(state, link, depth + 1)

    def _page_done(self, state: JobState) -> bool:
        """Count a processed page. Returns False once the page limit ends the job."""
        state.processed_pages += 1
        self.listener.job_status(state.job_id, JobStatus.RUNNING,
                                 state.processed_pages, state.discovered_pages)

        if state.processed_pages >= state.config.max_pages:
            logger.info(f"Reached page limit ({state.config.max_pages}), completing job {state.job_id}")
            self._finish(state, JobStatus.COMPLETED, reason=PAGE_LIMIT_REACHED)
            return False
        return True

    def _finish(self, state: JobState, status: JobStatus,
                error: Optional[str] = None, reason: Optional[str] = None):
        if state.status.is_terminal:
            return

        state.status = status
        state.token.cancel(error or reason or status.value)

        # Drop queued work and wake every worker so it exits after its current item
        while not state.queue.empty():
            state.queue.get_nowait()
        for _ in state.workers:
            state.queue.put_nowait(None)

        self._slot.release(state)
        record_job_finished(status.value)
        job_logger = get_job_logger(__name__, state.job_id)
        job_logger.info(f"Job {status.value}: {state.processed_pages} processed, "
                        f"{state.discovered_pages} discovered" + (f" ({error})" if error else ""))
        self.listener.job_status(state.job_id, status, state.processed_pages, state.discovered_pages,
                                 error=error, reason=reason)
        state.finished.set()

    def cancel(self, reason: str, job_id: Optional[str] = None) -> bool:
        """Cancel the active job.

        No-op (returns False) without an active job or when ``job_id`` does not
        match it.
        """
        state = self._slot.current
        if state is None:
            return False
        if job_id and state.job_id != job_id:
            return False

        self._finish(state, JobStatus.CANCELLED, error=reason)
        return True

    async def wait_for_job(self, job_id: Optional[str] = None, timeout: Optional[float] = None) -> JobStatus:
        """Wait until the active (or most recent) job reaches a terminal status."""
        state = self._slot.current or self._last_state
        if state is None:
            raise ValueError("No job has been started")
        if job_id and state.job_id != job_id:
            raise ValueError(f"Unknown job {job_id}")

        await asyncio.wait_for(state.finished.wait(), timeout)
        return state.status

    async def shutdown(self, reason: str = "shutdown", timeout: float = 5.0):
        """Cancel the active job and wait for its workers to exit."""
        state = self._slot.current
        self.cancel(reason)
        state = state or self._last_state
        if state is None or not state.workers:
            return

        done, pending = await asyncio.wait(state.workers, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
