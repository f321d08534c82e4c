"""Shared fakes for the DocScout test suite."""

import asyncio
import hashlib
import os
import re
import sys
from typing import Dict, List, Optional, Union

import numpy as np
import pytest

# Add the parent directory to the path so the top-level packages import
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from indexer.embeddings import EmbeddingProvider
from indexer.errors import EmbeddingError, HttpStatusError
from indexer.llm_pipeline import AnswerExtractionResult, RerankResult, SummarizationResult
from pipelines.parsers import ParsedPage
from pipelines.scheduler import CrawlListener, PageResult

_WORD_RE = re.compile(r"[a-z0-9]+")


class FakeEmbeddings(EmbeddingProvider):
    """Deterministic bag-of-words vectors: texts sharing words are similar."""

    def __init__(self, dim: int = 4096):
        self._dim = dim
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dim

    async def initialize(self) -> None:
        pass

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dim, dtype=np.float32)
        for word in _WORD_RE.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self._dim
            vector[bucket] += 1.0
        return vector

    async def embed_documents(self, texts: List[str]) -> List[np.ndarray]:
        self.calls += 1
        return [self._vector(text) for text in texts]

    async def embed_query(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed an empty query")
        return self._vector(text)


class FakeLLM:
    """Stand-in for LLMPipeline with call counters and scripted behaviour."""

    def __init__(self, answers: Optional[Dict[str, float]] = None, rerank_error: Optional[Exception] = None,
                 rerank_delay: float = 0.0):
        # word -> confidence of the answer extracted from chunks containing it
        self.answers = answers or {}
        self.rerank_error = rerank_error
        self.rerank_delay = rerank_delay
        self.rerank_calls = 0
        self.answer_calls = 0
        self.summary_calls = 0

    async def initialize(self) -> None:
        pass

    async def rerank(self, query: str, texts: List[str]) -> Optional[List[RerankResult]]:
        self.rerank_calls += 1
        if self.rerank_delay:
            await asyncio.sleep(self.rerank_delay)
        if self.rerank_error is not None:
            raise self.rerank_error
        # Reverse candidate order so reranking is observable
        count = len(texts)
        return [RerankResult(index=i, score=float(i) / count) for i in reversed(range(count))]

    async def extract_answer(self, question: str, context: str) -> Optional[AnswerExtractionResult]:
        self.answer_calls += 1
        for word, confidence in self.answers.items():
            if word in context:
                return AnswerExtractionResult(answer=word, confidence=confidence,
                                              start_index=context.index(word),
                                              end_index=context.index(word) + len(word))
        return None

    async def summarize(self, text: str, num_sentences: int = 3) -> Optional[SummarizationResult]:
        self.summary_calls += 1
        summary = " ".join(text.split()[:5])
        return SummarizationResult(summary=summary, original_length=len(text), summary_length=len(summary))

    def dispose(self) -> None:
        pass


class FakeFetcher:
    """PageSource over a dict of url -> ParsedPage (or exception to raise).

    Unknown URLs fail with http_404. When ``gate`` is set, every fetch waits on it.
    """

    def __init__(self, pages: Dict[str, Union[ParsedPage, Exception]], gate: Optional[asyncio.Event] = None):
        self.pages = pages
        self.gate = gate
        self.fetched: List[str] = []
        self.closed = False

    async def fetch_and_parse(self, url: str, user_agent: Optional[str] = None):
        self.fetched.append(url)
        if self.gate is not None:
            await self.gate.wait()
        page = self.pages.get(url)
        if page is None:
            raise HttpStatusError(404, url)
        if isinstance(page, Exception):
            raise page
        return None, page

    async def close(self):
        self.closed = True


class FakeIndexer:
    """ChunkIndexer that records what it was given."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.indexed: Dict[str, list] = {}

    async def index_chunks(self, job_id, url, chunks):
        if self.error is not None:
            raise self.error
        self.indexed[url] = list(chunks)


class RecordingListener(CrawlListener):
    """Collects scheduler callbacks as (kind, data) tuples."""

    def __init__(self):
        self.events = []

    def page_progress(self, job_id, url, depth, status, reason=None):
        self.events.append(("progress", {"job_id": job_id, "url": url, "depth": depth,
                                         "status": status.value, "reason": reason}))

    def page_result(self, result: PageResult):
        self.events.append(("result", {"url": result.url, "depth": result.depth,
                                       "chunks": len(result.chunks)}))

    def job_status(self, job_id, status, processed_pages, discovered_pages, error=None, reason=None):
        self.events.append(("job", {"job_id": job_id, "status": status.value,
                                    "processed_pages": processed_pages,
                                    "discovered_pages": discovered_pages,
                                    "error": error, "reason": reason}))

    def worker_error(self, message):
        self.events.append(("worker_error", {"message": message}))

    def of_kind(self, kind):
        return [data for event_kind, data in self.events if event_kind == kind]

    def statuses_for(self, url):
        return [data["status"] for data in self.of_kind("progress") if data["url"] == url]


def make_page(text: str, links: Optional[List[str]] = None, headings: Optional[List[str]] = None) -> ParsedPage:
    return ParsedPage(text=text, headings=headings or [], links=links or [])


@pytest.fixture
def listener():
    return RecordingListener()
