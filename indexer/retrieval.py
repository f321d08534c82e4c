"""Retrieval engine for DocScout.

Plain retrieval embeds the query and searches the vector store. Intelligent
retrieval adds a result cache, cross-encoder reranking, answer extraction,
summarization and code-block extraction on top, and degrades to plain retrieval
when any of those stages raises.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from config.settings import CacheSettings, RetrievalSettings, Settings
from observability.metrics import record_query_metrics
from pipelines.chunker import TextChunk
from server.caching import CacheKey, QueryCache
from .code_blocks import CodeBlock, extract_code_blocks
from .embeddings import EmbeddingProvider, SentenceTransformerEmbeddings
from .errors import DocScoutError, NotInitialized, RetrievalError
from .llm_pipeline import AnswerExtractionResult, LLMPipeline
from .vector_store import InMemoryVectorStore, SearchHit, VectorStore

logger = logging.getLogger(__name__)

# Called as on_stage(stage, details) while a query is processed
StageCallback = Callable[[str, Dict[str, Any]], None]


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 3)


@dataclass
class RetrievedChunk:
    chunk: TextChunk
    score: float
    url: str
    headings: List[str]

    @classmethod
    def from_hit(cls, hit: SearchHit) -> "RetrievedChunk":
        document = hit.document
        chunk = TextChunk(
            id=document.metadata.get("chunk_id", document.id),
            job_id=document.job_id,
            url=document.url,
            order=document.order,
            heading_path=list(document.heading_path),
            text=document.text,
            word_count=document.metadata.get("word_count", 0),
            char_count=document.metadata.get("char_count", len(document.text)),
            created_at=document.metadata.get("created_at", ""),
        )
        return cls(chunk=chunk, score=hit.score, url=document.url, headings=list(document.heading_path))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(),
            "score": self.score,
            "url": self.url,
            "headings": list(self.headings),
        }


@dataclass
class IntelligentChunk(RetrievedChunk):
    rerank_score: Optional[float] = None
    answer: Optional[AnswerExtractionResult] = None
    summary: Optional[str] = None
    code_blocks: List[CodeBlock] = field(default_factory=list)

    @classmethod
    def from_retrieved(cls, retrieved: RetrievedChunk, **extra) -> "IntelligentChunk":
        return cls(chunk=retrieved.chunk, score=retrieved.score, url=retrieved.url,
                   headings=retrieved.headings, **extra)

    @property
    def answer_confidence(self) -> float:
        return self.answer.confidence if self.answer else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "rerank_score": self.rerank_score,
            "answer": self.answer.to_dict() if self.answer else None,
            "summary": self.summary,
            "code_blocks": [block.to_dict() for block in self.code_blocks],
        })
        return data


@dataclass
class RetrievalResult:
    chunks: List[RetrievedChunk]
    total_found: int
    query_time: float  # ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "total_found": self.total_found,
            "query_time": self.query_time,
        }


@dataclass
class IntelligentRetrievalResult:
    chunks: List[IntelligentChunk]
    total_found: int
    query_time: float  # ms
    llm_processing_time: float  # ms
    from_cache: bool = False
    degraded: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "total_found": self.total_found,
            "query_time": self.query_time,
            "llm_processing_time": self.llm_processing_time,
            "from_cache": self.from_cache,
            "degraded": self.degraded,
            "error": self.error,
        }


@dataclass
class _Flight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RetrievalEngine:
    """Embeds, stores and retrieves chunks; runs the intelligent query pipeline."""

    def __init__(self,
                 embeddings: Optional[EmbeddingProvider] = None,
                 vector_store: Optional[VectorStore] = None,
                 llm: Optional[LLMPipeline] = None,
                 cache: Optional[QueryCache] = None,
                 settings: Optional[RetrievalSettings] = None,
                 cache_settings: Optional[CacheSettings] = None):
        self.settings = settings or RetrievalSettings()
        cache_settings = cache_settings or CacheSettings()
        self.embeddings = embeddings or SentenceTransformerEmbeddings()
        self.vector_store = vector_store or InMemoryVectorStore()
        self.llm = llm or LLMPipeline()
        self.cache = cache or QueryCache(
            max_entries=cache_settings.max_entries,
            ttl_seconds=cache_settings.ttl_seconds,
            hit_weight_seconds=cache_settings.hit_weight_seconds,
        )
        self._flights: Dict[str, _Flight] = {}
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetrievalEngine":
        """Build an engine whose model stages follow ``settings``."""
        embeddings = SentenceTransformerEmbeddings(
            model_name=settings.embeddings.model_name,
            batch_size=settings.embeddings.batch_size,
            normalize=settings.embeddings.normalize,
            device=settings.embeddings.device,
        )
        return cls(
            embeddings=embeddings,
            llm=LLMPipeline(settings.llm),
            settings=settings.retrieval,
            cache_settings=settings.cache,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, storage_path: Optional[str] = None) -> None:
        """Initialize embeddings, vector store and LLM stages.

        Raises:
            RetrievalError: Any component failed to initialize
        """
        if self._initialized:
            return

        try:
            await asyncio.gather(
                self.embeddings.initialize(),
                self.vector_store.initialize(storage_path or self.settings.storage_path),
                self.llm.initialize(),
            )
        except Exception as e:
            raise RetrievalError(f"Failed to initialize retrieval engine: {e}") from e

        self._initialized = True
        logger.info("Retrieval engine initialized")

    def _require_initialized(self):
        if not self._initialized:
            raise NotInitialized("Retrieval engine not initialized")

    async def index_chunks(self, job_id: str, url: str, chunks: List[TextChunk]) -> None:
        """Embed and store the chunks of one page. An empty list is a no-op."""
        self._require_initialized()
        if not chunks:
            return

        vectors = await self.embeddings.embed_documents([chunk.text for chunk in chunks])
        await self.vector_store.add_chunks(job_id, url, chunks, vectors)

    async def _search(self, text: str, limit: int, job_ids: Optional[Iterable[str]],
                      threshold: float) -> List[RetrievedChunk]:
        try:
            query_vector = await self.embeddings.embed_query(text)
            hits = await self.vector_store.search(query_vector, limit, job_ids)
        except DocScoutError:
            raise
        except Exception as e:
            raise RetrievalError(f"Retrieval failed: {e}") from e

        return [RetrievedChunk.from_hit(hit) for hit in hits if hit.score >= threshold]

    async def retrieve(self, text: str, limit: Optional[int] = None,
                       job_ids: Optional[Iterable[str]] = None,
                       threshold: Optional[float] = None) -> RetrievalResult:
        """Similarity search with a score floor.

        Args:
            text: Query text
            limit: Maximum number of results
            job_ids: Restrict results to these jobs
            threshold: Drop results scoring below this (default 0.1)
        """
        self._require_initialized()
        limit = limit or self.settings.default_limit
        threshold = self.settings.default_threshold if threshold is None else threshold
        start = time.monotonic()

        try:
            chunks = await self._search(text, limit, job_ids, threshold)
        except DocScoutError as e:
            record_query_metrics("basic", time.monotonic() - start, error=e.reason)
            raise

        record_query_metrics("basic", time.monotonic() - start)
        return RetrievalResult(chunks=chunks, total_found=len(chunks), query_time=_elapsed_ms(start))

    async def intelligent_retrieve(self, text: str, limit: Optional[int] = None,
                                   job_ids: Optional[Iterable[str]] = None,
                                   on_stage: Optional[StageCallback] = None) -> IntelligentRetrievalResult:
        """Cached search, rerank, answer extraction, summarization and code extraction.

        Identical concurrent queries are computed once. Failures in the LLM stages
        yield a degraded (uncached) result built from plain retrieval.
        """
        self._require_initialized()
        limit = limit or self.settings.intelligent_limit
        job_ids = sorted(set(job_ids)) if job_ids else None
        key = CacheKey.query_result(text, limit, job_ids)

        flight = self._flights.get(key)
        if flight is None:
            flight = self._flights[key] = _Flight()
        flight.users += 1
        try:
            async with flight.lock:
                cached = self.cache.get(key)
                if cached is not None:
                    logger.debug(f"Cache hit for query '{text}'")
                    self._stage(on_stage, "retrieving", retrieved_candidates=cached.total_found)
                    self._stage(on_stage, "scoring", considered_chunks=len(cached.chunks))
                    return replace(cached, chunks=copy.deepcopy(cached.chunks), from_cache=True)

                return await self._compute(key, text, limit, job_ids, on_stage)
        finally:
            flight.users -= 1
            if flight.users == 0:
                self._flights.pop(key, None)

    @staticmethod
    def _stage(on_stage: Optional[StageCallback], stage: str, **details):
        if on_stage is not None:
            on_stage(stage, details)

    async def _compute(self, key: str, text: str, limit: int, job_ids: Optional[List[str]],
                       on_stage: Optional[StageCallback]) -> IntelligentRetrievalResult:
        start = time.monotonic()
        candidate_limit = max(limit * self.settings.candidate_multiplier, self.settings.min_candidates)
        try:
            candidates = await self._search(text, candidate_limit, job_ids, self.settings.default_threshold)
        except DocScoutError as e:
            record_query_metrics("intelligent", time.monotonic() - start, error=e.reason)
            raise
        self._stage(on_stage, "retrieving", retrieved_candidates=len(candidates))

        llm_start = time.monotonic()
        try:
            chunks = await self._enrich(text, candidates, limit, on_stage)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Intelligent retrieval degraded to plain retrieval: {error}")
            fallback = [IntelligentChunk.from_retrieved(chunk) for chunk in candidates[:limit]]
            record_query_metrics("intelligent", time.monotonic() - start, error=error)
            return IntelligentRetrievalResult(
                chunks=fallback,
                total_found=len(fallback),
                query_time=_elapsed_ms(start),
                llm_processing_time=_elapsed_ms(llm_start),
                degraded=True,
                error=error,
            )

        result = IntelligentRetrievalResult(
            chunks=chunks,
            total_found=len(candidates),
            query_time=_elapsed_ms(start),
            llm_processing_time=_elapsed_ms(llm_start),
        )
        self.cache.set(key, copy.deepcopy(result), query=text)
        record_query_metrics("intelligent", time.monotonic() - start)
        return result

    async def _enrich(self, text: str, candidates: List[RetrievedChunk], limit: int,
                      on_stage: Optional[StageCallback]) -> List[IntelligentChunk]:
        if not candidates:
            self._stage(on_stage, "scoring", considered_chunks=0)
            return []

        ranking = await self.llm.rerank(text, [candidate.chunk.text for candidate in candidates])
        if ranking:
            selected = [(candidates[result.index], result.score) for result in ranking[:limit]]
        else:
            selected = [(candidate, None) for candidate in candidates[:limit]]
        self._stage(on_stage, "scoring", considered_chunks=len(selected))

        enriched = await asyncio.gather(
            *(self._enrich_one(text, candidate, rerank_score) for candidate, rerank_score in selected)
        )
        return self._post_filter(list(enriched))

    async def _enrich_one(self, text: str, candidate: RetrievedChunk,
                          rerank_score: Optional[float]) -> IntelligentChunk:
        answer, summary = await asyncio.gather(
            self.llm.extract_answer(text, candidate.chunk.text),
            self.llm.summarize(candidate.chunk.text),
        )
        return IntelligentChunk.from_retrieved(
            candidate,
            rerank_score=rerank_score,
            answer=answer,
            summary=summary.summary if summary else None,
            code_blocks=extract_code_blocks(candidate.chunk.text),
        )

    def _post_filter(self, chunks: List[IntelligentChunk]) -> List[IntelligentChunk]:
        """Drop poor answers, but only when at least one answer is good."""
        good = self.settings.good_answer_confidence
        poor = self.settings.poor_answer_confidence
        if not any(chunk.answer_confidence >= good for chunk in chunks):
            return chunks
        return [chunk for chunk in chunks if chunk.answer_confidence >= poor]

    async def delete_job(self, job_id: str) -> int:
        """Remove a job's vectors; cached results may reference them, so the cache is cleared."""
        self._require_initialized()
        removed = await self.vector_store.clear_job(job_id)
        self.cache.clear()
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        self._require_initialized()
        info = await self.vector_store.get_info()
        return {"total_chunks": info["count"], "metadata": info["metadata"]}

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    async def dispose(self) -> None:
        await self.embeddings.dispose()
        await self.vector_store.dispose()
        self.llm.dispose()
        self.cache.clear()
        self._initialized = False
        logger.info("Retrieval engine disposed")
