"""Vector index for DocScout.

``VectorStore`` is the add / search / clear / info contract; ``InMemoryVectorStore``
is the numpy-backed reference implementation. Any persistent implementation must
keep the same ranking and filter semantics.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from pipelines.chunker import TextChunk
from .errors import DimensionMismatch, NotInitialized

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero magnitude."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatch(f"Vector dimensions differ: {a.shape} vs {b.shape}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


@dataclass
class VectorDocument:
    """One indexed chunk."""
    id: str
    job_id: str
    url: str
    order: int
    text: str
    heading_path: List[str]
    vector: np.ndarray
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_chunk(cls, job_id: str, url: str, chunk: TextChunk, vector: np.ndarray) -> "VectorDocument":
        return cls(
            id=f"{job_id}_{chunk.id}",
            job_id=job_id,
            url=url,
            order=chunk.order,
            text=chunk.text,
            heading_path=list(chunk.heading_path),
            vector=vector,
            metadata={
                "chunk_id": chunk.id,
                "word_count": chunk.word_count,
                "char_count": chunk.char_count,
                "created_at": chunk.created_at,
            },
        )


@dataclass
class SearchHit:
    """A stored document with its similarity to the query."""
    document: VectorDocument
    score: float


class VectorStore(ABC):
    """Storage contract for chunk vectors."""

    @abstractmethod
    async def initialize(self, storage_path: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def add_chunks(self, job_id: str, url: str, chunks: List[TextChunk],
                         vectors: Sequence[Sequence[float]]) -> None:
        ...

    @abstractmethod
    async def search(self, query_vector: Sequence[float], limit: int = 10,
                     job_ids: Optional[Iterable[str]] = None) -> List[SearchHit]:
        ...

    @abstractmethod
    async def clear_job(self, job_id: str) -> int:
        ...

    @abstractmethod
    async def get_info(self) -> Dict[str, Any]:
        ...

    async def dispose(self) -> None:
        pass


class InMemoryVectorStore(VectorStore):
    """In-memory vector store with brute-force cosine search.

    Documents keep insertion order, which is what breaks score ties. Writes and
    reads are serialized by a single asyncio lock.
    """

    def __init__(self, dimension: Optional[int] = None, description: str = "DocScout in-memory vector index"):
        self.dimension = dimension
        self.description = description
        self.storage_path: Optional[str] = None
        self.created_at: Optional[str] = None
        self._documents: Dict[str, VectorDocument] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    def _require_initialized(self):
        if not self._initialized:
            raise NotInitialized("Vector store not initialized")

    async def initialize(self, storage_path: Optional[str] = None) -> None:
        self.storage_path = storage_path
        self.created_at = datetime.now(timezone.utc).isoformat()
        self._initialized = True
        logger.info(f"Vector store initialized (dimension={self.dimension}, storage_path={storage_path})")

    def _check_dimension(self, vector: np.ndarray, what: str):
        if vector.ndim != 1:
            raise DimensionMismatch(f"{what} must be one-dimensional, got shape {vector.shape}")
        if self.dimension is not None and vector.shape[0] != self.dimension:
            raise DimensionMismatch(f"{what} has dimension {vector.shape[0]}, expected {self.dimension}")

    async def add_chunks(self, job_id: str, url: str, chunks: List[TextChunk],
                         vectors: Sequence[Sequence[float]]) -> None:
        """Store one document per chunk.

        Raises:
            DimensionMismatch: chunk/vector counts differ or a vector has the wrong size
            NotInitialized: initialize() has not been called
        """
        self._require_initialized()
        if len(chunks) != len(vectors):
            raise DimensionMismatch(f"Got {len(chunks)} chunks but {len(vectors)} vectors")

        arrays = [np.asarray(vector, dtype=np.float32) for vector in vectors]
        if self.dimension is None and arrays:
            self.dimension = int(arrays[0].shape[0]) if arrays[0].ndim == 1 else None
        for array in arrays:
            self._check_dimension(array, "Vector")

        async with self._lock:
            for chunk, array in zip(chunks, arrays):
                document = VectorDocument.from_chunk(job_id, url, chunk, array)
                # Re-adding a chunk replaces it and moves it to the end
                self._documents.pop(document.id, None)
                self._documents[document.id] = document

        logger.debug(f"Stored {len(chunks)} vectors for {url} (job {job_id})")

    async def search(self, query_vector: Sequence[float], limit: int = 10,
                     job_ids: Optional[Iterable[str]] = None) -> List[SearchHit]:
        """Top ``limit`` documents by descending cosine similarity."""
        self._require_initialized()
        query = np.asarray(query_vector, dtype=np.float32)
        self._check_dimension(query, "Query vector")
        if limit <= 0:
            return []

        job_filter = set(job_ids) if job_ids else None
        async with self._lock:
            candidates = [
                document for document in self._documents.values()
                if job_filter is None or document.job_id in job_filter
            ]

        if not candidates:
            return []

        matrix = np.vstack([document.vector for document in candidates]).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        query_norm = float(np.linalg.norm(query))

        scores = np.zeros(len(candidates), dtype=np.float64)
        if query_norm > 0:
            nonzero = norms > 0
            scores[nonzero] = matrix[nonzero] @ query.astype(np.float64) / (norms[nonzero] * query_norm)

        # Stable sort on the negated scores keeps insertion order for ties
        order = np.argsort(-scores, kind="stable")[:limit]
        return [SearchHit(document=candidates[i], score=float(scores[i])) for i in order]

    async def clear_job(self, job_id: str) -> int:
        """Remove every document of a job. Returns the number removed."""
        self._require_initialized()
        async with self._lock:
            doomed = [doc_id for doc_id, document in self._documents.items() if document.job_id == job_id]
            for doc_id in doomed:
                del self._documents[doc_id]

        if doomed:
            logger.info(f"Cleared {len(doomed)} vectors for job {job_id}")
        return len(doomed)

    async def get_info(self) -> Dict[str, Any]:
        self._require_initialized()
        async with self._lock:
            job_ids = sorted({document.job_id for document in self._documents.values()})
            count = len(self._documents)

        return {
            "count": count,
            "metadata": {
                "description": self.description,
                "created_at": self.created_at,
                "storage_path": self.storage_path,
                "dimension": self.dimension,
                "job_ids": job_ids,
            },
        }

    async def dispose(self) -> None:
        async with self._lock:
            self._documents.clear()
        self._initialized = False
