# DocScout Embeddings Module
# Turns chunk and query text into fixed-length vectors with sentence transformers

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from observability.metrics import embedding_duration
from .errors import EmbeddingError, NotInitialized

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"


class EmbeddingProvider(ABC):
    """Text -> fixed-length vector capability."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Vector dimensionality, known after initialize()."""

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def embed_documents(self, texts: List[str]) -> List[np.ndarray]:
        """Embed a batch of chunk texts."""

    @abstractmethod
    async def embed_query(self, text: str) -> np.ndarray:
        """Embed a single query text."""

    async def dispose(self) -> None:
        pass


class SentenceTransformerEmbeddings(EmbeddingProvider):
    """Embedding provider backed by a SentenceTransformer model.

    Encoding is CPU/GPU bound, so every call runs in the default executor to keep
    the event loop responsive.
    """

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL, batch_size: int = 32,
                 normalize: bool = True, device: Optional[str] = None):
        """
        Initialize embedding provider

        Args:
            model_name: Sentence transformer model name
            batch_size: Encode batch size
            normalize: L2-normalize the produced vectors
            device: Torch device override (e.g. "cpu", "cuda")
        """
        self.model_name = model_name
        self.batch_size = batch_size
        self.normalize = normalize
        self.device = device
        self.model = None
        self._dimension: Optional[int] = None

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            raise NotInitialized("Embedding model not loaded")
        return self._dimension

    def _load_model(self):
        """Load the sentence transformer model"""
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {self.model_name}")
        model = SentenceTransformer(self.model_name, device=self.device)
        dimension = model.get_sentence_embedding_dimension()
        logger.info(f"Model loaded successfully. Embedding dimension: {dimension}")
        return model, dimension

    async def initialize(self) -> None:
        if self.model is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            self.model, self._dimension = await loop.run_in_executor(None, self._load_model)
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise EmbeddingError(f"Failed to load embedding model {self.model_name}: {e}") from e

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self.model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=self.normalize,
            show_progress_bar=False,
        )

    async def _encode_async(self, texts: List[str], kind: str) -> np.ndarray:
        if self.model is None:
            raise NotInitialized("Embedding model not loaded")

        loop = asyncio.get_running_loop()
        start = time.monotonic()
        try:
            vectors = await loop.run_in_executor(None, self._encode, texts)
        except Exception as e:
            raise EmbeddingError(str(e)) from e
        finally:
            embedding_duration.labels(kind=kind).observe(time.monotonic() - start)
        return np.asarray(vectors, dtype=np.float32)

    async def embed_documents(self, texts: List[str]) -> List[np.ndarray]:
        if not texts:
            return []
        cleaned = [text.strip() if text else "" for text in texts]
        vectors = await self._encode_async(cleaned, "document")
        return [vector for vector in vectors]

    async def embed_query(self, text: str) -> np.ndarray:
        text = (text or "").strip()
        if not text:
            raise EmbeddingError("Cannot embed an empty query")
        vectors = await self._encode_async([text], "query")
        return vectors[0]

    async def dispose(self) -> None:
        self.model = None
