"""Local rerank / answer-extraction / summarization stages.

Each stage is a capability that can be switched off in settings or disable itself
when its model fails to load. Callers probe ``is_available()``; every call is
best-effort and yields ``None`` on unavailability, timeout or error.
"""

import asyncio
import functools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from config.settings import LLMSettings
from observability.metrics import llm_stage_duration, record_llm_failure

logger = logging.getLogger(__name__)

MIN_QA_CONTEXT_CHARS = 20
MIN_SUMMARY_INPUT_CHARS = 50


@dataclass
class AnswerExtractionResult:
    answer: str
    confidence: float
    start_index: int
    end_index: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SummarizationResult:
    summary: str
    original_length: int
    summary_length: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RerankResult:
    index: int
    score: float


class Capability(ABC):
    """A single model-backed stage."""

    name = "capability"

    def __init__(self, model_name: str, timeout: float, enabled: bool = True):
        self.model_name = model_name
        self.timeout = timeout
        self.enabled = enabled
        self.model = None
        self.load_error: Optional[str] = None

    def is_available(self) -> bool:
        return self.enabled and self.model is not None

    @abstractmethod
    def _load_model(self):
        """Build the underlying model (blocking)."""

    def load(self) -> bool:
        """Load the model; a failure disables only this capability."""
        if not self.enabled or self.model is not None:
            return self.is_available()
        try:
            logger.info(f"Loading {self.name} model: {self.model_name}")
            self.model = self._load_model()
            logger.info(f"{self.name} model loaded")
        except Exception as e:
            self.model = None
            self.load_error = str(e)
            logger.warning(f"Failed to load {self.name} model {self.model_name}, disabling: {e}")
        return self.is_available()

    async def run(self, func: Callable, *args, **kwargs):
        """Run a blocking model call in the executor under the stage timeout.

        The executor thread is not interrupted on timeout; its late result is discarded.
        """
        loop = asyncio.get_running_loop()
        start = time.monotonic()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} timed out after {self.timeout}s")
            record_llm_failure(self.name, "timeout")
            return None
        except Exception as e:
            logger.warning(f"{self.name} failed: {e}")
            record_llm_failure(self.name, "error")
            return None
        finally:
            llm_stage_duration.labels(stage=self.name).observe(time.monotonic() - start)

    def dispose(self):
        self.model = None


class Reranker(Capability):
    """Cross-encoder relevance scoring of (query, passage) pairs."""

    name = "reranking"

    def _load_model(self):
        from sentence_transformers import CrossEncoder
        return CrossEncoder(self.model_name)

    def _score(self, query: str, texts: List[str]) -> List[RerankResult]:
        scores = self.model.predict([[query, text] for text in texts], show_progress_bar=False)
        results = [RerankResult(index=i, score=float(score)) for i, score in enumerate(scores)]
        # sorted() is stable, so equal scores keep candidate order
        return sorted(results, key=lambda result: result.score, reverse=True)

    async def rerank(self, query: str, texts: List[str]) -> Optional[List[RerankResult]]:
        if not self.is_available() or not texts:
            return None
        return await self.run(self._score, query, texts)


class AnswerExtractor(Capability):
    """Extractive question answering over a single context."""

    name = "qa"

    def __init__(self, model_name: str, timeout: float, enabled: bool = True,
                 confidence_threshold: float = 0.1, device: int = -1):
        super().__init__(model_name, timeout, enabled)
        self.confidence_threshold = confidence_threshold
        self.device = device

    def _load_model(self):
        from transformers import pipeline
        return pipeline("question-answering", model=self.model_name, device=self.device)

    def _answer(self, question: str, context: str) -> Optional[AnswerExtractionResult]:
        result = self.model(question=question, context=context)
        if not isinstance(result, dict):
            return None

        answer = (result.get("answer") or "").strip()
        score = float(result.get("score") or 0.0)
        if not answer or score < self.confidence_threshold:
            return None

        return AnswerExtractionResult(
            answer=answer,
            confidence=score,
            start_index=int(result.get("start") or 0),
            end_index=int(result.get("end") or len(answer)),
        )

    async def extract(self, question: str, context: str) -> Optional[AnswerExtractionResult]:
        if not self.is_available():
            return None
        if not question or not question.strip() or not context or len(context.strip()) < MIN_QA_CONTEXT_CHARS:
            return None
        return await self.run(self._answer, question, context)


class Summarizer(Capability):
    """Abstractive summarization of a single chunk."""

    name = "summarization"

    def __init__(self, model_name: str, timeout: float, enabled: bool = True,
                 max_length: int = 130, min_length: int = 30, device: int = -1):
        super().__init__(model_name, timeout, enabled)
        self.max_length = max_length
        self.min_length = min_length
        self.device = device

    def _load_model(self):
        from transformers import pipeline
        return pipeline("summarization", model=self.model_name, device=self.device)

    def _summarize(self, text: str, num_sentences: int) -> Optional[SummarizationResult]:
        max_length = min(self.max_length, num_sentences * 30)
        min_length = min(max(self.min_length, num_sentences * 10), max_length)

        output = self.model(text, max_length=max_length, min_length=min_length,
                            do_sample=False, truncation=True)
        if not output:
            return None

        first = output[0]
        summary = (first.get("summary_text") or first.get("generated_text") or "").strip()
        if not summary:
            return None

        return SummarizationResult(summary=summary, original_length=len(text), summary_length=len(summary))

    async def summarize(self, text: str, num_sentences: int = 3) -> Optional[SummarizationResult]:
        if not self.is_available():
            return None
        if not text or len(text.strip()) < MIN_SUMMARY_INPUT_CHARS:
            return None
        return await self.run(self._summarize, text, num_sentences)


class LLMPipeline:
    """Facade over the three best-effort stages."""

    def __init__(self,
                 settings: Optional[LLMSettings] = None,
                 reranker: Optional[Reranker] = None,
                 answer_extractor: Optional[AnswerExtractor] = None,
                 summarizer: Optional[Summarizer] = None):
        settings = settings or LLMSettings()
        self.settings = settings
        self.reranker = reranker or Reranker(
            settings.reranker_model, settings.timeout, settings.enable_reranking)
        self.answer_extractor = answer_extractor or AnswerExtractor(
            settings.qa_model, settings.timeout, settings.enable_qa,
            confidence_threshold=settings.qa_confidence_threshold, device=settings.device)
        self.summarizer = summarizer or Summarizer(
            settings.summarization_model, settings.timeout, settings.enable_summarization,
            max_length=settings.summarization_max_length,
            min_length=settings.summarization_min_length, device=settings.device)
        self._initialized = False

    @property
    def capabilities(self) -> Dict[str, Capability]:
        return {
            Reranker.name: self.reranker,
            AnswerExtractor.name: self.answer_extractor,
            Summarizer.name: self.summarizer,
        }

    async def initialize(self) -> None:
        """Load every enabled stage concurrently. Never raises for a single stage."""
        if self._initialized:
            return
        loop = asyncio.get_running_loop()
        enabled = [capability for capability in self.capabilities.values() if capability.enabled]
        await asyncio.gather(*(loop.run_in_executor(None, capability.load) for capability in enabled))
        self._initialized = True

        available = [name for name, capability in self.capabilities.items() if capability.is_available()]
        logger.info(f"LLM pipeline ready; available stages: {', '.join(available) or 'none'}")

    def has_capability(self, name: str) -> bool:
        capability = self.capabilities.get(name)
        return capability is not None and capability.is_available()

    async def rerank(self, query: str, texts: List[str]) -> Optional[List[RerankResult]]:
        return await self.reranker.rerank(query, texts)

    async def extract_answer(self, question: str, context: str) -> Optional[AnswerExtractionResult]:
        return await self.answer_extractor.extract(question, context)

    async def summarize(self, text: str, num_sentences: int = 3) -> Optional[SummarizationResult]:
        return await self.summarizer.summarize(text, num_sentences)

    async def summarize_batch(self, texts: List[str], num_sentences: int = 3) -> List[Optional[SummarizationResult]]:
        if not self.summarizer.is_available():
            return [None] * len(texts)
        return list(await asyncio.gather(*(self.summarize(text, num_sentences) for text in texts)))

    async def extract_answers_batch(self, questions: List[str],
                                    contexts: List[str]) -> List[Optional[AnswerExtractionResult]]:
        if len(questions) != len(contexts):
            raise ValueError("questions and contexts must have the same length")
        if not self.answer_extractor.is_available():
            return [None] * len(questions)
        return list(await asyncio.gather(
            *(self.extract_answer(question, context) for question, context in zip(questions, contexts))
        ))

    def dispose(self) -> None:
        for capability in self.capabilities.values():
            capability.dispose()
        self._initialized = False
        logger.info("LLM models disposed")
