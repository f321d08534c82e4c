"""Document chunking pipeline for DocScout.

Splits extracted page text into overlapping token windows ready for embedding.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TOKENS_PER_CHUNK = 800
DEFAULT_OVERLAP_TOKENS = 160  # 20%
MIN_TOKENS_PER_CHUNK = 80

_WHITESPACE_RE = re.compile(r"\s+")
_NEWLINE_RE = re.compile(r"\r\n|\r")


@dataclass
class TextChunk:
    """A bounded, overlap-linked slice of a page's extracted text."""
    id: str
    job_id: str
    url: str
    order: int
    heading_path: List[str]
    text: str
    word_count: int
    char_count: int
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "url": self.url,
            "order": self.order,
            "heading_path": list(self.heading_path),
            "text": self.text,
            "word_count": self.word_count,
            "char_count": self.char_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextChunk":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            url=data["url"],
            order=data["order"],
            heading_path=list(data.get("heading_path") or []),
            text=data["text"],
            word_count=data["word_count"],
            char_count=data["char_count"],
            created_at=data["created_at"],
        )


@dataclass
class ChunkSummary:
    """Totals across the chunks of one page."""
    total_chunks: int = 0
    total_words: int = 0
    total_characters: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_chunks": self.total_chunks,
            "total_words": self.total_words,
            "total_characters": self.total_characters,
        }


@dataclass
class ChunkingOptions:
    """Per-call chunking parameters and context."""
    job_id: str
    url: str
    tokens_per_chunk: Optional[int] = None
    overlap_tokens: Optional[int] = None
    min_tokens_per_chunk: Optional[int] = None
    heading_path: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None


class ChunkingDefaults:
    tokens_per_chunk = DEFAULT_TOKENS_PER_CHUNK
    overlap_tokens = DEFAULT_OVERLAP_TOKENS
    min_tokens_per_chunk = MIN_TOKENS_PER_CHUNK


def normalize_text(raw_text: str) -> str:
    """Collapse every whitespace run to a single space and trim."""
    return _WHITESPACE_RE.sub(" ", _NEWLINE_RE.sub("\n", raw_text)).strip()


class TextChunker:
    """Sliding-window chunker over whitespace tokens.

    The window never shrinks below ``min_tokens_per_chunk``; a short trailing
    window is folded into the previous chunk instead of being emitted on its own.
    """

    def __init__(self,
                 tokens_per_chunk: int = DEFAULT_TOKENS_PER_CHUNK,
                 overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
                 min_tokens_per_chunk: int = MIN_TOKENS_PER_CHUNK):
        """Initialize chunker.

        Args:
            tokens_per_chunk: Requested window size in tokens
            overlap_tokens: Tokens shared between consecutive chunks
            min_tokens_per_chunk: Smallest chunk that may be emitted on its own
        """
        self.tokens_per_chunk = tokens_per_chunk
        self.overlap_tokens = overlap_tokens
        self.min_tokens_per_chunk = min_tokens_per_chunk

    @property
    def window(self) -> int:
        return max(self.tokens_per_chunk, self.min_tokens_per_chunk)

    @property
    def overlap(self) -> int:
        return max(min(self.overlap_tokens, self.window - 1), 0)

    @property
    def step(self) -> int:
        return max(self.window - self.overlap, 1)

    def _generate_chunk_id(self, job_id: str, url: str, h_path: List[str], order: int) -> str:
        """Generate a deterministic chunk ID, unique per (job, url, ordinal)."""
        path_str = "|".join(h_path) if h_path else "root"
        content = f"{job_id}#{url}#{path_str}#{order}"
        return hashlib.md5(content.encode()).hexdigest()[:12]

    def chunk_text(self,
                   raw_text: str,
                   job_id: str,
                   url: str,
                   heading_path: Optional[List[str]] = None,
                   created_at: Optional[datetime] = None) -> List[TextChunk]:
        """Chunk a single page's text.

        Args:
            raw_text: Extracted page text
            job_id: Owning crawl job
            url: Source URL of the page
            heading_path: Ancestor headings shared by every chunk of this text
            created_at: Timestamp stamped on the chunks (defaults to now, UTC)

        Returns:
            Ordered list of TextChunk objects; empty for blank input
        """
        normalized = normalize_text(raw_text or "")
        if not normalized:
            return []

        tokens = [token for token in normalized.split(" ") if token]
        if not tokens:
            return []

        h_path = list(heading_path or [])
        stamp = (created_at or datetime.now(timezone.utc)).isoformat()
        window, overlap, step = self.window, self.overlap, self.step

        chunks: List[TextChunk] = []
        for order, start in enumerate(range(0, len(tokens), step)):
            window_tokens = tokens[start:start + window]

            if len(window_tokens) < self.min_tokens_per_chunk and chunks:
                previous = chunks[-1]
                unique_tail = window_tokens[min(overlap, len(window_tokens)):]
                if unique_tail:
                    previous.text = f"{previous.text} {' '.join(unique_tail)}".strip()
                    previous.word_count += len(unique_tail)
                    previous.char_count = len(previous.text)
                break

            text = " ".join(window_tokens)
            chunks.append(TextChunk(
                id=self._generate_chunk_id(job_id, url, h_path, order),
                job_id=job_id,
                url=url,
                order=order,
                heading_path=list(h_path),
                text=text,
                word_count=len(window_tokens),
                char_count=len(text),
                created_at=stamp,
            ))

            if start + window >= len(tokens):
                break

        logger.debug(f"Created {len(chunks)} chunks for {url} ({len(tokens)} tokens)")
        return chunks


def summarize_chunks(chunks: List[TextChunk]) -> ChunkSummary:
    """Compute totals across chunks."""
    summary = ChunkSummary()
    for chunk in chunks:
        summary.total_chunks += 1
        summary.total_words += chunk.word_count
        summary.total_characters += chunk.char_count
    return summary


# Convenience functions
def chunk_text(raw_text: str, options: ChunkingOptions) -> List[TextChunk]:
    """Convenience function to chunk text with per-call options.

    Args:
        raw_text: Text to chunk
        options: Job/url context and optional size overrides

    Returns:
        List of TextChunk objects
    """
    chunker = TextChunker(
        tokens_per_chunk=options.tokens_per_chunk or DEFAULT_TOKENS_PER_CHUNK,
        overlap_tokens=(options.overlap_tokens
                        if options.overlap_tokens is not None else DEFAULT_OVERLAP_TOKENS),
        min_tokens_per_chunk=(options.min_tokens_per_chunk
                              if options.min_tokens_per_chunk is not None else MIN_TOKENS_PER_CHUNK),
    )
    return chunker.chunk_text(
        raw_text,
        job_id=options.job_id,
        url=options.url,
        heading_path=options.heading_path,
        created_at=options.created_at,
    )
