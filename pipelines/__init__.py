"""Pipelines package for DocScout.

Provides crawling, parsing, chunking and crawl scheduling.
"""

from .chunker import (
    ChunkingDefaults,
    ChunkingOptions,
    ChunkSummary,
    TextChunk,
    TextChunker,
    chunk_text,
    normalize_text,
    summarize_chunks
)
from .links import normalize_url, safe_hostname
from .parsers import ParsedPage, parse_content, parse_html, parse_markdown
from .crawler import FetchResult, PageFetcher
from .models import JobConfig, JobStatus, PageStatus
from .scheduler import CancellationToken, CrawlListener, CrawlScheduler, JobSlot, JobState, PageResult

__all__ = [
    # Chunker
    'ChunkingDefaults',
    'ChunkingOptions',
    'ChunkSummary',
    'TextChunk',
    'TextChunker',
    'chunk_text',
    'normalize_text',
    'summarize_chunks',

    # Links and parsing
    'normalize_url',
    'safe_hostname',
    'ParsedPage',
    'parse_content',
    'parse_html',
    'parse_markdown',

    # Fetching
    'FetchResult',
    'PageFetcher',

    # Scheduling
    'JobConfig',
    'JobStatus',
    'PageStatus',
    'CancellationToken',
    'CrawlListener',
    'CrawlScheduler',
    'JobSlot',
    'JobState',
    'PageResult'
]
