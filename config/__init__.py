"""Configuration module for DocScout.

Provides the settings tree for crawling, chunking, embeddings, LLM stages,
retrieval, caching and logging.
"""

from .settings import (
    CacheSettings,
    ChunkingSettings,
    CrawlSettings,
    EmbeddingSettings,
    LLMSettings,
    LoggingSettings,
    RetrievalSettings,
    Settings,
    get_settings,
    load_settings,
    reset_settings
)

__all__ = [
    'CacheSettings',
    'ChunkingSettings',
    'CrawlSettings',
    'EmbeddingSettings',
    'LLMSettings',
    'LoggingSettings',
    'RetrievalSettings',
    'Settings',
    'get_settings',
    'load_settings',
    'reset_settings'
]
