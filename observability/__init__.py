"""Observability package for DocScout."""

from .logging import setup_logging, get_logger
from .metrics import (
    docscout_registry,
    get_metrics_summary,
    get_metrics_text,
    record_cache_lookup,
    record_llm_failure,
    record_page_metrics,
    record_query_metrics
)

__all__ = [
    'setup_logging',
    'get_logger',
    'docscout_registry',
    'get_metrics_summary',
    'get_metrics_text',
    'record_cache_lookup',
    'record_llm_failure',
    'record_page_metrics',
    'record_query_metrics'
]
