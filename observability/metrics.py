"""Prometheus metrics for DocScout."""

import logging
from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Custom registry for DocScout metrics
docscout_registry = CollectorRegistry()

# Crawl metrics
pages_processed = Counter(
    'docscout_pages_processed_total',
    'Total number of pages that finished processing',
    ['status'],
    registry=docscout_registry
)

page_duration = Histogram(
    'docscout_page_duration_seconds',
    'Fetch-to-index duration of a single page in seconds',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=docscout_registry
)

chunks_indexed = Counter(
    'docscout_chunks_indexed_total',
    'Total number of chunks written to the vector store',
    registry=docscout_registry
)

jobs_total = Counter(
    'docscout_jobs_total',
    'Total number of crawl jobs by terminal status',
    ['status'],
    registry=docscout_registry
)

active_jobs = Gauge(
    'docscout_active_jobs',
    'Number of crawl jobs currently running',
    registry=docscout_registry
)

# Query metrics
query_requests = Counter(
    'docscout_query_requests_total',
    'Total number of retrieval requests',
    ['mode', 'status'],
    registry=docscout_registry
)

query_duration = Histogram(
    'docscout_query_duration_seconds',
    'Retrieval request duration in seconds',
    ['mode'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=docscout_registry
)

embedding_duration = Histogram(
    'docscout_embedding_duration_seconds',
    'Embedding generation duration in seconds',
    ['kind'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=docscout_registry
)

# Cache metrics
cache_lookups = Counter(
    'docscout_cache_lookups_total',
    'Query cache lookups',
    ['result'],
    registry=docscout_registry
)

cache_evictions = Counter(
    'docscout_cache_evictions_total',
    'Query cache evictions',
    ['reason'],
    registry=docscout_registry
)

# LLM stage metrics
llm_stage_failures = Counter(
    'docscout_llm_stage_failures_total',
    'LLM stage calls that timed out or raised',
    ['stage', 'kind'],
    registry=docscout_registry
)

llm_stage_duration = Histogram(
    'docscout_llm_stage_duration_seconds',
    'LLM stage call duration in seconds',
    ['stage'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0],
    registry=docscout_registry
)


def record_page_metrics(status: str, duration: Optional[float] = None, chunk_count: int = 0) -> None:
    """Record the outcome of one processed page."""
    pages_processed.labels(status=status).inc()
    if duration is not None:
        page_duration.observe(duration)
    if chunk_count:
        chunks_indexed.inc(chunk_count)


def record_job_finished(status: str) -> None:
    jobs_total.labels(status=status).inc()
    active_jobs.dec()


def record_job_started() -> None:
    active_jobs.inc()


def record_query_metrics(mode: str, duration: float, error: Optional[str] = None) -> None:
    """Record retrieval-related metrics."""
    status = "error" if error else "success"
    query_requests.labels(mode=mode, status=status).inc()
    query_duration.labels(mode=mode).observe(duration)


def record_cache_lookup(hit: bool) -> None:
    cache_lookups.labels(result="hit" if hit else "miss").inc()


def record_llm_failure(stage: str, kind: str) -> None:
    llm_stage_failures.labels(stage=stage, kind=kind).inc()


def get_metrics_text() -> bytes:
    """Render the registry in the Prometheus exposition format."""
    return generate_latest(docscout_registry)


def get_metrics_summary() -> Dict[str, Any]:
    """Get a summary of current counter values."""
    summary: Dict[str, Any] = {}
    for metric in docscout_registry.collect():
        for sample in metric.samples:
            if sample.name.endswith("_total"):
                summary[sample.name] = summary.get(sample.name, 0.0) + sample.value
    return summary
