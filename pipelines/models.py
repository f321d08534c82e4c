"""Crawl job and page lifecycle models."""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field, field_validator

from .chunker import DEFAULT_OVERLAP_TOKENS, DEFAULT_TOKENS_PER_CHUNK, MIN_TOKENS_PER_CHUNK
from .crawler import DEFAULT_USER_AGENT
from .links import safe_hostname


class JobStatus(str, Enum):
    """Job lifecycle status."""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.ERROR)


class PageStatus(str, Enum):
    """Per-URL progress status."""
    QUEUED = "queued"
    FETCHING = "fetching"
    EMBEDDING = "embedding"
    INDEXED = "indexed"
    PARSED = "parsed"
    SKIPPED = "skipped"
    FAILED = "failed"


class JobConfig(BaseModel):
    """Configuration of one crawl run."""
    job_id: str = Field(..., min_length=1, description="Job identifier")
    seed_urls: List[str] = Field(..., min_length=1, description="Seed URLs")
    max_depth: int = Field(default=2, ge=0, description="Maximum link depth from a seed")
    max_pages: int = Field(default=50, ge=1, description="Maximum number of processed pages")
    follow_external: bool = Field(default=False, description="Follow links to hosts outside the allow-list")
    allowed_domains: List[str] = Field(default_factory=list,
                                       description="Host allow-list, derived from the seeds when empty")
    concurrency: int = Field(default=3, ge=1, description="Concurrent page workers")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent for page fetches")

    # Chunking
    tokens_per_chunk: int = Field(default=DEFAULT_TOKENS_PER_CHUNK, ge=1)
    overlap_tokens: int = Field(default=DEFAULT_OVERLAP_TOKENS, ge=0)
    min_tokens_per_chunk: int = Field(default=MIN_TOKENS_PER_CHUNK, ge=1)

    @field_validator("allowed_domains")
    @classmethod
    def _lowercase_domains(cls, value: List[str]) -> List[str]:
        return [domain.strip().lower() for domain in value if domain and domain.strip()]

    def host_allow_list(self) -> List[str]:
        """Allowed hosts: the configured list, or the seed hostnames when it is empty."""
        if self.allowed_domains:
            return list(self.allowed_domains)
        hosts = []
        for url in self.seed_urls:
            host = safe_hostname(url)
            if host and host not in hosts:
                hosts.append(host)
        return hosts
