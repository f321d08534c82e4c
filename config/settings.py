"""Settings for DocScout.

Precedence, lowest first: built-in defaults, a YAML file, environment variables.
The YAML file is taken from ``DOCSCOUT_CONFIG`` or ``config/docscout.yaml`` in the
working directory. Environment overrides use ``DOCSCOUT_<SECTION>__<KEY>``, for
example ``DOCSCOUT_CRAWL__CONCURRENCY=5``.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOCSCOUT_"
CONFIG_ENV_VAR = "DOCSCOUT_CONFIG"
DEFAULT_CONFIG_FILE = os.path.join("config", "docscout.yaml")


class CrawlSettings(BaseModel):
    """Crawl defaults and HTTP fetch behaviour."""
    user_agent: str = Field(default="DocScoutBot/0.1", description="User-Agent for page fetches")
    concurrency: int = Field(default=3, ge=1, description="Concurrent page workers per job")
    max_depth: int = Field(default=2, ge=0, description="Default maximum link depth")
    max_pages: int = Field(default=50, ge=1, description="Default page budget per job")
    request_timeout: float = Field(default=30.0, gt=0, description="Total request timeout in seconds")
    max_retries: int = Field(default=2, ge=0, description="Retries for retryable fetch failures")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff delay in seconds")
    max_retry_delay: float = Field(default=30.0, ge=0, description="Backoff ceiling in seconds")
    rate_limit: float = Field(default=0.0, ge=0, description="Minimum seconds between requests to one host")
    max_headings: int = Field(default=20, ge=0, description="Headings collected per HTML page")


class ChunkingSettings(BaseModel):
    tokens_per_chunk: int = Field(default=800, ge=1)
    overlap_tokens: int = Field(default=160, ge=0)
    min_tokens_per_chunk: int = Field(default=80, ge=1)


class EmbeddingSettings(BaseModel):
    model_name: str = Field(default="all-MiniLM-L6-v2", description="Sentence transformer model")
    batch_size: int = Field(default=32, ge=1)
    normalize: bool = True
    device: Optional[str] = None


class LLMSettings(BaseModel):
    """Rerank / answer-extraction / summarization stages."""
    enable_reranking: bool = True
    enable_qa: bool = True
    enable_summarization: bool = True
    reranker_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    qa_model: str = "distilbert-base-cased-distilled-squad"
    summarization_model: str = "sshleifer/distilbart-cnn-6-6"
    timeout: float = Field(default=3.0, gt=0, description="Per-call timeout in seconds")
    qa_confidence_threshold: float = Field(default=0.1, ge=0, le=1)
    summarization_max_length: int = Field(default=130, ge=1)
    summarization_min_length: int = Field(default=30, ge=0)
    device: int = Field(default=-1, description="transformers device index, -1 for CPU")


class RetrievalSettings(BaseModel):
    default_limit: int = Field(default=10, ge=1)
    intelligent_limit: int = Field(default=5, ge=1)
    default_threshold: float = 0.1
    candidate_multiplier: int = Field(default=4, ge=1)
    min_candidates: int = Field(default=20, ge=1)
    good_answer_confidence: float = 0.3
    poor_answer_confidence: float = 0.05
    storage_path: Optional[str] = None


class CacheSettings(BaseModel):
    max_entries: int = Field(default=100, ge=1)
    ttl_seconds: float = Field(default=1800.0, gt=0)
    hit_weight_seconds: float = Field(default=60.0, ge=0)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    use_json: bool = False
    use_colors: bool = True
    log_file: Optional[str] = None


class Settings(BaseModel):
    """Root settings tree."""
    service_name: str = "docscout"
    crawl: CrawlSettings = Field(default_factory=CrawlSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    embeddings: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = dict(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _resolve_config_path(config_path: Optional[str], env: Mapping[str, str]) -> Optional[Path]:
    if config_path:
        if not Path(config_path).is_file():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return Path(config_path)

    for candidate in (env.get(CONFIG_ENV_VAR), DEFAULT_CONFIG_FILE):
        if candidate and Path(candidate).is_file():
            return Path(candidate)
    return None


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ``DOCSCOUT_SECTION__KEY`` (or ``DOCSCOUT_KEY``) variables."""
    overrides: Dict[str, Any] = {}
    for name, value in env.items():
        if not name.startswith(ENV_PREFIX) or name == CONFIG_ENV_VAR:
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX):].split("__") if part]
        if not path:
            continue

        target = overrides
        for part in path[:-1]:
            target = target.setdefault(part, {})
        # Empty values mean "unset" for optional fields
        target[path[-1]] = value if value != "" else None
    return overrides


def load_settings(config_path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from defaults, the YAML file and the environment.

    Args:
        config_path: Explicit YAML file; must exist when given
        env: Environment mapping (defaults to ``os.environ``)

    Raises:
        FileNotFoundError: ``config_path`` was given but does not exist
        pydantic.ValidationError: A merged value fails validation
    """
    env = os.environ if env is None else env
    merged = Settings().model_dump()

    path = _resolve_config_path(config_path, env)
    if path is not None:
        merged = _deep_merge(merged, _load_yaml(path))
        logger.debug(f"Loaded settings from {path}")

    merged = _deep_merge(merged, _env_overrides(env))
    return Settings.model_validate(merged)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
