"""Message protocol between the worker and its host.

Commands flow host -> worker, events flow worker -> host. Both directions are
closed unions discriminated on ``type``; raw dicts are validated with pydantic.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from pipelines.models import JobConfig, JobStatus, PageStatus


# Commands

class CancelPayload(BaseModel):
    job_id: Optional[str] = Field(default=None, description="Job to cancel; omitted means the current job")


class QueryPayload(BaseModel):
    query: str = Field(..., min_length=1)
    job_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    intelligent: bool = Field(default=True, description="Run the rerank/answer/summary pipeline")


class StartCommand(BaseModel):
    type: Literal["start"] = "start"
    payload: JobConfig


class CancelCommand(BaseModel):
    type: Literal["cancel"] = "cancel"
    payload: CancelPayload = Field(default_factory=CancelPayload)


class QueryCommand(BaseModel):
    type: Literal["query"] = "query"
    payload: QueryPayload


class ClearCacheCommand(BaseModel):
    type: Literal["clear-cache"] = "clear-cache"


class GetCacheStatsCommand(BaseModel):
    type: Literal["get-cache-stats"] = "get-cache-stats"


Command = Annotated[
    Union[StartCommand, CancelCommand, QueryCommand, ClearCacheCommand, GetCacheStatsCommand],
    Field(discriminator="type"),
]

command_adapter = TypeAdapter(Command)


def parse_command(raw: Any) -> Command:
    """Validate a raw message. Raises pydantic.ValidationError for unknown or malformed input."""
    return command_adapter.validate_python(raw)


# Events

class QueryStatus(str, Enum):
    STARTED = "started"
    RETRIEVING = "retrieving"
    SCORING = "scoring"
    COMPLETED = "completed"
    FAILED = "failed"


class PageProgressPayload(BaseModel):
    job_id: str
    url: str
    depth: int
    status: PageStatus
    reason: Optional[str] = None


class PageResultPayload(BaseModel):
    job_id: str
    url: str
    depth: int
    headings: List[str]
    raw_text: str
    chunks: List[Dict[str, Any]]
    summary: Dict[str, int]


class JobStatusPayload(BaseModel):
    job_id: str
    status: JobStatus
    processed_pages: int = 0
    discovered_pages: int = 0
    error: Optional[str] = None
    reason: Optional[str] = None


class QueryStatusPayload(BaseModel):
    query_id: str
    status: QueryStatus
    timestamp: float
    job_id: Optional[str] = None
    query: Optional[str] = None
    retrieved_candidates: Optional[int] = None
    considered_chunks: Optional[int] = None
    total_results: Optional[int] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None


class QueryResultPayload(BaseModel):
    query_id: str
    chunks: List[Dict[str, Any]]
    total_found: int
    query_time: float


class IntelligentQueryResultPayload(QueryResultPayload):
    llm_processing_time: float
    from_cache: bool = False
    degraded: bool = False
    error: Optional[str] = None


class WorkerErrorPayload(BaseModel):
    message: str


class CacheStatsPayload(BaseModel):
    size: int
    capacity: int
    ttl_seconds: float
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    entries: List[Dict[str, Any]] = Field(default_factory=list)


class PageProgressEvent(BaseModel):
    type: Literal["page-progress"] = "page-progress"
    payload: PageProgressPayload


class PageResultEvent(BaseModel):
    type: Literal["page-result"] = "page-result"
    payload: PageResultPayload


class JobStatusEvent(BaseModel):
    type: Literal["job-status"] = "job-status"
    payload: JobStatusPayload


class QueryStatusEvent(BaseModel):
    type: Literal["query-status"] = "query-status"
    payload: QueryStatusPayload


class IntelligentQueryResultEvent(BaseModel):
    type: Literal["intelligent-query-result"] = "intelligent-query-result"
    payload: IntelligentQueryResultPayload


class QueryResultEvent(BaseModel):
    type: Literal["query-result"] = "query-result"
    payload: QueryResultPayload


class WorkerErrorEvent(BaseModel):
    type: Literal["worker-error"] = "worker-error"
    payload: WorkerErrorPayload


class CacheStatsEvent(BaseModel):
    type: Literal["cache-stats"] = "cache-stats"
    payload: CacheStatsPayload


Event = Annotated[
    Union[
        PageProgressEvent,
        PageResultEvent,
        JobStatusEvent,
        QueryStatusEvent,
        IntelligentQueryResultEvent,
        QueryResultEvent,
        WorkerErrorEvent,
        CacheStatsEvent,
    ],
    Field(discriminator="type"),
]

event_adapter = TypeAdapter(Event)


def parse_event(raw: Any) -> Event:
    return event_adapter.validate_python(raw)


def event_to_message(event: BaseModel) -> Dict[str, Any]:
    """Serialize an event to a plain JSON-compatible dict."""
    return event.model_dump(mode="json")
