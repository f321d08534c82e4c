"""Error taxonomy for DocScout.

Structural and configuration errors are raised to the caller of the specific
operation. Page-level and model-stage failures are absorbed where they happen and
never reach this hierarchy's callers.
"""

from typing import Optional


class DocScoutError(Exception):
    """Base class for all DocScout errors."""

    code = "docscout_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)

    @property
    def reason(self) -> str:
        """Short, user-facing reason string."""
        return self.code


class DimensionMismatch(DocScoutError):
    """Vector dimensions (or chunk/vector counts) do not line up."""

    code = "dimension_mismatch"


class NotInitialized(DocScoutError):
    """A component was used before initialize() completed."""

    code = "not_initialized"


class JobAlreadyRunning(DocScoutError):
    """A crawl job was started while another one is still active."""

    code = "job_already_running"

    def __init__(self, active_job_id: str):
        super().__init__(f"Job {active_job_id} is already running")
        self.active_job_id = active_job_id


class HttpStatusError(DocScoutError):
    """Non-2xx response while fetching a page."""

    code = "http_error"

    def __init__(self, status: int, url: str = ""):
        super().__init__(f"http_{status}")
        self.status = status
        self.url = url

    @property
    def reason(self) -> str:
        return f"http_{self.status}"


class EmbeddingError(DocScoutError):
    """The embedding provider could not produce vectors."""

    code = "embedding_failed"


class RetrievalError(DocScoutError):
    """Retrieval engine failed to initialize or to serve a request."""

    code = "retrieval_failed"
