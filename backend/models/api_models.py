from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.job_models import JobState


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    kind: str
    message: str
    field: str | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorBody


class HealthResponse(BaseModel):
    status: Literal["ok", "unavailable"]
    database: bool
    redis: bool


# =============================================================================
# PROJECTS & CLIPS
# =============================================================================


class ProjectCreateRequest(CamelModel):
    name: str
    description: str | None = None


class ClipResponse(CamelModel):
    id: str
    project_id: str
    original_name: str
    filename: str
    size: int
    mime_type: str
    uploaded_at: datetime
    source_clip_id: str | None = None
    operation: dict[str, Any] | None = None
    processed_at: datetime | None = None
    url: str | None = None


class ProjectResponse(CamelModel):
    id: str
    name: str
    description: str | None = None
    status: Literal["draft", "processing", "complete"]
    created_at: datetime
    clips: list[ClipResponse] = Field(default_factory=list)


class ProjectListResponse(BaseModel):
    success: bool = True
    projects: list[ProjectResponse]


# =============================================================================
# PROCESSING
# =============================================================================


class ProcessRequest(CamelModel):
    """Transformation request for one clip.

    Operation parameters may be nested under ``params``, passed inline in
    ``operation`` as an object, or sent as top-level fields
    (``{"operation": "trim", "start": 0, "duration": 2}``).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    project_id: str = ""
    clip_id: str = ""
    operation: str | dict[str, Any]
    params: dict[str, Any] = Field(default_factory=dict)
    mode: Literal["direct", "queued"] | None = None
    queue: str | None = None

    def operation_data(self) -> dict[str, Any]:
        if isinstance(self.operation, dict):
            return {**self.params, **self.operation}
        inline = dict(self.model_extra or {})
        return {**inline, **self.params, "type": self.operation}


class ProcessResponse(CamelModel):
    success: bool
    clip: ClipResponse
    url: str | None = None


class QueueSubmitRequest(CamelModel):
    input_path: str
    output_path: str | None = None
    options: dict[str, Any]


# =============================================================================
# JOBS & MONITOR
# =============================================================================


class JobResultResponse(CamelModel):
    output_path: str
    url: str | None = None
    clip_id: str | None = None
    skipped: bool = False
    duration_seconds: float | None = None


class JobDetailResponse(CamelModel):
    id: str
    queue: str
    state: JobState
    attempts: int
    max_attempts: int
    operation: str
    error: str | None = None
    error_kind: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: JobResultResponse | None = None


class JobHandleResponse(BaseModel):
    success: bool = True
    job: JobDetailResponse


class JobListResponse(BaseModel):
    success: bool = True
    jobs: list[JobDetailResponse]
    total: int


class QueueSummary(BaseModel):
    name: str
    counts: dict[str, int]


class MonitorSummaryResponse(BaseModel):
    success: bool = True
    queues: list[QueueSummary]
