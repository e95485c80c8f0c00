"""
Pydantic models for queued transformation jobs.

A job moves through ``queued -> active -> completed | failed``; a retryable
failure sends it from ``active`` back to ``queued`` (delayed by backoff).
Jobs reference clips and paths by value only. The records themselves live in
rq; :class:`Job` is the read-side snapshot of one.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from models.operation_models import Operation, ProcessingOptions


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class JobKind(str, Enum):
    CLIP_OPERATION = "clip_operation"  # derived clip registered on success
    OPTIONS = "options"  # raw path-to-path job submitted to a queue


class JobPayload(BaseModel):
    kind: JobKind
    input_path: str
    output_path: str
    operation: Operation | None = None
    options: ProcessingOptions | None = None
    project_id: str | None = None
    clip_id: str | None = None

    def describe(self) -> str:
        if self.operation is not None:
            return self.operation.type
        return "options"


class JobResult(BaseModel):
    output_path: str
    url: str | None = None
    clip_id: str | None = None
    skipped: bool = False
    duration_seconds: float | None = None


class Job(BaseModel):
    id: str
    queue_name: str
    payload: JobPayload
    state: JobState = JobState.QUEUED
    attempts: int = 0
    max_attempts: int = 1
    error: str | None = None
    error_kind: str | None = None
    result: JobResult | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
