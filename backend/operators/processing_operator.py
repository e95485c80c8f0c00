from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from database.models import Clip
from database.repository import ProjectRepository
from errors import InvalidOperation, NotFoundError, ValidationError
from models.job_models import Job, JobKind, JobPayload, JobResult
from models.operation_models import ProcessingOptions
from redis_client.job_queue import JobQueue
from settings import Settings
from utils.ffmpeg_builder import (
    InvocationSpec,
    build_command,
    build_options_command,
    output_extension,
    parse_operation,
    parse_options,
)
from utils.ffmpeg_executor import execute
from utils.output_naming import generate_output_name

logger = logging.getLogger(__name__)

PROCESSED_URL_PREFIX = "/processed"
UPLOADS_URL_PREFIX = "/uploads"


def public_url(settings: Settings, path: str) -> str | None:
    resolved = Path(path).resolve()
    for base, prefix in (
        (settings.output_dir, PROCESSED_URL_PREFIX),
        (settings.upload_dir, UPLOADS_URL_PREFIX),
    ):
        base = base.resolve()
        if resolved.parent == base:
            return f"{prefix}/{resolved.name}"
    return None


def _within(path: Path, bases: tuple[Path, ...]) -> bool:
    resolved = path.resolve()
    return any(resolved.is_relative_to(base.resolve()) for base in bases)


def build_invocation(payload: JobPayload, settings: Settings) -> InvocationSpec:
    if payload.operation is not None:
        return build_command(
            payload.operation, payload.input_path, payload.output_path, settings.ffmpeg_bin
        )
    if payload.options is not None:
        return build_options_command(
            payload.options, payload.input_path, payload.output_path, settings.ffmpeg_bin
        )
    raise InvalidOperation("Job has neither an operation nor options", field="operation")


def prepare_clip_operation(
    repository: ProjectRepository,
    settings: Settings,
    project_id: str,
    clip_id: str,
    operation_data: dict[str, Any] | str,
) -> tuple[Clip, JobPayload]:
    """Validate a process request and assign a fresh output path.

    Raises ``NotFoundError`` / ``ValidationError`` before anything is queued
    or executed.
    """
    if not project_id:
        raise ValidationError("projectId is required", field="projectId")
    if not clip_id:
        raise ValidationError("clipId is required", field="clipId")

    repository.get_project(project_id)
    clip = repository.get_clip(project_id, clip_id)
    operation = parse_operation(operation_data)

    output_name = generate_output_name(clip.filename, extension=output_extension(operation))
    payload = JobPayload(
        kind=JobKind.CLIP_OPERATION,
        input_path=clip.storage_path,
        output_path=str(settings.output_dir / output_name),
        operation=operation,
        project_id=project_id,
        clip_id=clip.clip_id,
    )
    # Surface parameter errors synchronously.
    build_invocation(payload, settings)
    return clip, payload


def run_transform(
    payload: JobPayload,
    settings: Settings,
    repository: ProjectRepository,
    skip_existing: bool = False,
) -> JobResult:
    """Execute one transformation; shared by direct and queued processing."""
    spec = build_invocation(payload, settings)
    result = execute(spec, timeout=settings.ffmpeg_timeout_seconds, skip_existing=skip_existing)
    url = public_url(settings, result.output_path)

    if payload.kind != JobKind.CLIP_OPERATION:
        return JobResult(
            output_path=result.output_path,
            url=url,
            skipped=result.skipped,
            duration_seconds=result.duration_seconds,
        )

    derived = _register_derived_clip(payload, repository, result.output_path)
    return JobResult(
        output_path=result.output_path,
        url=url,
        clip_id=derived.clip_id,
        skipped=result.skipped,
        duration_seconds=result.duration_seconds,
    )


def _register_derived_clip(
    payload: JobPayload, repository: ProjectRepository, output_path: str
) -> Clip:
    existing = repository.find_clip_by_path(payload.project_id, output_path)
    if existing is not None:
        logger.info("Derived clip %s already registered for %s", existing.clip_id, output_path)
        return existing

    source = repository.get_clip(payload.project_id, payload.clip_id)
    return repository.append_clip(
        payload.project_id,
        original_name=source.original_name,
        filename=os.path.basename(output_path),
        storage_path=output_path,
        size=os.path.getsize(output_path),
        mime_type=_mime_for(output_path, source.mime_type),
        source_clip_id=source.clip_id,
        operation=payload.operation.model_dump() if payload.operation else None,
    )


def _mime_for(path: str, fallback: str) -> str:
    ext = os.path.splitext(path)[1].lower().lstrip(".")
    return {
        "mp4": "video/mp4",
        "webm": "video/webm",
        "mkv": "video/x-matroska",
        "mov": "video/quicktime",
        "avi": "video/x-msvideo",
        "ts": "video/mp2t",
        "ogv": "video/ogg",
        "gif": "image/gif",
    }.get(ext, fallback)


def process_clip_direct(
    repository: ProjectRepository,
    settings: Settings,
    payload: JobPayload,
) -> JobResult:
    repository.set_project_status(payload.project_id, "processing")
    try:
        return run_transform(payload, settings, repository)
    except Exception:
        repository.settle_after_failure(payload.project_id)
        raise


def enqueue_clip_operation(
    repository: ProjectRepository,
    job_queue: JobQueue,
    payload: JobPayload,
    queue_name: str,
) -> Job:
    job = job_queue.enqueue(queue_name, payload)
    repository.set_project_status(payload.project_id, "processing")
    return job


def prepare_options_job(
    settings: Settings,
    input_path: str,
    output_path: str | None,
    options_data: dict[str, Any],
) -> JobPayload:
    if not input_path:
        raise ValidationError("inputPath is required", field="inputPath")

    options: ProcessingOptions = parse_options(options_data)

    source = Path(input_path)
    if not source.is_absolute():
        source = settings.upload_dir / source
    if not _within(source, (settings.upload_dir, settings.output_dir)):
        raise ValidationError("inputPath must be inside the media directories", field="inputPath")
    if not source.is_file():
        raise NotFoundError(f"Input file not found: {input_path}")

    if output_path:
        target = Path(output_path)
        if not target.is_absolute():
            target = settings.output_dir / target
        if not _within(target, (settings.output_dir,)):
            raise ValidationError("outputPath must be inside the output directory", field="outputPath")
        if target.resolve() == source.resolve():
            raise ValidationError("outputPath must differ from inputPath", field="outputPath")
        if target.exists():
            raise ValidationError(f"outputPath already exists: {output_path}", field="outputPath")
        # The caller's name is a stem; every job still writes a fresh file.
        target = target.parent / generate_output_name(target.name)
    else:
        target = settings.output_dir / generate_output_name(
            source.name, extension=output_extension(None, options)
        )

    payload = JobPayload(
        kind=JobKind.OPTIONS,
        input_path=str(source),
        output_path=str(target),
        options=options,
    )
    build_invocation(payload, settings)
    return payload


def handle_job(
    payload: JobPayload,
    settings: Settings,
    repository: ProjectRepository,
    redelivered: bool = False,
) -> JobResult:
    """Worker entry point for one delivered job.

    Only a redelivery may skip the engine when its output already exists; a
    first delivery always runs it.
    """
    if payload.kind == JobKind.CLIP_OPERATION:
        # The source clip may have disappeared since the job was queued.
        repository.get_clip(payload.project_id, payload.clip_id)
    return run_transform(payload, settings, repository, skip_existing=redelivered)
