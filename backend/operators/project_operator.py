from __future__ import annotations

import logging
import os
from typing import BinaryIO

from database.models import Clip, Project
from database.repository import ProjectRepository
from errors import ValidationError
from models.api_models import ClipResponse, ProjectResponse
from operators.processing_operator import public_url
from settings import Settings
from utils.output_naming import sanitize_basename, unique_token

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024


def clip_to_response(clip: Clip, settings: Settings) -> ClipResponse:
    return ClipResponse(
        id=clip.clip_id,
        project_id=clip.project_id,
        original_name=clip.original_name,
        filename=clip.filename,
        size=clip.size,
        mime_type=clip.mime_type,
        uploaded_at=clip.uploaded_at,
        source_clip_id=clip.source_clip_id,
        operation=clip.operation,
        processed_at=clip.processed_at,
        url=public_url(settings, clip.storage_path),
    )


def project_to_response(
    project: Project,
    settings: Settings,
    clips: list[Clip] | None = None,
) -> ProjectResponse:
    if clips is None:
        clips = list(project.clips)
    return ProjectResponse(
        id=project.project_id,
        name=project.name,
        description=project.description,
        status=project.status,
        created_at=project.created_at,
        clips=[clip_to_response(clip, settings) for clip in clips],
    )


def validate_upload(filename: str | None, content_type: str | None) -> str:
    if not filename:
        raise ValidationError("No video file uploaded", field="video")
    if not content_type or not content_type.lower().startswith("video/"):
        raise ValidationError("Only video files are allowed", field="video")
    return content_type.lower()


def store_upload(settings: Settings, filename: str, stream: BinaryIO) -> tuple[str, str, int]:
    """Copy an upload into ``UPLOAD_DIR`` enforcing the size limit.

    Returns ``(stored_filename, storage_path, size)``.
    """
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    stored_name = f"{unique_token()}-{sanitize_basename(filename)}"
    final_path = settings.upload_dir / stored_name
    temp_path = settings.upload_dir / f".upload-{stored_name}"

    size = 0
    try:
        with open(temp_path, "wb") as out:
            while True:
                chunk = stream.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if size > settings.max_upload_bytes:
                    raise ValidationError(
                        f"File exceeds the maximum upload size of {settings.max_upload_bytes} bytes",
                        field="video",
                    )
                out.write(chunk)
        if size == 0:
            raise ValidationError("File is empty", field="video")
        os.replace(temp_path, final_path)
    except BaseException:
        if temp_path.exists():
            temp_path.unlink()
        raise

    return stored_name, str(final_path), size


def upload_clip(
    repository: ProjectRepository,
    settings: Settings,
    project_id: str,
    filename: str | None,
    content_type: str | None,
    stream: BinaryIO,
) -> Clip:
    mime_type = validate_upload(filename, content_type)
    if not project_id:
        raise ValidationError("Project ID is required", field="projectId")
    repository.get_project(project_id)

    stored_name, storage_path, size = store_upload(settings, filename, stream)
    try:
        clip = repository.append_clip(
            project_id,
            original_name=filename,
            filename=stored_name,
            storage_path=storage_path,
            size=size,
            mime_type=mime_type,
        )
    except Exception:
        os.remove(storage_path)
        raise

    logger.info("Uploaded clip %s (%s bytes) to project %s", clip.clip_id, size, project_id)
    return clip
