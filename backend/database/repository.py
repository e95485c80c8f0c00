from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession, sessionmaker

from database.base import Base
from database.models import Clip, Project
from errors import ClipflowError, NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

PROJECT_STATUSES = ("draft", "processing", "complete")


class ProjectRepository:
    """Storage backend for projects and their append-only clip history."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[DBSession]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except ClipflowError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Storage operation failed")
            raise StorageError(f"Storage operation failed: {e}") from e
        finally:
            db.close()

    def create_schema(self) -> None:
        engine = self._session_factory.kw["bind"]
        try:
            Base.metadata.create_all(engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create schema: {e}") from e

    def ping(self) -> bool:
        try:
            with self._session() as db:
                db.execute(text("SELECT 1"))
            return True
        except StorageError:
            return False

    def create_project(self, name: str, description: str | None = None) -> Project:
        if not name or not name.strip():
            raise ValidationError("Project name is required", field="name")
        now = datetime.now(timezone.utc)
        with self._session() as db:
            project = Project(
                name=name.strip(),
                description=description,
                status="draft",
                created_at=now,
                updated_at=now,
                clip_sequence=0,
            )
            db.add(project)
            db.flush()
            db.refresh(project)
        logger.info("Created project %s", project.project_id)
        return project

    def list_projects(self) -> list[Project]:
        with self._session() as db:
            return list(db.scalars(select(Project).order_by(Project.created_at.desc())).all())

    def get_project(self, project_id: str) -> Project:
        with self._session() as db:
            project = db.get(Project, project_id)
            if not project:
                raise NotFoundError(f"Project not found: {project_id}")
            return project

    def get_clip(self, project_id: str, clip_id: str) -> Clip:
        with self._session() as db:
            clip = db.scalars(
                select(Clip).where(Clip.project_id == project_id, Clip.clip_id == clip_id)
            ).first()
            if not clip:
                raise NotFoundError(f"Clip not found: {clip_id}")
            return clip

    def find_clip_by_path(self, project_id: str, storage_path: str) -> Clip | None:
        with self._session() as db:
            return db.scalars(
                select(Clip).where(
                    Clip.project_id == project_id, Clip.storage_path == storage_path
                )
            ).first()

    def append_clip(
        self,
        project_id: str,
        *,
        original_name: str,
        filename: str,
        storage_path: str,
        size: int,
        mime_type: str,
        source_clip_id: str | None = None,
        operation: dict[str, Any] | None = None,
    ) -> Clip:
        """Append a clip to a project in one transaction.

        The sequence counter is bumped with a single UPDATE, which holds the
        project row (or the SQLite write lock) until commit. The source clip
        of a derived clip must belong to the same project.
        """
        now = datetime.now(timezone.utc)
        with self._session() as db:
            bumped = db.execute(
                update(Project)
                .where(Project.project_id == project_id)
                .values(clip_sequence=Project.clip_sequence + 1, updated_at=now)
            )
            if bumped.rowcount == 0:
                raise NotFoundError(f"Project not found: {project_id}")
            project = db.get(Project, project_id)

            if source_clip_id is not None:
                source = db.scalars(
                    select(Clip).where(
                        Clip.project_id == project_id, Clip.clip_id == source_clip_id
                    )
                ).first()
                if not source:
                    raise NotFoundError(f"Source clip not found: {source_clip_id}")

            sequence = project.clip_sequence - 1
            if source_clip_id is not None:
                project.status = "complete"

            clip = Clip(
                project_id=project_id,
                sequence=sequence,
                original_name=original_name,
                filename=filename,
                storage_path=storage_path,
                size=size,
                mime_type=mime_type,
                uploaded_at=now,
                source_clip_id=source_clip_id,
                operation=operation,
                processed_at=now if source_clip_id is not None else None,
            )
            db.add(clip)
            db.flush()
            db.refresh(clip)
        logger.info(
            "Appended clip %s to project %s (source=%s)", clip.clip_id, project_id, source_clip_id
        )
        return clip

    def set_project_status(self, project_id: str, status: str) -> None:
        if status not in PROJECT_STATUSES:
            raise ValidationError(f"Unknown project status: {status}", field="status")
        with self._session() as db:
            project = db.get(Project, project_id, with_for_update=True)
            if not project:
                raise NotFoundError(f"Project not found: {project_id}")
            project.status = status
            project.updated_at = datetime.now(timezone.utc)

    def settle_after_failure(self, project_id: str) -> None:
        """Leave ``processing`` after a terminal failure."""
        with self._session() as db:
            project = db.get(Project, project_id, with_for_update=True)
            if not project:
                raise NotFoundError(f"Project not found: {project_id}")
            has_derived = db.scalars(
                select(Clip.clip_id)
                .where(Clip.project_id == project_id, Clip.source_clip_id.is_not(None))
                .limit(1)
            ).first()
            project.status = "complete" if has_derived else "draft"
            project.updated_at = datetime.now(timezone.utc)
