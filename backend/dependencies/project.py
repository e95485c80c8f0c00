from fastapi import Depends, Path

from database.models import Project
from database.repository import ProjectRepository
from dependencies.context import get_repository


def require_project(
    project_id: str = Path(...),
    repository: ProjectRepository = Depends(get_repository),
) -> Project:
    return repository.get_project(project_id)
