import logging

from fastapi import APIRouter, Depends, status
from fastapi.concurrency import run_in_threadpool

from database.models import Project
from database.repository import ProjectRepository
from dependencies.context import get_repository, get_settings
from dependencies.project import require_project
from models.api_models import (
    ProjectCreateRequest,
    ProjectListResponse,
    ProjectResponse,
)
from operators.project_operator import project_to_response
from settings import Settings


router = APIRouter(prefix="/api/projects", tags=["projects"])
logger = logging.getLogger(__name__)


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def project_create(
    request: ProjectCreateRequest,
    repository: ProjectRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
):
    project = await run_in_threadpool(
        repository.create_project, request.name, request.description
    )
    return project_to_response(project, settings, clips=[])


@router.get("", response_model=ProjectListResponse)
async def project_list(
    repository: ProjectRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
):
    projects = await run_in_threadpool(repository.list_projects)
    return ProjectListResponse(
        projects=[project_to_response(p, settings) for p in projects],
    )


@router.get("/{project_id}", response_model=ProjectResponse)
async def project_get(
    project: Project = Depends(require_project),
    settings: Settings = Depends(get_settings),
):
    return project_to_response(project, settings)
