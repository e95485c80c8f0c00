from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from dependencies.auth import require_admin_token
from dependencies.context import get_monitor
from errors import NotFoundError
from models.api_models import JobHandleResponse, JobListResponse, MonitorSummaryResponse
from models.job_models import JobState
from operators.monitor_operator import JobMonitor


router = APIRouter(
    prefix="/admin",
    tags=["monitor"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/queues", response_model=MonitorSummaryResponse)
async def monitor_queues(monitor: JobMonitor = Depends(get_monitor)):
    queues = await run_in_threadpool(monitor.summaries)
    return MonitorSummaryResponse(queues=queues)


@router.get("/queues/{queue_name}/jobs", response_model=JobListResponse)
async def monitor_queue_jobs(
    queue_name: str,
    state: JobState | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    monitor: JobMonitor = Depends(get_monitor),
):
    if queue_name not in monitor.queue_names:
        raise NotFoundError(f"Unknown queue: {queue_name}")
    jobs, total = await run_in_threadpool(monitor.list_jobs, queue_name, state, limit, offset)
    return JobListResponse(jobs=jobs, total=total)


@router.get("/jobs/{job_id}", response_model=JobHandleResponse)
async def monitor_job(job_id: str, monitor: JobMonitor = Depends(get_monitor)):
    job = await run_in_threadpool(monitor.get_job, job_id)
    if job is None:
        raise NotFoundError(f"Job not found: {job_id}")
    return JobHandleResponse(job=job)
