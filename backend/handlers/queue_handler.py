from fastapi import APIRouter, Depends, status
from fastapi.concurrency import run_in_threadpool

from context import AppContext
from dependencies.context import get_context
from errors import NotFoundError
from models.api_models import JobHandleResponse, QueueSubmitRequest
from operators.monitor_operator import job_to_detail
from operators.processing_operator import prepare_options_job


router = APIRouter(prefix="/api", tags=["jobs"])


@router.post(
    "/queues/{queue_name}/jobs",
    response_model=JobHandleResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def queue_submit(
    queue_name: str,
    request: QueueSubmitRequest,
    context: AppContext = Depends(get_context),
):
    if queue_name not in context.job_queue.queue_names:
        raise NotFoundError(f"Unknown queue: {queue_name}")
    payload = await run_in_threadpool(
        prepare_options_job,
        context.settings,
        request.input_path,
        request.output_path,
        request.options,
    )
    job = await run_in_threadpool(context.job_queue.enqueue, queue_name, payload)
    return JobHandleResponse(job=job_to_detail(job))


@router.get("/jobs/{job_id}", response_model=JobHandleResponse)
async def job_status(
    job_id: str,
    context: AppContext = Depends(get_context),
):
    job = await run_in_threadpool(context.job_queue.get_job, job_id)
    if job is None:
        raise NotFoundError(f"Job not found: {job_id}")
    return JobHandleResponse(job=job_to_detail(job))
