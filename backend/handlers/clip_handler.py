import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from context import AppContext
from dependencies.context import get_context
from models.api_models import ClipResponse, JobHandleResponse, ProcessRequest, ProcessResponse
from operators.monitor_operator import job_to_detail
from operators.processing_operator import (
    enqueue_clip_operation,
    prepare_clip_operation,
    process_clip_direct,
)
from operators.project_operator import clip_to_response, upload_clip


router = APIRouter(prefix="/api", tags=["clips"])
logger = logging.getLogger(__name__)


@router.post("/upload", response_model=ClipResponse, status_code=status.HTTP_201_CREATED)
async def clip_upload(
    video: UploadFile | None = File(default=None),
    project_id: str = Form(default="", alias="projectId"),
    context: AppContext = Depends(get_context),
):
    try:
        clip = await run_in_threadpool(
            upload_clip,
            context.repository,
            context.settings,
            project_id,
            video.filename if video else None,
            video.content_type if video else None,
            video.file if video else None,
        )
    finally:
        if video is not None:
            await video.close()
    return clip_to_response(clip, context.settings)


@router.post(
    "/process",
    response_model=None,
    responses={200: {"model": ProcessResponse}, 202: {"model": JobHandleResponse}},
)
async def clip_process(
    request: ProcessRequest,
    context: AppContext = Depends(get_context),
):
    settings = context.settings
    repository = context.repository
    mode = request.mode or settings.process_mode

    source, payload = await run_in_threadpool(
        prepare_clip_operation,
        repository,
        settings,
        request.project_id,
        request.clip_id,
        request.operation_data(),
    )
    logger.info(
        "process_request mode=%s project=%s clip=%s operation=%s",
        mode,
        request.project_id,
        source.clip_id,
        payload.describe(),
    )

    if mode == "queued":
        queue_name = request.queue or settings.default_queue
        job = await run_in_threadpool(
            enqueue_clip_operation, repository, context.job_queue, payload, queue_name
        )
        body = JobHandleResponse(job=job_to_detail(job))
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=jsonable_encoder(body),
        )

    result = await run_in_threadpool(process_clip_direct, repository, settings, payload)
    clip = await run_in_threadpool(repository.get_clip, payload.project_id, result.clip_id)
    body = ProcessResponse(
        success=True,
        clip=clip_to_response(clip, settings),
        url=result.url,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=jsonable_encoder(body))
