from fastapi import APIRouter, Depends, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from context import AppContext
from dependencies.context import get_context
from models.api_models import HealthResponse


router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(context: AppContext = Depends(get_context)):
    database_ok = await run_in_threadpool(context.repository.ping)
    redis_ok = await run_in_threadpool(context.job_queue.ping)
    healthy = database_ok and redis_ok
    body = HealthResponse(
        status="ok" if healthy else "unavailable",
        database=database_ok,
        redis=redis_ok,
    )
    if not healthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(),
        )
    return body
