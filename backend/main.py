import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from context import AppContext, build_context
from errors import ClipflowError
from handlers.clip_handler import router as clip_router
from handlers.health_handler import router as health_router
from handlers.monitor_handler import router as monitor_router
from handlers.project_handler import router as project_router
from handlers.queue_handler import router as queue_router
from models.api_models import ErrorBody, ErrorResponse
from operators.processing_operator import PROCESSED_URL_PREFIX, UPLOADS_URL_PREFIX
from settings import Settings, get_settings
from utils.logging_utils import configure_logging

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("clipflow.access")

HTTP_ERROR_KINDS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    503: "unavailable",
}


def _error_response(status_code: int, kind: str, message: str, field: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(kind=kind, message=message, field=field))
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body.model_dump(exclude_none=True)),
    )


async def clipflow_exception_handler(request: Request, exc: ClipflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if not errors:
        return _error_response(status.HTTP_400_BAD_REQUEST, "validation_error", "Request validation failed")
    first_error = errors[0]
    loc = [str(part) for part in first_error.get("loc", ()) if part not in ("body", "query", "path")]
    message = first_error.get("msg", "Validation error")
    field = ".".join(loc) or None
    if field:
        message = f"{field}: {message}"
    return _error_response(status.HTTP_400_BAD_REQUEST, "validation_error", message, field)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind = HTTP_ERROR_KINDS.get(exc.status_code, "http_error")
    return _error_response(exc.status_code, kind, str(exc.detail))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Internal server error"
    )


def create_app(context: AppContext | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the API application.

    When ``context`` is given the caller owns it; otherwise one is built on
    startup and torn down on shutdown.
    """
    settings = context.settings if context is not None else (settings or get_settings())
    if context is None:
        configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = context is None
        app_context = context or build_context(settings)
        app.state.context = app_context
        if owned and settings.run_workers_in_api:
            app_context.start_workers()
        try:
            yield
        finally:
            if owned:
                app_context.shutdown()

    app = FastAPI(title="Clipflow Video Pipeline", lifespan=lifespan)

    app.add_exception_handler(ClipflowError, clipflow_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(project_router)
    app.include_router(clip_router)
    app.include_router(queue_router)
    app.include_router(monitor_router)

    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    settings.output_dir.mkdir(parents=True, exist_ok=True)
    app.mount(UPLOADS_URL_PREFIX, StaticFiles(directory=settings.upload_dir), name="uploads")
    app.mount(PROCESSED_URL_PREFIX, StaticFiles(directory=settings.output_dir), name="processed")

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        access_logger.info(
            "%s %s %s %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


if __name__ == "__main__":
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
