from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .container import get_container
from .errors import (
    ExternalFailure,
    InvalidOperation,
    InvalidTransition,
    NotFound,
    PipelineError,
    ValidationError,
)
from .routes_projects import router as projects_router
from .routes_scheduler import router as scheduler_router
from .services.job_queue import AsyncioJobQueue
from .settings import get_settings

logger = logging.getLogger("postflow")

app = FastAPI(title="postflow")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS: list[tuple[type[PipelineError], int]] = [
    (NotFound, 404),
    (InvalidTransition, 409),
    (InvalidOperation, 409),
    (ValidationError, 422),
    (ExternalFailure, 502),
]


def status_for(exc: PipelineError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return 500


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    code = status_for(exc)
    if code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(projects_router)
app.include_router(scheduler_router)


@app.on_event("startup")
async def startup_event():
    """Start job workers and the publishing scheduler."""
    from .services.scheduler import scheduler_service

    container = get_container()
    if isinstance(container.queue, AsyncioJobQueue):
        container.queue.start(container.pipeline.handle)
    scheduler_service.configure(
        container.publish_scheduler,
        container.watchdog,
        session_factory=container.session_factory,
    )
    scheduler_service.start()
    logger.info("Started (storage=%s, celery=%s)", settings.storage_backend, settings.celery_enabled)


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the scheduler and drain in-process workers."""
    from .services.scheduler import scheduler_service

    scheduler_service.stop()
    container = get_container()
    if isinstance(container.queue, AsyncioJobQueue):
        await container.queue.stop()
    logger.info("Stopped")
