"""
Celery tasks for pipeline jobs.

Main task: pipeline.run_job, which decodes a typed job payload and runs
PipelineService.handle in the synchronous worker via asyncio.run(), on a
fresh engine bound to that loop.
"""
from __future__ import annotations

import asyncio
import logging

from postflow.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_job_async(message: dict) -> dict:
    from postflow.container import build_container
    from postflow.db import make_engine, make_session_factory
    from postflow.services.job_queue import CeleryJobQueue, payload_from_message
    from postflow.settings import get_settings

    settings = get_settings()
    payload = payload_from_message(message)
    engine = make_engine(settings, pooled=False)
    session_factory = make_session_factory(engine)
    container = build_container(settings, session_factory=session_factory, queue=CeleryJobQueue())
    try:
        await container.pipeline.handle(payload)
        job = await container.store.get_job(payload.job_id)
        logger.info("[worker] %s %s finished: %s", payload.job_type.value, payload.job_id, job.status.value)
        return {"job_id": job.id, "status": job.status.value}
    finally:
        await engine.dispose()


@celery_app.task(name="pipeline.run_job", bind=True)
def run_pipeline_job(self, message: dict) -> dict:
    """Run one pipeline step (clean, extract, generate, publish-now)."""
    logger.info("[worker] Received %s %s (delivery %d)", message.get("job_type"), message.get("job_id"), self.request.retries)
    return asyncio.run(_run_job_async(message))
