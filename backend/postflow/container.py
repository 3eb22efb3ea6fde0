"""Process-wide wiring: store, queue, dispatcher and pipeline service."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from postflow.services.job_queue import AsyncioJobQueue, CeleryJobQueue, JobQueue
from postflow.services.job_tracker import RetryPolicy
from postflow.services.pipeline import PipelineService
from postflow.services.publish_scheduler import DispatchConfig, PublishScheduler
from postflow.services.watchdog_service import PublishWatchdog
from postflow.settings import Settings, get_settings
from postflow.storage.base import PipelineStore
from postflow.storage.memory import InMemoryPipelineStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    store: PipelineStore
    queue: JobQueue
    publish_scheduler: PublishScheduler
    watchdog: PublishWatchdog
    pipeline: PipelineService
    session_factory: object | None = None


def build_store(settings: Settings, session_factory=None) -> tuple[PipelineStore, object | None]:
    backend = settings.storage_backend.lower()
    if backend == "memory":
        return InMemoryPipelineStore(), None
    if backend == "postgres":
        from postflow.storage.postgres import PostgresPipelineStore

        if session_factory is None:
            from postflow.db import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        return PostgresPipelineStore(session_factory), session_factory
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend!r}")


def build_container(settings: Settings | None = None, *, session_factory=None, queue: JobQueue | None = None) -> Container:
    settings = settings or get_settings()
    if settings.celery_enabled and settings.storage_backend.lower() == "memory":
        raise ValueError("CELERY_ENABLED requires STORAGE_BACKEND=postgres")
    store, session_factory = build_store(settings, session_factory)
    if queue is None:
        queue = CeleryJobQueue() if settings.celery_enabled else AsyncioJobQueue(workers=settings.job_workers)

    publish_scheduler = PublishScheduler(store, config=DispatchConfig.from_settings(settings))
    watchdog = PublishWatchdog(publish_scheduler, stuck_minutes=settings.stuck_publishing_minutes)
    pipeline = PipelineService(
        store,
        queue,
        retry_policy=RetryPolicy(
            max_retries=settings.job_max_retries,
            delays=tuple(settings.job_retry_delays_sec),
        ),
        publish_scheduler=publish_scheduler,
        max_insights=settings.max_insights,
        post_style=settings.post_style,
    )
    logger.info(
        "[container] storage=%s queue=%s", settings.storage_backend, type(queue).__name__,
    )
    return Container(
        store=store,
        queue=queue,
        publish_scheduler=publish_scheduler,
        watchdog=watchdog,
        pipeline=pipeline,
        session_factory=session_factory,
    )


_container: Container | None = None


def get_container() -> Container:
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Container | None) -> None:
    global _container
    _container = container


def get_pipeline_service() -> PipelineService:
    """FastAPI dependency."""
    return get_container().pipeline
