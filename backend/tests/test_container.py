from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from postflow.container import build_container, get_pipeline_service, set_container
from postflow.services.job_queue import AsyncioJobQueue, CeleryJobQueue
from postflow.settings import Settings
from postflow.storage.memory import InMemoryPipelineStore


def test_memory_container_wiring():
    container = build_container(Settings(storage_backend="memory", job_workers=3, job_retry_delays_sec=[1, 2]))
    assert isinstance(container.store, InMemoryPipelineStore)
    assert isinstance(container.queue, AsyncioJobQueue)
    assert container.queue.workers == 3
    assert container.session_factory is None
    assert container.pipeline.tracker.policy.delays == (1, 2)
    assert container.watchdog.scheduler is container.publish_scheduler
    assert container.pipeline.publish_scheduler is container.publish_scheduler


def test_postgres_container_uses_given_session_factory():
    from postflow.storage.postgres import PostgresPipelineStore

    factory = async_sessionmaker()
    container = build_container(Settings(storage_backend="postgres", celery_enabled=True), session_factory=factory)
    assert isinstance(container.store, PostgresPipelineStore)
    assert isinstance(container.queue, CeleryJobQueue)
    assert container.session_factory is factory


def test_celery_needs_shared_storage():
    with pytest.raises(ValueError):
        build_container(Settings(storage_backend="memory", celery_enabled=True))


def test_unknown_storage_backend():
    with pytest.raises(ValueError):
        build_container(Settings(storage_backend="sqlite"))


def test_pipeline_dependency_reads_current_container():
    container = build_container(Settings(storage_backend="memory"))
    set_container(container)
    try:
        assert get_pipeline_service() is container.pipeline
    finally:
        set_container(None)


def test_engine_options_follow_settings():
    from sqlalchemy.pool import NullPool

    from postflow.db import make_engine

    settings = Settings(database_url="postgresql://u:p@localhost:5432/postflow", db_pool_size=3, db_max_overflow=1)
    pooled = make_engine(settings)
    per_task = make_engine(settings, pooled=False)

    assert pooled.url.drivername == "postgresql+asyncpg"
    assert pooled.pool.size() == 3
    assert isinstance(per_task.pool, NullPool)
