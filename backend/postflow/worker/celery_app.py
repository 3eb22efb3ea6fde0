"""
Celery application for pipeline jobs.

Broker/backend: Redis (REDIS_URL env).
Default queue: pipeline.
"""
from celery import Celery

from postflow.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "postflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    task_default_queue="pipeline",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # visibility_timeout must exceed task_time_limit, or long jobs are redelivered
    broker_transport_options={"visibility_timeout": 60 * 60},
)

celery_app.autodiscover_tasks(["postflow.worker"])
