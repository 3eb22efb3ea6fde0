"""
Typed background job transport.

Every asynchronous pipeline step has its own payload dataclass. Payloads go
through a JobQueue to a fixed set of workers; ``AsyncioJobQueue`` keeps it
in-process, ``CeleryJobQueue`` hands it to the Celery worker over Redis.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, ClassVar, Union

from postflow.services.clock import SystemClock
from postflow.services.domain import JobType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanTranscriptPayload:
    job_type: ClassVar[JobType] = JobType.clean_transcript
    project_id: str
    job_id: str


@dataclass(frozen=True)
class ExtractInsightsPayload:
    job_type: ClassVar[JobType] = JobType.extract_insights
    project_id: str
    job_id: str
    max_insights: int = 10


@dataclass(frozen=True)
class GeneratePostsPayload:
    job_type: ClassVar[JobType] = JobType.generate_posts
    project_id: str
    job_id: str
    style: str = "professional"


@dataclass(frozen=True)
class PublishNowPayload:
    job_type: ClassVar[JobType] = JobType.publish_post
    project_id: str
    job_id: str


JobPayload = Union[CleanTranscriptPayload, ExtractInsightsPayload, GeneratePostsPayload, PublishNowPayload]

PAYLOAD_TYPES: dict[JobType, type] = {
    JobType.clean_transcript: CleanTranscriptPayload,
    JobType.extract_insights: ExtractInsightsPayload,
    JobType.generate_posts: GeneratePostsPayload,
    JobType.publish_post: PublishNowPayload,
}

JobHandler = Callable[[JobPayload], Awaitable[None]]


def payload_to_message(payload: JobPayload) -> dict:
    return {"job_type": payload.job_type.value, **asdict(payload)}


def payload_from_message(message: dict) -> JobPayload:
    data = dict(message)
    job_type = JobType(data.pop("job_type"))
    return PAYLOAD_TYPES[job_type](**data)


class JobQueue(abc.ABC):
    @abc.abstractmethod
    async def enqueue(self, payload: JobPayload, *, delay: float = 0) -> None:
        ...


class AsyncioJobQueue(JobQueue):
    """In-process queue drained by a fixed number of worker tasks."""

    def __init__(self, workers: int = 2, clock=None):
        self.workers = workers
        self.clock = clock or SystemClock()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._delayed: set[asyncio.Task] = set()
        self._handler: JobHandler | None = None

    def start(self, handler: JobHandler) -> None:
        if self._tasks:
            return
        self._handler = handler
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info("[jobs] Started %d in-process workers", self.workers)

    async def stop(self) -> None:
        for task in [*self._tasks, *self._delayed]:
            task.cancel()
        await asyncio.gather(*self._tasks, *self._delayed, return_exceptions=True)
        self._tasks = []
        self._delayed.clear()

    async def enqueue(self, payload: JobPayload, *, delay: float = 0) -> None:
        if delay > 0:
            task = asyncio.create_task(self._enqueue_later(payload, delay))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            return
        self._queue.put_nowait(payload)

    async def _enqueue_later(self, payload: JobPayload, delay: float) -> None:
        await self.clock.sleep(delay)
        self._queue.put_nowait(payload)

    async def join(self) -> None:
        """Wait until nothing is queued, delayed or running."""
        while True:
            if self._delayed:
                await asyncio.gather(*list(self._delayed), return_exceptions=True)
            await self._queue.join()
            if not self._delayed and self._queue.empty():
                return

    async def _worker(self, index: int) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self._handler(payload)
            except Exception:
                logger.exception("[jobs] Worker %d failed on %s %s", index, payload.job_type.value, payload.job_id)
            finally:
                self._queue.task_done()


class CeleryJobQueue(JobQueue):
    """Hands payloads to the Celery worker (Redis broker)."""

    async def enqueue(self, payload: JobPayload, *, delay: float = 0) -> None:
        from postflow.worker.tasks import run_pipeline_job

        run_pipeline_job.apply_async(args=[payload_to_message(payload)], countdown=max(int(delay), 0))
        logger.info("[jobs] Sent %s %s to celery (countdown=%ss)", payload.job_type.value, payload.job_id, int(delay))
