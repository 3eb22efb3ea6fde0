"""
Scheduled-post dispatcher.

run_dispatch():
  1. select pending/retry items due within the look-ahead window
  2. group into time buckets, process buckets in order, sleeping until
     future buckets open
  3. dispatch each bucket through the scheduler's bounded worker pool
  4. claim (compare-and-set to ``publishing``) right before every publish
     call, so overlapping runs never publish the same item twice
  5/6. record success or failure on the project under its lock

run_retry_sweep() is the slower safety net that reopens failed items.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from postflow.errors import InvalidOperation, NotFound
from postflow.services import project_aggregate as agg
from postflow.services.clock import SystemClock
from postflow.services.domain import ScheduledPost
from postflow.services.event_log import EventLog
from postflow.services.publisher_adapter import PublisherAdapter, PublishResult, get_publisher
from postflow.services.slots import bucket_start
from postflow.services.stage_graph import Stage
from postflow.storage.base import PipelineStore

logger = logging.getLogger(__name__)


@dataclass
class DispatchConfig:
    window_minutes: int = 5
    bucket_minutes: int = 5
    batch_size: int = 20
    concurrency: int = 5
    publish_timeout_sec: float = 60
    max_attempts: int = 3
    backoff_base_minutes: int = 5
    sweep_max_retries: int = 5
    sweep_cooldown_minutes: int = 60
    sweep_delay_minutes: int = 5
    sweep_batch_size: int = 10

    @classmethod
    def from_settings(cls, settings) -> "DispatchConfig":
        return cls(
            window_minutes=settings.dispatch_window_minutes,
            bucket_minutes=settings.dispatch_bucket_minutes,
            batch_size=settings.dispatch_batch_size,
            concurrency=settings.publish_concurrency,
            publish_timeout_sec=settings.publish_timeout_sec,
            max_attempts=settings.publish_max_attempts,
            backoff_base_minutes=settings.publish_backoff_base_minutes,
            sweep_max_retries=settings.retry_sweep_max_retries,
            sweep_cooldown_minutes=settings.retry_sweep_cooldown_minutes,
            sweep_delay_minutes=settings.retry_sweep_delay_minutes,
            sweep_batch_size=settings.retry_sweep_batch_size,
        )


class WorkerPool:
    """Fixed-size pool bounding concurrent publish calls."""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("Worker pool size must be >= 1")
        self.size = size
        self._slots = asyncio.Semaphore(size)
        self.active = 0

    async def _run(self, job: Callable[[], Awaitable]):
        async with self._slots:
            self.active += 1
            try:
                return await job()
            finally:
                self.active -= 1

    async def run_all(self, jobs: list[Callable[[], Awaitable]]) -> list:
        """Run every job; a raised exception is returned in its slot instead of cancelling the rest."""
        return await asyncio.gather(*(self._run(job) for job in jobs), return_exceptions=True)


@dataclass
class DispatchReport:
    selected: int = 0
    claimed: int = 0
    published: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "selected": self.selected,
            "claimed": self.claimed,
            "published": self.published,
            "retried": self.retried,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class PublishScheduler:
    def __init__(
        self,
        store: PipelineStore,
        *,
        clock=None,
        config: DispatchConfig | None = None,
        publisher_lookup: Callable[[str], PublisherAdapter | None] = get_publisher,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.config = config or DispatchConfig()
        self.pool = WorkerPool(self.config.concurrency)
        self.events = EventLog(store)
        self._publisher_lookup = publisher_lookup

    # ── Dispatch ────────────────────────────────────────────

    def _group(self, items: list[ScheduledPost]) -> "OrderedDict[datetime, list[ScheduledPost]]":
        buckets: OrderedDict[datetime, list[ScheduledPost]] = OrderedDict()
        for item in items:
            buckets.setdefault(bucket_start(item.scheduled_time, self.config.bucket_minutes), []).append(item)
        return OrderedDict(sorted(buckets.items()))

    async def run_dispatch(self, project_id: str | None = None) -> dict:
        """One dispatch pass; ``project_id`` limits it to a single project (publish-now)."""
        now = self.clock.now()
        due = await self.store.find_due(
            now + timedelta(minutes=self.config.window_minutes), self.config.batch_size, project_id,
        )
        report = DispatchReport(selected=len(due))
        if not due:
            return report.to_dict()

        logger.info("[dispatch] %d scheduled posts due", len(due))
        for bucket_time, items in self._group(due).items():
            if bucket_time > self.clock.now():
                logger.info("[dispatch] Waiting for bucket %s (%d items)", bucket_time.isoformat(), len(items))
                await self.clock.sleep_until(bucket_time)
            jobs = [lambda item=item: self._dispatch_one(item, report) for item in items]
            for item, outcome in zip(items, await self.pool.run_all(jobs)):
                if isinstance(outcome, BaseException):
                    logger.error("[dispatch] %s escaped its worker: %r", item.id, outcome)
                    report.errors.append({"scheduled_post_id": item.id, "error": repr(outcome)})

        logger.info(
            "[dispatch] Done: %d claimed, %d published, %d retry, %d failed, %d cancelled, %d skipped",
            report.claimed, report.published, report.retried, report.failed, report.cancelled, report.skipped,
        )
        return report.to_dict()

    async def _dispatch_one(self, item: ScheduledPost, report: DispatchReport) -> None:
        claimed = None
        result = None
        try:
            async with self.store.project_lock(item.project_id):
                claimed = await self.store.claim(item.id, self.clock.now())
                if claimed is None:
                    report.skipped += 1
                    logger.debug("[dispatch] %s already claimed, skipping", item.id)
                    return
                report.claimed += 1
                if not await self._start(claimed, report):
                    return
            result = await self._attempt(claimed)
            await self._record(claimed, result, report)
        except Exception as exc:
            logger.exception("[dispatch] %s failed outside the publish call", item.id)
            report.errors.append({"scheduled_post_id": item.id, "error": f"{type(exc).__name__}: {exc}"})
            if claimed is not None and (result is None or not result.success):
                await self._release_after_error(claimed, exc, report)

    async def _start(self, claimed: ScheduledPost, report: DispatchReport) -> bool:
        """Move the claimed item's project into Publishing; archived projects get the item cancelled."""
        project = await self.store.get_project(claimed.project_id)
        if project.stage is Stage.archived:
            outcome = agg.release_claim(project, claimed.id, now=self.clock.now())
            await self.store.save_project(outcome.project, await self.events.dedupe(outcome.events))
            report.cancelled += 1
            logger.info("[dispatch] %s belongs to archived project %s, cancelled", claimed.id, project.id)
            return False
        outcome = agg.mark_publishing(project, claimed.id, now=self.clock.now())
        await self.store.save_project(outcome.project, await self.events.dedupe(outcome.events))
        return True

    async def _record(self, claimed: ScheduledPost, result: PublishResult, report: DispatchReport) -> None:
        if result.success:
            try:
                await self._apply(claimed, lambda project, now: agg.record_publish_success(
                    project, claimed.id, result.external_id, now=now, url=result.url,
                ))
            except InvalidOperation as exc:
                logger.error("[dispatch] Published %s (%s) but could not record it: %s", claimed.id, result.external_id, exc)
                report.errors.append({"scheduled_post_id": claimed.id, "error": str(exc)})
                return
            report.published += 1
            return

        report.errors.append({"scheduled_post_id": claimed.id, "error": result.error})
        self._count(await self.record_failure(claimed, result.error or "publish failed"), report)

    async def _release_after_error(self, claimed: ScheduledPost, exc: Exception, report: DispatchReport) -> None:
        try:
            status = await self.record_failure(claimed, f"{type(exc).__name__}: {exc}")
        except Exception:
            logger.exception("[dispatch] Could not release %s, leaving it to the watchdog", claimed.id)
            return
        self._count(status, report)

    @staticmethod
    def _count(status: str | None, report: DispatchReport) -> None:
        if status == "failed":
            report.failed += 1
        elif status == "cancelled":
            report.cancelled += 1
        elif status == "retry":
            report.retried += 1

    async def _attempt(self, item: ScheduledPost) -> PublishResult:
        adapter = self._publisher_lookup(item.platform.value)
        if adapter is None:
            return PublishResult(success=False, platform=item.platform.value, error=f"No publisher for platform {item.platform.value}")
        try:
            return await asyncio.wait_for(
                adapter.publish(item.content, reference=item.id),
                timeout=self.config.publish_timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.warning("[dispatch] %s timed out after %ss", item.id, self.config.publish_timeout_sec)
            return PublishResult(
                success=False, platform=item.platform.value, retryable=True,
                error=f"Publish timed out after {self.config.publish_timeout_sec}s",
            )
        except Exception as exc:
            logger.exception("[dispatch] %s publisher raised", item.id)
            return PublishResult(success=False, platform=item.platform.value, error=f"{type(exc).__name__}: {exc}")

    async def _apply(self, item: ScheduledPost, operation) -> agg.Outcome | None:
        async with self.store.project_lock(item.project_id):
            try:
                project = await self.store.get_project(item.project_id)
            except NotFound:
                logger.warning("[dispatch] Project %s vanished while %s was in flight", item.project_id, item.id)
                return None
            outcome = operation(project, self.clock.now())
            await self.store.save_project(outcome.project, await self.events.dedupe(outcome.events))
            return outcome

    async def record_failure(self, item: ScheduledPost, error: str) -> str | None:
        """Run an in-flight item through the failure path; returns its new status."""
        try:
            outcome = await self._apply(item, lambda project, now: agg.record_publish_failure(
                project, item.id, error, now=now,
                max_attempts=self.config.max_attempts,
                backoff_base_minutes=self.config.backoff_base_minutes,
            ))
        except InvalidOperation as exc:
            logger.warning("[dispatch] Ignoring failure for %s: %s", item.id, exc)
            return None
        if outcome is None:
            return None
        status = outcome.project.scheduled_post(item.id).status.value
        logger.info("[dispatch] %s -> %s: %s", item.id, status, error)
        return status

    # ── Retry sweep ─────────────────────────────────────────

    async def run_retry_sweep(self) -> dict:
        now = self.clock.now()
        candidates = await self.store.find_retryable_failed(
            max_retry_count=self.config.sweep_max_retries,
            attempted_before=now - timedelta(minutes=self.config.sweep_cooldown_minutes),
            limit=self.config.sweep_batch_size,
        )
        requeued = []
        for item in candidates:
            try:
                await self._apply(item, lambda project, at, item=item: agg.requeue_failed(
                    project, item.id, now=at, delay_minutes=self.config.sweep_delay_minutes,
                ))
                requeued.append(item.id)
            except InvalidOperation as exc:
                logger.info("[retry_sweep] Skipping %s: %s", item.id, exc)

        if candidates:
            logger.info("[retry_sweep] Requeued %d of %d failed posts", len(requeued), len(candidates))
        return {"candidates": len(candidates), "requeued": requeued}
