"""
Watchdog for scheduled posts stuck in flight.

A post stays in ``publishing`` only while a dispatcher is waiting on the
platform. If the worker died mid-call the claim is never released; after
``stuck_publishing_minutes`` the item is pushed through the normal failure
path (retry with backoff, or failed after the last attempt).
"""
from __future__ import annotations

import logging
from datetime import timedelta

from postflow.services.publish_scheduler import PublishScheduler

logger = logging.getLogger(__name__)


class PublishWatchdog:
    def __init__(self, scheduler: PublishScheduler, *, stuck_minutes: int = 30, batch_size: int = 50):
        self.scheduler = scheduler
        self.stuck_minutes = stuck_minutes
        self.batch_size = batch_size

    async def run(self) -> dict:
        now = self.scheduler.clock.now()
        stale = await self.scheduler.store.find_stale_in_flight(
            attempted_before=now - timedelta(minutes=self.stuck_minutes),
            limit=self.batch_size,
        )
        report = {"checked_at": now.isoformat(), "stuck": len(stale), "requeued": [], "failed": [], "cancelled": []}
        for item in stale:
            logger.warning(
                "[watchdog] Scheduled post %s (project %s) in publishing since %s",
                item.id, item.project_id, item.last_attempt,
            )
            status = await self.scheduler.record_failure(
                item, f"Stuck in publishing for more than {self.stuck_minutes} minutes",
            )
            if status == "retry":
                report["requeued"].append(item.id)
            elif status in ("failed", "cancelled"):
                report[status].append(item.id)

        if stale:
            logger.info("[watchdog] %d stuck, %d requeued, %d failed", len(stale), len(report["requeued"]), len(report["failed"]))
        return report
