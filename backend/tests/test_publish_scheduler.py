from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import NEXT_MONDAY_9AM, RecordingPublisher
from postflow.services import event_log as ev
from postflow.services import project_aggregate as agg
from postflow.services.domain import ScheduledPostStatus
from postflow.services.publish_scheduler import DispatchConfig, PublishScheduler, WorkerPool
from postflow.services.stage_graph import Stage
from postflow.services.watchdog_service import PublishWatchdog
from postflow.storage.memory import InMemoryPipelineStore


class SlowFindStore(InMemoryPipelineStore):
    """Lets two dispatch runs select the same items before either claims."""

    async def find_due(self, until, limit, project_id=None):
        due = await super().find_due(until, limit, project_id)
        await asyncio.sleep(0.01)
        return due


def make_scheduler(store, clock, publisher, **config):
    return PublishScheduler(
        store,
        clock=clock,
        config=DispatchConfig(**config),
        publisher_lookup=lambda platform: publisher,
    )


async def scheduled_project(store, clock, build_project, *, insights=1):
    project = build_project(Stage.scheduled, insights=insights)
    await store.add_project(project)
    clock.current = NEXT_MONDAY_9AM
    return project


@pytest.mark.anyio
async def test_due_items_are_published(store, clock, build_project, recording_publisher):
    project = await scheduled_project(store, clock, build_project, insights=2)
    publisher = recording_publisher()
    report = await make_scheduler(store, clock, publisher).run_dispatch()

    assert report["selected"] == 2
    assert report["claimed"] == 2
    assert report["published"] == 2
    saved = await store.get_project(project.id)
    assert saved.stage is Stage.published
    assert saved.metrics.publish_outcome == "published"
    assert {s.status for s in saved.scheduled_posts} == {ScheduledPostStatus.published}
    assert {s.external_post_id for s in saved.scheduled_posts} == {"ext-1", "ext-2"}
    assert len(await store.list_events(project.id, name=ev.POST_PUBLISHED)) == 2


@pytest.mark.anyio
async def test_items_outside_window_are_left_alone(store, clock, build_project, recording_publisher):
    await scheduled_project(store, clock, build_project)
    clock.current = NEXT_MONDAY_9AM - timedelta(minutes=6)
    publisher = recording_publisher()
    report = await make_scheduler(store, clock, publisher).run_dispatch()
    assert report["selected"] == 0
    assert publisher.calls == []


@pytest.mark.anyio
async def test_overlapping_runs_publish_once(clock, build_project, recording_publisher):
    store = SlowFindStore()
    await scheduled_project(store, clock, build_project)
    publisher = recording_publisher(delay=0.01)

    first, second = await asyncio.gather(
        make_scheduler(store, clock, publisher).run_dispatch(),
        make_scheduler(store, clock, publisher).run_dispatch(),
    )

    assert first["selected"] == second["selected"] == 1
    assert first["claimed"] + second["claimed"] == 1
    assert first["skipped"] + second["skipped"] == 1
    assert len(publisher.calls) == 1


@pytest.mark.anyio
async def test_claim_is_compare_and_set(store, clock, build_project):
    project = await scheduled_project(store, clock, build_project)
    item_id = project.scheduled_posts[0].id

    results = await asyncio.gather(*(store.claim(item_id, clock.now()) for _ in range(5)))
    claimed = [r for r in results if r is not None]
    assert len(claimed) == 1
    assert claimed[0].status is ScheduledPostStatus.publishing
    assert claimed[0].last_attempt == clock.now()


@pytest.mark.anyio
async def test_waits_for_future_bucket(store, clock, build_project, recording_publisher):
    project = build_project(Stage.scheduled, insights=2)
    first, second = project.scheduled_posts
    first.scheduled_time = NEXT_MONDAY_9AM + timedelta(minutes=1)
    second.scheduled_time = NEXT_MONDAY_9AM + timedelta(minutes=3)
    await store.add_project(project)
    clock.current = NEXT_MONDAY_9AM - timedelta(minutes=2)

    publisher = recording_publisher()
    report = await make_scheduler(store, clock, publisher).run_dispatch()

    assert clock.slept == [120.0]
    assert report["published"] == 2
    saved = await store.get_project(project.id)
    assert {s.published_at for s in saved.scheduled_posts} == {NEXT_MONDAY_9AM}


@pytest.mark.anyio
async def test_retry_then_permanent_failure(store, clock, build_project, recording_publisher):
    project = await scheduled_project(store, clock, build_project)
    item_id = project.scheduled_posts[0].id
    scheduler = make_scheduler(store, clock, recording_publisher(fail=True))

    report = await scheduler.run_dispatch()
    assert report["retried"] == 1
    item = await store.get_scheduled_post(item_id)
    assert item.status is ScheduledPostStatus.retry
    assert item.retry_count == 1
    assert (await store.get_project(project.id)).stage is Stage.publishing

    clock.current = item.scheduled_time
    await scheduler.run_dispatch()
    item = await store.get_scheduled_post(item_id)
    assert item.retry_count == 2
    assert item.scheduled_time == clock.now() + timedelta(minutes=25)

    clock.current = item.scheduled_time
    report = await scheduler.run_dispatch()
    assert report["failed"] == 1
    item = await store.get_scheduled_post(item_id)
    assert item.status is ScheduledPostStatus.failed
    assert item.retry_count == 3
    assert item.error_message == "503 Service Unavailable"

    saved = await store.get_project(project.id)
    assert saved.stage is Stage.scheduled
    assert len(await store.list_events(project.id, name=ev.POST_PUBLISH_FAILED)) == 1
    assert len(await store.list_events(project.id, name=ev.PUBLISHING_FAILED)) == 1

    # a failed item no longer counts as due
    clock.advance(minutes=10)
    assert (await scheduler.run_dispatch())["selected"] == 0


@pytest.mark.anyio
async def test_partial_success_publishes_project(store, clock, build_project, recording_publisher):
    project = await scheduled_project(store, clock, build_project, insights=2)
    ok = recording_publisher()
    bad = recording_publisher(fail=True)
    targets = iter([ok, bad])
    scheduler = PublishScheduler(
        store, clock=clock, config=DispatchConfig(max_attempts=1, concurrency=1),
        publisher_lookup=lambda platform: next(targets),
    )

    report = await scheduler.run_dispatch()
    assert report["published"] == 1
    assert report["failed"] == 1
    saved = await store.get_project(project.id)
    assert saved.stage is Stage.published
    assert saved.metrics.publish_outcome == "partially_published"


@pytest.mark.anyio
async def test_slow_publisher_times_out_into_retry(store, clock, build_project, recording_publisher):
    project = await scheduled_project(store, clock, build_project)
    scheduler = make_scheduler(store, clock, recording_publisher(delay=1.0), publish_timeout_sec=0.05)

    report = await scheduler.run_dispatch()
    assert report["retried"] == 1
    item = await store.get_scheduled_post(project.scheduled_posts[0].id)
    assert item.status is ScheduledPostStatus.retry
    assert "timed out" in item.error_message


@pytest.mark.anyio
async def test_missing_publisher_counts_as_failure(store, clock, build_project):
    project = await scheduled_project(store, clock, build_project)
    scheduler = PublishScheduler(store, clock=clock, publisher_lookup=lambda platform: None)
    report = await scheduler.run_dispatch()
    assert report["retried"] == 1
    item = await store.get_scheduled_post(project.scheduled_posts[0].id)
    assert item.error_message == "No publisher for platform linkedin"


@pytest.mark.anyio
async def test_cancelled_items_are_not_dispatched(store, clock, build_project, recording_publisher):
    project = build_project(Stage.scheduled, insights=1)
    project = agg.cancel_scheduled_post(project, project.scheduled_posts[0].id, now=clock.now()).project
    await store.add_project(project)
    clock.current = NEXT_MONDAY_9AM
    publisher = recording_publisher()
    assert (await make_scheduler(store, clock, publisher).run_dispatch())["selected"] == 0
    assert publisher.calls == []


@pytest.mark.anyio
async def test_worker_pool_bounds_concurrency():
    pool = WorkerPool(2)
    peak = 0

    async def job():
        nonlocal peak
        peak = max(peak, pool.active)
        await asyncio.sleep(0.01)

    await pool.run_all([job for _ in range(6)])
    assert peak == 2
    assert pool.active == 0


def test_worker_pool_needs_a_slot():
    with pytest.raises(ValueError):
        WorkerPool(0)


# ── Retry sweep ──────────────────────────────────────────────

def _fail(project, item, *, retry_count, last_attempt):
    target = project.scheduled_post(item.id)
    target.status = ScheduledPostStatus.failed
    target.retry_count = retry_count
    target.last_attempt = last_attempt


@pytest.mark.anyio
async def test_retry_sweep_requeues_eligible_items(store, clock, build_project, recording_publisher):
    project = build_project(Stage.scheduled, insights=3)
    old, recent, exhausted = project.scheduled_posts
    now = clock.now()
    _fail(project, old, retry_count=3, last_attempt=now - timedelta(hours=2))
    _fail(project, recent, retry_count=3, last_attempt=now - timedelta(minutes=10))
    _fail(project, exhausted, retry_count=5, last_attempt=now - timedelta(hours=2))
    await store.add_project(project)

    archived = build_project(Stage.scheduled, insights=1)
    archived = agg.archive(archived, now=now).project
    _fail(archived, archived.scheduled_posts[0], retry_count=1, last_attempt=now - timedelta(hours=2))
    await store.add_project(archived)

    scheduler = make_scheduler(store, clock, recording_publisher())
    result = await scheduler.run_retry_sweep()

    assert result == {"candidates": 1, "requeued": [old.id]}
    item = await store.get_scheduled_post(old.id)
    assert item.status is ScheduledPostStatus.pending
    assert item.scheduled_time == now + timedelta(minutes=5)
    assert item.retry_count == 3
    assert (await store.get_scheduled_post(recent.id)).status is ScheduledPostStatus.failed


@pytest.mark.anyio
async def test_requeued_item_fails_again_without_second_terminal_event(store, clock, build_project, recording_publisher):
    project = await scheduled_project(store, clock, build_project)
    item_id = project.scheduled_posts[0].id
    scheduler = make_scheduler(store, clock, recording_publisher(fail=True), max_attempts=1)

    await scheduler.run_dispatch()
    assert (await store.get_scheduled_post(item_id)).status is ScheduledPostStatus.failed

    clock.advance(hours=2)
    assert (await scheduler.run_retry_sweep())["requeued"] == [item_id]
    clock.advance(minutes=5)
    await scheduler.run_dispatch()

    item = await store.get_scheduled_post(item_id)
    assert item.status is ScheduledPostStatus.failed
    assert item.retry_count == 2
    assert len(await store.list_events(project.id, name=ev.POST_PUBLISH_FAILED)) == 1


# ── Watchdog ─────────────────────────────────────────────────

@pytest.mark.anyio
async def test_watchdog_requeues_stuck_items(store, clock, build_project, recording_publisher):
    project = await scheduled_project(store, clock, build_project)
    item_id = project.scheduled_posts[0].id
    scheduler = make_scheduler(store, clock, recording_publisher())
    await store.claim(item_id, clock.now())

    watchdog = PublishWatchdog(scheduler, stuck_minutes=30)
    clock.advance(minutes=20)
    assert (await watchdog.run())["stuck"] == 0

    clock.advance(minutes=11)
    report = await watchdog.run()
    assert report["stuck"] == 1
    assert report["requeued"] == [item_id]
    item = await store.get_scheduled_post(item_id)
    assert item.status is ScheduledPostStatus.retry
    assert item.retry_count == 1
    assert "Stuck in publishing" in item.error_message


@pytest.mark.anyio
async def test_watchdog_fails_item_on_last_attempt(store, clock, build_project, recording_publisher):
    project = build_project(Stage.scheduled, insights=1)
    project.scheduled_posts[0].retry_count = 2
    await store.add_project(project)
    clock.current = NEXT_MONDAY_9AM
    item_id = project.scheduled_posts[0].id
    await store.claim(item_id, clock.now())

    clock.advance(minutes=31)
    report = await PublishWatchdog(make_scheduler(store, clock, recording_publisher())).run()
    assert report["failed"] == [item_id]
    assert (await store.get_scheduled_post(item_id)).status is ScheduledPostStatus.failed


# ── Archived projects and store errors ───────────────────────

class ArchivingPublisher(RecordingPublisher):
    """Archives the project while its first publish call is in flight, then fails it."""

    def __init__(self, store, clock, project_id):
        super().__init__(fail=True)
        self.store = store
        self.clock = clock
        self.project_id = project_id

    async def publish(self, content, *, reference=None):
        if not self.calls:
            outcome = agg.archive(await self.store.get_project(self.project_id), "paused", now=self.clock.now())
            await self.store.save_project(outcome.project, outcome.events)
        return await super().publish(content, reference=reference)


class ArchivedAfterSelectStore(InMemoryPipelineStore):
    """Marks every selected project archived between selection and claim."""

    async def find_due(self, until, limit, project_id=None):
        due = await super().find_due(until, limit, project_id)
        for item in due:
            project = await self.get_project(item.project_id)
            project.stage = Stage.archived
            await self.save_project(project)
        return due


class FlakySaveStore(InMemoryPipelineStore):
    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def save_project(self, project, events=()):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("db blip")
        await super().save_project(project, events)


@pytest.mark.anyio
async def test_failure_after_archive_cancels_instead_of_retrying(store, clock, build_project):
    project = await scheduled_project(store, clock, build_project)
    item_id = project.scheduled_posts[0].id
    publisher = ArchivingPublisher(store, clock, project.id)
    scheduler = make_scheduler(store, clock, publisher)

    report = await scheduler.run_dispatch()
    assert report["cancelled"] == 1
    assert report["retried"] == 0
    saved = await store.get_project(project.id)
    assert saved.stage is Stage.archived
    assert saved.scheduled_post(item_id).status is ScheduledPostStatus.cancelled
    cancelled = await store.list_events(project.id, name=ev.SCHEDULED_POST_CANCELLED)
    assert [e.data["reason"] for e in cancelled] == ["project_archived"]

    clock.advance(minutes=30)
    assert (await scheduler.run_dispatch())["selected"] == 0
    assert len(publisher.calls) == 1


@pytest.mark.anyio
async def test_archived_projects_are_never_due(store, clock, build_project, recording_publisher):
    project = build_project(Stage.scheduled, insights=1)
    project.scheduled_posts[0].status = ScheduledPostStatus.retry
    project.stage = Stage.archived
    await store.add_project(project)
    clock.current = NEXT_MONDAY_9AM

    publisher = recording_publisher()
    assert (await make_scheduler(store, clock, publisher).run_dispatch())["selected"] == 0
    assert publisher.calls == []


@pytest.mark.anyio
async def test_claim_on_archived_project_is_released(clock, build_project, recording_publisher):
    store = ArchivedAfterSelectStore()
    project = await scheduled_project(store, clock, build_project)
    publisher = recording_publisher()

    report = await make_scheduler(store, clock, publisher).run_dispatch()
    assert report["claimed"] == 1
    assert report["cancelled"] == 1
    assert publisher.calls == []
    item = await store.get_scheduled_post(project.scheduled_posts[0].id)
    assert item.status is ScheduledPostStatus.cancelled


@pytest.mark.anyio
async def test_store_error_on_one_item_does_not_abort_the_run(clock, build_project, recording_publisher):
    store = FlakySaveStore()
    project = await scheduled_project(store, clock, build_project, insights=2)
    publisher = recording_publisher()
    scheduler = make_scheduler(store, clock, publisher, concurrency=1)

    report = await scheduler.run_dispatch()
    assert report["claimed"] == 2
    assert report["published"] == 1
    assert report["retried"] == 1
    assert [e["error"] for e in report["errors"]] == ["RuntimeError: db blip"]
    assert len(publisher.calls) == 1
    statuses = sorted(s.status.value for s in (await store.get_project(project.id)).scheduled_posts)
    assert statuses == ["published", "retry"]

    clock.advance(minutes=6)
    assert (await scheduler.run_dispatch())["published"] == 1
    saved = await store.get_project(project.id)
    assert saved.stage is Stage.published
    assert {s.status for s in saved.scheduled_posts} == {ScheduledPostStatus.published}
    assert len(publisher.calls) == 2


@pytest.mark.anyio
async def test_worker_pool_returns_errors_in_place():
    async def boom():
        raise RuntimeError("boom")

    async def ok():
        return "done"

    results = await WorkerPool(2).run_all([boom, ok])
    assert isinstance(results[0], RuntimeError)
    assert results[1] == "done"
