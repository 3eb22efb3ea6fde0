from __future__ import annotations

import pytest

from conftest import NEXT_MONDAY_9AM
from postflow.errors import NotFound
from postflow.services import scheduler as scheduler_module
from postflow.services.publish_scheduler import PublishScheduler
from postflow.services.scheduler import SchedulerService
from postflow.services.stage_graph import Stage
from postflow.services.watchdog_service import PublishWatchdog
from postflow.settings import Settings


@pytest.fixture
def enabled_settings(monkeypatch):
    settings = Settings(scheduler_enabled=True, watchdog_enabled=True)
    monkeypatch.setattr(scheduler_module, "get_settings", lambda: settings)
    return settings


@pytest.fixture
def service():
    service = SchedulerService()
    yield service
    service.stop()


def test_start_requires_configuration(service, enabled_settings):
    with pytest.raises(RuntimeError):
        service.start()


def test_disabled_scheduler_does_not_start(service, monkeypatch, store):
    monkeypatch.setattr(scheduler_module, "get_settings", lambda: Settings(scheduler_enabled=False))
    service.configure(PublishScheduler(store))
    service.start()
    assert not service.is_running()
    assert service.get_jobs() == []


@pytest.mark.anyio
async def test_start_registers_jobs_and_runs_dispatch(service, enabled_settings, store, clock, build_project, recording_publisher):
    project = build_project(Stage.scheduled, insights=1)
    await store.add_project(project)
    clock.current = NEXT_MONDAY_9AM
    publisher = recording_publisher()
    dispatcher = PublishScheduler(store, clock=clock, publisher_lookup=lambda platform: publisher)

    service.configure(dispatcher, PublishWatchdog(dispatcher))
    service.start()
    assert service.is_running()
    assert {job["id"] for job in service.get_jobs()} == {"dispatch", "retry_sweep", "watchdog"}

    result = await service.run_now("dispatch")
    assert result["ok"] is True
    assert result["result"]["published"] == 1
    assert len(publisher.calls) == 1

    sweep = await service.run_now("retry_sweep")
    assert sweep == {"ok": True, "result": {"candidates": 0, "requeued": []}}

    with pytest.raises(NotFound):
        await service.run_now("unknown")

    service.stop()
    assert not service.is_running()
    assert service.get_jobs() == []


@pytest.mark.anyio
async def test_run_now_reports_job_errors(service, enabled_settings, store):
    class BrokenDispatcher(PublishScheduler):
        async def run_dispatch(self):
            raise RuntimeError("store offline")

    service.configure(BrokenDispatcher(store))
    service.start()
    result = await service.run_now("dispatch")
    assert result == {"ok": False, "error": "store offline"}
    service.stop()
