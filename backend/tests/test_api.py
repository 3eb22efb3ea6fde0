from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import TRANSCRIPT
from postflow.container import get_pipeline_service
from postflow.main import app
from postflow.services.content_generator import StubContentGenerator
from postflow.services.job_queue import AsyncioJobQueue
from postflow.services.pipeline import PipelineService
from postflow.services.stage_graph import Stage


@pytest.fixture
def service(store, clock):
    return PipelineService(store, AsyncioJobQueue(clock=clock), clock=clock, generator=StubContentGenerator())


@pytest.fixture
def client(service):
    app.dependency_overrides[get_pipeline_service] = lambda: service
    yield AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
    app.dependency_overrides.clear()


async def create(client, **overrides) -> dict:
    body = {"title": "Weekly podcast", "transcript": TRANSCRIPT, **overrides}
    resp = await client.post("/api/projects", json=body, headers={"X-User-Id": "editor-1"})
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.anyio
async def test_ping(client):
    async with client:
        resp = await client.get("/ping")
    assert resp.json() == {"status": "ok"}


@pytest.mark.anyio
async def test_create_and_read_project(client):
    async with client:
        created = await create(client, workflow_config={
            "target_platforms": ["linkedin", "x"],
            "publishing_schedule": {"preferred_days": ["Monday", "friday"], "time_zone": "Europe/Berlin"},
        })
        fetched = (await client.get(f"/api/projects/{created['id']}")).json()
        state = (await client.get(f"/api/projects/{created['id']}/state")).json()
        listed = (await client.get("/api/projects", params={"stage": "raw_content"})).json()
        events = (await client.get(f"/api/projects/{created['id']}/events")).json()

    assert created["stage"] == "raw_content"
    assert created["progress"] == 0
    assert fetched["workflow_config"]["target_platforms"] == ["linkedin", "x"]
    assert fetched["workflow_config"]["publishing_schedule"]["preferred_days"] == ["monday", "friday"]
    assert state["available_transitions"] == ["processing_content", "archived"]
    assert [p["id"] for p in listed] == [created["id"]]
    assert events[0]["name"] == "ProjectCreated"
    assert events[0]["user_id"] == "editor-1"


@pytest.mark.anyio
async def test_process_is_accepted_and_queues_a_job(client):
    async with client:
        project = await create(client)
        resp = await client.post(f"/api/projects/{project['id']}/process")
        jobs = (await client.get(f"/api/projects/{project['id']}/jobs")).json()

    assert resp.status_code == 202
    assert resp.json()["stage"] == "processing_content"
    assert resp.json()["progress"] == 10
    assert [(j["job_type"], j["status"]) for j in jobs] == [("clean_transcript", "queued")]


@pytest.mark.anyio
async def test_unknown_project_is_404(client):
    async with client:
        resp = await client.get("/api/projects/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


@pytest.mark.anyio
async def test_wrong_stage_is_409(client):
    async with client:
        project = await create(client)
        resp = await client.post(f"/api/projects/{project['id']}/generate")
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_operation"
    assert resp.json()["context"]["stage"] == "raw_content"


@pytest.mark.anyio
async def test_invalid_transition_is_409(client):
    async with client:
        project = await create(client)
        resp = await client.post(f"/api/projects/{project['id']}/transition", json={"target": "published"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [
        {"title": "   "},
        {"title": "x" * 201},
        {"title": "ok", "workflow_config": {"publishing_schedule": {"preferred_days": ["someday"]}}},
    ],
)
async def test_malformed_request_is_422(client, body):
    async with client:
        resp = await client.post("/api/projects", json=body)
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_domain_validation_is_422(client):
    async with client:
        resp = await client.post("/api/projects", json={"title": "ok", "workflow_config": {"target_platforms": ["myspace"]}})
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


@pytest.mark.anyio
async def test_review_flow_over_http(client, store, build_project):
    project = build_project(Stage.insights_ready, insights=2)
    await store.add_project(project)
    first, second = project.insights

    async with client:
        rejected = await client.post(
            f"/api/projects/{project.id}/insights/{first.id}/reject", json={"reason": "duplicate"},
        )
        approved = await client.post(f"/api/projects/{project.id}/insights/approve-all")
        again = await client.post(f"/api/projects/{project.id}/insights/approve-all")

    assert rejected.status_code == 200
    assert rejected.json()["insights"][0]["rejection_reason"] == "duplicate"
    body = approved.json()
    assert body["stage"] == "insights_approved"
    assert body["metrics"]["insights_approved"] == 1
    assert {i["id"]: i["status"] for i in body["insights"]} == {first.id: "rejected", second.id: "approved"}
    assert again.status_code == 409


@pytest.mark.anyio
async def test_schedule_cancel_archive_restore(client, store, build_project):
    project = build_project(Stage.posts_approved, insights=2)
    await store.add_project(project)

    async with client:
        scheduled = (await client.post(f"/api/projects/{project.id}/schedule")).json()
        item_id = scheduled["scheduled_posts"][0]["id"]
        cancelled = (await client.post(f"/api/projects/{project.id}/scheduled-posts/{item_id}/cancel")).json()
        archived = (await client.post(f"/api/projects/{project.id}/archive", json={"reason": "paused"})).json()
        restored = (await client.post(f"/api/projects/{project.id}/restore")).json()
        metrics = (await client.post(f"/api/projects/{project.id}/metrics/recompute")).json()

    assert scheduled["stage"] == "scheduled"
    assert scheduled["scheduled_posts"][0]["scheduled_time"].startswith("2026-01-12T09:00:00")
    assert {s["id"]: s["status"] for s in cancelled["scheduled_posts"]}[item_id] == "cancelled"
    assert archived["stage"] == "archived"
    assert archived["progress"] == 85
    assert archived["archived_reason"] == "paused"
    assert {s["status"] for s in archived["scheduled_posts"]} == {"cancelled"}
    assert restored["stage"] == "raw_content"
    assert metrics["scheduled_cancelled"] == 2


@pytest.mark.anyio
async def test_event_filter_and_delete(client):
    async with client:
        project = await create(client)
        await client.post(f"/api/projects/{project['id']}/archive")
        archived_events = (await client.get(
            f"/api/projects/{project['id']}/events", params={"name": "ProjectArchived"},
        )).json()
        deleted = await client.delete(f"/api/projects/{project['id']}")
        missing = await client.get(f"/api/projects/{project['id']}")

    assert [e["name"] for e in archived_events] == ["ProjectArchived"]
    assert archived_events[0]["type"] == "action"
    assert deleted.status_code == 204
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_scheduler_routes_without_jobs(client):
    async with client:
        status = (await client.get("/api/scheduler/status")).json()
        missing = await client.post("/api/scheduler/jobs/nope/run")

    assert status == {"running": False, "jobs_count": 0, "jobs": []}
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_scheduler_start_reports_disabled(client, monkeypatch):
    from postflow.services import scheduler as scheduler_module
    from postflow.settings import Settings

    monkeypatch.setattr(scheduler_module, "get_settings", lambda: Settings(scheduler_enabled=False))
    async with client:
        resp = await client.post("/api/scheduler/start")
    assert resp.status_code == 200
    assert resp.json() == {"status": "disabled", "jobs": []}
