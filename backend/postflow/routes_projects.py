from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Query, status

from postflow.container import get_pipeline_service
from postflow.schemas import (
    ProcessingJobRead,
    ProjectCreate,
    ProjectEventRead,
    ProjectRead,
    ProjectState,
    ProjectSummary,
    ReasonRequest,
    TransitionRequest,
)
from postflow.services.pipeline import PipelineService
from postflow.services.stage_graph import Stage

router = APIRouter(prefix="/api", tags=["projects"])

ServiceDep = Depends(get_pipeline_service)
UserHeader = Header(default=None, alias="X-User-Id")


@router.post("/projects", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
async def create_project(
    data: ProjectCreate,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    project = await service.create_project(
        data.title,
        description=data.description,
        transcript=data.transcript,
        workflow_config=data.workflow_config.to_domain() if data.workflow_config else None,
        user_id=user_id,
    )
    return ProjectRead.from_domain(project)


@router.get("/projects", response_model=list[ProjectSummary])
async def list_projects(
    stage: Stage | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: PipelineService = ServiceDep,
):
    projects = await service.list_projects(stage=stage, limit=limit, offset=offset)
    return [ProjectSummary.model_validate(p) for p in projects]


@router.get("/projects/{project_id}", response_model=ProjectRead)
async def get_project(project_id: str, service: PipelineService = ServiceDep):
    return ProjectRead.from_domain(await service.get_project(project_id))


@router.get("/projects/{project_id}/state", response_model=ProjectState)
async def get_project_state(project_id: str, service: PipelineService = ServiceDep):
    return ProjectState(**await service.get_state(project_id))


@router.get("/projects/{project_id}/events", response_model=list[ProjectEventRead])
async def list_project_events(
    project_id: str,
    name: str | None = None,
    service: PipelineService = ServiceDep,
):
    events = await service.list_events(project_id, name)
    return [ProjectEventRead.model_validate(e) for e in events]


@router.get("/projects/{project_id}/jobs", response_model=list[ProcessingJobRead])
async def list_project_jobs(project_id: str, service: PipelineService = ServiceDep):
    return [ProcessingJobRead.model_validate(j) for j in await service.list_jobs(project_id)]


@router.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(project_id: str, service: PipelineService = ServiceDep):
    await service.delete_project(project_id)


# ── Lifecycle ───────────────────────────────────────────────

@router.post("/projects/{project_id}/process", response_model=ProjectRead, status_code=status.HTTP_202_ACCEPTED)
async def process_project(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.process(project_id, user_id=user_id))


@router.post("/projects/{project_id}/extract", response_model=ProjectRead, status_code=status.HTTP_202_ACCEPTED)
async def extract_insights(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.extract(project_id, user_id=user_id))


@router.post("/projects/{project_id}/generate", response_model=ProjectRead, status_code=status.HTTP_202_ACCEPTED)
async def generate_posts(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.generate(project_id, user_id=user_id))


@router.post("/projects/{project_id}/schedule", response_model=ProjectRead)
async def schedule_posts(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.schedule(project_id, user_id=user_id))


@router.post("/projects/{project_id}/publish-now", response_model=ProjectRead, status_code=status.HTTP_202_ACCEPTED)
async def publish_now(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.publish_now(project_id, user_id=user_id))


@router.post("/projects/{project_id}/transition", response_model=ProjectRead)
async def transition_project(
    project_id: str,
    data: TransitionRequest,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    project = await service.transition(project_id, data.target, reason=data.reason, user_id=user_id)
    return ProjectRead.from_domain(project)


@router.post("/projects/{project_id}/archive", response_model=ProjectRead)
async def archive_project(
    project_id: str,
    data: ReasonRequest | None = None,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    reason = data.reason if data else None
    return ProjectRead.from_domain(await service.archive(project_id, reason, user_id=user_id))


@router.post("/projects/{project_id}/restore", response_model=ProjectRead)
async def restore_project(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.restore(project_id, user_id=user_id))


# ── Review ──────────────────────────────────────────────────

@router.post("/projects/{project_id}/insights/approve-all", response_model=ProjectRead)
async def approve_all_insights(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.approve_all_insights(project_id, user_id=user_id))


@router.post("/projects/{project_id}/insights/{insight_id}/approve", response_model=ProjectRead)
async def approve_insight(
    project_id: str,
    insight_id: str,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    return ProjectRead.from_domain(await service.approve_insight(project_id, insight_id, user_id=user_id))


@router.post("/projects/{project_id}/insights/{insight_id}/reject", response_model=ProjectRead)
async def reject_insight(
    project_id: str,
    insight_id: str,
    data: ReasonRequest | None = None,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    reason = data.reason if data else None
    return ProjectRead.from_domain(await service.reject_insight(project_id, insight_id, reason, user_id=user_id))


@router.post("/projects/{project_id}/posts/approve-all", response_model=ProjectRead)
async def approve_all_posts(project_id: str, service: PipelineService = ServiceDep, user_id: str | None = UserHeader):
    return ProjectRead.from_domain(await service.approve_all_posts(project_id, user_id=user_id))


@router.post("/projects/{project_id}/posts/{post_id}/approve", response_model=ProjectRead)
async def approve_post(
    project_id: str,
    post_id: str,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    return ProjectRead.from_domain(await service.approve_post(project_id, post_id, user_id=user_id))


@router.post("/projects/{project_id}/posts/{post_id}/reject", response_model=ProjectRead)
async def reject_post(
    project_id: str,
    post_id: str,
    data: ReasonRequest | None = None,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    reason = data.reason if data else None
    return ProjectRead.from_domain(await service.reject_post(project_id, post_id, reason, user_id=user_id))


@router.post("/projects/{project_id}/scheduled-posts/{scheduled_post_id}/cancel", response_model=ProjectRead)
async def cancel_scheduled_post(
    project_id: str,
    scheduled_post_id: str,
    service: PipelineService = ServiceDep,
    user_id: str | None = UserHeader,
):
    return ProjectRead.from_domain(await service.cancel_scheduled_post(project_id, scheduled_post_id, user_id=user_id))


@router.post("/projects/{project_id}/metrics/recompute", response_model=dict)
async def recompute_metrics(project_id: str, service: PipelineService = ServiceDep):
    project = await service.recompute_metrics(project_id)
    return project.metrics.to_dict()
