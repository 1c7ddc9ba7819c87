"""Workflow and run REST API.

All routes are mounted under `/api`. Engine errors are mapped to HTTP status
codes by the handlers installed in `create_app`.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query, Request, status

from docflow.engine.errors import WorkflowValidationError
from docflow.engine.workflow.analytics import (
    compute_step_metrics,
    compute_timeline,
    compute_workflow_metrics,
    find_bottlenecks,
)
from docflow.engine.workflow.run_state import RunSnapshot
from docflow.engine.workflow.storage import WorkflowCatalog
from docflow.engine.workflow.templates import get_template, list_templates
from docflow.engine.workflow.triggers import TriggerEvent, matching_workflows
from docflow.engine.workflow.validation import parse_workflow
from docflow.server.config import ServerSettings
from docflow.server.models import (
    AnalyticsResponse,
    CompleteTaskRequest,
    FailTaskRequest,
    InstantiateTemplateRequest,
    SignalResponse,
    StartRunRequest,
    StepResponse,
    TemplateSummary,
    TriggerRequest,
)
from docflow.server.run_manager import RunManager

router = APIRouter()


def _runs(request: Request) -> RunManager:
    runs = getattr(request.app.state, "runs", None)
    if not isinstance(runs, RunManager):
        raise HTTPException(status_code=500, detail="Run manager not configured")
    return runs


def _workflows(request: Request) -> WorkflowCatalog:
    store = getattr(request.app.state, "workflows", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Workflow store not configured")
    return store


def _server_settings(request: Request) -> ServerSettings:
    settings = getattr(request.app.state, "server_settings", None)
    if not isinstance(settings, ServerSettings):
        raise HTTPException(status_code=500, detail="Server settings not configured")
    return settings


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# --- workflows -----------------------------------------------------------


@router.get("/workflows")
def list_workflow_definitions(request: Request) -> list[dict[str, Any]]:
    return [wf.to_json() for wf in _workflows(request).list_workflows()]


@router.get("/workflows/{workflow_id}")
def get_workflow_definition(workflow_id: str, request: Request) -> dict[str, Any]:
    return _workflows(request).load_workflow(workflow_id).to_json()


@router.put("/workflows/{workflow_id}")
def put_workflow_definition(
    workflow_id: str, request: Request, body: dict[str, Any] = Body(...)
) -> dict[str, Any]:
    workflow = parse_workflow(body)
    if workflow.id != workflow_id:
        raise WorkflowValidationError(
            f"Workflow id in body ({workflow.id}) does not match the URL ({workflow_id})"
        )
    _workflows(request).save_workflow(workflow)
    return workflow.to_json()


@router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow_definition(workflow_id: str, request: Request) -> None:
    _workflows(request).delete_workflow(workflow_id)


# --- templates -----------------------------------------------------------


@router.get("/templates", response_model=list[TemplateSummary])
def list_workflow_templates(category: str | None = Query(default=None)) -> list[TemplateSummary]:
    try:
        templates = list_templates(category)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Unknown category: {category}") from e
    return [
        TemplateSummary(
            id=t.id,
            category=t.category.value,
            name=t.name,
            description=t.description,
            step_count=t.step_count,
        )
        for t in templates
    ]


@router.post("/templates/{template_id}/instantiate", status_code=status.HTTP_201_CREATED)
def instantiate_workflow_template(
    template_id: str, req: InstantiateTemplateRequest, request: Request
) -> dict[str, Any]:
    workflow = get_template(template_id).instantiate(req.workflow_id)
    if req.save:
        _workflows(request).save_workflow(workflow)
    return workflow.to_json()


# --- runs ----------------------------------------------------------------


@router.post("/runs", response_model=RunSnapshot, status_code=status.HTTP_201_CREATED)
def start_run(req: StartRunRequest, request: Request) -> RunSnapshot:
    workflow = _workflows(request).load_workflow(req.workflow_id)
    return _runs(request).start(workflow, req.context, paused=req.paused)


@router.get("/runs", response_model=list[RunSnapshot])
def list_runs(
    request: Request, workflow_id: str | None = Query(default=None, alias="workflowId")
) -> list[RunSnapshot]:
    return _runs(request).list(workflow_id)


@router.get("/runs/{run_id}", response_model=RunSnapshot)
def get_run(run_id: str, request: Request) -> RunSnapshot:
    return _runs(request).snapshot(run_id)


@router.post("/runs/{run_id}/pause", response_model=RunSnapshot)
def pause_run(run_id: str, request: Request) -> RunSnapshot:
    return _runs(request).controller(run_id).pause()


@router.post("/runs/{run_id}/resume", response_model=RunSnapshot)
def resume_run(run_id: str, request: Request) -> RunSnapshot:
    return _runs(request).controller(run_id).resume()


@router.post("/runs/{run_id}/step", response_model=StepResponse)
def step_run(run_id: str, request: Request) -> StepResponse:
    controller = _runs(request).controller(run_id)
    step_id = controller.step_forward()
    snapshot = controller.snapshot()
    assert snapshot is not None
    return StepResponse(step_id=step_id, run=snapshot)


@router.post("/runs/{run_id}/cancel", response_model=RunSnapshot)
def cancel_run(run_id: str, request: Request) -> RunSnapshot:
    return _runs(request).cancel(run_id)


@router.post("/runs/{run_id}/reset", status_code=status.HTTP_204_NO_CONTENT)
def reset_run(run_id: str, request: Request) -> None:
    _runs(request).reset(run_id)


@router.post("/runs/{run_id}/steps/{step_id}/complete", response_model=SignalResponse)
def complete_human_task(
    run_id: str, step_id: str, req: CompleteTaskRequest, request: Request
) -> SignalResponse:
    runs = _runs(request)
    accepted = runs.signal_task_complete(run_id, step_id, req.output)
    return SignalResponse(accepted=accepted, run=runs.snapshot(run_id))


@router.post("/runs/{run_id}/steps/{step_id}/fail", response_model=SignalResponse)
def fail_human_task(
    run_id: str, step_id: str, req: FailTaskRequest, request: Request
) -> SignalResponse:
    runs = _runs(request)
    accepted = runs.signal_task_failed(run_id, step_id, req.error)
    return SignalResponse(accepted=accepted, run=runs.snapshot(run_id))


# --- triggers & analytics ------------------------------------------------


@router.post("/triggers", response_model=list[RunSnapshot])
def fire_trigger(req: TriggerRequest, request: Request) -> list[RunSnapshot]:
    """Start a run of every workflow whose trigger matches the event."""

    event = TriggerEvent(type=req.type, payload=req.payload)
    runs = _runs(request)
    started: list[RunSnapshot] = []
    for workflow in matching_workflows(_workflows(request).list_workflows(), event):
        started.append(runs.start(workflow, req.payload, trigger=event))
    return started


@router.get("/analytics", response_model=AnalyticsResponse)
def analytics(
    request: Request, workflow_id: str | None = Query(default=None, alias="workflowId")
) -> AnalyticsResponse:
    snapshots = _runs(request).list(workflow_id)
    return AnalyticsResponse(
        metrics=compute_workflow_metrics(snapshots),
        steps=compute_step_metrics(snapshots),
        bottlenecks=find_bottlenecks(snapshots, limit=_server_settings(request).bottleneck_limit),
        timeline=compute_timeline(snapshots),
    )
