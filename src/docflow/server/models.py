"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from docflow.engine.workflow.analytics import (
    Bottleneck,
    StepMetrics,
    TimelinePoint,
    WorkflowMetrics,
)
from docflow.engine.workflow.models import TriggerType
from docflow.engine.workflow.run_state import RunSnapshot


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRunRequest(_ApiModel):
    workflow_id: str
    context: dict[str, Any] | None = None
    paused: bool = False


class CompleteTaskRequest(_ApiModel):
    output: dict[str, Any] | None = None


class FailTaskRequest(_ApiModel):
    error: str = Field(min_length=1)


class SignalResponse(_ApiModel):
    accepted: bool
    run: RunSnapshot


class StepResponse(_ApiModel):
    step_id: str | None
    run: RunSnapshot


class TriggerRequest(_ApiModel):
    type: TriggerType
    payload: dict[str, Any] = Field(default_factory=dict)


class InstantiateTemplateRequest(_ApiModel):
    workflow_id: str | None = None
    save: bool = True


class TemplateSummary(_ApiModel):
    id: str
    category: str
    name: str
    description: str | None = None
    step_count: int


class AnalyticsResponse(_ApiModel):
    metrics: WorkflowMetrics
    steps: list[StepMetrics]
    bottlenecks: list[Bottleneck]
    timeline: list[TimelinePoint]
