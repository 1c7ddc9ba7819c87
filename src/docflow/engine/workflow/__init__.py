"""Workflow domain and runtime.

- `models`: the declarative definition (trigger, steps, tasks, rules)
- `rules`: condition evaluation and loop iteration
- `dispatcher` / `handlers`: running tasks through pluggable action handlers
- `runner` / `controller`: executing a definition and controlling the run
"""

from docflow.engine.workflow.controller import RunController, build_runner
from docflow.engine.workflow.dispatcher import HumanTaskSignals, TaskDispatcher, TaskResult
from docflow.engine.workflow.handlers import ActionHandlerRegistry, build_default_registry
from docflow.engine.workflow.models import (
    AutomatedTask,
    AutomatedTaskType,
    ConditionRule,
    HumanTask,
    HumanTaskType,
    LoopRule,
    TriggerType,
    Workflow,
    WorkflowStep,
    WorkflowTrigger,
)
from docflow.engine.workflow.rules import RuleEvaluator
from docflow.engine.workflow.run_state import RunSnapshot, RunStatus, StepStatus
from docflow.engine.workflow.runner import WorkflowRunner
from docflow.engine.workflow.triggers import TriggerEvent
from docflow.engine.workflow.validation import parse_workflow, validate_workflow

__all__ = [
    "ActionHandlerRegistry",
    "AutomatedTask",
    "AutomatedTaskType",
    "ConditionRule",
    "HumanTask",
    "HumanTaskSignals",
    "HumanTaskType",
    "LoopRule",
    "RuleEvaluator",
    "RunController",
    "RunSnapshot",
    "RunStatus",
    "StepStatus",
    "TaskDispatcher",
    "TaskResult",
    "TriggerEvent",
    "TriggerType",
    "Workflow",
    "WorkflowRunner",
    "WorkflowStep",
    "WorkflowTrigger",
    "build_default_registry",
    "build_runner",
    "parse_workflow",
    "validate_workflow",
]
