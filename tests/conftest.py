"""Test configuration and fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator, Mapping
from typing import Any

import pytest

from docflow.engine.workflow.controller import RunController
from docflow.engine.workflow.dispatcher import TaskDispatcher
from docflow.engine.workflow.handlers import ActionHandlerRegistry
from docflow.engine.workflow.models import AutomatedTaskType, Workflow
from docflow.engine.workflow.runner import WorkflowRunner
from docflow.engine.workflow.validation import parse_workflow


class RecordingHandler:
    """Action handler that records its calls.

    `output` is returned as-is, or called with `(config, context)` when it is
    callable. The first `fail_times` calls raise `RuntimeError(error)`.
    """

    def __init__(
        self,
        output: Mapping[str, Any] | Callable[..., Any] | None = None,
        *,
        fail_times: int = 0,
        error: str = "boom",
        delay: float = 0.0,
    ) -> None:
        self.output = output
        self.fail_times = fail_times
        self.error = error
        self.delay = delay
        self.calls: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def __call__(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        with self._lock:
            self.calls.append((dict(config), dict(context)))
            n = len(self.calls)
        if self.delay:
            time.sleep(self.delay)
        if n <= self.fail_times:
            raise RuntimeError(self.error)
        if callable(self.output):
            return self.output(config, context)
        return dict(self.output or {})


class WorkflowBuilder:
    """Builds raw step dicts and validated workflows in the camelCase wire form."""

    @staticmethod
    def automated(
        step_id: str,
        task_type: str = "send_email",
        *,
        name: str | None = None,
        config: dict[str, Any] | None = None,
        rules: list[dict[str, Any]] | None = None,
        next_steps: list[str] | None = None,
        retry_count: int | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        task: dict[str, Any] = {
            "id": f"task-{step_id}",
            "type": "automated",
            "name": name or f"Task {step_id}",
            "taskType": task_type,
            "config": config or {},
        }
        if retry_count is not None:
            task["retryCount"] = retry_count
        if timeout is not None:
            task["timeout"] = timeout
        step: dict[str, Any] = {"id": step_id, "task": task, "rules": rules or []}
        if next_steps is not None:
            step["nextSteps"] = next_steps
        return step

    @staticmethod
    def human(
        step_id: str,
        task_type: str = "approve_document",
        *,
        name: str | None = None,
        assignee: str | None = "reviewer",
        due_date: str | None = None,
        rules: list[dict[str, Any]] | None = None,
        next_steps: list[str] | None = None,
    ) -> dict[str, Any]:
        task: dict[str, Any] = {
            "id": f"task-{step_id}",
            "type": "human",
            "name": name or f"Task {step_id}",
            "taskType": task_type,
            "assignee": assignee,
        }
        if due_date is not None:
            task["dueDate"] = due_date
        step: dict[str, Any] = {"id": step_id, "task": task, "rules": rules or []}
        if next_steps is not None:
            step["nextSteps"] = next_steps
        return step

    @staticmethod
    def condition(field: str, operator: str, value: Any = None, rule_id: str = "rule-1") -> dict[str, Any]:
        return {
            "id": rule_id,
            "type": "condition",
            "settings": {"field": field, "operator": operator, "value": value},
        }

    @staticmethod
    def loop(
        loop_type: str, loop_condition: str, max_iterations: int = 10, rule_id: str = "loop-1"
    ) -> dict[str, Any]:
        return {
            "id": rule_id,
            "type": "loop",
            "settings": {
                "loopType": loop_type,
                "loopCondition": loop_condition,
                "maxIterations": max_iterations,
            },
        }

    @staticmethod
    def raw(
        steps: list[dict[str, Any]],
        *,
        workflow_id: str = "wf-test",
        trigger_type: str = "manual_trigger",
        trigger_config: dict[str, Any] | None = None,
        active: bool = True,
    ) -> dict[str, Any]:
        return {
            "id": workflow_id,
            "name": f"Workflow {workflow_id}",
            "trigger": {
                "id": "trigger-1",
                "type": trigger_type,
                "name": "Trigger",
                "config": trigger_config or {},
            },
            "steps": steps,
            "active": active,
        }

    @classmethod
    def workflow(cls, steps: list[dict[str, Any]], **kwargs: Any) -> Workflow:
        return parse_workflow(cls.raw(steps, **kwargs))


@pytest.fixture
def wf() -> type[WorkflowBuilder]:
    """Provide the workflow builder."""
    return WorkflowBuilder


@pytest.fixture
def make_handler() -> type[RecordingHandler]:
    """Provide the recording handler class, for tests that need more than one."""
    return RecordingHandler


@pytest.fixture
def handler() -> RecordingHandler:
    """Provide a handler that succeeds with `{"sent": True}`."""
    return RecordingHandler({"sent": True})


@pytest.fixture
def registry(handler: RecordingHandler) -> ActionHandlerRegistry:
    """Provide a registry with `handler` registered for every automated task type."""
    reg = ActionHandlerRegistry()
    for task_type in AutomatedTaskType:
        reg.register(task_type, handler)
    return reg


@pytest.fixture
def dispatcher(registry: ActionHandlerRegistry) -> Iterator[TaskDispatcher]:
    """Provide a dispatcher with a small worker pool."""
    d = TaskDispatcher(registry, default_timeout_seconds=5.0, max_workers=4)
    yield d
    d.shutdown()


@pytest.fixture
def runner(dispatcher: TaskDispatcher) -> WorkflowRunner:
    """Provide a fail-fast runner with a short poll interval."""
    return WorkflowRunner(dispatcher, poll_interval=0.01)


@pytest.fixture
def controller(runner: WorkflowRunner) -> RunController:
    """Provide a controller over `runner`."""
    return RunController(runner)
