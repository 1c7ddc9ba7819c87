"""Run controller: the control surface over a single workflow run.

Commands map onto run status transitions:

    start        idle -> running (or paused, for step debugging)
    pause        running -> paused
    resume       paused -> running
    step_forward paused -> paused, one step executed
    cancel       idle/running/paused -> cancelled
    reset        any -> idle, the run is discarded

Illegal commands raise `InvalidStateError`.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

from docflow.engine.config import EngineSettings
from docflow.engine.errors import (
    InactiveWorkflowError,
    InvalidContextError,
    InvalidStateError,
)

from .dispatcher import TaskDispatcher
from .handlers import ActionHandlerRegistry, build_default_registry
from .models import Workflow
from .run_state import JsonRunStore, LogEntry, Run, RunSnapshot, RunStatus, RunStore
from .runner import WorkflowRunner
from .triggers import TriggerEvent
from .validation import validate_workflow

logger = logging.getLogger(__name__)


def _check_context(initial_context: object) -> dict[str, Any]:
    if initial_context is None:
        return {}
    if not isinstance(initial_context, Mapping):
        raise InvalidContextError(
            f"Initial context must be a mapping, got {type(initial_context).__name__}"
        )
    try:
        return json.loads(json.dumps(dict(initial_context)))
    except (TypeError, ValueError) as e:
        raise InvalidContextError(f"Initial context is not JSON-serializable: {e}") from e


class RunController:
    def __init__(self, runner: WorkflowRunner) -> None:
        self.runner = runner
        self._lock = threading.RLock()
        self._run: Run | None = None

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        registry: ActionHandlerRegistry | None = None,
        store: RunStore | None = None,
    ) -> RunController:
        return cls(build_runner(settings, registry=registry, store=store))

    @property
    def run(self) -> Run | None:
        return self._run

    @property
    def status(self) -> RunStatus:
        run = self._run
        return run.status if run is not None else RunStatus.IDLE

    def start(
        self,
        workflow: Workflow,
        initial_context: Mapping[str, Any] | None = None,
        *,
        paused: bool = False,
        trigger: TriggerEvent | None = None,
        run_id: str | None = None,
    ) -> RunSnapshot:
        validate_workflow(workflow)
        context = _check_context(initial_context)
        if trigger is not None:
            if not workflow.active and not trigger.is_manual:
                raise InactiveWorkflowError(
                    f"Workflow '{workflow.id}' is inactive and cannot be started by "
                    f"'{trigger.type.value}'"
                )
            context["trigger"] = trigger.to_context()

        with self._lock:
            current = self._run
            if current is not None and not current.is_terminal:
                raise InvalidStateError(
                    f"Run {current.id} is {current.status.value}; cancel or reset it first"
                )
            run = self.runner.create_run(workflow, context, run_id=run_id)
            self._run = run
            if paused:
                self.runner.pause(run)
            else:
                self.runner.begin(run)

        logger.info(
            "Run started",
            extra={"run_id": run.id, "workflow_id": workflow.id, "paused": paused},
        )
        return run.snapshot()

    def pause(self) -> RunSnapshot:
        run = self._require_run()
        self.runner.pause(run)
        return run.snapshot()

    def resume(self) -> RunSnapshot:
        run = self._require_run()
        self.runner.resume(run)
        return run.snapshot()

    def step_forward(self) -> str | None:
        """Execute one pending step of a paused run. Returns its id."""

        return self.runner.step(self._require_run())

    def cancel(self) -> RunSnapshot:
        run = self._require_run()
        self.runner.cancel(run)
        return run.snapshot()

    def reset(self) -> None:
        with self._lock:
            run, self._run = self._run, None
        if run is not None:
            self.runner.discard(run)
            logger.info("Run reset", extra={"run_id": run.id})

    def signal_task_complete(
        self, step_id: str, output: Mapping[str, Any] | None = None
    ) -> bool:
        run = self._run
        if run is None:
            return False
        accepted = self.runner.dispatcher.signals.complete(run.id, step_id, output)
        if accepted:
            self.runner.pump(run)
        return accepted

    def signal_task_failed(self, step_id: str, error: str) -> bool:
        run = self._run
        if run is None:
            return False
        accepted = self.runner.dispatcher.signals.fail(run.id, step_id, error)
        if accepted:
            self.runner.pump(run)
        return accepted

    def waiting_steps(self) -> list[str]:
        run = self._run
        if run is None:
            return []
        return self.runner.dispatcher.signals.waiting_steps(run.id)

    def snapshot(self) -> RunSnapshot | None:
        run = self._run
        return run.snapshot() if run is not None else None

    def latest_log_entry(self) -> LogEntry | None:
        run = self._run
        if run is None:
            return None
        with run.lock:
            return run.log[-1] if run.log else None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run is terminal or waiting on human signals.

        Returns False if `timeout` elapsed first.
        """

        run = self._require_run()
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if run.status == RunStatus.PAUSED:
                self.runner.pump(run)
            if self.runner.is_settled(run):
                return True
            slice_ = self.runner.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                slice_ = min(slice_, remaining)
            run.wait_until(lambda: self.runner.is_settled(run), timeout=slice_)

    def close(self) -> None:
        self.runner.dispatcher.shutdown()

    def _require_run(self) -> Run:
        run = self._run
        if run is None:
            raise InvalidStateError("No run has been started")
        return run


def build_runner(
    settings: EngineSettings,
    *,
    registry: ActionHandlerRegistry | None = None,
    store: RunStore | None = None,
) -> WorkflowRunner:
    """Wire dispatcher, runner and run store from settings."""

    dispatcher = TaskDispatcher.from_settings(
        registry if registry is not None else build_default_registry(settings), settings
    )
    if store is None and settings.run_state_path is not None:
        store = JsonRunStore(settings.run_state_path)
    return WorkflowRunner.from_settings(dispatcher, settings, store=store)
