"""Tracks the runs started through the API.

Each live run gets its own `RunController`; all of them share one runner (and
so one dispatcher worker pool and one run store). Once a run is terminal its
controller is dropped and the run is served from the run store.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from docflow.engine.errors import InvalidStateError
from docflow.engine.workflow.controller import RunController
from docflow.engine.workflow.models import Workflow
from docflow.engine.workflow.run_state import TERMINAL_STATUSES, RunSnapshot, RunStatus
from docflow.engine.workflow.runner import WorkflowRunner
from docflow.engine.workflow.triggers import TriggerEvent

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


def _is_finished(controller: RunController) -> bool:
    run = controller.run
    if run is None:
        return True
    # Terminal transitions are saved under the run lock.
    with run.lock:
        return run.is_terminal


class RunManager:
    def __init__(self, runner: WorkflowRunner) -> None:
        self.runner = runner
        self._lock = threading.Lock()
        self._controllers: dict[str, RunController] = {}

    def start(
        self,
        workflow: Workflow,
        context: Mapping[str, Any] | None = None,
        *,
        paused: bool = False,
        trigger: TriggerEvent | None = None,
    ) -> RunSnapshot:
        self.evict_finished()
        controller = RunController(self.runner)
        snapshot = controller.start(workflow, context, paused=paused, trigger=trigger)
        if snapshot.status not in TERMINAL_STATUSES:
            with self._lock:
                self._controllers[snapshot.run_id] = controller
        return snapshot

    def evict_finished(self) -> list[str]:
        """Drop the controllers of terminal runs; returns their run ids."""

        with self._lock:
            finished = [rid for rid, c in self._controllers.items() if _is_finished(c)]
            for run_id in finished:
                del self._controllers[run_id]
        if finished:
            logger.debug("Released finished runs", extra={"run_ids": finished})
        return finished

    def live_run_ids(self) -> list[str]:
        self.evict_finished()
        with self._lock:
            return list(self._controllers)

    def _live(self, run_id: str) -> RunController | None:
        """The controller of a live run, or None for a finished one."""

        with self._lock:
            controller = self._controllers.get(run_id)
            if controller is not None and _is_finished(controller):
                del self._controllers[run_id]
                controller = None
        if controller is None:
            # Raises RunNotFoundError for ids the store has never seen.
            self.runner.store.load(run_id)
        return controller

    def controller(self, run_id: str) -> RunController:
        controller = self._live(run_id)
        if controller is None:
            status = self.runner.store.load(run_id).status
            raise InvalidStateError(f"Run '{run_id}' is {status.value}")
        return controller

    def cancel(self, run_id: str) -> RunSnapshot:
        controller = self._live(run_id)
        if controller is not None:
            return controller.cancel()
        snapshot = self.runner.store.load(run_id)
        if snapshot.status != RunStatus.CANCELLED:
            raise InvalidStateError(f"Cannot cancel a run that is {snapshot.status.value}")
        return snapshot

    def signal_task_complete(
        self, run_id: str, step_id: str, output: Mapping[str, Any] | None = None
    ) -> bool:
        controller = self._live(run_id)
        return controller is not None and controller.signal_task_complete(step_id, output)

    def signal_task_failed(self, run_id: str, step_id: str, error: str) -> bool:
        controller = self._live(run_id)
        return controller is not None and controller.signal_task_failed(step_id, error)

    def snapshot(self, run_id: str) -> RunSnapshot:
        controller = self._live(run_id)
        if controller is not None:
            snapshot = controller.snapshot()
            if snapshot is not None:
                return snapshot
        return self.runner.store.load(run_id)

    def list(self, workflow_id: str | None = None) -> list[RunSnapshot]:
        self.evict_finished()
        runs = self.runner.store.list()
        if workflow_id is not None:
            runs = [r for r in runs if r.workflow_id == workflow_id]
        return sorted(runs, key=lambda r: r.started_at or _EPOCH, reverse=True)

    def reset(self, run_id: str) -> None:
        with self._lock:
            controller = self._controllers.pop(run_id, None)
        if controller is not None:
            controller.reset()
            return
        self.runner.store.load(run_id)
        self.runner.store.delete(run_id)

    def close(self) -> None:
        self.runner.dispatcher.shutdown()
