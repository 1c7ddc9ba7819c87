"""Workflow runner: walks the step graph of a `Run`.

Traversal state is a queue of ready cursors plus the set of in-flight
dispatches. A driver thread launches every ready step, then blocks on the
dispatcher futures until the first outcome arrives, records it under the run
lock and launches whatever became ready. Pausing stops launches; outcomes of
work already in flight are still recorded.

Branches: a step with several successors forks the current branch (`main`
keeps going on the first successor, the others become `main.1`, `main.2`,
...). A step with several predecessors is a join and runs once, after every
reachable predecessor has passed. Skipped steps pass through.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from docflow.engine.config import EngineSettings
from docflow.engine.errors import EngineWarning, InvalidStateError, OverdueTaskWarning

from .dispatcher import AttemptReport, TaskDispatcher, TaskResult
from .models import HumanTask, Workflow, WorkflowStep
from .rules import LoopIteration, RuleEvaluator
from .run_state import InMemoryRunStore, LogType, Run, RunStatus, RunStore, StepStatus
from .validation import predecessors

logger = logging.getLogger(__name__)

MAIN_BRANCH = "main"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class _LoopState:
    iterations: Iterator[LoopIteration]
    outputs: list[dict[str, Any]] = field(default_factory=list)
    count: int = 0


@dataclass(slots=True)
class _Cursor:
    step_id: str
    branch: str
    loop: _LoopState | None = None


@dataclass(slots=True)
class _Dispatch:
    step_id: str
    branch: str
    human: bool
    loop: _LoopState | None = None
    iteration: int | None = None


@dataclass(slots=True)
class _Traversal:
    predecessors: dict[str, set[str]]
    ready: deque[_Cursor] = field(default_factory=deque)
    in_flight: dict[Future[TaskResult], _Dispatch] = field(default_factory=dict)
    arrivals: dict[str, set[str]] = field(default_factory=dict)
    forks: dict[str, int] = field(default_factory=dict)
    first_failure: str | None = None


class WorkflowRunner:
    def __init__(
        self,
        dispatcher: TaskDispatcher,
        evaluator: RuleEvaluator | None = None,
        *,
        store: RunStore | None = None,
        fail_fast: bool = True,
        poll_interval: float = 0.05,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.dispatcher = dispatcher
        self.evaluator = evaluator or RuleEvaluator()
        self.store: RunStore = store if store is not None else InMemoryRunStore()
        self.fail_fast = fail_fast
        self.poll_interval = poll_interval
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        dispatcher: TaskDispatcher,
        settings: EngineSettings,
        *,
        store: RunStore | None = None,
    ) -> WorkflowRunner:
        return cls(
            dispatcher,
            store=store,
            fail_fast=settings.fail_fast,
            poll_interval=settings.poll_interval_seconds,
        )

    # --- lifecycle -------------------------------------------------------

    def create_run(
        self,
        workflow: Workflow,
        context: dict[str, Any],
        *,
        run_id: str | None = None,
    ) -> Run:
        run = Run(workflow, context, run_id=run_id, clock=self._clock)
        traversal = _Traversal(predecessors=predecessors(workflow))
        entry = workflow.entry_step
        if entry is not None:
            traversal.ready.append(_Cursor(step_id=entry.id, branch=MAIN_BRANCH))
        run.traversal = traversal
        self._save(run)
        return run

    def begin(self, run: Run) -> threading.Thread | None:
        """Move a new run to running and start its driver.

        A run with nothing to do completes here, without a driver thread.
        """

        with run.lock:
            run.transition(RunStatus.RUNNING)
            self._finish_if_done(run)
            self._save(run)
            if run.is_terminal:
                return None
        return self.start_driver(run)

    def start_driver(self, run: Run) -> threading.Thread:
        thread = threading.Thread(
            target=self.run,
            args=(run,),
            name=f"docflow-run-{run.id}",
            daemon=True,
        )
        thread.start()
        return thread

    def pause(self, run: Run) -> None:
        with run.lock:
            run.transition(RunStatus.PAUSED)
            self._save(run)

    def resume(self, run: Run) -> threading.Thread:
        with run.lock:
            if run.status != RunStatus.PAUSED:
                raise InvalidStateError(f"Cannot resume a run that is {run.status.value}")
            run.transition(RunStatus.RUNNING)
            self._save(run)
        return self.start_driver(run)

    def cancel(self, run: Run) -> None:
        with run.lock:
            if run.status == RunStatus.CANCELLED:
                return
            if run.is_terminal:
                raise InvalidStateError(f"Cannot cancel a run that is {run.status.value}")
            run.transition(RunStatus.CANCELLED)
            self._stop(run)
            self._save(run)
        logger.info("Run cancelled", extra={"run_id": run.id})

    def discard(self, run: Run) -> None:
        """Stop everything the run has in flight and return it to idle."""

        with run.lock:
            self._stop(run)
            if run.status != RunStatus.IDLE:
                run.transition(RunStatus.IDLE)
            self.store.delete(run.id)

    def is_settled(self, run: Run) -> bool:
        """Terminal, or unable to progress without an external signal."""

        with run.lock:
            if run.is_terminal or run.status == RunStatus.IDLE:
                return True
            traversal: _Traversal = run.traversal
            automated_pending = any(
                not d.human or f.done() for f, d in traversal.in_flight.items()
            )
            if run.status == RunStatus.PAUSED:
                return not automated_pending
            return not traversal.ready and not automated_pending

    # --- driving ---------------------------------------------------------

    def run(self, run: Run) -> None:
        """Drive `run` while it is running. Returns when it pauses or ends."""

        with run.drive_lock:
            try:
                self._drive(run)
            except Exception as e:
                self._crash(run, e)

    def step(self, run: Run) -> str | None:
        """Execute one pending step of a paused run synchronously.

        Loop steps run all their iterations. A human step is left in progress
        waiting for its signal. Returns the step id, or None when nothing was
        ready.
        """

        self._require_paused(run)
        with run.drive_lock:
            self._require_paused(run)
            try:
                return self._step(run)
            except Exception as e:
                self._crash(run, e)
                return None

    def _require_paused(self, run: Run) -> None:
        with run.lock:
            if run.status != RunStatus.PAUSED:
                raise InvalidStateError(f"Cannot step a run that is {run.status.value}")

    def pump(self, run: Run) -> bool:
        """Record already-resolved dispatches when no driver is active."""

        if not run.drive_lock.acquire(blocking=False):
            return False
        try:
            with run.lock:
                self._collect_done(run)
                self._save(run)
            return True
        except Exception as e:
            self._crash(run, e)
            return False
        finally:
            run.drive_lock.release()

    def _drive(self, run: Run) -> None:
        traversal: _Traversal = run.traversal
        while True:
            with run.lock:
                if run.status != RunStatus.RUNNING:
                    return
                # Record crashes before releasing the lock.
                try:
                    self._check_overdue(run)
                    self._collect_done(run)
                    self._launch_ready(run)
                    self._finish_if_done(run)
                except Exception as e:
                    self._crash(run, e)
                    return
                self._save(run)
                if run.status != RunStatus.RUNNING:
                    return
                pending = list(traversal.in_flight)

            done, _ = wait(pending, timeout=self.poll_interval, return_when=FIRST_COMPLETED)
            if not done:
                continue
            with run.lock:
                try:
                    for future in pending:
                        if future in done:
                            self._process(run, future)
                except Exception as e:
                    self._crash(run, e)
                    return
                self._save(run)

    def _step(self, run: Run) -> str | None:
        traversal: _Traversal = run.traversal
        with run.lock:
            self._collect_done(run)
            if not traversal.ready:
                self._finish_if_done(run)
                self._save(run)
                return None
            cursor = traversal.ready.popleft()
            step_id = cursor.step_id
            future = self._launch(run, cursor)

        while future is not None:
            with run.lock:
                if traversal.in_flight[future].human:
                    break
            wait([future])
            with run.lock:
                self._process(run, future)
                future = None
                if run.is_terminal:
                    self._save(run)
                    break
                head = traversal.ready[0] if traversal.ready else None
                if head is not None and head.step_id == step_id and head.loop is not None:
                    future = self._launch(run, traversal.ready.popleft())

        with run.lock:
            self._finish_if_done(run)
            self._save(run)
        return step_id

    # --- traversal -------------------------------------------------------

    def _launch_ready(self, run: Run) -> None:
        traversal: _Traversal = run.traversal
        while traversal.ready and run.status == RunStatus.RUNNING:
            self._launch(run, traversal.ready.popleft())

    def _launch(self, run: Run, cursor: _Cursor) -> Future[TaskResult] | None:
        """Start `cursor`. Returns the dispatched future, or None when the step
        was resolved without dispatching (skipped, or its loop ended)."""

        step = run.workflow.get_step(cursor.step_id)
        loop = cursor.loop

        if loop is None:
            if not self.evaluator.evaluate_all(
                step.rules,
                run.context,
                step_id=step.id,
                on_warning=self._warning_sink(run, cursor.branch),
            ):
                run.set_step_status(step.id, StepStatus.SKIPPED)
                run.append_log(
                    LogType.INFO,
                    f"Skipped: {step.task.name} (conditions not met)",
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    branch=cursor.branch,
                )
                self._advance(run, step.id, cursor.branch)
                return None

            loop_rule = step.loop_rule
            if loop_rule is not None:
                loop = _LoopState(
                    iterations=self.evaluator.iterate(
                        loop_rule,
                        run.context,
                        step_id=step.id,
                        on_warning=self._warning_sink(run, cursor.branch),
                    )
                )

        iteration: LoopIteration | None = None
        if loop is not None:
            iteration = next(loop.iterations, None)
            if iteration is None:
                self._complete_loop(run, step, cursor.branch, loop)
                return None
            loop.count += 1

        return self._dispatch(run, step, cursor.branch, loop, iteration)

    def _dispatch(
        self,
        run: Run,
        step: WorkflowStep,
        branch: str,
        loop: _LoopState | None,
        iteration: LoopIteration | None,
    ) -> Future[TaskResult]:
        traversal: _Traversal = run.traversal
        number = iteration.index + 1 if iteration is not None else None
        context = iteration.context if iteration is not None else dict(run.context)

        run.set_step_status(step.id, StepStatus.IN_PROGRESS)
        label = f" (iteration {number})" if number is not None else ""
        run.append_log(
            LogType.INFO,
            f"Started: {step.task.name}{label}",
            step_id=step.id,
            status=StepStatus.IN_PROGRESS,
            branch=branch,
            iteration=number,
        )

        future = self.dispatcher.dispatch(
            step.task,
            context,
            run_id=run.id,
            step_id=step.id,
            on_attempt=self._attempt_sink(run, branch, number),
            cancel_event=run.cancel_event,
        )
        traversal.in_flight[future] = _Dispatch(
            step_id=step.id,
            branch=branch,
            human=step.is_human,
            loop=loop,
            iteration=number,
        )
        if step.is_human:
            self._flag_if_overdue(run, step, branch)
        return future

    def _collect_done(self, run: Run) -> None:
        traversal: _Traversal = run.traversal
        for future in [f for f in traversal.in_flight if f.done()]:
            self._process(run, future)

    def _process(self, run: Run, future: Future[TaskResult]) -> None:
        traversal: _Traversal = run.traversal
        dispatch = traversal.in_flight.pop(future, None)
        if dispatch is None or future.cancelled():
            return
        if run.is_terminal or run.cancel_event.is_set():
            logger.debug(
                "Discarding outcome of stopped run",
                extra={"run_id": run.id, "step_id": dispatch.step_id},
            )
            return

        exc = future.exception()
        if exc is not None:
            result = TaskResult.failed(
                f"{type(exc).__name__}: {exc}", error_type=type(exc).__name__, fatal=True
            )
        else:
            result = future.result()

        step = run.workflow.get_step(dispatch.step_id)
        if result.ok:
            self._record_success(run, step, dispatch, result)
        else:
            self._record_failure(run, step, dispatch, result)
        run.notify()

    def _record_success(
        self, run: Run, step: WorkflowStep, dispatch: _Dispatch, result: TaskResult
    ) -> None:
        traversal: _Traversal = run.traversal
        output = dict(result.output or {})
        run.context.update(output)
        steps = run.context.get("steps")
        if not isinstance(steps, dict):
            steps = {}
            run.context["steps"] = steps

        if dispatch.loop is not None:
            dispatch.loop.outputs.append(output)
            steps[step.id] = list(dispatch.loop.outputs)
            run.append_log(
                LogType.SUCCESS,
                f"Iteration {dispatch.iteration} of {step.task.name} completed",
                step_id=step.id,
                status=StepStatus.IN_PROGRESS,
                branch=dispatch.branch,
                iteration=dispatch.iteration,
                attempt=result.attempts,
            )
            traversal.ready.appendleft(
                _Cursor(step_id=step.id, branch=dispatch.branch, loop=dispatch.loop)
            )
            return

        steps[step.id] = output
        run.set_step_status(step.id, StepStatus.COMPLETED)
        run.append_log(
            LogType.SUCCESS,
            f"Completed: {step.task.name}",
            step_id=step.id,
            status=StepStatus.COMPLETED,
            branch=dispatch.branch,
            attempt=result.attempts,
        )
        self._advance(run, step.id, dispatch.branch)

    def _complete_loop(
        self, run: Run, step: WorkflowStep, branch: str, loop: _LoopState
    ) -> None:
        steps = run.context.get("steps")
        if not isinstance(steps, dict):
            steps = {}
            run.context["steps"] = steps
        steps[step.id] = list(loop.outputs)
        run.set_step_status(step.id, StepStatus.COMPLETED)
        run.append_log(
            LogType.SUCCESS,
            f"Completed: {step.task.name} after {loop.count} iteration(s)",
            step_id=step.id,
            status=StepStatus.COMPLETED,
            branch=branch,
        )
        self._advance(run, step.id, branch)

    def _record_failure(
        self, run: Run, step: WorkflowStep, dispatch: _Dispatch, result: TaskResult
    ) -> None:
        traversal: _Traversal = run.traversal
        message = f"Failed: {step.task.name}: {result.error}"
        run.set_step_status(step.id, StepStatus.FAILED)
        run.append_log(
            LogType.ERROR,
            message,
            step_id=step.id,
            status=StepStatus.FAILED,
            branch=dispatch.branch,
            iteration=dispatch.iteration,
            attempt=result.attempts or None,
        )
        logger.warning(
            "Step failed",
            extra={
                "run_id": run.id,
                "step_id": step.id,
                "branch": dispatch.branch,
                "error_type": result.error_type,
                "attempts": result.attempts,
            },
        )
        if traversal.first_failure is None:
            traversal.first_failure = f"Step '{step.id}' failed: {result.error}"

        if result.fatal or self.fail_fast:
            self._halt(run, traversal.first_failure)

    def _advance(self, run: Run, step_id: str, branch: str) -> None:
        traversal: _Traversal = run.traversal
        successors = run.workflow.successors(step_id)
        for idx, succ in enumerate(successors):
            succ_branch = branch
            if idx > 0:
                fork = traversal.forks.get(branch, 0) + 1
                traversal.forks[branch] = fork
                succ_branch = f"{branch}.{fork}"

            preds = traversal.predecessors.get(succ, set())
            if len(preds) > 1:
                arrived = traversal.arrivals.setdefault(succ, set())
                arrived.add(step_id)
                if arrived != preds:
                    continue
            traversal.ready.append(_Cursor(step_id=succ, branch=succ_branch))

    def _finish_if_done(self, run: Run) -> None:
        traversal: _Traversal = run.traversal
        if run.status not in (RunStatus.RUNNING, RunStatus.PAUSED):
            return
        if traversal.ready or traversal.in_flight:
            return
        if traversal.first_failure is not None:
            run.error = traversal.first_failure
            run.transition(RunStatus.FAILED)
        else:
            run.transition(RunStatus.COMPLETED)
        logger.info(
            "Run finished",
            extra={"run_id": run.id, "workflow_id": run.workflow.id, "status": run.status.value},
        )

    def _halt(self, run: Run, error: str | None) -> None:
        run.error = error
        run.transition(RunStatus.FAILED)
        self._stop(run)

    def _stop(self, run: Run) -> None:
        run.cancel_event.set()
        self.dispatcher.signals.cancel_run(run.id)
        traversal: _Traversal | None = run.traversal
        if traversal is not None:
            traversal.ready.clear()
        run.notify()

    def _crash(self, run: Run, error: Exception) -> None:
        logger.exception("Runner crashed", extra={"run_id": run.id})
        with run.lock:
            run.append_log(LogType.ERROR, f"Internal error: {type(error).__name__}: {error}")
            if not run.is_terminal and run.status != RunStatus.IDLE:
                self._halt(run, f"Internal error: {error}")
            self._save(run)

    # --- observers -------------------------------------------------------

    def check_overdue(self, run: Run) -> list[str]:
        with run.lock:
            self._check_overdue(run)
            return list(run.overdue_steps)

    def _check_overdue(self, run: Run) -> None:
        traversal: _Traversal = run.traversal
        for dispatch in list(traversal.in_flight.values()):
            if dispatch.human:
                step = run.workflow.get_step(dispatch.step_id)
                self._flag_if_overdue(run, step, dispatch.branch)

    def _flag_if_overdue(self, run: Run, step: WorkflowStep, branch: str) -> None:
        task = step.task
        if not isinstance(task, HumanTask) or step.id in run.overdue_steps:
            return
        if not task.is_overdue(run.now()):
            return
        run.overdue_steps.append(step.id)
        logger.warning("Human task overdue", extra={"run_id": run.id, "step_id": step.id})
        self._warning_sink(run, branch)(
            OverdueTaskWarning(
                f"Overdue: {task.name} was due {task.due_date.isoformat() if task.due_date else ''}",
                step_id=step.id,
            )
        )

    def _warning_sink(self, run: Run, branch: str) -> Callable[[EngineWarning], None]:
        def _sink(warning: EngineWarning) -> None:
            with run.lock:
                run.append_log(
                    LogType.WARNING,
                    warning.message,
                    step_id=warning.step_id,
                    branch=branch,
                )

        return _sink

    def _attempt_sink(
        self, run: Run, branch: str, iteration: int | None
    ) -> Callable[[AttemptReport], None]:
        def _sink(report: AttemptReport) -> None:
            if not report.will_retry:
                return
            with run.lock:
                if run.is_terminal or run.cancel_event.is_set():
                    return
                run.append_log(
                    LogType.WARNING,
                    f"Attempt {report.attempt}/{report.max_attempts} failed: "
                    f"{report.error}; retrying",
                    step_id=report.step_id,
                    status=StepStatus.IN_PROGRESS,
                    branch=branch,
                    iteration=iteration,
                    attempt=report.attempt,
                )

        return _sink

    def _save(self, run: Run) -> None:
        self.store.save(run.snapshot())
