"""Task dispatch.

`TaskDispatcher.dispatch` returns a `Future[TaskResult]` for both task kinds:

- Automated tasks run on a worker pool. Every attempt calls the registered
  action handler in its own daemon thread, bounded by the task's timeout.
  Failed attempts are retried immediately, up to `retry_count` extra times.
  Task-level errors never escape: they become a failed `TaskResult`.
- Human tasks are parked on the `HumanTaskSignals` board. Their future stays
  unresolved until someone calls `complete` or `fail` for that step.

There is no random failure injection. Every failure comes from a handler or
a signal.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any

from docflow.engine.config import EngineSettings
from docflow.engine.errors import HandlerError, InvalidStateError, TaskTimeoutError, UnregisteredActionError

from .handlers import ActionHandler, ActionHandlerRegistry
from .models import AutomatedTask, HumanTask

logger = logging.getLogger(__name__)


class TaskOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TaskResult:
    status: TaskOutcome
    output: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    fatal: bool = False

    @property
    def ok(self) -> bool:
        return self.status == TaskOutcome.COMPLETED

    @classmethod
    def completed(cls, output: Mapping[str, Any] | None, *, attempts: int = 1) -> TaskResult:
        return cls(status=TaskOutcome.COMPLETED, output=dict(output or {}), attempts=attempts)

    @classmethod
    def failed(
        cls,
        error: str,
        *,
        error_type: str | None = None,
        attempts: int = 1,
        fatal: bool = False,
    ) -> TaskResult:
        return cls(
            status=TaskOutcome.FAILED,
            error=error,
            error_type=error_type,
            attempts=attempts,
            fatal=fatal,
        )


@dataclass(frozen=True, slots=True)
class AttemptReport:
    step_id: str
    attempt: int
    max_attempts: int
    ok: bool
    error: str | None = None
    error_type: str | None = None

    @property
    def will_retry(self) -> bool:
        return not self.ok and self.attempt < self.max_attempts


AttemptCallback = Callable[[AttemptReport], None]


class HumanTaskSignals:
    """Human tasks waiting for an out-of-band completion signal.

    The first signal for a waiting step wins; later signals for the same step
    return False and change nothing.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiting: dict[tuple[str, str], Future[TaskResult]] = {}

    def register(self, run_id: str, step_id: str) -> Future[TaskResult]:
        with self._lock:
            key = (run_id, step_id)
            if key in self._waiting:
                raise InvalidStateError(f"Step '{step_id}' is already waiting for a signal")
            future: Future[TaskResult] = Future()
            self._waiting[key] = future
            return future

    def complete(self, run_id: str, step_id: str, output: Mapping[str, Any] | None = None) -> bool:
        if output is not None and not isinstance(output, Mapping):
            raise ValueError("Signal output must be a mapping")
        future = self._pop(run_id, step_id)
        if future is None:
            return False
        future.set_result(TaskResult.completed(output))
        logger.info("Human task completed", extra={"run_id": run_id, "step_id": step_id})
        return True

    def fail(self, run_id: str, step_id: str, error: str) -> bool:
        future = self._pop(run_id, step_id)
        if future is None:
            return False
        future.set_result(TaskResult.failed(error or "Task failed", error_type="HumanTaskFailed"))
        logger.info("Human task failed", extra={"run_id": run_id, "step_id": step_id})
        return True

    def is_waiting(self, run_id: str, step_id: str) -> bool:
        with self._lock:
            return (run_id, step_id) in self._waiting

    def waiting_steps(self, run_id: str) -> list[str]:
        with self._lock:
            return sorted(step_id for rid, step_id in self._waiting if rid == run_id)

    def cancel_run(self, run_id: str) -> int:
        with self._lock:
            keys = [key for key in self._waiting if key[0] == run_id]
            futures = [self._waiting.pop(key) for key in keys]
        for future in futures:
            future.cancel()
        return len(futures)

    def _pop(self, run_id: str, step_id: str) -> Future[TaskResult] | None:
        with self._lock:
            future = self._waiting.pop((run_id, step_id), None)
        if future is None or future.done():
            return None
        return future


class TaskDispatcher:
    def __init__(
        self,
        registry: ActionHandlerRegistry,
        *,
        signals: HumanTaskSignals | None = None,
        default_timeout_seconds: float = 300.0,
        max_workers: int = 8,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.registry = registry
        self.signals = signals or HumanTaskSignals()
        self._default_timeout = default_timeout_seconds
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="docflow-dispatch"
        )

    @classmethod
    def from_settings(
        cls, registry: ActionHandlerRegistry, settings: EngineSettings
    ) -> TaskDispatcher:
        return cls(
            registry,
            default_timeout_seconds=settings.default_task_timeout_seconds,
            max_workers=settings.dispatch_workers,
        )

    def dispatch(
        self,
        task: HumanTask | AutomatedTask,
        context: Mapping[str, Any],
        *,
        run_id: str,
        step_id: str,
        on_attempt: AttemptCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Future[TaskResult]:
        if isinstance(task, HumanTask):
            logger.info(
                "Human task awaiting signal",
                extra={"run_id": run_id, "step_id": step_id, "assignee": task.assignee},
            )
            return self.signals.register(run_id, step_id)

        return self._executor.submit(
            self._run_automated,
            task,
            dict(context),
            run_id=run_id,
            step_id=step_id,
            on_attempt=on_attempt,
            cancel_event=cancel_event,
        )

    def execute(
        self,
        task: HumanTask | AutomatedTask,
        context: Mapping[str, Any],
        *,
        run_id: str,
        step_id: str,
        wait_seconds: float | None = None,
    ) -> TaskResult:
        """Dispatch and block for the result."""

        return self.dispatch(task, context, run_id=run_id, step_id=step_id).result(
            timeout=wait_seconds
        )

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _run_automated(
        self,
        task: AutomatedTask,
        context: dict[str, Any],
        *,
        run_id: str,
        step_id: str,
        on_attempt: AttemptCallback | None,
        cancel_event: threading.Event | None,
    ) -> TaskResult:
        log_extra = {"run_id": run_id, "step_id": step_id, "task_type": task.task_type.value}
        try:
            handler = self.registry.get(task.task_type)
        except UnregisteredActionError as e:
            logger.error("No handler for automated task", extra=log_extra)
            return TaskResult.failed(
                str(e), error_type=type(e).__name__, attempts=0, fatal=True
            )

        timeout = task.timeout or self._default_timeout
        max_attempts = task.retry_count + 1
        last_error: HandlerError | None = None

        for attempt in range(1, max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                return TaskResult.failed(
                    "Run cancelled before attempt", error_type="Cancelled", attempts=attempt - 1
                )
            try:
                output = _call_with_timeout(handler, task, context, timeout)
            except HandlerError as e:
                last_error = e
                logger.warning(
                    "Action attempt failed",
                    extra={**log_extra, "attempt": attempt, "max_attempts": max_attempts, "error": str(e)},
                )
                if on_attempt is not None:
                    on_attempt(
                        AttemptReport(
                            step_id=step_id,
                            attempt=attempt,
                            max_attempts=max_attempts,
                            ok=False,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    )
                continue

            if on_attempt is not None:
                on_attempt(
                    AttemptReport(
                        step_id=step_id, attempt=attempt, max_attempts=max_attempts, ok=True
                    )
                )
            return TaskResult.completed(output, attempts=attempt)

        assert last_error is not None
        return TaskResult.failed(
            str(last_error), error_type=type(last_error).__name__, attempts=max_attempts
        )


def _call_with_timeout(
    handler: ActionHandler,
    task: AutomatedTask,
    context: dict[str, Any],
    timeout: float,
) -> dict[str, Any]:
    """Run one handler attempt in a daemon thread.

    A handler that overruns is abandoned, not killed: Python threads cannot be
    interrupted, and its eventual result is ignored.
    """

    box: dict[str, Any] = {}

    def _target() -> None:
        try:
            box["output"] = handler(dict(task.config), context)
        except Exception as e:  # noqa: BLE001 (converted to HandlerError below)
            box["error"] = e

    thread = threading.Thread(
        target=_target, name=f"docflow-action-{task.task_type.value}", daemon=True
    )
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        raise TaskTimeoutError(task.task_type.value, timeout)

    if "error" in box:
        err = box["error"]
        if isinstance(err, HandlerError):
            raise err
        raise HandlerError(f"{type(err).__name__}: {err}") from err

    output = box.get("output")
    if output is None:
        return {}
    if not isinstance(output, Mapping):
        raise HandlerError(
            f"Handler for '{task.task_type.value}' returned {type(output).__name__}, "
            "expected a mapping"
        )
    return dict(output)
