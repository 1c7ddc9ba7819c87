"""Run-time state of a workflow execution.

A `Run` is the mutable record the runner works on: status, context, per-step
statuses and the append-only log. Everything is guarded by the run's lock;
readers get a `RunSnapshot`, an immutable copy safe to hand to other threads,
serialize, or persist in a `RunStore`.
"""

from __future__ import annotations

import copy
import json
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from docflow.engine.errors import InvalidStateError, RunNotFoundError

from .models import Workflow


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.IDLE: {RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {
        RunStatus.PAUSED,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.IDLE,
    },
    RunStatus.PAUSED: {
        RunStatus.RUNNING,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.IDLE,
    },
    RunStatus.COMPLETED: {RunStatus.IDLE},
    RunStatus.FAILED: {RunStatus.IDLE},
    RunStatus.CANCELLED: {RunStatus.IDLE},
}


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class LogEntry(_CamelModel):
    sequence: int
    timestamp: datetime
    type: LogType
    message: str
    step_id: str | None = None
    status: StepStatus | None = None
    branch: str | None = None
    iteration: int | None = None
    attempt: int | None = None


class RunSnapshot(_CamelModel):
    run_id: str
    workflow_id: str
    workflow_name: str
    status: RunStatus
    current_steps: list[str] = Field(default_factory=list)
    step_statuses: dict[str, StepStatus] = Field(default_factory=dict)
    log: list[LogEntry] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    overdue_steps: list[str] = Field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def latest_log_entry(self) -> LogEntry | None:
        return self.log[-1] if self.log else None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Run:
    """Mutable state of one execution. Guard every access with `lock`."""

    def __init__(
        self,
        workflow: Workflow,
        context: dict[str, Any],
        *,
        run_id: str | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.id = run_id or uuid.uuid4().hex
        self.workflow = workflow
        self.status = RunStatus.IDLE
        self.context = context
        self.step_statuses: dict[str, StepStatus] = {
            step.id: StepStatus.PENDING for step in workflow.steps
        }
        self.log: list[LogEntry] = []
        self.current_steps: list[str] = []
        self.overdue_steps: list[str] = []
        self.error: str | None = None
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

        self.lock = threading.RLock()
        self.changed = threading.Condition(self.lock)
        self.cancel_event = threading.Event()
        # Held by whichever thread is processing dispatch outcomes.
        self.drive_lock = threading.Lock()
        # Traversal bookkeeping, owned by the runner.
        self.traversal: Any = None
        self._clock = clock

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def now(self) -> datetime:
        return self._clock()

    def transition(self, to: RunStatus) -> None:
        with self.lock:
            allowed = ALLOWED_TRANSITIONS.get(self.status, set())
            if to not in allowed:
                raise InvalidStateError(
                    f"Illegal run transition: {self.status.value} -> {to.value}"
                )
            self.status = to
            if to in (RunStatus.RUNNING, RunStatus.PAUSED) and self.started_at is None:
                self.started_at = self.now()
            if to in TERMINAL_STATUSES:
                self.finished_at = self.now()
            self.changed.notify_all()

    def append_log(
        self,
        type: LogType,
        message: str,
        *,
        step_id: str | None = None,
        status: StepStatus | None = None,
        branch: str | None = None,
        iteration: int | None = None,
        attempt: int | None = None,
    ) -> LogEntry:
        with self.lock:
            entry = LogEntry(
                sequence=len(self.log) + 1,
                timestamp=self.now(),
                type=type,
                message=message,
                step_id=step_id,
                status=status,
                branch=branch,
                iteration=iteration,
                attempt=attempt,
            )
            self.log.append(entry)
            self.changed.notify_all()
            return entry

    def set_step_status(self, step_id: str, status: StepStatus) -> None:
        with self.lock:
            self.step_statuses[step_id] = status
            if status == StepStatus.IN_PROGRESS:
                if step_id not in self.current_steps:
                    self.current_steps.append(step_id)
            elif step_id in self.current_steps:
                self.current_steps.remove(step_id)
            self.changed.notify_all()

    def wait_until(self, predicate: Callable[[], bool], timeout: float | None = None) -> bool:
        with self.changed:
            return self.changed.wait_for(predicate, timeout=timeout)

    def notify(self) -> None:
        with self.changed:
            self.changed.notify_all()

    def snapshot(self) -> RunSnapshot:
        with self.lock:
            return RunSnapshot(
                run_id=self.id,
                workflow_id=self.workflow.id,
                workflow_name=self.workflow.name,
                status=self.status,
                current_steps=list(self.current_steps),
                step_statuses=dict(self.step_statuses),
                log=list(self.log),
                context=copy.deepcopy(self.context),
                overdue_steps=list(self.overdue_steps),
                error=self.error,
                started_at=self.started_at,
                finished_at=self.finished_at,
            )


class RunStore(Protocol):
    def save(self, snapshot: RunSnapshot) -> None: ...

    def load(self, run_id: str) -> RunSnapshot: ...

    def list(self) -> list[RunSnapshot]: ...

    def delete(self, run_id: str) -> None: ...


class InMemoryRunStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, RunSnapshot] = {}

    def save(self, snapshot: RunSnapshot) -> None:
        with self._lock:
            self._runs[snapshot.run_id] = snapshot

    def load(self, run_id: str) -> RunSnapshot:
        with self._lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise RunNotFoundError(run_id) from None

    def list(self) -> list[RunSnapshot]:
        with self._lock:
            return list(self._runs.values())

    def delete(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)


@dataclass
class JsonRunStore:
    """All run snapshots in one JSON file.

    Best-effort persistence so run history survives a restart; a corrupt file
    reads as empty.
    """

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[RunSnapshot]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return []
        if not isinstance(raw, list):
            return []
        return [RunSnapshot.model_validate(item) for item in raw]

    def _save_unlocked(self, runs: list[RunSnapshot]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.to_json() for r in runs]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def save(self, snapshot: RunSnapshot) -> None:
        with self._lock:
            runs = [r for r in self._load_unlocked() if r.run_id != snapshot.run_id]
            runs.append(snapshot)
            self._save_unlocked(runs)

    def load(self, run_id: str) -> RunSnapshot:
        with self._lock:
            for run in self._load_unlocked():
                if run.run_id == run_id:
                    return run
        raise RunNotFoundError(run_id)

    def list(self) -> list[RunSnapshot]:
        with self._lock:
            return self._load_unlocked()

    def delete(self, run_id: str) -> None:
        with self._lock:
            runs = self._load_unlocked()
            kept = [r for r in runs if r.run_id != run_id]
            if len(kept) != len(runs):
                self._save_unlocked(kept)
