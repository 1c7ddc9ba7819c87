"""Run analytics computed from run snapshots.

Rates are percentages (0-100). Durations are seconds, measured from the run
log: a step's duration runs from its first `in_progress` entry to its final
completed/failed entry.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .run_state import RunSnapshot, RunStatus, StepStatus


class _Metrics(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class WorkflowMetrics(_Metrics):
    total_executions: int
    active_executions: int
    success_rate: float
    failure_rate: float
    average_completion_seconds: float | None


class StepMetrics(_Metrics):
    step_id: str
    executions: int
    failures: int
    skips: int
    success_rate: float
    average_seconds: float | None


class Bottleneck(_Metrics):
    step_id: str
    average_wait_seconds: float
    failure_count: int


class TimelinePoint(_Metrics):
    date: str
    executions: int
    completed: int
    failed: int


def _rate(part: int, whole: int) -> float:
    return round(100.0 * part / whole, 2) if whole else 0.0


def _mean(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 3) if values else None


def compute_workflow_metrics(snapshots: Iterable[RunSnapshot]) -> WorkflowMetrics:
    runs = list(snapshots)
    finished = [r for r in runs if r.is_terminal]
    completed = [r for r in finished if r.status == RunStatus.COMPLETED]
    failed = [r for r in finished if r.status == RunStatus.FAILED]
    durations = [
        (r.finished_at - r.started_at).total_seconds()
        for r in completed
        if r.started_at is not None and r.finished_at is not None
    ]
    return WorkflowMetrics(
        total_executions=len(runs),
        active_executions=sum(
            1 for r in runs if r.status in (RunStatus.RUNNING, RunStatus.PAUSED)
        ),
        success_rate=_rate(len(completed), len(finished)),
        failure_rate=_rate(len(failed), len(finished)),
        average_completion_seconds=_mean(durations),
    )


def _step_durations(snapshot: RunSnapshot) -> dict[str, float]:
    started: dict[str, datetime] = {}
    ended: dict[str, datetime] = {}
    for entry in snapshot.log:
        if entry.step_id is None or entry.status is None:
            continue
        if entry.status == StepStatus.IN_PROGRESS:
            started.setdefault(entry.step_id, entry.timestamp)
        elif entry.status in (StepStatus.COMPLETED, StepStatus.FAILED):
            ended[entry.step_id] = entry.timestamp
    return {
        step_id: (ended[step_id] - start).total_seconds()
        for step_id, start in started.items()
        if step_id in ended
    }


def compute_step_metrics(snapshots: Iterable[RunSnapshot]) -> list[StepMetrics]:
    executions: dict[str, int] = defaultdict(int)
    failures: dict[str, int] = defaultdict(int)
    skips: dict[str, int] = defaultdict(int)
    durations: dict[str, list[float]] = defaultdict(list)

    for snapshot in snapshots:
        for step_id, status in snapshot.step_statuses.items():
            if status == StepStatus.SKIPPED:
                skips[step_id] += 1
            elif status in (StepStatus.COMPLETED, StepStatus.FAILED):
                executions[step_id] += 1
                if status == StepStatus.FAILED:
                    failures[step_id] += 1
        for step_id, seconds in _step_durations(snapshot).items():
            durations[step_id].append(seconds)

    step_ids = sorted(set(executions) | set(skips))
    return [
        StepMetrics(
            step_id=step_id,
            executions=executions[step_id],
            failures=failures[step_id],
            skips=skips[step_id],
            success_rate=_rate(executions[step_id] - failures[step_id], executions[step_id]),
            average_seconds=_mean(durations[step_id]),
        )
        for step_id in step_ids
    ]


def find_bottlenecks(snapshots: Iterable[RunSnapshot], limit: int = 5) -> list[Bottleneck]:
    """Slowest steps first; ties broken by failure count."""

    metrics = compute_step_metrics(snapshots)
    ranked = [
        Bottleneck(
            step_id=m.step_id,
            average_wait_seconds=m.average_seconds or 0.0,
            failure_count=m.failures,
        )
        for m in metrics
        if m.executions
    ]
    ranked.sort(key=lambda b: (-b.average_wait_seconds, -b.failure_count, b.step_id))
    return ranked[:limit]


def compute_timeline(snapshots: Iterable[RunSnapshot]) -> list[TimelinePoint]:
    """Executions per start date (UTC)."""

    points: dict[str, list[int]] = defaultdict(lambda: [0, 0, 0])
    for snapshot in snapshots:
        if snapshot.started_at is None:
            continue
        day = snapshot.started_at.date().isoformat()
        points[day][0] += 1
        if snapshot.status == RunStatus.COMPLETED:
            points[day][1] += 1
        elif snapshot.status == RunStatus.FAILED:
            points[day][2] += 1
    return [
        TimelinePoint(date=day, executions=n, completed=ok, failed=bad)
        for day, (n, ok, bad) in sorted(points.items())
    ]
