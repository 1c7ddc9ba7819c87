from __future__ import annotations

from datetime import UTC, datetime

from docflow.engine.workflow.controller import RunController
from docflow.engine.workflow.dispatcher import TaskDispatcher
from docflow.engine.workflow.handlers import ActionHandlerRegistry
from docflow.engine.workflow.run_state import LogType, RunStatus, StepStatus
from docflow.engine.workflow.runner import WorkflowRunner


def _finish(controller: RunController) -> None:
    assert controller.wait(timeout=5), "run did not settle"


def test_zero_step_workflow_completes_immediately(controller: RunController, wf) -> None:
    snapshot = controller.start(wf.workflow([]))

    assert snapshot.status == RunStatus.COMPLETED
    assert snapshot.log == []
    assert snapshot.finished_at is not None


def test_linear_workflow_runs_every_step_in_order(controller: RunController, wf, handler) -> None:
    controller.start(
        wf.workflow([wf.automated("a"), wf.automated("b"), wf.automated("c")]),
        {"document": {"id": "doc-1"}},
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.status == RunStatus.COMPLETED
    assert snapshot.step_statuses == {
        "a": StepStatus.COMPLETED,
        "b": StepStatus.COMPLETED,
        "c": StepStatus.COMPLETED,
    }
    completed = [e.step_id for e in snapshot.log if e.status == StepStatus.COMPLETED]
    assert completed == ["a", "b", "c"]
    assert handler.call_count == 3
    assert snapshot.context["sent"] is True
    assert snapshot.context["steps"]["b"] == {"sent": True}
    assert snapshot.current_steps == []


def test_outputs_flow_into_later_steps(
    controller: RunController, wf, registry: ActionHandlerRegistry, make_handler
) -> None:
    extract = make_handler({"amount": 42})
    archive = make_handler({"archived": True})
    registry.register("extract_data", extract)
    registry.register("archive_document", archive)

    controller.start(
        wf.workflow(
            [
                wf.automated("extract", "extract_data"),
                wf.automated(
                    "archive",
                    "archive_document",
                    rules=[wf.condition("amount", "greater_than", 10)],
                ),
            ]
        )
    )
    _finish(controller)

    assert controller.status == RunStatus.COMPLETED
    assert archive.calls[0][1]["amount"] == 42


def test_condition_not_met_skips_without_calling_handler(
    controller: RunController, wf, registry: ActionHandlerRegistry, make_handler
) -> None:
    gated = make_handler({"notified": True})
    registry.register("notify_slack", gated)

    controller.start(
        wf.workflow(
            [
                wf.automated(
                    "notify",
                    "notify_slack",
                    name="Notify Legal",
                    rules=[wf.condition("amount", "equals", 5)],
                ),
                wf.automated("after"),
            ]
        ),
        {"amount": 6},
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert gated.call_count == 0
    assert snapshot.step_statuses["notify"] == StepStatus.SKIPPED
    assert snapshot.step_statuses["after"] == StepStatus.COMPLETED
    assert "Skipped: Notify Legal (conditions not met)" in [e.message for e in snapshot.log]
    assert snapshot.status == RunStatus.COMPLETED


def test_unresolved_condition_field_skips_with_warning(controller: RunController, wf) -> None:
    controller.start(
        wf.workflow([wf.automated("a", rules=[wf.condition("document.status", "equals", "x")])])
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.step_statuses["a"] == StepStatus.SKIPPED
    warnings = [e for e in snapshot.log if e.type == LogType.WARNING]
    assert warnings and "document.status" in warnings[0].message


def test_for_each_loop_is_truncated_and_collects_outputs(
    controller: RunController, wf, registry: ActionHandlerRegistry, make_handler
) -> None:
    remind = make_handler(lambda config, context: {"reminded": context["item"]})
    registry.register("send_reminder", remind)

    controller.start(
        wf.workflow(
            [
                wf.automated(
                    "remind",
                    "send_reminder",
                    rules=[wf.loop("for_each", "approvers", 3)],
                )
            ]
        ),
        {"approvers": ["a", "b", "c", "d", "e"]},
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.status == RunStatus.COMPLETED
    assert remind.call_count == 3
    assert snapshot.context["steps"]["remind"] == [
        {"reminded": "a"},
        {"reminded": "b"},
        {"reminded": "c"},
    ]
    warnings = [e.message for e in snapshot.log if e.type == LogType.WARNING]
    assert any("Loop truncated after 3 of 5" in m for m in warnings)
    assert snapshot.log[-1].message.endswith("after 3 iteration(s)")


def test_while_loop_sees_outputs_of_previous_iteration(
    controller: RunController, wf, registry: ActionHandlerRegistry, make_handler
) -> None:
    bump = make_handler(lambda config, context: {"counter": context["counter"] + 1})
    registry.register("update_metadata", bump)

    controller.start(
        wf.workflow(
            [wf.automated("bump", "update_metadata", rules=[wf.loop("while", "counter < 3", 10)])]
        ),
        {"counter": 0},
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert bump.call_count == 3
    assert snapshot.context["counter"] == 3


def test_fan_out_and_join(controller: RunController, wf, handler) -> None:
    controller.start(
        wf.workflow(
            [
                wf.automated("start", next_steps=["legal", "finance"]),
                wf.automated("legal", next_steps=["sign"]),
                wf.automated("finance", next_steps=["sign"]),
                wf.automated("sign"),
            ]
        )
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.status == RunStatus.COMPLETED
    assert handler.call_count == 4
    started = [e for e in snapshot.log if e.message.startswith("Started")]
    assert [e.step_id for e in started].count("sign") == 1
    branches = {e.step_id: e.branch for e in started}
    assert branches["legal"] == "main"
    assert branches["finance"] == "main.1"
    order = [e.step_id for e in snapshot.log if e.status == StepStatus.COMPLETED]
    assert order.index("sign") > order.index("legal")
    assert order.index("sign") > order.index("finance")


def test_join_runs_when_a_branch_is_skipped(controller: RunController, wf) -> None:
    controller.start(
        wf.workflow(
            [
                wf.automated("start", next_steps=["legal", "finance"]),
                wf.automated(
                    "legal",
                    next_steps=["sign"],
                    rules=[wf.condition("needs_legal", "equals", True)],
                ),
                wf.automated("finance", next_steps=["sign"]),
                wf.automated("sign"),
            ]
        ),
        {"needs_legal": False},
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.step_statuses["legal"] == StepStatus.SKIPPED
    assert snapshot.step_statuses["sign"] == StepStatus.COMPLETED


def test_failure_is_fail_fast_by_default(
    controller: RunController, wf, registry: ActionHandlerRegistry, make_handler
) -> None:
    registry.register("api_call", make_handler(fail_times=10, error="service unavailable"))

    controller.start(
        wf.workflow(
            [
                wf.automated("call", "api_call", name="Call HRIS", retry_count=1),
                wf.automated("after"),
            ]
        )
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.status == RunStatus.FAILED
    assert snapshot.step_statuses["call"] == StepStatus.FAILED
    assert snapshot.step_statuses["after"] == StepStatus.PENDING
    assert "call" in (snapshot.error or "")
    retries = [e for e in snapshot.log if "retrying" in e.message]
    assert len(retries) == 1
    assert any(e.message.startswith("Failed: Call HRIS") for e in snapshot.log)


def test_launch_error_fails_the_run_before_it_settles(
    monkeypatch, controller: RunController, runner: WorkflowRunner, wf
) -> None:
    def broken_dispatch(*args, **kwargs):
        raise RuntimeError("worker pool gone")

    monkeypatch.setattr(runner.dispatcher, "dispatch", broken_dispatch)

    snapshot = controller.start(wf.workflow([wf.human("approve"), wf.automated("file")]))
    _finish(controller)

    settled = controller.snapshot()
    assert settled is not None
    assert settled.status == RunStatus.FAILED
    assert "worker pool gone" in (settled.error or "")
    assert runner.store.load(snapshot.run_id).status == RunStatus.FAILED


def test_failed_run_is_persisted_as_failed(
    controller: RunController,
    runner: WorkflowRunner,
    wf,
    registry: ActionHandlerRegistry,
    make_handler,
) -> None:
    registry.register("api_call", make_handler(fail_times=1))

    snapshot = controller.start(
        wf.workflow([wf.automated("call", "api_call"), wf.automated("after")])
    )
    _finish(controller)

    assert runner.store.load(snapshot.run_id).status == RunStatus.FAILED


def test_branch_failure_lets_other_branches_finish(
    dispatcher: TaskDispatcher, wf, registry: ActionHandlerRegistry, make_handler
) -> None:
    controller = RunController(WorkflowRunner(dispatcher, fail_fast=False, poll_interval=0.01))
    registry.register("api_call", make_handler(fail_times=10))
    slow = make_handler({"archived": True}, delay=0.1)
    registry.register("archive_document", slow)

    controller.start(
        wf.workflow(
            [
                wf.automated("start", next_steps=["broken", "archive"]),
                wf.automated("broken", "api_call", next_steps=[]),
                wf.automated("archive", "archive_document", next_steps=[]),
            ]
        )
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.status == RunStatus.FAILED
    assert snapshot.step_statuses["archive"] == StepStatus.COMPLETED
    assert slow.call_count == 1
    assert "broken" in (snapshot.error or "")


def test_unregistered_handler_fails_the_run_even_without_fail_fast(
    wf, make_handler
) -> None:
    registry = ActionHandlerRegistry()
    other = make_handler(delay=0.2)
    registry.register("send_email", other)
    dispatcher = TaskDispatcher(registry, max_workers=2)
    controller = RunController(WorkflowRunner(dispatcher, fail_fast=False, poll_interval=0.01))
    try:
        controller.start(
            wf.workflow(
                [
                    wf.automated("start", next_steps=["convert", "mail"]),
                    wf.automated("convert", "convert_format", next_steps=[]),
                    wf.automated("mail", next_steps=[]),
                ]
            )
        )
        _finish(controller)
    finally:
        controller.close()

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.status == RunStatus.FAILED
    assert "No action handler registered" in (snapshot.error or "")


def test_log_sequence_is_monotonic(controller: RunController, wf) -> None:
    controller.start(wf.workflow([wf.automated("a"), wf.automated("b")]))
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert [e.sequence for e in snapshot.log] == list(range(1, len(snapshot.log) + 1))
    assert controller.latest_log_entry() == snapshot.log[-1]


def test_overdue_human_task_is_flagged(dispatcher: TaskDispatcher, wf) -> None:
    now = datetime(2030, 6, 1, tzinfo=UTC)
    controller = RunController(WorkflowRunner(dispatcher, poll_interval=0.01, clock=lambda: now))

    controller.start(
        wf.workflow(
            [wf.human("sign", name="Sign NDA", due_date="2030-05-01T00:00:00Z")]
        )
    )
    _finish(controller)

    snapshot = controller.snapshot()
    assert snapshot is not None
    assert snapshot.overdue_steps == ["sign"]
    assert any(e.message.startswith("Overdue: Sign NDA") for e in snapshot.log)
    assert controller.runner.check_overdue(controller.run) == ["sign"]  # type: ignore[arg-type]
    # Overdue is a warning; the task keeps waiting.
    assert snapshot.step_statuses["sign"] == StepStatus.IN_PROGRESS
    controller.cancel()
