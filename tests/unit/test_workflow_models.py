from __future__ import annotations

import pytest

from docflow.engine.errors import (
    DuplicateNextStepError,
    DuplicateStepError,
    GraphCycleError,
    UnknownStepReferenceError,
    WorkflowValidationError,
)
from docflow.engine.workflow.models import (
    AutomatedTask,
    AutomatedTaskType,
    HumanTask,
    TaskCategory,
    task_category,
)
from docflow.engine.workflow.task_configs import GenericTaskConfig, HttpCallConfig
from docflow.engine.workflow.validation import (
    find_cycle,
    parse_workflow,
    predecessors,
    reachable_step_ids,
)


def test_json_form_round_trips(wf) -> None:
    workflow = wf.workflow(
        [
            wf.automated(
                "a",
                "api_call",
                config={"url": "https://hr.example.com/hook", "method": "post"},
                retry_count=2,
                timeout=10,
                rules=[wf.condition("document.status", "equals", "draft")],
            ),
            wf.human("b", due_date="2030-01-01T00:00:00Z"),
            wf.automated("c", rules=[wf.loop("for_each", "items", 5)]),
        ]
    )

    again = parse_workflow(workflow.to_json())

    assert again.structure() == workflow.structure()
    assert workflow.to_json()["steps"][0]["task"]["taskType"] == "api_call"
    assert workflow.to_json()["steps"][2]["rules"][0]["settings"]["maxIterations"] == 5


def test_snake_case_input_is_accepted(wf) -> None:
    raw = wf.raw([wf.automated("a")])
    raw["steps"][0]["task"]["task_type"] = raw["steps"][0]["task"].pop("taskType")

    workflow = parse_workflow(raw)

    assert isinstance(workflow.steps[0].task, AutomatedTask)
    assert workflow.steps[0].task.task_type == AutomatedTaskType.SEND_EMAIL


def test_task_variants_are_discriminated_by_type(wf) -> None:
    workflow = wf.workflow([wf.human("a"), wf.automated("b")])

    assert isinstance(workflow.steps[0].task, HumanTask)
    assert workflow.steps[0].is_human is True
    assert isinstance(workflow.steps[1].task, AutomatedTask)


def test_unknown_fields_are_rejected(wf) -> None:
    raw = wf.raw([wf.automated("a")])
    raw["steps"][0]["task"]["unexpected"] = True

    with pytest.raises(WorkflowValidationError):
        parse_workflow(raw)


def test_duplicate_step_ids_are_rejected(wf) -> None:
    with pytest.raises(DuplicateStepError) as excinfo:
        wf.workflow([wf.automated("a"), wf.automated("a")])

    assert excinfo.value.step_ids == ["a"]


def test_unknown_next_step_is_rejected(wf) -> None:
    with pytest.raises(UnknownStepReferenceError) as excinfo:
        wf.workflow([wf.automated("a", next_steps=["missing"])])

    assert excinfo.value.target == "missing"


def test_repeated_next_step_is_rejected(wf) -> None:
    with pytest.raises(DuplicateNextStepError) as excinfo:
        wf.workflow(
            [
                wf.automated("a", next_steps=["b", "c", "b"]),
                wf.human("b", next_steps=[]),
                wf.automated("c", next_steps=[]),
            ]
        )

    assert excinfo.value.step_id == "a"
    assert excinfo.value.targets == ["b"]


def test_cycles_are_rejected(wf) -> None:
    with pytest.raises(GraphCycleError) as excinfo:
        wf.workflow([wf.automated("a", next_steps=["b"]), wf.automated("b", next_steps=["a"])])

    assert excinfo.value.cycle[0] == excinfo.value.cycle[-1]


def test_implicit_linear_edges_count_towards_cycles(wf) -> None:
    # b -> c is implicit (list order); c points back at b.
    with pytest.raises(GraphCycleError):
        wf.workflow(
            [wf.automated("a"), wf.automated("b"), wf.automated("c", next_steps=["b"])]
        )


def test_retry_count_is_bounded(wf) -> None:
    with pytest.raises(WorkflowValidationError):
        wf.workflow([wf.automated("a", retry_count=11)])


def test_max_iterations_is_required_and_bounded(wf) -> None:
    step = wf.automated("a", rules=[wf.loop("for_each", "items", 0)])
    with pytest.raises(WorkflowValidationError):
        wf.workflow([step])


def test_one_loop_rule_per_step(wf) -> None:
    step = wf.automated(
        "a",
        rules=[wf.loop("for_each", "items", rule_id="l1"), wf.loop("for_each", "more", rule_id="l2")],
    )
    with pytest.raises(WorkflowValidationError, match="at most one"):
        wf.workflow([step])


def test_while_condition_must_be_a_safe_expression(wf) -> None:
    step = wf.automated("a", rules=[wf.loop("while", "__import__('os').getcwd()")])
    with pytest.raises(WorkflowValidationError, match="loop condition"):
        wf.workflow([step])


def test_typed_config_is_validated(wf) -> None:
    with pytest.raises(WorkflowValidationError, match="update_status"):
        wf.workflow([wf.automated("a", "update_status", config={})])

    with pytest.raises(WorkflowValidationError):
        wf.workflow([wf.automated("a", "api_call", config={"url": "ftp://example.com"})])


def test_untyped_task_types_accept_any_config(wf) -> None:
    workflow = wf.workflow([wf.automated("a", "sync_data", config={"anything": [1, 2]})])
    task = workflow.steps[0].task
    assert isinstance(task, AutomatedTask)

    config = task.typed_config()

    assert isinstance(config, GenericTaskConfig)
    assert config.model_dump()["anything"] == [1, 2]


def test_http_config_normalizes_method() -> None:
    config = HttpCallConfig.model_validate({"url": "https://example.com", "method": "patch"})
    assert config.method == "PATCH"


def test_task_categories() -> None:
    assert task_category(AutomatedTaskType.SEND_EMAIL) == TaskCategory.NOTIFICATION
    assert task_category(AutomatedTaskType.API_CALL) == TaskCategory.INTEGRATION
    assert task_category(AutomatedTaskType.EXTRACT_DATA) == TaskCategory.DATA
    assert task_category(AutomatedTaskType.ARCHIVE_DOCUMENT) == TaskCategory.DOCUMENT


def test_successors_prefer_explicit_next_steps(wf) -> None:
    workflow = wf.workflow(
        [
            wf.automated("a", next_steps=["c"]),
            wf.automated("b"),
            wf.automated("c"),
        ]
    )

    assert workflow.successors("a") == ["c"]
    assert workflow.successors("b") == ["c"]
    assert workflow.successors("c") == []
    assert reachable_step_ids(workflow) == {"a", "c"}


def test_predecessors_describe_joins(wf) -> None:
    workflow = wf.workflow(
        [
            wf.automated("a", next_steps=["b", "c"]),
            wf.automated("b", next_steps=["d"]),
            wf.automated("c", next_steps=["d"]),
            wf.automated("d"),
        ]
    )

    assert find_cycle(workflow) is None
    assert predecessors(workflow)["d"] == {"b", "c"}
    assert predecessors(workflow)["a"] == set()


def test_empty_workflow_is_valid(wf) -> None:
    workflow = wf.workflow([])

    assert workflow.entry_step is None
    assert reachable_step_ids(workflow) == set()
