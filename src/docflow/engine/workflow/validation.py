"""Workflow graph validation.

Validation runs when a definition is loaded, saved, or started; a run never
discovers a malformed graph halfway through.

Checks:
- step ids are unique
- every `nextSteps` entry names an existing step, at most once
- the successor graph (explicit `nextSteps` plus implicit linear edges) is acyclic
- a step carries at most one loop rule
- while/do_while loop conditions parse as safe expressions
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from pydantic import ValidationError

from docflow.engine.errors import (
    DuplicateNextStepError,
    DuplicateStepError,
    GraphCycleError,
    UnknownStepReferenceError,
    WorkflowValidationError,
)

from .expressions import validate_expression
from .models import LoopType, Workflow

logger = logging.getLogger(__name__)


def parse_workflow(raw: dict[str, Any]) -> Workflow:
    """Validate a raw JSON dict into a Workflow and check its graph."""

    try:
        workflow = Workflow.model_validate(raw)
    except ValidationError as e:
        raise WorkflowValidationError(f"Invalid workflow definition: {e}") from e
    validate_workflow(workflow)
    return workflow


def validate_workflow(workflow: Workflow) -> None:
    counts = Counter(step.id for step in workflow.steps)
    duplicates = sorted(step_id for step_id, n in counts.items() if n > 1)
    if duplicates:
        raise DuplicateStepError(duplicates)

    known = set(counts)
    for step in workflow.steps:
        for target in step.next_steps or []:
            if target not in known:
                raise UnknownStepReferenceError(step.id, target)
        repeated = sorted(t for t, n in Counter(step.next_steps or []).items() if n > 1)
        if repeated:
            raise DuplicateNextStepError(step.id, repeated)
        if len(step.loop_rules) > 1:
            raise WorkflowValidationError(
                f"Step '{step.id}' has {len(step.loop_rules)} loop rules; at most one is allowed"
            )
        loop = step.loop_rule
        if loop is not None and loop.settings.loop_type != LoopType.FOR_EACH:
            errors = validate_expression(loop.settings.loop_condition)
            if errors:
                raise WorkflowValidationError(
                    f"Step '{step.id}' loop condition is invalid: {'; '.join(errors)}"
                )

    cycle = find_cycle(workflow)
    if cycle is not None:
        raise GraphCycleError(cycle)

    unreachable = known - reachable_step_ids(workflow)
    if unreachable:
        logger.warning(
            "Workflow has steps unreachable from the entry step",
            extra={"workflow_id": workflow.id, "step_ids": sorted(unreachable)},
        )


def find_cycle(workflow: Workflow) -> list[str] | None:
    """Return one cycle as a path (first == last), or None."""

    graph = {step.id: workflow.successors(step.id) for step in workflow.steps}
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for nxt in graph.get(node, []):
            if nxt in visiting:
                return path[path.index(nxt) :] + [nxt]
            if nxt not in done:
                found = visit(nxt)
                if found is not None:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for step in workflow.steps:
        if step.id not in done:
            found = visit(step.id)
            if found is not None:
                return found
    return None


def reachable_step_ids(workflow: Workflow) -> set[str]:
    entry = workflow.entry_step
    if entry is None:
        return set()
    seen: set[str] = set()
    stack = [entry.id]
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(workflow.successors(node))
    return seen


def predecessors(workflow: Workflow) -> dict[str, set[str]]:
    """Map each reachable step to the reachable steps that lead into it."""

    reachable = reachable_step_ids(workflow)
    preds: dict[str, set[str]] = {step_id: set() for step_id in reachable}
    for step_id in reachable:
        for nxt in workflow.successors(step_id):
            preds[nxt].add(step_id)
    return preds
