"""Error and warning taxonomy for the workflow engine.

Validation errors are raised when a definition is loaded or a run is started,
never halfway through a run. Task-level errors (`HandlerError`,
`TaskTimeoutError`, `UnregisteredActionError`) are caught by the dispatcher and
turned into failed task results. Warnings are never fatal: they end up in the
run log and execution continues with a safe default.
"""

from __future__ import annotations


class DocflowError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(DocflowError, ValueError):
    """A workflow definition is malformed."""


class DuplicateStepError(WorkflowValidationError):
    def __init__(self, step_ids: list[str]) -> None:
        self.step_ids = step_ids
        super().__init__(f"Duplicate step ids: {', '.join(step_ids)}")


class UnknownStepReferenceError(WorkflowValidationError):
    def __init__(self, step_id: str, target: str) -> None:
        self.step_id = step_id
        self.target = target
        super().__init__(f"Step '{step_id}' references unknown next step '{target}'")


class DuplicateNextStepError(WorkflowValidationError):
    def __init__(self, step_id: str, targets: list[str]) -> None:
        self.step_id = step_id
        self.targets = targets
        super().__init__(f"Step '{step_id}' lists next steps more than once: {', '.join(targets)}")


class GraphCycleError(WorkflowValidationError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Workflow step graph contains a cycle: {' -> '.join(cycle)}")


class InvalidContextError(DocflowError, ValueError):
    """The initial run context is not well-formed structured data."""


class InvalidStateError(DocflowError):
    """An operation is not allowed in the current run state."""


class InactiveWorkflowError(InvalidStateError):
    """An automated trigger tried to start an inactive workflow."""


class UnregisteredActionError(DocflowError, LookupError):
    def __init__(self, task_type: str) -> None:
        self.task_type = task_type
        super().__init__(f"No action handler registered for task type '{task_type}'")


class HandlerError(DocflowError):
    """An action handler raised or returned something unusable."""


class TaskTimeoutError(HandlerError, TimeoutError):
    def __init__(self, task_type: str, timeout_seconds: float) -> None:
        self.task_type = task_type
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Action '{task_type}' timed out after {timeout_seconds:g}s")


class WorkflowNotFoundError(DocflowError, LookupError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class RunNotFoundError(DocflowError, LookupError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class EngineWarning(UserWarning):
    """Non-fatal condition reported to the run log."""

    def __init__(self, message: str, *, step_id: str | None = None) -> None:
        self.message = message
        self.step_id = step_id
        super().__init__(message)


class LoopTruncatedWarning(EngineWarning):
    pass


class ConditionFieldUnresolvedWarning(EngineWarning):
    pass


class OverdueTaskWarning(EngineWarning):
    pass
