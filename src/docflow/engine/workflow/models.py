"""Workflow definition model.

Pure data: a workflow is one trigger plus an ordered list of steps, each step
holding one task and zero or more rules. Tasks and rules are tagged variants
discriminated by their `type` field.

All models are immutable. Python attributes are snake_case; the JSON form uses
camelCase (`taskType`, `nextSteps`, `maxIterations`, ...). Both are accepted on
input.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .task_configs import TaskConfig, parse_task_config

MAX_RETRY_COUNT = 10
MAX_LOOP_ITERATIONS = 1000


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class TriggerType(str, Enum):
    DOCUMENT_CREATED = "document_created"
    DOCUMENT_UPDATED = "document_updated"
    STATUS_CHANGED = "status_changed"
    COMMENT_ADDED = "comment_added"
    APPROVAL_COMPLETED = "approval_completed"
    SCHEDULED = "scheduled"
    MANUAL_TRIGGER = "manual_trigger"
    DOCUMENT_SHARED = "document_shared"
    TAG_ADDED = "tag_added"
    VERSION_CREATED = "version_created"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class HumanTaskType(str, Enum):
    APPROVE_DOCUMENT = "approve_document"
    REVIEW_DOCUMENT = "review_document"
    SIGN_DOCUMENT = "sign_document"
    VERIFY_DOCUMENT = "verify_document"
    INPUT_DATA = "input_data"
    VALIDATE_DATA = "validate_data"
    RESOLVE_ISSUE = "resolve_issue"
    QUALITY_CHECK = "quality_check"
    FINAL_APPROVAL = "final_approval"
    ACKNOWLEDGE = "acknowledge"
    SCHEDULE_MEETING = "schedule_meeting"
    CUSTOM_TASK = "custom_task"


class AutomatedTaskType(str, Enum):
    # Document
    UPDATE_STATUS = "update_status"
    MOVE_DOCUMENT = "move_document"
    COPY_DOCUMENT = "copy_document"
    CONVERT_FORMAT = "convert_format"
    ARCHIVE_DOCUMENT = "archive_document"
    GENERATE_DOCUMENT = "generate_document"
    MERGE_DOCUMENTS = "merge_documents"
    ASSIGN_DATA = "assign_data"
    # Notification
    SEND_EMAIL = "send_email"
    SEND_REMINDER = "send_reminder"
    NOTIFY_SLACK = "notify_slack"
    NOTIFY_GOOGLE = "notify_google"
    NOTIFY_TEAMS = "notify_teams"
    # Data
    UPDATE_METADATA = "update_metadata"
    EXTRACT_DATA = "extract_data"
    VALIDATE_DATA = "validate_data"
    SYNC_DATA = "sync_data"
    # Integration
    API_CALL = "api_call"
    UPDATE_SYSTEM = "update_system"
    TRIGGER_WEBHOOK = "trigger_webhook"
    CUSTOM_AUTOMATION = "custom_automation"


class TaskCategory(str, Enum):
    DOCUMENT = "document"
    NOTIFICATION = "notification"
    DATA = "data"
    INTEGRATION = "integration"


_CATEGORY_MEMBERS: dict[TaskCategory, tuple[AutomatedTaskType, ...]] = {
    TaskCategory.DOCUMENT: (
        AutomatedTaskType.UPDATE_STATUS,
        AutomatedTaskType.MOVE_DOCUMENT,
        AutomatedTaskType.COPY_DOCUMENT,
        AutomatedTaskType.CONVERT_FORMAT,
        AutomatedTaskType.ARCHIVE_DOCUMENT,
        AutomatedTaskType.GENERATE_DOCUMENT,
        AutomatedTaskType.MERGE_DOCUMENTS,
        AutomatedTaskType.ASSIGN_DATA,
    ),
    TaskCategory.NOTIFICATION: (
        AutomatedTaskType.SEND_EMAIL,
        AutomatedTaskType.SEND_REMINDER,
        AutomatedTaskType.NOTIFY_SLACK,
        AutomatedTaskType.NOTIFY_GOOGLE,
        AutomatedTaskType.NOTIFY_TEAMS,
    ),
    TaskCategory.DATA: (
        AutomatedTaskType.UPDATE_METADATA,
        AutomatedTaskType.EXTRACT_DATA,
        AutomatedTaskType.VALIDATE_DATA,
        AutomatedTaskType.SYNC_DATA,
    ),
    TaskCategory.INTEGRATION: (
        AutomatedTaskType.API_CALL,
        AutomatedTaskType.UPDATE_SYSTEM,
        AutomatedTaskType.TRIGGER_WEBHOOK,
        AutomatedTaskType.CUSTOM_AUTOMATION,
    ),
}

AUTOMATED_TASK_CATEGORIES: dict[AutomatedTaskType, TaskCategory] = {
    task_type: category
    for category, members in _CATEGORY_MEMBERS.items()
    for task_type in members
}


def task_category(task_type: AutomatedTaskType) -> TaskCategory:
    return AUTOMATED_TASK_CATEGORIES[AutomatedTaskType(task_type)]


class WorkflowTrigger(_WireModel):
    id: str
    type: TriggerType
    name: str
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def _none_is_empty(cls, value: object) -> object:
        return {} if value is None else value


class HumanTask(_WireModel):
    """Work done by a person; completion must be signalled to the engine."""

    type: Literal["human"] = "human"
    id: str
    name: str
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    task_type: HumanTaskType
    assignee: str | None = None
    due_date: datetime | None = None
    priority: Literal["low", "medium", "high"] | None = None
    instructions: str | None = None

    def is_overdue(self, now: datetime) -> bool:
        if self.due_date is None:
            return False
        due = self.due_date if self.due_date.tzinfo else self.due_date.replace(tzinfo=UTC)
        return now > due


class AutomatedTask(_WireModel):
    """Work done by a registered action handler."""

    type: Literal["automated"] = "automated"
    id: str
    name: str
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    task_type: AutomatedTaskType
    config: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0, le=MAX_RETRY_COUNT)
    timeout: float | None = Field(default=None, gt=0, description="Seconds per attempt")

    @field_validator("config", mode="before")
    @classmethod
    def _none_is_empty(cls, value: object) -> object:
        return {} if value is None else value

    @field_validator("retry_count", mode="before")
    @classmethod
    def _none_is_zero(cls, value: object) -> object:
        return 0 if value is None else value

    @model_validator(mode="after")
    def _check_typed_config(self) -> AutomatedTask:
        try:
            self.typed_config()
        except ValueError as e:
            raise ValueError(f"Invalid config for task type '{self.task_type.value}': {e}") from e
        return self

    @property
    def category(self) -> TaskCategory:
        return task_category(self.task_type)

    def typed_config(self) -> TaskConfig:
        return parse_task_config(self.task_type.value, self.config)


Task = Annotated[HumanTask | AutomatedTask, Field(discriminator="type")]


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class LoopType(str, Enum):
    FOR_EACH = "for_each"
    WHILE = "while"
    DO_WHILE = "do_while"


class ConditionSettings(_WireModel):
    field: str = Field(min_length=1, description="Dotted path into the run context")
    operator: ConditionOperator
    value: Any = None


class LoopSettings(_WireModel):
    loop_type: LoopType
    loop_condition: str = Field(
        min_length=1,
        description="Collection path for for_each, boolean expression for while/do_while",
    )
    max_iterations: int = Field(ge=1, le=MAX_LOOP_ITERATIONS)


class ConditionRule(_WireModel):
    id: str
    type: Literal["condition"] = "condition"
    settings: ConditionSettings


class LoopRule(_WireModel):
    id: str
    type: Literal["loop"] = "loop"
    settings: LoopSettings


WorkflowRule = Annotated[ConditionRule | LoopRule, Field(discriminator="type")]


class WorkflowStep(_WireModel):
    id: str
    task: Task
    rules: list[WorkflowRule] = Field(default_factory=list)
    next_steps: list[str] | None = None

    @field_validator("rules", mode="before")
    @classmethod
    def _none_is_empty(cls, value: object) -> object:
        return [] if value is None else value

    @property
    def condition_rules(self) -> list[ConditionRule]:
        return [r for r in self.rules if isinstance(r, ConditionRule)]

    @property
    def loop_rules(self) -> list[LoopRule]:
        return [r for r in self.rules if isinstance(r, LoopRule)]

    @property
    def loop_rule(self) -> LoopRule | None:
        loops = self.loop_rules
        return loops[0] if loops else None

    @property
    def is_human(self) -> bool:
        return isinstance(self.task, HumanTask)


class Workflow(_WireModel):
    id: str
    name: str
    description: str | None = None
    trigger: WorkflowTrigger
    steps: list[WorkflowStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    active: bool = True

    @property
    def entry_step(self) -> WorkflowStep | None:
        return self.steps[0] if self.steps else None

    def get_step(self, step_id: str) -> WorkflowStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def successors(self, step_id: str) -> list[str]:
        """Ids of the steps that follow `step_id`.

        Explicit `next_steps` win; otherwise flow is linear in list order.
        """

        for idx, step in enumerate(self.steps):
            if step.id != step_id:
                continue
            if step.next_steps is not None:
                return list(step.next_steps)
            if idx + 1 < len(self.steps):
                return [self.steps[idx + 1].id]
            return []
        raise KeyError(step_id)

    def structure(self) -> dict[str, Any]:
        """JSON form without timestamps, for structural comparison."""

        return self.model_dump(mode="json", by_alias=True, exclude={"created_at", "updated_at"})

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> Workflow:
        return cls.model_validate(obj)
