"""Built-in HR workflow templates.

Templates are stored as raw camelCase definitions and parsed on demand, so
every instantiation gets fresh timestamps and goes through full validation.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from docflow.engine.errors import WorkflowNotFoundError

from .models import Workflow
from .validation import parse_workflow


class TemplateCategory(str, Enum):
    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"
    RECRUITMENT = "recruitment"
    PERFORMANCE = "performance"
    TRAINING = "training"
    LEAVE = "leave"


CATEGORY_NAMES: dict[TemplateCategory, str] = {
    TemplateCategory.ONBOARDING: "Onboarding",
    TemplateCategory.OFFBOARDING: "Offboarding",
    TemplateCategory.RECRUITMENT: "Recruitment",
    TemplateCategory.PERFORMANCE: "Performance Review",
    TemplateCategory.TRAINING: "Training",
    TemplateCategory.LEAVE: "Leave Management",
}


@dataclass(frozen=True, slots=True)
class WorkflowTemplate:
    id: str
    category: TemplateCategory
    definition: dict[str, Any]

    @property
    def name(self) -> str:
        return str(self.definition["name"])

    @property
    def description(self) -> str | None:
        return self.definition.get("description")

    @property
    def step_count(self) -> int:
        return len(self.definition.get("steps", []))

    def instantiate(self, workflow_id: str | None = None) -> Workflow:
        raw = copy.deepcopy(self.definition)
        now = datetime.now(tz=UTC).isoformat()
        raw["createdAt"] = now
        raw["updatedAt"] = now
        if workflow_id is not None:
            raw["id"] = workflow_id
        return parse_workflow(raw)


def _manual(name: str, description: str) -> dict[str, Any]:
    return {"id": "trigger-1", "type": "manual_trigger", "name": name, "description": description}


def _human(n: int, name: str, task_type: str, assignee: str, instructions: str | None = None) -> dict[str, Any]:
    task: dict[str, Any] = {
        "id": f"task-{n}",
        "type": "human",
        "name": name,
        "status": "pending",
        "taskType": task_type,
        "assignee": assignee,
    }
    if instructions:
        task["instructions"] = instructions
    return {"id": f"step-{n}", "task": task, "rules": []}


def _automated(n: int, name: str, task_type: str, config: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": f"step-{n}",
        "task": {
            "id": f"task-{n}",
            "type": "automated",
            "name": name,
            "status": "pending",
            "taskType": task_type,
            "config": config,
        },
        "rules": [],
    }


_DEFINITIONS: list[tuple[TemplateCategory, dict[str, Any]]] = [
    (
        TemplateCategory.ONBOARDING,
        {
            "id": "onboarding-basic",
            "name": "Basic Employee Onboarding",
            "description": "Standard onboarding process for new employees",
            "trigger": _manual("New Employee Hired", "Triggered when a new employee is hired"),
            "steps": [
                _automated(
                    1,
                    "Create Email Account",
                    "api_call",
                    {"service": "gsuite", "action": "create_account"},
                ),
                _human(2, "Review & Sign Documents", "sign_document", "new_employee"),
                _automated(3, "Send Welcome Email", "send_email", {"template": "welcome_email"}),
                _human(
                    4,
                    "Provide Workspace Setup Instructions",
                    "input_data",
                    "it_department",
                    "Ensure new employee has a desk, laptop, and other necessary items.",
                ),
                _human(
                    5,
                    "Schedule Introductory Meetings",
                    "schedule_meeting",
                    "hr_manager",
                    "Schedule 1:1s with the team and manager for the new hire.",
                ),
                _automated(
                    6,
                    "Assign Mandatory Training Modules",
                    "assign_data",
                    {"trainingModules": ["HR Policies", "Workplace Safety"]},
                ),
                _human(
                    7,
                    "Feedback Check-In",
                    "validate_data",
                    "hr_manager",
                    "Ensure the new hire is settling in and address any concerns.",
                ),
            ],
            "active": True,
        },
    ),
    (
        TemplateCategory.OFFBOARDING,
        {
            "id": "offboarding-basic",
            "name": "Standard Offboarding Process",
            "description": "Complete offboarding workflow for departing employees",
            "trigger": _manual(
                "Employee Departure Notice", "Triggered when employee resignation is received"
            ),
            "steps": [
                _human(1, "Exit Interview", "input_data", "hr_manager"),
                _automated(2, "Revoke System Access", "api_call", {"action": "revoke_access"}),
            ],
            "active": True,
        },
    ),
    (
        TemplateCategory.RECRUITMENT,
        {
            "id": "recruitment-full",
            "name": "Full Recruitment Pipeline",
            "description": "End-to-end recruitment process from job posting to offer letter",
            "trigger": _manual("New Position Opening", "Triggered when new position is approved"),
            "steps": [_human(1, "Create Job Description", "input_data", "hiring_manager")],
            "active": True,
        },
    ),
    (
        TemplateCategory.PERFORMANCE,
        {
            "id": "performance-review-quarterly",
            "name": "Quarterly Performance Review",
            "description": "Standard quarterly performance evaluation process",
            "trigger": {
                "id": "trigger-1",
                "type": "scheduled",
                "name": "Quarterly Review",
                "description": "Triggered at the start of each quarter",
            },
            "steps": [_human(1, "Self Assessment", "input_data", "employee")],
            "active": True,
        },
    ),
    (
        TemplateCategory.TRAINING,
        {
            "id": "training-onboarding",
            "name": "New Employee Training",
            "description": "Training workflow for new employees",
            "trigger": _manual("Start Training", "Triggered when new employee starts"),
            "steps": [],
            "active": True,
        },
    ),
    (
        TemplateCategory.LEAVE,
        {
            "id": "leave-request",
            "name": "Leave Request Process",
            "description": "Standard leave request and approval workflow",
            "trigger": _manual("Leave Request", "Triggered when employee submits leave request"),
            "steps": [],
            "active": True,
        },
    ),
]

TEMPLATES: dict[str, WorkflowTemplate] = {
    definition["id"]: WorkflowTemplate(id=definition["id"], category=category, definition=definition)
    for category, definition in _DEFINITIONS
}


def list_templates(category: TemplateCategory | str | None = None) -> list[WorkflowTemplate]:
    if category is None:
        return list(TEMPLATES.values())
    wanted = TemplateCategory(getattr(category, "value", category))
    return [t for t in TEMPLATES.values() if t.category == wanted]


def get_template(template_id: str) -> WorkflowTemplate:
    try:
        return TEMPLATES[template_id]
    except KeyError:
        raise WorkflowNotFoundError(template_id) from None


def instantiate_template(template_id: str, workflow_id: str | None = None) -> Workflow:
    return get_template(template_id).instantiate(workflow_id)
