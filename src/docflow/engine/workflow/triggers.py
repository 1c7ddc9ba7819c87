from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .models import TriggerType, Workflow


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """A signal that something happened to a document.

    Events only describe the fact; routing them to workflows is
    `matching_workflows`, and starting a run is the controller's job.
    """

    type: TriggerType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_manual(self) -> bool:
        return self.type == TriggerType.MANUAL_TRIGGER

    def to_context(self) -> dict[str, Any]:
        return {"type": self.type.value, "payload": dict(self.payload)}


def trigger_matches(workflow: Workflow, event: TriggerEvent) -> bool:
    """True when `event` should start `workflow`.

    The trigger types must match, and every key in the trigger's `config` that
    also appears in the payload must carry an equal value. Inactive workflows
    only match manual triggers.
    """

    trigger = workflow.trigger
    if trigger.type != event.type:
        return False
    if not workflow.active and not event.is_manual:
        return False
    for key, expected in trigger.config.items():
        if key in event.payload and event.payload[key] != expected:
            return False
    return True


def matching_workflows(workflows: Iterable[Workflow], event: TriggerEvent) -> list[Workflow]:
    return [wf for wf in workflows if trigger_matches(wf, event)]
