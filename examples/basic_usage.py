#!/usr/bin/env python3
"""Programmatic run of a built-in onboarding template.

This demonstrates using the engine components directly:

* load settings from `.env`
* register action handlers for the template's automated tasks
* start a run and complete its human tasks as they come up

Action handlers here only print; a real deployment registers handlers that
talk to email, HR and document systems.
"""

from __future__ import annotations

import argparse
from collections.abc import Mapping
from typing import Any, Sequence

from docflow.engine.config import EngineSettings
from docflow.engine.logging import configure_logging
from docflow.engine.workflow import ActionHandlerRegistry, RunController, build_runner
from docflow.engine.workflow.models import AutomatedTaskType
from docflow.engine.workflow.run_state import RunStatus
from docflow.engine.workflow.templates import instantiate_template


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow template (programmatic example).")
    parser.add_argument("--template", default="onboarding-basic", help="Template id")
    parser.add_argument("--employee", default="Ada Lovelace", help="Employee name for the context")
    return parser.parse_args(argv)


def _print_action(config: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
    print(f"  action: {dict(config)} for {context.get('employee')}")
    return {"done": True}


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    registry = ActionHandlerRegistry()
    for task_type in (
        AutomatedTaskType.API_CALL,
        AutomatedTaskType.SEND_EMAIL,
        AutomatedTaskType.ASSIGN_DATA,
    ):
        registry.register(task_type, _print_action)

    workflow = instantiate_template(args.template)
    controller = RunController(build_runner(settings, registry=registry))
    try:
        controller.start(workflow, {"employee": args.employee})
        while controller.wait(timeout=60):
            if controller.status not in (RunStatus.RUNNING, RunStatus.PAUSED):
                break
            for step_id in controller.waiting_steps():
                print(f"  completing human task {step_id}")
                controller.signal_task_complete(step_id, {"approved": True})

        snapshot = controller.snapshot()
        assert snapshot is not None
        for entry in snapshot.log:
            print(f"{entry.type.value:<7} {entry.message}")
        print(f"Run {snapshot.run_id}: {snapshot.status.value}")
        return 0 if snapshot.status == RunStatus.COMPLETED else 1
    finally:
        controller.close()


if __name__ == "__main__":
    raise SystemExit(main())
