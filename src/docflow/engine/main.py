"""CLI entrypoint for the document workflow engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import uvicorn
from pydantic import ValidationError

from docflow import __version__
from docflow.engine.config import EngineSettings
from docflow.engine.errors import InvalidContextError, WorkflowValidationError
from docflow.engine.logging import configure_logging
from docflow.engine.workflow.controller import RunController, build_runner
from docflow.engine.workflow.handlers import ActionHandlerRegistry, build_default_registry
from docflow.engine.workflow.models import AutomatedTaskType, Workflow
from docflow.engine.workflow.run_state import RunSnapshot, RunStatus
from docflow.engine.workflow.storage import read_workflow_file
from docflow.engine.workflow.templates import TemplateCategory, list_templates
from docflow.server.app import create_app

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docflow",
        description="Document workflow engine",
    )
    parser.add_argument("--version", action="version", version=f"docflow {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a workflow definition file")
    validate.add_argument("path", type=Path, help="Path to a workflow JSON file")

    run = subparsers.add_parser("run", help="Run a workflow definition to completion")
    run.add_argument("path", type=Path, help="Path to a workflow JSON file")
    context = run.add_mutually_exclusive_group()
    context.add_argument("--context", default=None, help="Initial run context as a JSON object")
    context.add_argument(
        "--context-file",
        type=Path,
        default=None,
        help="Path to a JSON file holding the initial run context",
    )
    run.add_argument(
        "--auto-approve",
        action="store_true",
        help="Complete every human task as soon as it is waiting",
    )
    run.add_argument(
        "--no-fail-fast",
        action="store_true",
        help="Let other branches finish when a step fails",
    )
    run.add_argument(
        "--simulate",
        action="store_true",
        help="Replace every action handler with one that only echoes its config",
    )
    run.add_argument(
        "--timeout-seconds",
        type=float,
        default=0.0,
        help="Give up after this many seconds (0 means no timeout)",
    )

    templates = subparsers.add_parser("templates", help="List built-in workflow templates")
    templates.add_argument(
        "--category",
        choices=[c.value for c in TemplateCategory],
        default=None,
        help="Only list templates in this category",
    )

    serve = subparsers.add_parser("serve", help="Serve the run observation/control API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8000, help="Bind port")

    return parser


def _load_context(args: argparse.Namespace) -> dict[str, Any]:
    if args.context is not None:
        raw = args.context
    elif args.context_file is not None:
        raw = args.context_file.read_text(encoding="utf-8")
    else:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidContextError(f"Context is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise InvalidContextError("Context must be a JSON object")
    return value


def _echo_handler(config: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
    return {"simulated": True, "config": dict(config)}


def _simulated_registry() -> ActionHandlerRegistry:
    registry = ActionHandlerRegistry()
    for task_type in AutomatedTaskType:
        registry.register(task_type, _echo_handler)
    return registry


def _print_log(snapshot: RunSnapshot) -> None:
    for entry in snapshot.log:
        where = f" {entry.step_id}" if entry.step_id else ""
        branch = f" [{entry.branch}]" if entry.branch else ""
        print(f"{entry.sequence:>4} {entry.type.value:<7}{where}{branch}: {entry.message}")


def _run_workflow(
    workflow: Workflow,
    context: dict[str, Any],
    *,
    settings: EngineSettings,
    registry: ActionHandlerRegistry,
    auto_approve: bool,
    timeout_seconds: float,
) -> int:
    controller = RunController(build_runner(settings, registry=registry))
    try:
        controller.start(workflow, context)
        while True:
            settled = controller.wait(timeout=timeout_seconds or None)
            if not settled:
                logger.error("Run timed out", extra={"timeout_seconds": timeout_seconds})
                controller.cancel()
                break
            if controller.status not in (RunStatus.RUNNING, RunStatus.PAUSED):
                break
            waiting = controller.waiting_steps()
            if not waiting:
                continue
            if not auto_approve:
                print(
                    "Run is waiting on human tasks: " + ", ".join(waiting),
                    file=sys.stderr,
                )
                controller.cancel()
                break
            for step_id in waiting:
                controller.signal_task_complete(step_id, {"approved": True})

        snapshot = controller.snapshot()
        assert snapshot is not None
        _print_log(snapshot)
        print(f"Run {snapshot.run_id}: {snapshot.status.value}")
        if snapshot.error:
            print(snapshot.error, file=sys.stderr)
        return 0 if snapshot.status == RunStatus.COMPLETED else 1
    finally:
        controller.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            workflow = read_workflow_file(args.path)
            print(f"OK: {workflow.id} ({len(workflow.steps)} steps)")
            return 0

        if args.command == "run":
            workflow = read_workflow_file(args.path)
            context = _load_context(args)
            if args.no_fail_fast:
                settings = settings.model_copy(update={"fail_fast": False})
            registry = (
                _simulated_registry() if args.simulate else build_default_registry(settings)
            )
            return _run_workflow(
                workflow,
                context,
                settings=settings,
                registry=registry,
                auto_approve=args.auto_approve,
                timeout_seconds=args.timeout_seconds,
            )

        if args.command == "templates":
            for template in list_templates(args.category):
                print(
                    f"{template.id:<32} {template.category.value:<12} "
                    f"{template.step_count:>2} steps  {template.name}"
                )
            return 0

        if args.command == "serve":
            uvicorn.run(create_app(), host=args.host, port=args.port)
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (WorkflowValidationError, InvalidContextError) as e:
        print(str(e), file=sys.stderr)
        return 2

    except FileNotFoundError as e:
        print(f"File not found: {e.filename}", file=sys.stderr)
        return 2

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
