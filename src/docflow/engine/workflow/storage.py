"""Workflow definition storage.

The engine only needs two hooks, `load_workflow` and `save_workflow`; where
definitions actually live is up to the host application. `JsonWorkflowStore`
keeps one JSON file per workflow in a directory, in the camelCase wire form.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Protocol

from docflow.engine.errors import WorkflowNotFoundError, WorkflowValidationError

from .models import Workflow
from .validation import parse_workflow, validate_workflow

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class WorkflowStore(Protocol):
    def load_workflow(self, workflow_id: str) -> Workflow: ...

    def save_workflow(self, workflow: Workflow) -> None: ...


class WorkflowCatalog(WorkflowStore, Protocol):
    def list_workflows(self) -> list[Workflow]: ...

    def delete_workflow(self, workflow_id: str) -> None: ...


class InMemoryWorkflowStore:
    def __init__(self, workflows: list[Workflow] | None = None) -> None:
        self._lock = threading.Lock()
        self._workflows: dict[str, Workflow] = {}
        for wf in workflows or []:
            self.save_workflow(wf)

    def load_workflow(self, workflow_id: str) -> Workflow:
        with self._lock:
            try:
                return self._workflows[workflow_id]
            except KeyError:
                raise WorkflowNotFoundError(workflow_id) from None

    def save_workflow(self, workflow: Workflow) -> None:
        validate_workflow(workflow)
        with self._lock:
            self._workflows[workflow.id] = workflow

    def list_workflows(self) -> list[Workflow]:
        with self._lock:
            return sorted(self._workflows.values(), key=lambda wf: wf.id)

    def delete_workflow(self, workflow_id: str) -> None:
        with self._lock:
            if self._workflows.pop(workflow_id, None) is None:
                raise WorkflowNotFoundError(workflow_id)


class JsonWorkflowStore:
    def __init__(self, directory: Path) -> None:
        self._dir = directory
        self._lock = threading.Lock()

    def _path(self, workflow_id: str) -> Path:
        if not _SAFE_ID.match(workflow_id):
            raise WorkflowValidationError(
                f"Workflow id {workflow_id!r} cannot be used as a file name"
            )
        return self._dir / f"{workflow_id}.json"

    def load_workflow(self, workflow_id: str) -> Workflow:
        path = self._path(workflow_id)
        with self._lock:
            if not path.exists():
                raise WorkflowNotFoundError(workflow_id)
            return read_workflow_file(path)

    def save_workflow(self, workflow: Workflow) -> None:
        validate_workflow(workflow)
        path = self._path(workflow.id)
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps(workflow.to_json(), indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )
        logger.info("Saved workflow", extra={"workflow_id": workflow.id, "path": str(path)})

    def list_workflows(self) -> list[Workflow]:
        """All readable definitions, sorted by id. Broken files are skipped."""

        if not self._dir.exists():
            return []
        workflows: list[Workflow] = []
        with self._lock:
            for path in sorted(self._dir.glob("*.json")):
                try:
                    workflows.append(read_workflow_file(path))
                except WorkflowValidationError as e:
                    logger.warning(
                        "Skipping invalid workflow file",
                        extra={"path": str(path), "error": str(e)},
                    )
        return sorted(workflows, key=lambda wf: wf.id)

    def delete_workflow(self, workflow_id: str) -> None:
        path = self._path(workflow_id)
        with self._lock:
            if not path.exists():
                raise WorkflowNotFoundError(workflow_id)
            path.unlink()


def read_workflow_file(path: Path) -> Workflow:
    """Parse and validate one workflow JSON file."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise WorkflowValidationError(f"{path.name} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise WorkflowValidationError(f"{path.name} must contain a JSON object")
    return parse_workflow(raw)
