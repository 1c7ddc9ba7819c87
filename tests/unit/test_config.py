from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from pydantic import ValidationError

from docflow.engine.config import EngineSettings
from docflow.engine.logging import JsonFormatter, configure_logging
from docflow.server.config import ServerSettings


def test_defaults(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    settings = EngineSettings()

    assert settings.log_level == "INFO"
    assert settings.default_task_timeout_seconds == 300.0
    assert settings.fail_fast is True
    assert settings.run_state_path is None
    assert settings.workflow_dir == Path("workflows")


def test_settings_read_dotenv(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text(
        "DOCFLOW_DISPATCH_WORKERS=3\n"
        "DOCFLOW_FAIL_FAST=false\n"
        "DOCFLOW_RUN_STATE_PATH=state/runs.json\n",
        encoding="utf-8",
    )

    settings = EngineSettings()

    assert settings.dispatch_workers == 3
    assert settings.fail_fast is False
    assert settings.run_state_path == Path("state/runs.json")


def test_environment_overrides_dotenv(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("DOCFLOW_DISPATCH_WORKERS=3\n", encoding="utf-8")
    monkeypatch.setenv("DOCFLOW_DISPATCH_WORKERS", "5")

    assert EngineSettings().dispatch_workers == 5


def test_invalid_values_are_rejected(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DOCFLOW_DEFAULT_TASK_TIMEOUT_SECONDS", "0")

    with pytest.raises(ValidationError):
        EngineSettings()


def test_server_settings_parse_cors_origins(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DOCFLOW_CORS_ORIGINS", "http://a.example, http://b.example ,")

    assert ServerSettings().parsed_cors_origins() == ["http://a.example", "http://b.example"]


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_configure_logging_installs_json_handler(restore_root_logger) -> None:
    configure_logging("debug")

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)


def test_json_formatter_lifts_run_fields() -> None:
    record = logging.LogRecord(
        name="docflow.test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Step failed",
        args=None,
        exc_info=None,
    )
    record.run_id = "run-1"
    record.step_id = "review"
    record.attempt = 2

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["message"] == "Step failed"
    assert payload["run_id"] == "run-1"
    assert payload["step_id"] == "review"
    assert "branch" not in payload
    assert payload["extra"] == {"attempt": 2}


def test_json_formatter_omits_extra_when_only_run_fields() -> None:
    record = logging.LogRecord("docflow.test", logging.INFO, __file__, 1, "Run started", None, None)
    record.run_id = "run-2"
    record.workflow_id = "wf"

    payload = json.loads(JsonFormatter().format(record))

    assert (payload["run_id"], payload["workflow_id"]) == ("run-2", "wf")
    assert "extra" not in payload
