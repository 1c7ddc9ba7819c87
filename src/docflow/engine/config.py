"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Retries, loop iterations and task timeouts are always bounded.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the workflow engine.

    Environment variables:
    - LOG_LEVEL                             (optional)
    - DOCFLOW_WORKFLOW_DIR                  (optional)
    - DOCFLOW_RUN_STATE_PATH                (optional)
    - DOCFLOW_DEFAULT_TASK_TIMEOUT_SECONDS  (optional)
    - DOCFLOW_DISPATCH_WORKERS              (optional)
    - DOCFLOW_POLL_INTERVAL_SECONDS         (optional)
    - DOCFLOW_FAIL_FAST                     (optional)
    - DOCFLOW_HTTP_TIMEOUT_SECONDS          (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    workflow_dir: Path = Field(
        default=Path("workflows"),
        validation_alias="DOCFLOW_WORKFLOW_DIR",
        description="Directory where workflow definitions are stored (one JSON file each)",
    )

    run_state_path: Path | None = Field(
        default=None,
        validation_alias="DOCFLOW_RUN_STATE_PATH",
        description=(
            "Optional JSON file where run snapshots are persisted. "
            "When unset, runs are kept in memory only."
        ),
    )

    default_task_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        validation_alias="DOCFLOW_DEFAULT_TASK_TIMEOUT_SECONDS",
        description="Timeout applied to automated tasks that do not declare one",
    )

    dispatch_workers: int = Field(
        default=8,
        ge=1,
        le=256,
        validation_alias="DOCFLOW_DISPATCH_WORKERS",
        description="Worker threads used to run automated task attempts",
    )

    poll_interval_seconds: float = Field(
        default=0.05,
        gt=0,
        le=5.0,
        validation_alias="DOCFLOW_POLL_INTERVAL_SECONDS",
        description="How often a run driver re-checks pause/cancel flags while waiting",
    )

    fail_fast: bool = Field(
        default=True,
        validation_alias="DOCFLOW_FAIL_FAST",
        description=(
            "If true, a failed step fails the whole run immediately. "
            "If false, only the failing branch halts."
        ),
    )

    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="DOCFLOW_HTTP_TIMEOUT_SECONDS",
        description="Request timeout used by the built-in HTTP action handler",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )
