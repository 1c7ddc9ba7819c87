"""Typed configuration for automated tasks.

On the wire an automated task carries an opaque `config` map. Where a task
type has a known shape it is validated against one of the models below; every
other task type falls back to `GenericTaskConfig`, which accepts any keys.
That fallback is an escape hatch for dynamic integrations, not a contract.

Typed models allow extra keys so handlers can read integration-specific
settings that the engine does not know about.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class TaskConfig(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


class GenericTaskConfig(TaskConfig):
    """Untyped configuration; any keys are accepted as-is."""


class EmailConfig(TaskConfig):
    to: str | list[str] | None = None
    cc: list[str] = Field(default_factory=list)
    subject: str | None = None
    template: str | None = None
    body: str | None = None


class ReminderConfig(EmailConfig):
    remind_after_hours: float | None = Field(default=None, gt=0)


class ChannelNotificationConfig(TaskConfig):
    channel: str | None = None
    message: str | None = None
    recipients: list[str] = Field(default_factory=list)


class HttpCallConfig(TaskConfig):
    """Configuration for `api_call` and `trigger_webhook`.

    `url` is optional: integrations addressed by `service`/`action` are
    resolved by whichever handler is registered for the task type.
    """

    url: str | None = None
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] | None = None
    service: str | None = None
    action: str | None = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


class UpdateStatusConfig(TaskConfig):
    status: str = Field(min_length=1)


class DocumentDestinationConfig(TaskConfig):
    destination: str = Field(min_length=1)


class ArchiveConfig(TaskConfig):
    archive_location: str | None = None
    retention_days: int | None = Field(default=None, ge=0)


class UpdateMetadataConfig(TaskConfig):
    metadata: dict[str, Any] = Field(default_factory=dict)


TASK_CONFIG_MODELS: dict[str, type[TaskConfig]] = {
    "send_email": EmailConfig,
    "send_reminder": ReminderConfig,
    "notify_slack": ChannelNotificationConfig,
    "notify_teams": ChannelNotificationConfig,
    "notify_google": ChannelNotificationConfig,
    "api_call": HttpCallConfig,
    "trigger_webhook": HttpCallConfig,
    "update_status": UpdateStatusConfig,
    "move_document": DocumentDestinationConfig,
    "copy_document": DocumentDestinationConfig,
    "archive_document": ArchiveConfig,
    "update_metadata": UpdateMetadataConfig,
}


def config_model_for(task_type: str) -> type[TaskConfig]:
    key = getattr(task_type, "value", task_type)
    return TASK_CONFIG_MODELS.get(key, GenericTaskConfig)


def parse_task_config(task_type: str, config: dict[str, Any]) -> TaskConfig:
    """Validate `config` against the model for `task_type`.

    Raises:
        pydantic.ValidationError: if the config does not fit the typed model.
    """

    return config_model_for(task_type).model_validate(config)
