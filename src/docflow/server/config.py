"""Configuration for the REST server.

Engine settings (workflow directory, run state file, timeouts) come from
`EngineSettings`; only server-specific concerns live here.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    # Dev-friendly CORS for a local UI. Override via DOCFLOW_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="DOCFLOW_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    bottleneck_limit: int = Field(
        default=5,
        ge=1,
        le=100,
        validation_alias="DOCFLOW_BOTTLENECK_LIMIT",
        description="How many steps the analytics endpoint reports as bottlenecks.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
