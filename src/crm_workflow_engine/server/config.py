"""Configuration for the REST server.

The server reads the same environment as the CLI and adds only what is
specific to serving HTTP.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from crm_workflow_engine.engine.config import EngineSettings


class ServerSettings(EngineSettings):
    """Engine settings plus HTTP concerns."""

    # Dev-friendly CORS for a local admin UI. Override via WORKFLOW_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="WORKFLOW_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
