"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Nothing here is required: with no configuration the engine runs against
``./workflow_data`` and treats every messaging action as unconfigured.
"""

from __future__ import annotations

from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings shared by the CLI and the HTTP server.

    Environment variables:
    - LOG_LEVEL                      (optional)
    - WORKFLOW_DATA_DIR              (optional)
    - WORKFLOW_BATCH_SIZE            (optional)
    - WORKFLOW_STEP_OFFSET_SECONDS   (optional)
    - WORKFLOW_CLAIM_LEASE_SECONDS   (optional)
    - WORKFLOW_SCHEDULE_TIMEZONE     (optional)
    - MESSAGING_GATEWAY_URL          (optional)
    - MESSAGING_GATEWAY_TOKEN        (optional)
    - WORKFLOW_HTTP_TIMEOUT_SECONDS  (optional)
    - CRON_SECRET                    (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    data_path: Path = Field(
        default=Path("workflow_data"),
        validation_alias="WORKFLOW_DATA_DIR",
        description="Root directory of the per-tenant document store",
    )

    batch_size: int = Field(
        default=50,
        validation_alias="WORKFLOW_BATCH_SIZE",
        description="Maximum number of due execution states processed per tenant per tick",
        ge=1,
        le=1000,
    )
    step_offset_seconds: float = Field(
        default=1.0,
        validation_alias="WORKFLOW_STEP_OFFSET_SECONDS",
        description="Gap between consecutive non-delay nodes of one instance",
        ge=0,
    )
    claim_lease_seconds: float = Field(
        default=300.0,
        validation_alias="WORKFLOW_CLAIM_LEASE_SECONDS",
        description=(
            "How long a tick owns a claimed execution state before another tick may "
            "pick it up again"
        ),
        gt=0,
    )
    schedule_timezone: str = Field(
        default="UTC",
        validation_alias="WORKFLOW_SCHEDULE_TIMEZONE",
        description="IANA zone used for delay wait-until time and weekday",
    )

    messaging_gateway_url: str = Field(
        default="",
        validation_alias="MESSAGING_GATEWAY_URL",
        description="Base URL of the messaging gateway. Empty means no provider configured.",
    )
    messaging_gateway_token: str = Field(
        default="",
        validation_alias="MESSAGING_GATEWAY_TOKEN",
        description="Bearer token sent to the messaging gateway",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="WORKFLOW_HTTP_TIMEOUT_SECONDS",
        description="Timeout for messaging and webhook requests",
        gt=0,
    )

    cron_secret: str = Field(
        default="",
        validation_alias="CRON_SECRET",
        description="Bearer secret required by the cron endpoint. Empty leaves it open.",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("schedule_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        name = value.strip() or "UTC"
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value!r}") from e
        return name

    @property
    def data_dir(self) -> Path:
        """Directory holding the ``tenants/`` tree."""

        return self.data_path

    @property
    def schedule_zone(self) -> ZoneInfo:
        return ZoneInfo(self.schedule_timezone)

    @property
    def messaging_enabled(self) -> bool:
        return bool(self.messaging_gateway_url.strip())
