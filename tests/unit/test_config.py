"""Unit tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from crm_workflow_engine.engine.config import EngineSettings
from crm_workflow_engine.server.config import ServerSettings

_ENV_VARS = [
    "LOG_LEVEL",
    "WORKFLOW_DATA_DIR",
    "WORKFLOW_BATCH_SIZE",
    "WORKFLOW_SCHEDULE_TIMEZONE",
    "MESSAGING_GATEWAY_URL",
    "CRON_SECRET",
    "WORKFLOW_CORS_ORIGINS",
]


@pytest.fixture(autouse=True)
def _clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults() -> None:
    settings = EngineSettings()

    assert settings.log_level == "INFO"
    assert settings.data_dir == Path("workflow_data")
    assert settings.batch_size == 50
    assert settings.step_offset_seconds == 1.0
    assert settings.claim_lease_seconds == 300.0
    assert settings.schedule_timezone == "UTC"
    assert not settings.messaging_enabled
    assert settings.cron_secret == ""


def test_settings_loads_from_dotenv(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "\n".join(
            [
                "WORKFLOW_DATA_DIR=/srv/workflows",
                "WORKFLOW_BATCH_SIZE=200",
                "WORKFLOW_SCHEDULE_TIMEZONE=Asia/Kolkata",
                "MESSAGING_GATEWAY_URL=https://gateway.internal",
                "",
            ]
        ),
        encoding="utf-8",
    )

    settings = EngineSettings()

    assert settings.data_dir == Path("/srv/workflows")
    assert settings.batch_size == 200
    assert settings.schedule_zone.key == "Asia/Kolkata"
    assert settings.messaging_enabled


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("WORKFLOW_BATCH_SIZE", "0"),
        ("WORKFLOW_BATCH_SIZE", "5000"),
        ("WORKFLOW_SCHEDULE_TIMEZONE", "Mars/Olympus"),
    ],
)
def test_invalid_values_are_rejected(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        EngineSettings()


def test_server_settings_parse_cors_origins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKFLOW_CORS_ORIGINS", "https://a.example, ,https://b.example")

    settings = ServerSettings()

    assert settings.parsed_cors_origins() == ["https://a.example", "https://b.example"]
