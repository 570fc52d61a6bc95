"""Unit tests for the workflow-engine CLI."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from crm_workflow_engine.engine.main import main
from crm_workflow_engine.engine.store import DocumentStore

TENANT = "tenant-a"


@pytest.fixture(autouse=True)
def _restore_root_logger():
    # main() reconfigures the root logger; keep that from leaking into other tests.
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WORKFLOW_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.delenv("MESSAGING_GATEWAY_URL", raising=False)
    monkeypatch.delenv("WORKFLOW_BATCH_SIZE", raising=False)
    return tmp_path / "data"


@pytest.fixture
def seeded(wf, data_dir: Path) -> DocumentStore:
    store = DocumentStore(data_dir)
    store.save_workflow(
        wf.build([wf.trigger(), wf.delay("wait", delay_hours=1)], [("trigger", "wait")])
    )
    store.upsert_entity(TENANT, "contact", {"id": "c1", "name": "Asha"})
    return store


def test_tick_on_empty_store(data_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["tick"]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["tenants_processed"] == 0
    assert summary["errors"] == []


def test_trigger_then_tick(seeded: DocumentStore, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(
        [
            "trigger",
            "--tenant",
            TENANT,
            "--event",
            "contact.created",
            "--entity-id",
            "c1",
            "--data",
            '{"email": "asha@example.com"}',
        ]
    )
    assert code == 0
    assert json.loads(capsys.readouterr().out)["triggered"] == 1

    assert main(["tick"]) == 0
    assert json.loads(capsys.readouterr().out)["nodes_executed"] == 1
    [state] = seeded.list_states(TENANT)
    assert state.status.value == "waiting"


def test_trigger_rejects_bad_json(seeded: DocumentStore) -> None:
    assert main(["trigger", "--tenant", TENANT, "--entity-id", "c1", "--data", "[1,"]) == 2


def test_manual_start_rejection_exit_code(
    seeded: DocumentStore, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["trigger", "--tenant", TENANT, "--entity-id", "c1", "--workflow", "nope"]) == 3
    assert "Workflow not found" in capsys.readouterr().err

    assert main(["trigger", "--tenant", TENANT, "--entity-id", "c1", "--workflow", "wf-1"]) == 0


def test_validate(wf, seeded: DocumentStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["validate", "--tenant", TENANT, "--workflow", "wf-1"]) == 0

    broken = wf.build([wf.trigger(), wf.delay("island")], [], workflow_id="wf-broken")
    seeded.save_workflow(broken, validate=False)
    capsys.readouterr()

    assert main(["validate", "--tenant", TENANT, "--workflow", "wf-broken"]) == 2
    assert "not reachable" in capsys.readouterr().out
    assert main(["validate", "--tenant", TENANT, "--workflow", "ghost"]) == 2


def test_stats(seeded: DocumentStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["stats", "--tenant", TENANT, "--workflow", "wf-1"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["active_executions"] == 0
    assert stats["total_runs"] == 0

    assert main(["stats", "--tenant", TENANT, "--workflow", "ghost"]) == 2


def test_invalid_configuration_exit_code(
    data_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("WORKFLOW_BATCH_SIZE", "0")

    assert main(["tick"]) == 2
    assert "Configuration error" in capsys.readouterr().err
