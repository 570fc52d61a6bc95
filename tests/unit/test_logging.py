"""Unit tests for structured logging output."""

from __future__ import annotations

import io
import json
import logging
import sys
from datetime import UTC, datetime

import pytest

from crm_workflow_engine.engine.logging import JsonFormatter, configure_logging


def _record(msg: str = "Workflow completed") -> logging.LogRecord:
    return logging.LogRecord(
        name="crm_workflow_engine.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_correlation_ids_are_top_level() -> None:
    record = _record()
    record.tenant_id = "tenant-a"
    record.workflow_id = "wf-1"
    record.finished_at = datetime(2025, 1, 6, tzinfo=UTC)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["message"] == "Workflow completed"
    assert payload["tenant_id"] == "tenant-a"
    assert payload["workflow_id"] == "wf-1"
    assert "workflow_id" not in payload["extra"]
    assert payload["extra"]["finished_at"].startswith("2025-01-06")


def test_record_without_extras_has_no_extra_key() -> None:
    payload = json.loads(JsonFormatter().format(_record("tick")))

    assert "extra" not in payload
    assert "exception" not in payload


def test_exception_is_rendered() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "x", logging.ERROR, __file__, 1, "failed", (), exc_info=sys.exc_info()
        )

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: boom" in payload["exception"]


@pytest.fixture
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.usefixtures("_restore_root_logger")
def test_configure_logging_replaces_handlers() -> None:
    buf = io.StringIO()

    configure_logging("warning", stream=buf)
    configure_logging("info", stream=buf)
    logging.getLogger("crm_workflow_engine.test").info("hello", extra={"node_id": "n1"})

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.INFO
    assert logging.getLogger("urllib3").level == logging.INFO
    line = json.loads(buf.getvalue().strip().splitlines()[-1])
    assert line["message"] == "hello"
    assert line["node_id"] == "n1"
