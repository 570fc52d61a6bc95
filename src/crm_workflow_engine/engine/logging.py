"""JSON log output for the engine and its HTTP surface.

Every record becomes one line of JSON. The identifiers that tie a line to a
unit of work (tenant, workflow, execution state, node) are lifted to the top
level so log queries can filter on them directly; any other ``extra=``
fields are nested under ``"extra"``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

CORRELATION_FIELDS: tuple[str, ...] = ("tenant_id", "workflow_id", "state_id", "node_id")


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        for key in CORRELATION_FIELDS:
            if key in fields:
                entry[key] = fields.pop(key)
        if fields:
            entry["extra"] = fields

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # Extras may carry datetimes or enums from workflow models.
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: TextIO | None = None) -> None:
    """Send all logging through a single JSON handler at ``level``."""

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    # requests logs every connection at DEBUG; keep that out of tick output.
    logging.getLogger("urllib3").setLevel(max(root.level, logging.INFO))
