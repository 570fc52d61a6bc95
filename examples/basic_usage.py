#!/usr/bin/env python3
"""Programmatic usage example.

This demonstrates using the engine components directly:

* load settings from `.env`
* store a small welcome workflow for a tenant
* dispatch a `contact.created` event
* run scheduler ticks until the instance waits on its delay

Data is written under `WORKFLOW_DATA_DIR` (default `./workflow_data`).
"""

from __future__ import annotations

import argparse
import json
import time
from typing import Sequence

from crm_workflow_engine.engine.config import EngineSettings
from crm_workflow_engine.engine.logging import configure_logging
from crm_workflow_engine.engine.runtime import build_engine
from crm_workflow_engine.engine.workflow.definition import WorkflowDefinition


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a welcome workflow end to end.")
    parser.add_argument("--tenant", default="demo", help="Tenant id")
    parser.add_argument("--contact-id", default="c1", help="Contact to enrol")
    return parser.parse_args(argv)


def _welcome_workflow(tenant_id: str) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {
            "id": "welcome",
            "tenant_id": tenant_id,
            "name": "Welcome series",
            "is_active": True,
            "nodes": [
                {"id": "t", "type": "trigger", "config": {"event": "contact.created"}},
                {
                    "id": "tag",
                    "type": "action",
                    "name": "Tag as new",
                    "config": {"action": "add_tag", "tag_id": "new"},
                },
                {"id": "wait", "type": "delay", "config": {"delay_days": 1}},
                {
                    "id": "task",
                    "type": "action",
                    "name": "Follow-up task",
                    "config": {"action": "create_task", "task_title": "Call {{first_name}}"},
                },
            ],
            "connections": [
                {"id": "c1", "from": "t", "to": "tag"},
                {"id": "c2", "from": "tag", "to": "wait"},
                {"id": "c3", "from": "wait", "to": "task"},
            ],
        }
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)
    engine = build_engine(settings)

    try:
        engine.store.save_workflow(_welcome_workflow(args.tenant))
        contact = engine.store.upsert_entity(
            args.tenant, "contact", {"id": args.contact_id, "name": "Asha Rao", "tags": []}
        )

        result = engine.dispatcher.contact_created(args.tenant, args.contact_id, contact)
        print(f"Triggered {result.triggered} workflow(s): {', '.join(result.workflows)}")

        # The tag runs on the first tick; the delay becomes due one step offset
        # later, after which the instance waits a day.
        for _ in range(2):
            summary = engine.scheduler.run_once()
            print(json.dumps(summary.to_json()))
            time.sleep(settings.step_offset_seconds)

        print(json.dumps(engine.workflow_stats(args.tenant, "welcome"), indent=2))
        return 0
    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
