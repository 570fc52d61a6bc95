"""CLI entrypoint for the workflow engine.

``tick`` is what a cron job runs; the remaining commands are operator tools
for poking at a tenant's workflows from a shell.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from pydantic import ValidationError

from crm_workflow_engine import __version__
from crm_workflow_engine.engine.config import EngineSettings
from crm_workflow_engine.engine.logging import configure_logging
from crm_workflow_engine.engine.runtime import build_engine
from crm_workflow_engine.engine.store import NotFound, StoreError
from crm_workflow_engine.engine.workflow.dispatcher import DispatchError
from crm_workflow_engine.engine.workflow.events import TriggerEventType

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INVALID = 2
EXIT_REJECTED = 3


def _parse_json_object(value: str | None, *, flag: str) -> dict[str, object]:
    if value is None:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{flag} is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"{flag} must be a JSON object")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Multi-tenant CRM workflow automation engine",
    )
    parser.add_argument(
        "--version", action="version", version=f"crm-workflow-engine {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("tick", help="Advance every due execution state by one node")

    trigger = subparsers.add_parser(
        "trigger",
        help="Dispatch a domain event, or start one workflow manually with --workflow",
    )
    trigger.add_argument("--tenant", required=True, help="Tenant id")
    trigger.add_argument(
        "--event",
        default=TriggerEventType.MANUAL.value,
        choices=[e.value for e in TriggerEventType],
        help="Trigger event type (ignored with --workflow)",
    )
    trigger.add_argument(
        "--entity-type",
        default="contact",
        choices=["contact", "deal", "form", "appointment"],
        help="Type of the entity the event is about",
    )
    trigger.add_argument("--entity-id", required=True, help="Entity id")
    trigger.add_argument("--data", default=None, help="Entity snapshot as a JSON object")
    trigger.add_argument("--metadata", default=None, help="Event metadata as a JSON object")
    trigger.add_argument(
        "--workflow",
        default=None,
        help="Start this workflow for the contact regardless of its trigger event",
    )

    validate = subparsers.add_parser("validate", help="Check a workflow graph for problems")
    validate.add_argument("--tenant", required=True, help="Tenant id")
    validate.add_argument("--workflow", required=True, help="Workflow id")

    stats = subparsers.add_parser("stats", help="Show run counters for a workflow")
    stats.add_argument("--tenant", required=True, help="Tenant id")
    stats.add_argument("--workflow", required=True, help="Workflow id")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_INVALID

    configure_logging(settings.log_level)
    engine = build_engine(settings)

    try:
        if args.command == "tick":
            summary = engine.scheduler.run_once()
            print(json.dumps(summary.to_json(), indent=2))
            return EXIT_OK

        if args.command == "trigger":
            if args.workflow:
                state = engine.dispatcher.start_manually(
                    args.tenant, args.workflow, args.entity_id
                )
                print(f"Started workflow {args.workflow} for {args.entity_id} (state {state.id})")
                return EXIT_OK

            result = engine.dispatcher.dispatch(
                args.tenant,
                args.event,
                args.entity_type,
                args.entity_id,
                _parse_json_object(args.data, flag="--data"),
                _parse_json_object(args.metadata, flag="--metadata"),
            )
            print(json.dumps(result.to_json(), indent=2))
            return EXIT_OK

        if args.command == "validate":
            workflow = engine.store.get_workflow(args.tenant, args.workflow)
            if workflow is None:
                print(f"Workflow {args.workflow} not found", file=sys.stderr)
                return EXIT_INVALID
            problems = workflow.graph_problems()
            if problems:
                for problem in problems:
                    print(f"- {problem}")
                return EXIT_INVALID
            print(f"Workflow {workflow.display_name} is valid")
            return EXIT_OK

        if args.command == "stats":
            print(json.dumps(engine.workflow_stats(args.tenant, args.workflow), indent=2))
            return EXIT_OK

        parser.error(f"Unknown command: {args.command}")
        return EXIT_INVALID
    except DispatchError as e:
        print(f"Rejected: {e}", file=sys.stderr)
        return EXIT_REJECTED
    except (NotFound, ValueError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_INVALID
    except StoreError:
        logger.exception("Document store error")
        return EXIT_UNEXPECTED
    except Exception:
        logger.exception("Unexpected error")
        return EXIT_UNEXPECTED
    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
