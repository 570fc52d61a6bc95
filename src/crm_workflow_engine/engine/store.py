"""JSON-file backed document store.

The engine treats its persistence layer as a simple per-tenant collection
store with predicate queries. This implementation keeps one JSON file per
collection under ``<root>/tenants/<tenant_id>/``:

- ``workflows.json``         workflow definitions (read-only to the engine)
- ``execution_states.json``  one document per running/finished instance
- ``run_logs.json``          append-only audit trail
- ``contacts.json`` / ``deals.json`` / ``tasks.json`` / ``notifications.json``
  CRM documents touched by action and condition nodes

Writes are serialised with a process-wide lock. Cross-process safety for
execution states comes from the ``version`` field: every update must present
the version it read, otherwise :class:`StaleStateError` is raised.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from .workflow.definition import WorkflowDefinition, WorkflowValidationError
from .workflow.state_machine import LIVE_STATUSES, ExecutionState, ExecutionStatus, RunLog

ModelT = TypeVar("ModelT", bound=BaseModel)

logger = logging.getLogger(__name__)

WORKFLOWS = "workflows"
EXECUTION_STATES = "execution_states"
RUN_LOGS = "run_logs"
CONTACTS = "contacts"
DEALS = "deals"
TASKS = "tasks"
NOTIFICATIONS = "notifications"

ENTITY_COLLECTIONS: dict[str, str] = {"contact": CONTACTS, "deal": DEALS}


class StoreError(RuntimeError):
    pass


class StoreUnavailableError(StoreError):
    """The store root cannot be read or written at all."""


@dataclass(frozen=True, slots=True)
class StaleStateError(Exception):
    """Raised when an execution state changed since it was read."""

    state_id: str
    expected_version: int
    actual_version: int | None

    def __str__(self) -> str:
        return (
            f"Execution state {self.state_id} is stale "
            f"(expected version {self.expected_version}, found {self.actual_version})"
        )


@dataclass(frozen=True, slots=True)
class NotFound(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


def new_id() -> str:
    return uuid.uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _check_tenant_id(tenant_id: str) -> str:
    cleaned = tenant_id.strip()
    if not cleaned or cleaned in {".", ".."} or "/" in cleaned or "\\" in cleaned:
        raise ValueError(f"Invalid tenant id: {tenant_id!r}")
    return cleaned


class DocumentStore:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Raw collection access

    def _path(self, tenant_id: str, collection: str) -> Path:
        return self._root / "tenants" / _check_tenant_id(tenant_id) / f"{collection}.json"

    def _load_unlocked(self, tenant_id: str, collection: str) -> list[dict[str, object]]:
        path = self._path(tenant_id, collection)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StoreError(
                f"Collection {collection} for tenant {tenant_id} is corrupt: {e}"
            ) from e
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read {path}: {e}") from e
        if not isinstance(raw, list):
            raise StoreError(f"Collection {collection} for tenant {tenant_id} is not a list")
        return [item for item in raw if isinstance(item, dict)]

    def _save_unlocked(
        self, tenant_id: str, collection: str, items: Sequence[dict[str, object]]
    ) -> None:
        path = self._path(tenant_id, collection)
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(
                json.dumps(list(items), indent=2, ensure_ascii=False, default=str) + "\n",
                encoding="utf-8",
            )
            tmp.replace(path)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot write {path}: {e}") from e

    @staticmethod
    def _parse_each(
        model: type[ModelT],
        items: Iterable[dict[str, object]],
        *,
        tenant_id: str,
        collection: str,
    ) -> list[ModelT]:
        """Validate documents one by one; a malformed document is logged and skipped."""

        parsed: list[ModelT] = []
        for item in items:
            try:
                parsed.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed document",
                    extra={
                        "tenant_id": tenant_id,
                        "collection": collection,
                        "document_id": item.get("id"),
                        "error_count": e.error_count(),
                    },
                )
        return parsed

    @staticmethod
    def _dump(model: BaseModel) -> dict[str, object]:
        return model.model_dump(mode="json", by_alias=True)

    def ping(self) -> None:
        """Fail with :class:`StoreUnavailableError` when the root is unusable."""

        try:
            (self._root / "tenants").mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(
                f"Document store unavailable at {self._root}: {e}"
            ) from e

    def list_tenants(self) -> list[str]:
        self.ping()
        tenants_dir = self._root / "tenants"
        try:
            return sorted(p.name for p in tenants_dir.iterdir() if p.is_dir())
        except OSError as e:
            raise StoreUnavailableError(f"Cannot list tenants under {tenants_dir}: {e}") from e

    # ------------------------------------------------------------------
    # Workflow definitions

    def list_workflows(
        self, tenant_id: str, *, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        with self._lock:
            raw = self._load_unlocked(tenant_id, WORKFLOWS)
        workflows = self._parse_each(
            WorkflowDefinition, raw, tenant_id=tenant_id, collection=WORKFLOWS
        )
        if active_only:
            workflows = [w for w in workflows if w.is_active]
        return workflows

    def get_workflow(self, tenant_id: str, workflow_id: str) -> WorkflowDefinition | None:
        with self._lock:
            for item in self._load_unlocked(tenant_id, WORKFLOWS):
                if item.get("id") == workflow_id:
                    return WorkflowDefinition.model_validate(item)
        return None

    def save_workflow(
        self, workflow: WorkflowDefinition, *, validate: bool = True
    ) -> WorkflowDefinition:
        if validate:
            problems = workflow.graph_problems()
            if problems:
                raise WorkflowValidationError(workflow.id, problems)

        with self._lock:
            items = self._load_unlocked(workflow.tenant_id, WORKFLOWS)
            saved = workflow.model_copy(update={"updated_at": _utc_now()})
            payload = self._dump(saved)
            for idx, item in enumerate(items):
                if item.get("id") == workflow.id:
                    # Counters are owned by the engine, never by the author's copy.
                    payload["stats"] = item.get("stats", payload["stats"])
                    items[idx] = payload
                    break
            else:
                items.append(payload)
            self._save_unlocked(workflow.tenant_id, WORKFLOWS, items)
            return WorkflowDefinition.model_validate(payload)

    def set_workflow_active(
        self, tenant_id: str, workflow_id: str, is_active: bool
    ) -> WorkflowDefinition:
        with self._lock:
            items = self._load_unlocked(tenant_id, WORKFLOWS)
            for item in items:
                if item.get("id") == workflow_id:
                    item["is_active"] = is_active
                    item["updated_at"] = _utc_now().isoformat()
                    self._save_unlocked(tenant_id, WORKFLOWS, items)
                    return WorkflowDefinition.model_validate(item)
        raise NotFound(f"Workflow {workflow_id} not found")

    def increment_workflow_stats(
        self,
        tenant_id: str,
        workflow_id: str,
        *,
        total: int = 0,
        successful: int = 0,
        failed: int = 0,
        last_run_at: datetime | None = None,
    ) -> None:
        """Atomically bump the aggregate run counters on a workflow."""

        with self._lock:
            items = self._load_unlocked(tenant_id, WORKFLOWS)
            for item in items:
                if item.get("id") != workflow_id:
                    continue
                stats = item.get("stats")
                if not isinstance(stats, dict):
                    stats = {}
                stats["total_runs"] = int(stats.get("total_runs", 0) or 0) + total
                stats["successful_runs"] = int(stats.get("successful_runs", 0) or 0) + successful
                stats["failed_runs"] = int(stats.get("failed_runs", 0) or 0) + failed
                if last_run_at is not None:
                    stats["last_run_at"] = last_run_at.isoformat()
                item["stats"] = stats
                self._save_unlocked(tenant_id, WORKFLOWS, items)
                return
        logger.warning(
            "Stats update for unknown workflow",
            extra={"tenant_id": tenant_id, "workflow_id": workflow_id},
        )

    # ------------------------------------------------------------------
    # Execution states

    def get_state(self, tenant_id: str, state_id: str) -> ExecutionState | None:
        with self._lock:
            for item in self._load_unlocked(tenant_id, EXECUTION_STATES):
                if item.get("id") == state_id:
                    return ExecutionState.model_validate(item)
        return None

    def find_live_state(
        self, tenant_id: str, workflow_id: str, entity_id: str
    ) -> ExecutionState | None:
        with self._lock:
            for state in self._iter_states_unlocked(tenant_id):
                if (
                    state.workflow_id == workflow_id
                    and state.entity_id == entity_id
                    and state.status in LIVE_STATUSES
                ):
                    return state
        return None

    def create_state_unless_live(self, state: ExecutionState) -> bool:
        """Insert ``state`` unless the entity already has a live instance.

        The check and the insert happen under one lock, so two dispatches in
        the same process cannot both win.
        """

        with self._lock:
            items = self._load_unlocked(state.tenant_id, EXECUTION_STATES)
            existing_states = self._parse_each(
                ExecutionState, items, tenant_id=state.tenant_id, collection=EXECUTION_STATES
            )
            for existing in existing_states:
                if (
                    existing.workflow_id == state.workflow_id
                    and existing.entity_id == state.entity_id
                    and existing.status in LIVE_STATUSES
                ):
                    return False
            items.append(self._dump(state))
            self._save_unlocked(state.tenant_id, EXECUTION_STATES, items)
            return True

    def due_states(self, tenant_id: str, *, now: datetime, limit: int) -> list[ExecutionState]:
        with self._lock:
            due = [s for s in self._iter_states_unlocked(tenant_id) if s.is_due(now)]
        due.sort(key=lambda s: s.next_execution_time)
        return due[:limit]

    def list_states(
        self,
        tenant_id: str,
        *,
        workflow_id: str | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
        limit: int | None = None,
    ) -> list[ExecutionState]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            states = [
                s
                for s in self._iter_states_unlocked(tenant_id)
                if (workflow_id is None or s.workflow_id == workflow_id)
                and (wanted is None or s.status in wanted)
            ]
        states.sort(key=lambda s: s.started_at, reverse=True)
        return states if limit is None else states[:limit]

    def count_states(
        self, tenant_id: str, *, workflow_id: str, statuses: Iterable[ExecutionStatus]
    ) -> int:
        return len(self.list_states(tenant_id, workflow_id=workflow_id, statuses=statuses))

    def update_state(self, state: ExecutionState, *, expected_version: int) -> ExecutionState:
        """Persist ``state`` if the stored copy still has ``expected_version``."""

        with self._lock:
            items = self._load_unlocked(state.tenant_id, EXECUTION_STATES)
            for idx, item in enumerate(items):
                if item.get("id") != state.id:
                    continue
                actual = item.get("version", 0)
                if actual != expected_version:
                    raise StaleStateError(
                        state_id=state.id,
                        expected_version=expected_version,
                        actual_version=actual if isinstance(actual, int) else None,
                    )
                updated = state.model_copy(update={"version": expected_version + 1})
                items[idx] = self._dump(updated)
                self._save_unlocked(state.tenant_id, EXECUTION_STATES, items)
                return updated
        raise StaleStateError(
            state_id=state.id, expected_version=expected_version, actual_version=None
        )

    def _iter_states_unlocked(self, tenant_id: str) -> list[ExecutionState]:
        return self._parse_each(
            ExecutionState,
            self._load_unlocked(tenant_id, EXECUTION_STATES),
            tenant_id=tenant_id,
            collection=EXECUTION_STATES,
        )

    # ------------------------------------------------------------------
    # Run logs

    def append_run_log(self, log: RunLog) -> None:
        with self._lock:
            items = self._load_unlocked(log.tenant_id, RUN_LOGS)
            items.append(self._dump(log))
            self._save_unlocked(log.tenant_id, RUN_LOGS, items)

    def list_run_logs(
        self, tenant_id: str, *, workflow_id: str | None = None, limit: int = 50
    ) -> list[RunLog]:
        with self._lock:
            raw = self._load_unlocked(tenant_id, RUN_LOGS)
        logs = self._parse_each(RunLog, raw, tenant_id=tenant_id, collection=RUN_LOGS)
        if workflow_id is not None:
            logs = [log for log in logs if log.workflow_id == workflow_id]
        logs.sort(key=lambda log: log.executed_at, reverse=True)
        return logs[:limit]

    # ------------------------------------------------------------------
    # CRM documents

    def get_entity(
        self, tenant_id: str, entity_type: str, entity_id: str
    ) -> dict[str, object] | None:
        collection = ENTITY_COLLECTIONS.get(entity_type)
        if collection is None:
            return None
        with self._lock:
            for item in self._load_unlocked(tenant_id, collection):
                if item.get("id") == entity_id:
                    return dict(item)
        return None

    def upsert_entity(
        self, tenant_id: str, entity_type: str, entity: dict[str, object]
    ) -> dict[str, object]:
        collection = ENTITY_COLLECTIONS[entity_type]
        entity_id = str(entity.get("id") or "").strip() or new_id()
        doc = {**entity, "id": entity_id}
        with self._lock:
            items = self._load_unlocked(tenant_id, collection)
            for idx, item in enumerate(items):
                if item.get("id") == entity_id:
                    items[idx] = doc
                    break
            else:
                items.append(doc)
            self._save_unlocked(tenant_id, collection, items)
        return doc

    def update_entity(
        self, tenant_id: str, entity_type: str, entity_id: str, updates: dict[str, object]
    ) -> dict[str, object]:
        collection = ENTITY_COLLECTIONS.get(entity_type)
        if collection is None:
            raise NotFound(f"Unknown entity type {entity_type}")
        with self._lock:
            items = self._load_unlocked(tenant_id, collection)
            for item in items:
                if item.get("id") == entity_id:
                    item.update(updates)
                    item["updated_at"] = _utc_now().isoformat()
                    self._save_unlocked(tenant_id, collection, items)
                    return dict(item)
        raise NotFound(f"Entity {entity_id} not found")

    def add_entity_tag(
        self, tenant_id: str, entity_type: str, entity_id: str, tag: str
    ) -> dict[str, object]:
        return self._mutate_tags(tenant_id, entity_type, entity_id, tag, add=True)

    def remove_entity_tag(
        self, tenant_id: str, entity_type: str, entity_id: str, tag: str
    ) -> dict[str, object]:
        return self._mutate_tags(tenant_id, entity_type, entity_id, tag, add=False)

    def _mutate_tags(
        self, tenant_id: str, entity_type: str, entity_id: str, tag: str, *, add: bool
    ) -> dict[str, object]:
        with self._lock:
            entity = self.get_entity(tenant_id, entity_type, entity_id)
            if entity is None:
                raise NotFound(f"Entity {entity_id} not found")
            raw_tags = entity.get("tags")
            tags = [str(t) for t in raw_tags] if isinstance(raw_tags, list) else []
            if add and tag not in tags:
                tags.append(tag)
            if not add:
                tags = [t for t in tags if t != tag]
            return self.update_entity(tenant_id, entity_type, entity_id, {"tags": tags})

    def add_document(
        self, tenant_id: str, collection: str, doc: dict[str, object]
    ) -> dict[str, object]:
        stored = {"id": new_id(), "created_at": _utc_now().isoformat(), **doc}
        with self._lock:
            items = self._load_unlocked(tenant_id, collection)
            items.append(stored)
            self._save_unlocked(tenant_id, collection, items)
        return stored

    def list_documents(self, tenant_id: str, collection: str) -> list[dict[str, object]]:
        with self._lock:
            return self._load_unlocked(tenant_id, collection)
