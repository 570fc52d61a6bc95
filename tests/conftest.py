"""Test configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from crm_workflow_engine.engine.messaging import MessageReceipt, MessagingGateway
from crm_workflow_engine.engine.store import DocumentStore
from crm_workflow_engine.engine.workflow.actions import ActionRunner
from crm_workflow_engine.engine.workflow.definition import WorkflowDefinition
from crm_workflow_engine.engine.workflow.dispatcher import TriggerDispatcher
from crm_workflow_engine.engine.workflow.executor import NodeExecutor
from crm_workflow_engine.engine.workflow.scheduler import Scheduler

TENANT = "tenant-a"


class FakeClock:
    """Deterministic replacement for ``datetime.now(UTC)``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class WorkflowBuilder:
    """Builds workflow definitions from compact node/edge descriptions."""

    @staticmethod
    def trigger(node_id: str = "trigger", event: str = "contact.created", **filters: str) -> dict:
        config: dict[str, Any] = {"event": event}
        if filters:
            config["filters"] = filters
        return {"id": node_id, "type": "trigger", "name": "Trigger", "config": config}

    @staticmethod
    def action(node_id: str, action: str, **config: Any) -> dict:
        return {
            "id": node_id,
            "type": "action",
            "name": node_id.replace("_", " ").title(),
            "config": {"action": action, **config},
        }

    @staticmethod
    def condition(node_id: str, condition: str, **config: Any) -> dict:
        return {
            "id": node_id,
            "type": "condition",
            "name": node_id,
            "config": {"condition": condition, **config},
        }

    @staticmethod
    def delay(node_id: str, **config: Any) -> dict:
        return {"id": node_id, "type": "delay", "name": node_id, "config": config}

    @staticmethod
    def build(
        nodes: list[dict],
        edges: list[tuple[str, str] | tuple[str, str, str]],
        *,
        workflow_id: str = "wf-1",
        tenant_id: str = TENANT,
        name: str = "Welcome series",
        is_active: bool = True,
    ) -> WorkflowDefinition:
        connections = []
        for idx, edge in enumerate(edges):
            port = edge[2] if len(edge) == 3 else "default"
            connections.append({"id": f"c{idx}", "from": edge[0], "to": edge[1], "port": port})
        return WorkflowDefinition.model_validate(
            {
                "id": workflow_id,
                "tenant_id": tenant_id,
                "name": name,
                "is_active": is_active,
                "nodes": nodes,
                "connections": connections,
            }
        )


@pytest.fixture
def wf() -> WorkflowBuilder:
    return WorkflowBuilder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 6, 9, 0, tzinfo=UTC))


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path / "workflow_data")


@pytest.fixture
def gateway() -> Mock:
    gw = Mock(spec=MessagingGateway)
    receipt = MessageReceipt(channel="email", provider="test", message_id="m-1")
    gw.send_email.return_value = receipt
    gw.send_sms.return_value = receipt
    gw.send_whatsapp.return_value = receipt
    return gw


@pytest.fixture
def http() -> Mock:
    session = Mock()
    session.post.return_value = Mock(ok=True, status_code=200)
    session.get.return_value = Mock(ok=True, status_code=200)
    return session


@pytest.fixture
def actions(store: DocumentStore, gateway: Mock, http: Mock) -> ActionRunner:
    return ActionRunner(store=store, messaging=gateway, http=http)


@pytest.fixture
def executor(store: DocumentStore, actions: ActionRunner) -> NodeExecutor:
    return NodeExecutor(store=store, actions=actions)


@pytest.fixture
def scheduler(store: DocumentStore, executor: NodeExecutor, clock: FakeClock) -> Scheduler:
    return Scheduler(store=store, executor=executor, clock=clock)


@pytest.fixture
def dispatcher(store: DocumentStore, clock: FakeClock) -> TriggerDispatcher:
    return TriggerDispatcher(store=store, clock=clock)


@pytest.fixture
def contact(store: DocumentStore) -> dict[str, object]:
    return store.upsert_entity(
        TENANT,
        "contact",
        {
            "id": "c1",
            "name": "Asha Rao",
            "email": "asha@example.com",
            "phone": "98765 43210",
            "source": "website",
            "tags": [],
        },
    )
