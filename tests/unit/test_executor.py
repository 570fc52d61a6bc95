"""Unit tests for per-node execution."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from crm_workflow_engine.engine.workflow.definition import Port
from crm_workflow_engine.engine.workflow.state_machine import ExecutionState

TENANT = "tenant-a"
NOW = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def _workflow(wf):
    return wf.build(
        [
            wf.trigger(),
            wf.delay("wait", delay_minutes=10),
            wf.delay("zero"),
            wf.action("tag", "add_tag", tag_id="engaged"),
            wf.condition("vip", "has_tag", tag_id="vip"),
        ],
        [("trigger", "wait"), ("wait", "zero"), ("zero", "tag"), ("tag", "vip")],
    )


def _state(node_id: str, entity_id: str = "c1") -> ExecutionState:
    return ExecutionState(
        id="s1",
        workflow_id="wf-1",
        tenant_id=TENANT,
        entity_type="contact",
        entity_id=entity_id,
        current_node_id=node_id,
    )


def test_delay_node_reports_resume_time(wf, executor, contact) -> None:
    result = executor.execute(_workflow(wf), _state("wait"), NOW)

    assert result.success
    assert result.resume_at == NOW + timedelta(minutes=10)
    assert result.message == "Waiting 10m"
    assert result.branch == Port.DEFAULT


def test_zero_delay_passes_through(wf, executor, contact) -> None:
    result = executor.execute(_workflow(wf), _state("zero"), NOW)

    assert result.success
    assert result.resume_at is None
    assert result.message == "No delay configured"


def test_action_node_runs_against_stored_entity(wf, store, executor, contact) -> None:
    result = executor.execute(_workflow(wf), _state("tag"), NOW)

    assert result.success
    assert store.get_entity(TENANT, "contact", "c1")["tags"] == ["engaged"]


def test_condition_node_selects_branch(wf, store, executor, contact) -> None:
    no = executor.execute(_workflow(wf), _state("vip"), NOW)
    assert no.success
    assert no.branch == Port.NO
    assert no.message == 'Condition "has_tag" evaluated to false'

    store.add_entity_tag(TENANT, "contact", "c1", "vip")
    yes = executor.execute(_workflow(wf), _state("vip"), NOW)
    assert yes.branch == Port.YES


def test_missing_node_and_missing_entity_fail(wf, executor, contact) -> None:
    missing_node = executor.execute(_workflow(wf), _state("ghost"), NOW)
    assert not missing_node.success
    assert missing_node.error == "Node ghost not found in workflow"

    missing_entity = executor.execute(_workflow(wf), _state("tag", entity_id="c404"), NOW)
    assert not missing_entity.success
    assert missing_entity.error == "Entity c404 not found"


def test_trigger_node_is_a_pass_through(wf, executor, contact) -> None:
    result = executor.execute(_workflow(wf), _state("trigger"), NOW)

    assert result.success
    assert result.branch == Port.DEFAULT
