"""Unit tests for the execution state machine.

These tests assert that terminal and paused instances cannot be moved and
that advancing records each node exactly once.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from crm_workflow_engine.engine.workflow.state_machine import (
    ALLOWED_TRANSITIONS,
    LIVE_STATUSES,
    ExecutionState,
    ExecutionStatus,
    IllegalTransitionError,
    advance,
    complete,
    fail,
    pause,
    transition,
)

NOW = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def _state(**overrides: object) -> ExecutionState:
    data: dict[str, object] = {
        "id": "s1",
        "workflow_id": "wf-1",
        "tenant_id": "tenant-a",
        "entity_type": "contact",
        "entity_id": "c1",
        "current_node_id": "wait",
        "next_execution_time": NOW,
        "started_at": NOW,
        "nodes_executed": ["trigger"],
    }
    data.update(overrides)
    return ExecutionState.model_validate(data)


def test_live_states_may_move_to_any_status() -> None:
    for status in LIVE_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == set(ExecutionStatus)


@pytest.mark.parametrize(
    "status", [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.PAUSED]
)
def test_non_live_states_cannot_transition(status: ExecutionStatus) -> None:
    with pytest.raises(IllegalTransitionError):
        transition(current=_state(status=status), to=ExecutionStatus.ACTIVE)


def test_advance_to_waiting_records_node_and_schedule() -> None:
    later = NOW + timedelta(minutes=10)

    updated = advance(
        current=_state(), next_node_id="email", next_execution_time=later, waiting=True
    )

    assert updated.status == ExecutionStatus.WAITING
    assert updated.current_node_id == "email"
    assert updated.next_execution_time == later
    assert updated.nodes_executed == ["trigger", "wait"]


def test_advance_does_not_duplicate_the_last_node() -> None:
    state = _state(nodes_executed=["trigger", "wait"])

    updated = advance(current=state, next_node_id="email", next_execution_time=NOW, waiting=False)

    assert updated.status == ExecutionStatus.ACTIVE
    assert updated.nodes_executed == ["trigger", "wait"]


def test_complete_fail_and_pause() -> None:
    done = complete(current=_state(), now=NOW)
    assert done.status == ExecutionStatus.COMPLETED
    assert done.completed_at == NOW
    assert done.nodes_executed[-1] == "wait"

    failed = fail(current=_state(), error="boom")
    assert failed.status == ExecutionStatus.FAILED
    assert failed.last_error == "boom"

    paused = pause(current=_state(status=ExecutionStatus.WAITING))
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.current_node_id == "wait"


def test_is_due_only_for_live_states() -> None:
    assert _state().is_due(NOW)
    assert not _state().is_due(NOW - timedelta(seconds=1))
    assert not _state(status=ExecutionStatus.PAUSED).is_due(NOW)
