from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


LIVE_STATUSES: frozenset[ExecutionStatus] = frozenset(
    {ExecutionStatus.ACTIVE, ExecutionStatus.WAITING}
)

_LIVE_TARGETS = {
    ExecutionStatus.ACTIVE,
    ExecutionStatus.WAITING,
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.PAUSED,
}

# Paused instances are only resumed by an out-of-band reactivation, which the
# engine does not perform.
ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.ACTIVE: _LIVE_TARGETS,
    ExecutionStatus.WAITING: _LIVE_TARGETS,
    ExecutionStatus.PAUSED: set(),
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ExecutionState(BaseModel):
    """One entity's progress through one workflow instance.

    ``current_node_id`` is the node about to run, not the last one that ran.
    ``version`` is bumped on every write and used as an optimistic lock.
    """

    id: str
    workflow_id: str
    tenant_id: str
    entity_type: Literal["contact", "deal"]
    entity_id: str
    entity_email: str | None = None

    current_node_id: str
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    next_execution_time: datetime = Field(default_factory=_utc_now)
    started_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None

    nodes_executed: list[str] = Field(default_factory=list)
    context: dict[str, object] = Field(default_factory=dict)
    last_error: str | None = None

    version: int = 0

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def is_due(self, now: datetime) -> bool:
        return self.is_live and self.next_execution_time <= now


def transition(
    *, current: ExecutionState, to: ExecutionStatus, **updates: object
) -> ExecutionState:
    """Return a copy of ``current`` moved to ``to`` with ``updates`` applied."""

    allowed = ALLOWED_TRANSITIONS.get(current.status, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal transition for state {current.id}: {current.status.value} -> {to.value}"
        )
    return current.model_copy(update={"status": to, **updates})


def advance(
    *,
    current: ExecutionState,
    next_node_id: str,
    next_execution_time: datetime,
    waiting: bool,
) -> ExecutionState:
    """Record the current node as executed and move to ``next_node_id``."""

    return transition(
        current=current,
        to=ExecutionStatus.WAITING if waiting else ExecutionStatus.ACTIVE,
        current_node_id=next_node_id,
        next_execution_time=next_execution_time,
        nodes_executed=_append_once(current.nodes_executed, current.current_node_id),
    )


def complete(*, current: ExecutionState, now: datetime) -> ExecutionState:
    return transition(
        current=current,
        to=ExecutionStatus.COMPLETED,
        completed_at=now,
        nodes_executed=_append_once(current.nodes_executed, current.current_node_id),
    )


def fail(*, current: ExecutionState, error: str) -> ExecutionState:
    return transition(current=current, to=ExecutionStatus.FAILED, last_error=error)


def pause(*, current: ExecutionState) -> ExecutionState:
    return transition(current=current, to=ExecutionStatus.PAUSED)


def _append_once(executed: list[str], node_id: str) -> list[str]:
    # A re-delivered tick must not record the same step twice.
    if executed and executed[-1] == node_id:
        return list(executed)
    return [*executed, node_id]


class RunLog(BaseModel):
    """Audit record for a single node execution attempt."""

    id: str
    workflow_id: str
    execution_state_id: str
    tenant_id: str

    node_id: str
    node_name: str
    node_type: str

    status: Literal["success", "failed", "skipped"]
    message: str | None = None
    error: str | None = None

    executed_at: datetime = Field(default_factory=_utc_now)
    duration_ms: float | None = None
