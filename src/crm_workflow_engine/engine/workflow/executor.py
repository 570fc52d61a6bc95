"""Runs the node an execution state currently points at.

The executor never mutates the state or decides where the instance goes
next; graph routing belongs to the scheduler. For condition nodes it only
reports which port (``yes``/``no``) the predicate selected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo

from ..store import DocumentStore
from .actions import ActionContext, ActionRunner
from .conditions import evaluate_condition
from .definition import (
    ActionNode,
    ConditionNode,
    DelayNode,
    Port,
    TriggerNode,
    WorkflowDefinition,
)
from .delays import describe_delay, next_delay_time
from .state_machine import ExecutionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NodeResult:
    success: bool
    message: str | None = None
    error: str | None = None

    # Port chosen by the node. Only condition nodes ever pick yes/no.
    branch: Port = Port.DEFAULT

    # Set by delay nodes: the earliest time the following node may run.
    resume_at: datetime | None = None


class NodeExecutor:
    def __init__(
        self,
        *,
        store: DocumentStore,
        actions: ActionRunner,
        schedule_tz: tzinfo = UTC,
    ) -> None:
        self._store = store
        self._actions = actions
        self._tz = schedule_tz

    def execute(
        self, workflow: WorkflowDefinition, state: ExecutionState, now: datetime
    ) -> NodeResult:
        node = workflow.node(state.current_node_id)
        if node is None:
            return NodeResult(
                success=False, error=f"Node {state.current_node_id} not found in workflow"
            )

        if isinstance(node, ActionNode):
            return self._execute_action(workflow, state, node, now)
        if isinstance(node, ConditionNode):
            return self._execute_condition(state, node)
        if isinstance(node, DelayNode):
            resume_at = next_delay_time(node.config, now, self._tz)
            if resume_at <= now:
                return NodeResult(success=True, message="No delay configured")
            return NodeResult(
                success=True,
                message=f"Waiting {describe_delay(node.config)}",
                resume_at=resume_at,
            )
        if isinstance(node, TriggerNode):
            logger.warning(
                "Trigger node reached mid-graph; passing through",
                extra={"workflow_id": workflow.id, "node_id": node.id, "state_id": state.id},
            )
            return NodeResult(success=True, message="Trigger node passed through")

        return NodeResult(success=False, error=f"Unknown node type: {node.type}")

    def _load_entity(self, state: ExecutionState) -> dict[str, object] | None:
        return self._store.get_entity(state.tenant_id, state.entity_type, state.entity_id)

    def _execute_action(
        self,
        workflow: WorkflowDefinition,
        state: ExecutionState,
        node: ActionNode,
        now: datetime,
    ) -> NodeResult:
        entity = self._load_entity(state)
        if entity is None:
            return NodeResult(success=False, error=f"Entity {state.entity_id} not found")

        result = self._actions.run(
            ActionContext(workflow=workflow, state=state, node=node, entity=entity, now=now)
        )
        if not result.ok:
            return NodeResult(success=False, error=result.message)
        return NodeResult(success=True, message=result.message)

    def _execute_condition(self, state: ExecutionState, node: ConditionNode) -> NodeResult:
        entity = self._load_entity(state)
        if entity is None:
            return NodeResult(success=False, error=f"Entity {state.entity_id} not found")

        met = evaluate_condition(node.config, entity, state.context)
        return NodeResult(
            success=True,
            message=f'Condition "{node.config.condition}" evaluated to {str(met).lower()}',
            branch=Port.YES if met else Port.NO,
        )
