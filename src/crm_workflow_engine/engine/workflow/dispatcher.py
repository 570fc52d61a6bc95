"""Starts workflow instances from domain events.

This is the only write path into the engine from the rest of the
application. A dispatch never executes nodes; it only creates
:class:`ExecutionState` records that the scheduler picks up on its next tick.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..store import DocumentStore, StoreError, new_id
from .definition import Port, TriggerNode, WorkflowDefinition
from .events import (
    TRIGGER_ENTITY_TYPES,
    TriggerEvent,
    TriggerEventType,
    normalize_entity_type,
)
from .state_machine import ExecutionState, ExecutionStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchResult:
    triggered: int = 0
    workflows: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        return {"triggered": self.triggered, "workflows": list(self.workflows)}


@dataclass(frozen=True, slots=True)
class DispatchError(Exception):
    """A manual start was rejected."""

    message: str

    def __str__(self) -> str:
        return self.message


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def filters_match(
    trigger: TriggerNode,
    entity_data: Mapping[str, object],
    metadata: Mapping[str, object],
) -> bool:
    """AND over the trigger's declared filters. Unset filters always pass."""

    filters = trigger.config.filters
    if filters is None:
        return True
    if filters.tag_id and metadata.get("tag_id") != filters.tag_id:
        return False
    if filters.form_id and metadata.get("form_id") != filters.form_id:
        return False
    if filters.source and entity_data.get("source") != filters.source:
        return False
    if filters.deal_stage:
        stage = metadata.get("new_stage", entity_data.get("stage"))
        if stage != filters.deal_stage:
            return False
    return True


class TriggerDispatcher:
    def __init__(
        self, *, store: DocumentStore, clock: Callable[[], datetime] = _utc_now
    ) -> None:
        self._store = store
        self._clock = clock

    def dispatch(
        self,
        tenant_id: str,
        event: TriggerEventType | str,
        entity_type: str,
        entity_id: str,
        entity_data: Mapping[str, object] | None = None,
        metadata: Mapping[str, object] | None = None,
    ) -> DispatchResult:
        event_name = event.value if isinstance(event, TriggerEventType) else str(event)
        data = dict(entity_data or {})
        meta = dict(metadata or {})
        result = DispatchResult()

        if entity_type not in TRIGGER_ENTITY_TYPES:
            logger.warning(
                "Ignoring trigger for unsupported entity type",
                extra={"tenant_id": tenant_id, "event": event_name, "entity_type": entity_type},
            )
            return result

        try:
            workflows = self._store.list_workflows(tenant_id, active_only=True)
        except StoreError:
            logger.exception(
                "Could not load workflows for trigger",
                extra={"tenant_id": tenant_id, "event": event_name},
            )
            return result

        for workflow in workflows:
            try:
                started = self._start_for_workflow(
                    workflow,
                    event_name=event_name,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    entity_data=data,
                    metadata=meta,
                )
            except Exception:
                logger.exception(
                    "Trigger dispatch failed for workflow",
                    extra={
                        "tenant_id": tenant_id,
                        "workflow_id": workflow.id,
                        "event": event_name,
                    },
                )
                continue
            if started:
                result.triggered += 1
                result.workflows.append(workflow.display_name)

        return result

    def dispatch_event(self, event: TriggerEvent) -> DispatchResult:
        return self.dispatch(
            event.tenant_id,
            event.type,
            event.entity_type,
            event.entity_id,
            event.entity_data,
            event.metadata,
        )

    def _start_for_workflow(
        self,
        workflow: WorkflowDefinition,
        *,
        event_name: str,
        entity_type: str,
        entity_id: str,
        entity_data: dict[str, object],
        metadata: dict[str, object],
    ) -> bool:
        trigger = workflow.trigger_node()
        if trigger is None or trigger.config.event.value != event_name:
            return False
        if not filters_match(trigger, entity_data, metadata):
            return False

        if self._store.find_live_state(workflow.tenant_id, workflow.id, entity_id) is not None:
            logger.info(
                "Entity already in workflow",
                extra={"workflow_id": workflow.id, "entity_id": entity_id},
            )
            return False

        first_node_id = workflow.next_node_id(trigger.id, Port.DEFAULT)
        if first_node_id is None:
            logger.warning(
                "Workflow has no nodes after its trigger",
                extra={"workflow_id": workflow.id, "tenant_id": workflow.tenant_id},
            )
            return False

        now = self._clock()
        email = entity_data.get("email")
        state = ExecutionState(
            id=new_id(),
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            entity_type=normalize_entity_type(entity_type),
            entity_id=entity_id,
            entity_email=email if isinstance(email, str) else None,
            current_node_id=first_node_id,
            status=ExecutionStatus.ACTIVE,
            next_execution_time=now,
            started_at=now,
            nodes_executed=[trigger.id],
            context={**metadata, "trigger_event": event_name, "triggered_at": now.isoformat()},
        )
        # The store re-checks under its lock, closing the window between the
        # lookup above and the insert.
        if not self._store.create_state_unless_live(state):
            return False

        logger.info(
            "Started workflow",
            extra={
                "workflow_id": workflow.id,
                "workflow_name": workflow.display_name,
                "entity_type": state.entity_type,
                "entity_id": entity_id,
                "state_id": state.id,
            },
        )
        return True

    def start_manually(self, tenant_id: str, workflow_id: str, contact_id: str) -> ExecutionState:
        """Put a contact into a workflow regardless of its trigger event."""

        workflow = self._store.get_workflow(tenant_id, workflow_id)
        if workflow is None:
            raise DispatchError("Workflow not found")
        if not workflow.is_active:
            raise DispatchError("Workflow is not active")
        if self._store.find_live_state(tenant_id, workflow_id, contact_id) is not None:
            raise DispatchError("Contact is already in this workflow")
        contact = self._store.get_entity(tenant_id, "contact", contact_id)
        if contact is None:
            raise DispatchError("Contact not found")

        trigger = workflow.trigger_node()
        first_node_id = workflow.next_node_id(trigger.id) if trigger is not None else None
        if first_node_id is None:
            raise DispatchError("Workflow has no nodes after its trigger")

        now = self._clock()
        email = contact.get("email")
        state = ExecutionState(
            id=new_id(),
            workflow_id=workflow_id,
            tenant_id=tenant_id,
            entity_type="contact",
            entity_id=contact_id,
            entity_email=email if isinstance(email, str) else None,
            current_node_id=first_node_id,
            next_execution_time=now,
            started_at=now,
            nodes_executed=[trigger.id] if trigger is not None else [],
            context={"manual_trigger": True, "triggered_at": now.isoformat()},
        )
        if not self._store.create_state_unless_live(state):
            raise DispatchError("Contact is already in this workflow")
        return state

    # Convenience entry points used by the CRM when the matching event occurs.

    def contact_created(
        self, tenant_id: str, contact_id: str, contact: Mapping[str, object]
    ) -> DispatchResult:
        return self.dispatch(
            tenant_id, TriggerEventType.CONTACT_CREATED, "contact", contact_id, contact
        )

    def contact_tag_added(
        self, tenant_id: str, contact_id: str, contact: Mapping[str, object], tag_id: str
    ) -> DispatchResult:
        return self.dispatch(
            tenant_id,
            TriggerEventType.CONTACT_TAG_ADDED,
            "contact",
            contact_id,
            contact,
            {"tag_id": tag_id},
        )

    def form_submitted(
        self, tenant_id: str, contact_id: str, contact: Mapping[str, object], form_id: str
    ) -> DispatchResult:
        return self.dispatch(
            tenant_id,
            TriggerEventType.FORM_SUBMITTED,
            "form",
            contact_id,
            contact,
            {"form_id": form_id},
        )

    def deal_stage_changed(
        self,
        tenant_id: str,
        deal_id: str,
        deal: Mapping[str, object],
        previous_stage: str,
        new_stage: str,
    ) -> DispatchResult:
        return self.dispatch(
            tenant_id,
            TriggerEventType.DEAL_STAGE_CHANGED,
            "deal",
            deal_id,
            deal,
            {"previous_stage": previous_stage, "new_stage": new_stage},
        )

    def deal_won(self, tenant_id: str, deal_id: str, deal: Mapping[str, object]) -> DispatchResult:
        return self.dispatch(tenant_id, TriggerEventType.DEAL_WON, "deal", deal_id, deal)

    def appointment_scheduled(
        self,
        tenant_id: str,
        contact_id: str,
        contact: Mapping[str, object],
        appointment: Mapping[str, object],
    ) -> DispatchResult:
        return self.dispatch(
            tenant_id,
            TriggerEventType.APPOINTMENT_SCHEDULED,
            "appointment",
            contact_id,
            {**contact, "appointment": dict(appointment)},
            {"appointment_id": appointment.get("id")},
        )
