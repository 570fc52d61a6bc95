"""Workflow definitions authored per tenant.

A definition is a directed graph of trigger/action/condition/delay nodes. The
engine only ever reads definitions; authoring happens elsewhere.
"""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .events import TriggerEventType


class Port(str, Enum):
    DEFAULT = "default"
    YES = "yes"
    NO = "no"


class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    SEND_WHATSAPP = "send_whatsapp"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_CONTACT = "update_contact"
    CREATE_TASK = "create_task"
    ASSIGN_TO_USER = "assign_to_user"
    MOVE_DEAL_STAGE = "move_deal_stage"
    NOTIFY_TEAM = "notify_team"
    WEBHOOK = "webhook"


class ConditionType(str, Enum):
    HAS_TAG = "has_tag"
    MISSING_TAG = "missing_tag"
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    FIELD_EQUALS = "field_equals"
    FIELD_CONTAINS = "field_contains"
    DEAL_STAGE_IS = "deal_stage_is"
    CONTACT_SOURCE_IS = "contact_source_is"


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class TriggerFilters(BaseModel):
    tag_id: str | None = None
    form_id: str | None = None
    deal_stage: str | None = None
    source: str | None = None


class TriggerConfig(BaseModel):
    event: TriggerEventType
    filters: TriggerFilters | None = None


class ActionConfig(BaseModel):
    # Only `action` is required; each handler validates the fields it needs
    # at execution time so a half-configured node fails its instance rather
    # than the whole definition.
    action: str

    email_subject: str | None = None
    email_content: str | None = None
    email_template_id: str | None = None

    sms_message: str | None = None
    sms_template_id: str | None = None
    dlt_template_id: str | None = None

    whatsapp_template_id: str | None = None
    whatsapp_template_name: str | None = None
    whatsapp_parameters: list[str] | None = None

    tag_id: str | None = None
    tag_name: str | None = None

    field_updates: dict[str, object] = Field(default_factory=dict)

    task_title: str | None = None
    task_description: str | None = None
    task_due_in_days: float = 1

    assign_to_user_id: str | None = None

    deal_stage_id: str | None = None

    notification_message: str | None = None
    notify_user_ids: list[str] = Field(default_factory=list)

    webhook_url: str | None = None
    webhook_method: Literal["GET", "POST"] = "POST"


class ConditionConfig(BaseModel):
    condition: str
    tag_id: str | None = None
    field_name: str | None = None
    field_value: str | None = None
    deal_stage: str | None = None
    source: str | None = None
    campaign_id: str | None = None


class DelayConfig(BaseModel):
    delay_minutes: float = Field(default=0, ge=0)
    delay_hours: float = Field(default=0, ge=0)
    delay_days: float = Field(default=0, ge=0)
    wait_until_time: str | None = Field(default=None, description="Wall-clock time as HH:MM")
    wait_until_day_of_week: int | None = Field(
        default=None, ge=0, le=6, description="0 = Sunday ... 6 = Saturday"
    )

    @field_validator("wait_until_time")
    @classmethod
    def _check_hh_mm(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        parts = value.strip().split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError("wait_until_time must be HH:MM")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError("wait_until_time must be HH:MM")
        return f"{hour:02d}:{minute:02d}"


class _NodeBase(BaseModel):
    id: str
    name: str = ""
    position: Position | None = None


class TriggerNode(_NodeBase):
    type: Literal["trigger"] = "trigger"
    config: TriggerConfig


class ActionNode(_NodeBase):
    type: Literal["action"] = "action"
    config: ActionConfig


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig


class DelayNode(_NodeBase):
    type: Literal["delay"] = "delay"
    config: DelayConfig = Field(default_factory=DelayConfig)


WorkflowNode = Annotated[
    TriggerNode | ActionNode | ConditionNode | DelayNode,
    Field(discriminator="type"),
]


class Connection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_node: str = Field(alias="from")
    to_node: str = Field(alias="to")
    port: Port = Port.DEFAULT


class WorkflowStats(BaseModel):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_at: datetime | None = None


class WorkflowDefinition(BaseModel):
    id: str
    tenant_id: str
    name: str = ""
    description: str | None = None
    is_active: bool = False
    nodes: list[WorkflowNode] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    stats: WorkflowStats = Field(default_factory=WorkflowStats)

    created_by: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def node(self, node_id: str) -> TriggerNode | ActionNode | ConditionNode | DelayNode | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def trigger_node(self) -> TriggerNode | None:
        for n in self.nodes:
            if isinstance(n, TriggerNode):
                return n
        return None

    def next_node_id(self, node_id: str, port: Port = Port.DEFAULT) -> str | None:
        """Resolve the target of the edge leaving ``node_id`` through ``port``.

        Returns None when the node has no edge on that port, which callers
        treat as the end of the workflow.
        """

        for c in self.connections:
            if c.from_node == node_id and c.port == port:
                return c.to_node
        return None

    def graph_problems(self) -> list[str]:
        """Return human-readable violations of the graph invariants.

        An empty list means the definition is well formed.
        """

        problems: list[str] = []
        ids = [n.id for n in self.nodes]
        seen: set[str] = set()
        for node_id in ids:
            if node_id in seen:
                problems.append(f"Duplicate node id {node_id!r}")
            seen.add(node_id)

        triggers = [n for n in self.nodes if isinstance(n, TriggerNode)]
        if len(triggers) != 1:
            problems.append(f"Expected exactly one trigger node, found {len(triggers)}")

        by_id = {n.id: n for n in self.nodes}
        outgoing: dict[tuple[str, Port], int] = {}
        for c in self.connections:
            if c.from_node not in by_id:
                problems.append(f"Connection {c.id!r} starts at unknown node {c.from_node!r}")
                continue
            if c.to_node not in by_id:
                problems.append(f"Connection {c.id!r} ends at unknown node {c.to_node!r}")
                continue
            if isinstance(by_id[c.to_node], TriggerNode):
                problems.append(f"Connection {c.id!r} loops back into the trigger")

            source = by_id[c.from_node]
            if isinstance(source, ConditionNode):
                if c.port == Port.DEFAULT:
                    problems.append(
                        f"Condition node {source.id!r} must use the yes/no ports, not default"
                    )
            elif c.port != Port.DEFAULT:
                problems.append(
                    f"Node {source.id!r} ({source.type}) may only use the default port"
                )
            key = (c.from_node, c.port)
            outgoing[key] = outgoing.get(key, 0) + 1

        for (node_id, port), count in outgoing.items():
            if count > 1:
                problems.append(
                    f"Node {node_id!r} has {count} outgoing connections on port {port.value!r}"
                )

        if len(triggers) == 1:
            reachable = self._reachable_from(triggers[0].id)
            for n in self.nodes:
                if n.id not in reachable:
                    problems.append(f"Node {n.id!r} is not reachable from the trigger")

        return problems

    def _reachable_from(self, start: str) -> set[str]:
        reached = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for c in self.connections:
                if c.from_node == current and c.to_node not in reached:
                    reached.add(c.to_node)
                    queue.append(c.to_node)
        return reached


class WorkflowValidationError(ValueError):
    def __init__(self, workflow_id: str, problems: list[str]) -> None:
        self.workflow_id = workflow_id
        self.problems = problems
        super().__init__(f"Workflow {workflow_id} is invalid: " + "; ".join(problems))
