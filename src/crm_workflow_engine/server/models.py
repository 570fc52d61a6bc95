"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from crm_workflow_engine.engine.workflow.events import TriggerEventType


class TriggerRequest(BaseModel):
    event: TriggerEventType
    entity_type: Literal["contact", "deal", "form", "appointment"]
    entity_id: str = Field(min_length=1)
    entity_data: dict[str, object] = Field(default_factory=dict)
    metadata: dict[str, object] = Field(default_factory=dict)


class DispatchResponse(BaseModel):
    triggered: int
    workflows: list[str]


class ManualStartRequest(BaseModel):
    contact_id: str = Field(min_length=1)


class ManualStartResponse(BaseModel):
    execution_id: str
    current_node_id: str


class ToggleRequest(BaseModel):
    is_active: bool


class ProcessingSummaryModel(BaseModel):
    tenants_processed: int
    states_processed: int
    nodes_executed: int
    workflows_completed: int
    errors: list[str] = Field(default_factory=list)


class ProcessResponse(BaseModel):
    success: bool
    summary: ProcessingSummaryModel | None = None
    error: str | None = None
    timestamp: datetime


class WorkflowStatsResponse(BaseModel):
    total_runs: int
    successful_runs: int
    failed_runs: int
    last_run_at: datetime | None = None
    active_executions: int


class WorkflowProblemsResponse(BaseModel):
    workflow_id: str
    problems: list[str]
