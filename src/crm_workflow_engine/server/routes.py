"""Workflow REST API.

All routes are mounted under `/api`. Handlers are thin: they resolve the
:class:`Engine` from app state and translate engine exceptions to HTTP.
"""

from __future__ import annotations

import hmac
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from crm_workflow_engine.engine.runtime import Engine
from crm_workflow_engine.engine.store import NotFound, StoreUnavailableError
from crm_workflow_engine.engine.workflow.definition import (
    WorkflowDefinition,
    WorkflowValidationError,
)
from crm_workflow_engine.engine.workflow.dispatcher import DispatchError
from crm_workflow_engine.engine.workflow.events import TriggerEvent
from crm_workflow_engine.engine.workflow.state_machine import (
    LIVE_STATUSES,
    ExecutionState,
    IllegalTransitionError,
    RunLog,
)
from crm_workflow_engine.server.config import ServerSettings
from crm_workflow_engine.server.models import (
    DispatchResponse,
    ManualStartRequest,
    ManualStartResponse,
    ProcessingSummaryModel,
    ProcessResponse,
    ToggleRequest,
    TriggerRequest,
    WorkflowProblemsResponse,
    WorkflowStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _settings(request: Request) -> ServerSettings:
    settings = getattr(request.app.state, "settings", None)
    if not isinstance(settings, ServerSettings):
        raise HTTPException(status_code=500, detail="Server settings not configured")
    return settings


def _engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if not isinstance(engine, Engine):
        raise HTTPException(status_code=500, detail="Workflow engine not configured")
    return engine


def _check_cron_secret(settings: ServerSettings, authorization: str | None) -> None:
    secret = settings.cron_secret.strip()
    if not secret:
        return
    if not hmac.compare_digest(authorization or "", f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _bad_tenant(e: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.api_route(
    "/cron/process-workflows",
    methods=["GET", "POST"],
    response_model=ProcessResponse,
    response_model_exclude_none=True,
)
def process_workflows(
    request: Request, authorization: str | None = Header(default=None)
) -> ProcessResponse | JSONResponse:
    _check_cron_secret(_settings(request), authorization)
    engine = _engine(request)

    try:
        summary = engine.scheduler.run_once()
    except StoreUnavailableError as e:
        logger.exception("Scheduler tick aborted: store unavailable")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": str(e),
                "timestamp": datetime.now(tz=UTC).isoformat(),
            },
        )

    return ProcessResponse(
        success=True,
        summary=ProcessingSummaryModel.model_validate(summary.to_json()),
        timestamp=datetime.now(tz=UTC),
    )


@router.post("/tenants/{tenant_id}/triggers", response_model=DispatchResponse)
def dispatch_trigger(tenant_id: str, req: TriggerRequest, request: Request) -> DispatchResponse:
    engine = _engine(request)
    try:
        result = engine.dispatcher.dispatch_event(
            TriggerEvent(
                type=req.event,
                tenant_id=tenant_id,
                entity_type=req.entity_type,
                entity_id=req.entity_id,
                entity_data=req.entity_data,
                metadata=req.metadata,
                occurred_at=datetime.now(tz=UTC),
            )
        )
    except ValueError as e:
        raise _bad_tenant(e) from e
    return DispatchResponse(triggered=result.triggered, workflows=result.workflows)


@router.get("/tenants/{tenant_id}/workflows", response_model=list[WorkflowDefinition])
def list_workflows(
    tenant_id: str,
    request: Request,
    active_only: bool = Query(default=False),
) -> list[WorkflowDefinition]:
    try:
        return _engine(request).store.list_workflows(tenant_id, active_only=active_only)
    except ValueError as e:
        raise _bad_tenant(e) from e


@router.put(
    "/tenants/{tenant_id}/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    responses={422: {"model": WorkflowProblemsResponse}},
)
def upsert_workflow(
    tenant_id: str, workflow_id: str, workflow: WorkflowDefinition, request: Request
) -> WorkflowDefinition | JSONResponse:
    # The path is authoritative for identity.
    workflow = workflow.model_copy(
        update={"id": workflow_id, "tenant_id": tenant_id, "updated_at": datetime.now(tz=UTC)}
    )
    try:
        return _engine(request).store.save_workflow(workflow)
    except WorkflowValidationError as e:
        return JSONResponse(
            status_code=422,
            content=WorkflowProblemsResponse(
                workflow_id=e.workflow_id, problems=e.problems
            ).model_dump(),
        )
    except ValueError as e:
        raise _bad_tenant(e) from e


@router.post(
    "/tenants/{tenant_id}/workflows/{workflow_id}/active", response_model=WorkflowDefinition
)
def toggle_workflow(
    tenant_id: str, workflow_id: str, req: ToggleRequest, request: Request
) -> WorkflowDefinition:
    try:
        return _engine(request).store.set_workflow_active(tenant_id, workflow_id, req.is_active)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        raise _bad_tenant(e) from e


@router.get(
    "/tenants/{tenant_id}/workflows/{workflow_id}/stats", response_model=WorkflowStatsResponse
)
def workflow_stats(tenant_id: str, workflow_id: str, request: Request) -> WorkflowStatsResponse:
    try:
        stats = _engine(request).workflow_stats(tenant_id, workflow_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        raise _bad_tenant(e) from e
    return WorkflowStatsResponse.model_validate(stats)


@router.get("/tenants/{tenant_id}/workflows/{workflow_id}/logs", response_model=list[RunLog])
def workflow_logs(
    tenant_id: str,
    workflow_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[RunLog]:
    try:
        return _engine(request).store.list_run_logs(
            tenant_id, workflow_id=workflow_id, limit=limit
        )
    except ValueError as e:
        raise _bad_tenant(e) from e


@router.post(
    "/tenants/{tenant_id}/workflows/{workflow_id}/start",
    response_model=ManualStartResponse,
)
def start_workflow(
    tenant_id: str, workflow_id: str, req: ManualStartRequest, request: Request
) -> ManualStartResponse:
    try:
        state = _engine(request).dispatcher.start_manually(
            tenant_id, workflow_id, req.contact_id
        )
    except DispatchError as e:
        status = 404 if e.message.endswith("not found") else 409
        raise HTTPException(status_code=status, detail=e.message) from e
    except ValueError as e:
        raise _bad_tenant(e) from e
    return ManualStartResponse(execution_id=state.id, current_node_id=state.current_node_id)


@router.get("/tenants/{tenant_id}/executions", response_model=list[ExecutionState])
def active_executions(
    tenant_id: str,
    request: Request,
    workflow_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[ExecutionState]:
    try:
        return _engine(request).store.list_states(
            tenant_id, workflow_id=workflow_id, statuses=LIVE_STATUSES, limit=limit
        )
    except ValueError as e:
        raise _bad_tenant(e) from e


@router.post(
    "/tenants/{tenant_id}/executions/{execution_id}/cancel", response_model=ExecutionState
)
def cancel_execution(tenant_id: str, execution_id: str, request: Request) -> ExecutionState:
    try:
        return _engine(request).cancel_execution(tenant_id, execution_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except IllegalTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        raise _bad_tenant(e) from e
