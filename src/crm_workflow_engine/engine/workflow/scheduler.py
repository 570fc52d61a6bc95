"""Batch runner that advances due execution states one node per tick.

A tick is stateless: everything it needs is read from the store, and every
decision it makes is written back before the next state is touched. Each
state is claimed with a version-checked write that pushes its due time out
by a lease, so overlapping ticks skip states another tick already owns.

Delivery is at-least-once. A tick that dies after executing a node but
before committing leaves the state due again once the lease runs out.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from ..store import DocumentStore, StaleStateError, StoreUnavailableError, new_id
from .definition import WorkflowDefinition
from .executor import NodeExecutor, NodeResult
from .state_machine import (
    ExecutionState,
    IllegalTransitionError,
    RunLog,
    advance,
    complete,
    fail,
    pause,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessingSummary:
    tenants_processed: int = 0
    states_processed: int = 0
    nodes_executed: int = 0
    workflows_completed: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: ProcessingSummary) -> None:
        self.tenants_processed += other.tenants_processed
        self.states_processed += other.states_processed
        self.nodes_executed += other.nodes_executed
        self.workflows_completed += other.workflows_completed
        self.errors.extend(other.errors)

    def to_json(self) -> dict[str, object]:
        return {
            "tenants_processed": self.tenants_processed,
            "states_processed": self.states_processed,
            "nodes_executed": self.nodes_executed,
            "workflows_completed": self.workflows_completed,
            "errors": list(self.errors),
        }


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Scheduler:
    def __init__(
        self,
        *,
        store: DocumentStore,
        executor: NodeExecutor,
        batch_size: int = 50,
        step_offset_seconds: float = 1.0,
        claim_lease_seconds: float = 300.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._executor = executor
        self._batch_size = batch_size
        self._step_offset = timedelta(seconds=step_offset_seconds)
        self._lease = timedelta(seconds=claim_lease_seconds)
        self._clock = clock

    def run_once(self) -> ProcessingSummary:
        """Process every tenant once.

        Raises:
            StoreUnavailableError: if the store cannot be reached at all.
        """

        summary = ProcessingSummary()
        tenants = self._store.list_tenants()

        for tenant_id in tenants:
            try:
                summary.merge(self.process_tenant(tenant_id))
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.exception("Tenant processing failed", extra={"tenant_id": tenant_id})
                summary.errors.append(f"Tenant {tenant_id}: {e}")

        logger.info("Scheduler tick finished", extra=summary.to_json())
        return summary

    def process_tenant(self, tenant_id: str) -> ProcessingSummary:
        summary = ProcessingSummary(tenants_processed=1)
        due = self._store.due_states(tenant_id, now=self._clock(), limit=self._batch_size)
        if not due:
            return summary

        logger.debug(
            "Processing due states", extra={"tenant_id": tenant_id, "due_count": len(due)}
        )
        for state in due:
            try:
                self._process_state(state, summary)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.exception(
                    "Execution state processing failed",
                    extra={"tenant_id": tenant_id, "state_id": state.id},
                )
                summary.errors.append(f"State {state.id}: {e}")
                self._mark_failed_after_crash(state.tenant_id, state.id, str(e))
        return summary

    def _process_state(self, state: ExecutionState, summary: ProcessingSummary) -> None:
        claimed = self._claim(state)
        if claimed is None:
            return
        summary.states_processed += 1

        workflow = self._store.get_workflow(claimed.tenant_id, claimed.workflow_id)
        if workflow is None:
            self._commit(fail(current=claimed, error="Workflow not found"), claimed)
            summary.errors.append(f"State {claimed.id}: Workflow not found")
            return

        if not workflow.is_active:
            self._commit(pause(current=claimed), claimed)
            logger.info(
                "Paused execution of inactive workflow",
                extra={"workflow_id": workflow.id, "state_id": claimed.id},
            )
            return

        now = self._clock()
        started = time.perf_counter()
        try:
            result = self._executor.execute(workflow, claimed, now)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.exception(
                "Node execution raised",
                extra={
                    "workflow_id": workflow.id,
                    "state_id": claimed.id,
                    "node_id": claimed.current_node_id,
                },
            )
            result = NodeResult(success=False, error=f"Unexpected error: {e}")
        duration_ms = (time.perf_counter() - started) * 1000.0
        self._append_run_log(workflow, claimed, result, now, duration_ms)

        if not result.success:
            error = result.error or "Node execution failed"
            self._commit(fail(current=claimed, error=error), claimed)
            self._store.increment_workflow_stats(claimed.tenant_id, workflow.id, failed=1)
            summary.errors.append(f"State {claimed.id}: {error}")
            logger.warning(
                "Workflow node failed",
                extra={
                    "workflow_id": workflow.id,
                    "state_id": claimed.id,
                    "node_id": claimed.current_node_id,
                    "error": error,
                },
            )
            return

        summary.nodes_executed += 1
        next_node_id = workflow.next_node_id(claimed.current_node_id, result.branch)

        if next_node_id is None:
            self._commit(complete(current=claimed, now=now), claimed)
            self._store.increment_workflow_stats(
                claimed.tenant_id, workflow.id, total=1, successful=1, last_run_at=now
            )
            summary.workflows_completed += 1
            logger.info(
                "Workflow completed",
                extra={"workflow_id": workflow.id, "state_id": claimed.id},
            )
            return

        if result.resume_at is not None and result.resume_at > now:
            updated = advance(
                current=claimed,
                next_node_id=next_node_id,
                next_execution_time=result.resume_at,
                waiting=True,
            )
        else:
            updated = advance(
                current=claimed,
                next_node_id=next_node_id,
                next_execution_time=now + self._step_offset,
                waiting=False,
            )
        self._commit(updated, claimed)

    def _claim(self, state: ExecutionState) -> ExecutionState | None:
        leased = state.model_copy(
            update={"next_execution_time": self._clock() + self._lease}
        )
        try:
            return self._store.update_state(leased, expected_version=state.version)
        except StaleStateError:
            logger.debug("State claimed elsewhere; skipping", extra={"state_id": state.id})
            return None

    def _commit(self, updated: ExecutionState, claimed: ExecutionState) -> ExecutionState:
        return self._store.update_state(updated, expected_version=claimed.version)

    def _append_run_log(
        self,
        workflow: WorkflowDefinition,
        state: ExecutionState,
        result: NodeResult,
        executed_at: datetime,
        duration_ms: float,
    ) -> None:
        node = workflow.node(state.current_node_id)
        self._store.append_run_log(
            RunLog(
                id=new_id(),
                workflow_id=workflow.id,
                execution_state_id=state.id,
                tenant_id=state.tenant_id,
                node_id=state.current_node_id,
                node_name=(node.name or node.id) if node is not None else "Unknown",
                node_type=node.type if node is not None else "unknown",
                status="success" if result.success else "failed",
                message=result.message,
                error=result.error,
                executed_at=executed_at,
                duration_ms=round(duration_ms, 3),
            )
        )

    def _mark_failed_after_crash(self, tenant_id: str, state_id: str, error: str) -> None:
        try:
            current = self._store.get_state(tenant_id, state_id)
            if current is None or not current.is_live:
                return
            self._store.update_state(
                fail(current=current, error=error), expected_version=current.version
            )
        except (StaleStateError, IllegalTransitionError):
            logger.warning(
                "Could not mark crashed state as failed", extra={"state_id": state_id}
            )
