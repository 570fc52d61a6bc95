"""Wires the engine's components together from :class:`EngineSettings`.

Both entry points (the CLI and the HTTP server) build one :class:`Engine`
and go through it, so they always share the same store layout and the same
scheduling parameters.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import requests

from .config import EngineSettings
from .messaging import MessagingGateway
from .store import DocumentStore, NotFound
from .workflow.actions import ActionRunner
from .workflow.dispatcher import TriggerDispatcher
from .workflow.executor import NodeExecutor
from .workflow.scheduler import Scheduler
from .workflow.state_machine import LIVE_STATUSES, ExecutionState, pause


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class Engine:
    store: DocumentStore
    dispatcher: TriggerDispatcher
    scheduler: Scheduler
    messaging: MessagingGateway | None
    http: requests.Session

    def close(self) -> None:
        if self.messaging is not None:
            self.messaging.close()
        self.http.close()

    def workflow_stats(self, tenant_id: str, workflow_id: str) -> dict[str, object]:
        """Aggregate counters plus the number of instances still in flight."""

        workflow = self.store.get_workflow(tenant_id, workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow {workflow_id} not found")
        active = self.store.count_states(
            tenant_id, workflow_id=workflow_id, statuses=LIVE_STATUSES
        )
        return {**workflow.stats.model_dump(mode="json"), "active_executions": active}

    def cancel_execution(self, tenant_id: str, state_id: str) -> ExecutionState:
        """Stop a live instance by pausing it.

        Raises:
            NotFound: if the state does not exist.
            IllegalTransitionError: if the state is no longer live.
        """

        state = self.store.get_state(tenant_id, state_id)
        if state is None:
            raise NotFound(f"Execution {state_id} not found")
        return self.store.update_state(pause(current=state), expected_version=state.version)


def build_engine(
    settings: EngineSettings,
    *,
    store: DocumentStore | None = None,
    messaging: MessagingGateway | None = None,
    http: requests.Session | None = None,
    clock: Callable[[], datetime] = _utc_now,
) -> Engine:
    store = store or DocumentStore(settings.data_dir)
    if messaging is None and settings.messaging_enabled:
        messaging = MessagingGateway(
            base_url=settings.messaging_gateway_url,
            token=settings.messaging_gateway_token,
            timeout_seconds=settings.http_timeout_seconds,
        )
    http = http or requests.Session()

    actions = ActionRunner(
        store=store,
        messaging=messaging,
        http=http,
        http_timeout_seconds=settings.http_timeout_seconds,
    )
    executor = NodeExecutor(store=store, actions=actions, schedule_tz=settings.schedule_zone)
    scheduler = Scheduler(
        store=store,
        executor=executor,
        batch_size=settings.batch_size,
        step_offset_seconds=settings.step_offset_seconds,
        claim_lease_seconds=settings.claim_lease_seconds,
        clock=clock,
    )
    return Engine(
        store=store,
        dispatcher=TriggerDispatcher(store=store, clock=clock),
        scheduler=scheduler,
        messaging=messaging,
        http=http,
    )
