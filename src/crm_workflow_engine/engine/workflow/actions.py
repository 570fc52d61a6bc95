"""Side effects performed by action nodes.

Each handler delegates to exactly one integration (messaging gateway, the
CRM document store, or an outbound webhook) and reports the outcome as an
:class:`ActionResult`. Handlers never raise for integration failures; the
scheduler turns ``ok=False`` into a failed instance.

Delivery is at-least-once: a tick that dies after the side effect but before
the state is committed will run the node again. Each handler documents what
makes a repeat harmless.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import requests

from ..messaging import MessagingError, MessagingGateway
from ..store import NOTIFICATIONS, TASKS, DocumentStore, NotFound
from .definition import ActionConfig, ActionNode, ActionType, WorkflowDefinition
from .state_machine import ExecutionState
from .templating import personalize

logger = logging.getLogger(__name__)

_PHONE_NOISE = re.compile(r"[\s\-()]")


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str
    details: dict[str, object] | None = None


@dataclass(frozen=True, slots=True)
class ActionContext:
    workflow: WorkflowDefinition
    state: ExecutionState
    node: ActionNode
    entity: dict[str, object]
    now: datetime

    @property
    def config(self) -> ActionConfig:
        return self.node.config

    @property
    def idempotency_key(self) -> str:
        return f"{self.state.id}:{self.node.id}"

    def render(self, template: str) -> str:
        return personalize(template, self.entity, self.state.context)


def normalize_phone(raw: str, default_country_code: str = "91") -> str:
    phone = _PHONE_NOISE.sub("", raw)
    if not phone.startswith("+") and not phone.startswith(default_country_code):
        phone = default_country_code + phone
    return phone.lstrip("+")


class ActionRunner:
    def __init__(
        self,
        *,
        store: DocumentStore,
        messaging: MessagingGateway | None = None,
        http: requests.Session | None = None,
        http_timeout_seconds: float = 30.0,
        default_country_code: str = "91",
    ) -> None:
        self._store = store
        self._messaging = messaging
        self._http = http or requests.Session()
        self._http_timeout = http_timeout_seconds
        self._country_code = default_country_code
        self._handlers: dict[str, Callable[[ActionContext], ActionResult]] = {
            ActionType.SEND_EMAIL.value: self.send_email,
            ActionType.SEND_SMS.value: self.send_sms,
            ActionType.SEND_WHATSAPP.value: self.send_whatsapp,
            ActionType.ADD_TAG.value: self.add_tag,
            ActionType.REMOVE_TAG.value: self.remove_tag,
            ActionType.UPDATE_CONTACT.value: self.update_contact,
            ActionType.CREATE_TASK.value: self.create_task,
            ActionType.ASSIGN_TO_USER.value: self.assign_to_user,
            ActionType.MOVE_DEAL_STAGE.value: self.move_deal_stage,
            ActionType.NOTIFY_TEAM.value: self.notify_team,
            ActionType.WEBHOOK.value: self.webhook,
        }

    def run(self, ctx: ActionContext) -> ActionResult:
        handler = self._handlers.get(ctx.config.action)
        if handler is None:
            return ActionResult(ok=False, message=f"Unknown action: {ctx.config.action}")
        try:
            return handler(ctx)
        except MessagingError as e:
            return ActionResult(ok=False, message=str(e))
        except NotFound as e:
            return ActionResult(ok=False, message=str(e))

    # ------------------------------------------------------------------
    # Messaging. Repeats are deduplicated by the gateway via the
    # ``Idempotency-Key`` header (state id + node id).

    def send_email(self, ctx: ActionContext) -> ActionResult:
        cfg = ctx.config
        if not cfg.email_subject or not cfg.email_content:
            return ActionResult(ok=False, message="Email subject and content are required")
        email = ctx.entity.get("email")
        if not isinstance(email, str) or not email.strip():
            return ActionResult(ok=False, message="Contact has no email address")
        if self._messaging is None:
            return ActionResult(ok=False, message="No email provider configured")

        name = ctx.entity.get("name")
        receipt = self._messaging.send_email(
            to=email,
            to_name=name if isinstance(name, str) and name else "there",
            subject=ctx.render(cfg.email_subject),
            html=ctx.render(cfg.email_content),
            idempotency_key=ctx.idempotency_key,
        )
        return ActionResult(
            ok=True,
            message=f"Email sent to {email}",
            details={"provider": receipt.provider, "message_id": receipt.message_id},
        )

    def send_sms(self, ctx: ActionContext) -> ActionResult:
        cfg = ctx.config
        if not cfg.sms_message:
            return ActionResult(ok=False, message="SMS message is required")
        raw_phone = ctx.entity.get("phone")
        if not isinstance(raw_phone, str) or not raw_phone.strip():
            return ActionResult(ok=False, message="Contact has no phone number")
        if self._messaging is None:
            return ActionResult(ok=False, message="No SMS provider configured")

        receipt = self._messaging.send_sms(
            phone=normalize_phone(raw_phone, self._country_code),
            message=ctx.render(cfg.sms_message),
            dlt_template_id=cfg.dlt_template_id,
            idempotency_key=ctx.idempotency_key,
        )
        return ActionResult(
            ok=True,
            message=f"SMS sent to {raw_phone}",
            details={"provider": receipt.provider, "message_id": receipt.message_id},
        )

    def send_whatsapp(self, ctx: ActionContext) -> ActionResult:
        cfg = ctx.config
        if not cfg.whatsapp_template_name:
            return ActionResult(ok=False, message="WhatsApp template name is required")
        raw_phone = ctx.entity.get("phone")
        if not isinstance(raw_phone, str) or not raw_phone.strip():
            return ActionResult(ok=False, message="Contact has no phone number")
        if self._messaging is None:
            return ActionResult(ok=False, message="No WhatsApp provider configured")

        if cfg.whatsapp_parameters:
            params = [ctx.render(p) for p in cfg.whatsapp_parameters]
        else:
            params = [ctx.render("{{first_name}}")]

        receipt = self._messaging.send_whatsapp(
            phone=normalize_phone(raw_phone, self._country_code),
            template_name=cfg.whatsapp_template_name,
            parameters=params,
            idempotency_key=ctx.idempotency_key,
        )
        return ActionResult(
            ok=True,
            message=f"WhatsApp sent to {raw_phone}",
            details={"provider": receipt.provider, "message_id": receipt.message_id},
        )

    # ------------------------------------------------------------------
    # CRM mutations. Tags have set semantics and field writes are absolute,
    # so running these twice leaves the same document.

    def add_tag(self, ctx: ActionContext) -> ActionResult:
        tag = ctx.config.tag_id or ctx.config.tag_name
        if not tag:
            return ActionResult(ok=False, message="Tag ID or name is required")
        self._store.add_entity_tag(
            ctx.state.tenant_id, ctx.state.entity_type, ctx.state.entity_id, tag
        )
        return ActionResult(ok=True, message=f'Added tag "{ctx.config.tag_name or tag}"')

    def remove_tag(self, ctx: ActionContext) -> ActionResult:
        tag = ctx.config.tag_id or ctx.config.tag_name
        if not tag:
            return ActionResult(ok=False, message="Tag ID or name is required")
        self._store.remove_entity_tag(
            ctx.state.tenant_id, ctx.state.entity_type, ctx.state.entity_id, tag
        )
        return ActionResult(ok=True, message=f'Removed tag "{ctx.config.tag_name or tag}"')

    def update_contact(self, ctx: ActionContext) -> ActionResult:
        updates = {
            key: ctx.render(value) if isinstance(value, str) else value
            for key, value in ctx.config.field_updates.items()
            if key != "id"
        }
        if not updates:
            return ActionResult(ok=True, message="No contact fields to update")
        self._store.update_entity(
            ctx.state.tenant_id, ctx.state.entity_type, ctx.state.entity_id, updates
        )
        return ActionResult(
            ok=True, message=f"Updated fields: {', '.join(sorted(updates))}", details=updates
        )

    def assign_to_user(self, ctx: ActionContext) -> ActionResult:
        user_id = ctx.config.assign_to_user_id
        if not user_id:
            return ActionResult(ok=False, message="User to assign is required")
        self._store.update_entity(
            ctx.state.tenant_id,
            ctx.state.entity_type,
            ctx.state.entity_id,
            {"assigned_to": user_id},
        )
        return ActionResult(ok=True, message=f"Assigned to user {user_id}")

    def move_deal_stage(self, ctx: ActionContext) -> ActionResult:
        stage = ctx.config.deal_stage_id
        if not stage:
            return ActionResult(ok=False, message="Deal stage is required")
        if ctx.state.entity_type != "deal":
            return ActionResult(ok=False, message="Only deals can be moved between stages")
        self._store.update_entity(
            ctx.state.tenant_id, "deal", ctx.state.entity_id, {"stage": stage}
        )
        return ActionResult(ok=True, message=f"Moved deal to stage {stage}")

    # ------------------------------------------------------------------
    # Records keyed by the idempotency key; a repeat with the same key is
    # skipped.

    def create_task(self, ctx: ActionContext) -> ActionResult:
        cfg = ctx.config
        if not cfg.task_title:
            return ActionResult(ok=False, message="Task title is required")
        if self._already_recorded(ctx, TASKS):
            return ActionResult(ok=True, message="Task already created")

        title = ctx.render(cfg.task_title)
        self._store.add_document(
            ctx.state.tenant_id,
            TASKS,
            {
                "title": title,
                "description": ctx.render(cfg.task_description) if cfg.task_description else "",
                "status": "pending",
                "priority": "medium",
                "due_date": (ctx.now + timedelta(days=cfg.task_due_in_days)).isoformat(),
                "related_contact_id": (
                    ctx.state.entity_id if ctx.state.entity_type == "contact" else None
                ),
                "related_deal_id": ctx.state.entity_id if ctx.state.entity_type == "deal" else None,
                "created_by": "workflow",
                "workflow_id": ctx.workflow.id,
                "idempotency_key": ctx.idempotency_key,
            },
        )
        return ActionResult(ok=True, message=f"Created task: {title}")

    def notify_team(self, ctx: ActionContext) -> ActionResult:
        cfg = ctx.config
        if not cfg.notification_message:
            return ActionResult(ok=False, message="Notification message is required")
        if self._already_recorded(ctx, NOTIFICATIONS):
            return ActionResult(ok=True, message="Team already notified")

        message = ctx.render(cfg.notification_message)
        recipients: list[str | None] = list(cfg.notify_user_ids) or [None]
        for user_id in recipients:
            self._store.add_document(
                ctx.state.tenant_id,
                NOTIFICATIONS,
                {
                    "user_id": user_id,
                    "message": message,
                    "read": False,
                    "workflow_id": ctx.workflow.id,
                    "entity_type": ctx.state.entity_type,
                    "entity_id": ctx.state.entity_id,
                    "idempotency_key": ctx.idempotency_key,
                },
            )
        logger.info(
            "Team notified",
            extra={"workflow_id": ctx.workflow.id, "recipients": len(recipients)},
        )
        return ActionResult(ok=True, message="Team notified")

    def _already_recorded(self, ctx: ActionContext, collection: str) -> bool:
        return any(
            doc.get("idempotency_key") == ctx.idempotency_key
            for doc in self._store.list_documents(ctx.state.tenant_id, collection)
        )

    # ------------------------------------------------------------------
    # Webhooks are delivered at-least-once; receivers should deduplicate on
    # the ``X-Idempotency-Key`` header.

    def webhook(self, ctx: ActionContext) -> ActionResult:
        cfg = ctx.config
        if not cfg.webhook_url:
            return ActionResult(ok=False, message="Webhook URL is required")

        payload: dict[str, Any] = {
            "event": "workflow.action",
            "workflow_id": ctx.workflow.id,
            "execution_id": ctx.state.id,
            "entity_type": ctx.state.entity_type,
            "entity_id": ctx.state.entity_id,
            "entity_data": ctx.entity,
            "timestamp": ctx.now.isoformat(),
        }
        headers = {"X-Idempotency-Key": ctx.idempotency_key}
        try:
            if cfg.webhook_method == "GET":
                resp = self._http.get(
                    cfg.webhook_url,
                    params={k: payload[k] for k in ("event", "workflow_id", "entity_id")},
                    headers=headers,
                    timeout=self._http_timeout,
                )
            else:
                resp = self._http.post(
                    cfg.webhook_url, json=payload, headers=headers, timeout=self._http_timeout
                )
        except requests.RequestException as e:
            return ActionResult(ok=False, message=f"Webhook failed: {e}")

        if not resp.ok:
            return ActionResult(ok=False, message=f"Webhook returned {resp.status_code}")
        return ActionResult(ok=True, message=f"Webhook called: {cfg.webhook_url}")
