from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TriggerEventType(str, Enum):
    CONTACT_CREATED = "contact.created"
    CONTACT_UPDATED = "contact.updated"
    CONTACT_TAG_ADDED = "contact.tag_added"
    CONTACT_TAG_REMOVED = "contact.tag_removed"
    FORM_SUBMITTED = "form.submitted"
    DEAL_CREATED = "deal.created"
    DEAL_STAGE_CHANGED = "deal.stage_changed"
    DEAL_WON = "deal.won"
    DEAL_LOST = "deal.lost"
    APPOINTMENT_SCHEDULED = "appointment.scheduled"
    APPOINTMENT_COMPLETED = "appointment.completed"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    EMAIL_OPENED = "email.opened"
    EMAIL_CLICKED = "email.clicked"
    LANDING_PAGE_VISITED = "landing_page.visited"
    LANDING_PAGE_FORM_SUBMITTED = "landing_page.form_submitted"
    MANUAL = "manual"


# Entity kinds a trigger may be raised for. Forms and appointments always
# resolve to the contact that submitted/booked them.
TRIGGER_ENTITY_TYPES: frozenset[str] = frozenset({"contact", "deal", "form", "appointment"})


def normalize_entity_type(entity_type: str) -> str:
    if entity_type in {"form", "appointment"}:
        return "contact"
    return entity_type


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """A domain event raised by the rest of the application.

    Triggers never perform work; they only start workflow instances.
    """

    type: TriggerEventType
    tenant_id: str
    entity_type: str
    entity_id: str
    entity_data: dict[str, object] = field(default_factory=dict)
    metadata: dict[str, object] = field(default_factory=dict)
    occurred_at: datetime | None = None
