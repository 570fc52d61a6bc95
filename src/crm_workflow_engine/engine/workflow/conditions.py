from __future__ import annotations

import logging
from collections.abc import Mapping

from .definition import ConditionConfig, ConditionType

logger = logging.getLogger(__name__)


def _tags(entity: Mapping[str, object]) -> list[str]:
    raw = entity.get("tags")
    if not isinstance(raw, list):
        return []
    return [str(t) for t in raw]


def _email_engaged(
    entity: Mapping[str, object],
    context: Mapping[str, object],
    kind: str,
    campaign_id: str | None,
) -> bool:
    """True when the entity has an ``opened``/``clicked`` email event.

    Events are read from ``entity["email_events"]`` (a list of
    ``{"type": ..., "campaign_id": ...}``). Without a campaign filter the
    boolean flags ``email_<kind>`` on the entity or the context also count.
    """

    events = entity.get("email_events")
    if isinstance(events, list):
        for event in events:
            if not isinstance(event, Mapping) or event.get("type") != kind:
                continue
            if campaign_id is None or event.get("campaign_id") == campaign_id:
                return True
    if campaign_id is None:
        flag = f"email_{kind}"
        return bool(entity.get(flag) or context.get(flag))
    return False


def evaluate_condition(
    config: ConditionConfig,
    entity: Mapping[str, object],
    context: Mapping[str, object] | None = None,
) -> bool:
    ctx = context or {}
    condition = config.condition

    if condition == ConditionType.HAS_TAG:
        return config.tag_id is not None and config.tag_id in _tags(entity)
    if condition == ConditionType.MISSING_TAG:
        return config.tag_id is None or config.tag_id not in _tags(entity)
    if condition == ConditionType.FIELD_EQUALS:
        value = entity.get(config.field_name or "")
        return value is not None and str(value) == (config.field_value or "")
    if condition == ConditionType.FIELD_CONTAINS:
        value = entity.get(config.field_name or "")
        haystack = "" if value is None else str(value)
        return (config.field_value or "").lower() in haystack.lower()
    if condition == ConditionType.DEAL_STAGE_IS:
        return entity.get("stage") == config.deal_stage
    if condition == ConditionType.CONTACT_SOURCE_IS:
        return entity.get("source") == config.source
    if condition == ConditionType.EMAIL_OPENED:
        return _email_engaged(entity, ctx, "opened", config.campaign_id)
    if condition == ConditionType.EMAIL_CLICKED:
        return _email_engaged(entity, ctx, "clicked", config.campaign_id)

    logger.warning("Unknown condition type evaluated as false", extra={"condition": condition})
    return False
