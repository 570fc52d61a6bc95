"""Placeholder substitution for action content.

``{{first_name}}``-style placeholders are resolved from the entity first and
the instance context second. Anything that cannot be resolved is left in
place verbatim so a half-personalised message is still deliverable.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")


def _str(value: object) -> str:
    return "" if value is None else str(value)


def builtin_variables(entity: Mapping[str, object]) -> dict[str, str]:
    name = _str(entity.get("name")).strip()
    parts = name.split(" ") if name else []
    return {
        "first_name": parts[0] if parts else "there",
        "last_name": " ".join(parts[1:]),
        "name": name or "there",
        "email": _str(entity.get("email")),
        "phone": _str(entity.get("phone")),
        "company": _str(entity.get("company")),
    }


def _lookup(source: Mapping[str, object], dotted: str) -> tuple[bool, object]:
    current: object = source
    for part in dotted.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False, None
        current = current[part]
    return True, current


def personalize(
    content: str,
    entity: Mapping[str, object],
    context: Mapping[str, object] | None = None,
) -> str:
    builtins = builtin_variables(entity)
    unresolved: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        lowered = key.lower()
        if lowered in builtins:
            return builtins[lowered]
        for source in (entity, context or {}):
            found, value = _lookup(source, key)
            if found and not isinstance(value, (Mapping, list)):
                return _str(value)
        unresolved.append(key)
        return match.group(0)

    rendered = _PLACEHOLDER.sub(_replace, content)
    if unresolved:
        logger.warning(
            "Unresolved template placeholders left as-is",
            extra={"placeholders": sorted(set(unresolved)), "entity_id": entity.get("id")},
        )
    return rendered
