"""``{{dotted.path}}`` placeholder rendering for action configs."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from ..conditions import MISSING, resolve_field

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value)
    return str(value)


def render_string(template: str, variables: Mapping[str, Any]) -> Any:
    """Render placeholders in ``template``.

    A template that is exactly one placeholder yields the raw value so that
    numbers and objects keep their type. Unresolved placeholders stay verbatim.
    """
    whole = PLACEHOLDER.fullmatch(template.strip())
    if whole:
        value = resolve_field(variables, whole.group(1))
        return template if value is MISSING else value

    def _sub(match: re.Match[str]) -> str:
        value = resolve_field(variables, match.group(1))
        return match.group(0) if value is MISSING else _stringify(value)

    return PLACEHOLDER.sub(_sub, template)


def render(value: Any, variables: Mapping[str, Any]) -> Any:
    """Recursively render every string inside ``value``."""
    if isinstance(value, str):
        return render_string(value, variables)
    if isinstance(value, list):
        return [render(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: render(item, variables) for key, item in value.items()}
    return value
