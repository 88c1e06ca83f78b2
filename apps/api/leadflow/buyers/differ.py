from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

CREATED_KEY = "created"

TRACKED_FIELDS: tuple[str, ...] = (
    "full_name",
    "email",
    "phone",
    "city",
    "property_type",
    "bhk",
    "purpose",
    "budget_min",
    "budget_max",
    "timeline",
    "source",
    "status",
    "notes",
    "tags",
)

_FIELD_LABELS = {
    "bhk": "BHK",
}


def _canonical(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def to_jsonable(value: Any) -> Any:
    return json.loads(_canonical(value))


def snapshot(record: Any) -> dict[str, Any]:
    if isinstance(record, Mapping):
        return {field: to_jsonable(record.get(field)) for field in TRACKED_FIELDS}
    return {field: to_jsonable(getattr(record, field, None)) for field in TRACKED_FIELDS}


def compute_diff(before: Any, after: Any) -> dict[str, list[Any]]:
    """Field-level ``[old, new]`` pairs; values compare by their JSON form so list order counts."""
    old_values = snapshot(before)
    new_values = snapshot(after)
    changes: dict[str, list[Any]] = {}
    for field in TRACKED_FIELDS:
        if _canonical(old_values[field]) != _canonical(new_values[field]):
            changes[field] = [old_values[field], new_values[field]]
    return changes


def creation_diff(record: Any) -> dict[str, list[Any]]:
    return {CREATED_KEY: [None, snapshot(record)]}


def humanize_field(field: str) -> str:
    label = _FIELD_LABELS.get(field)
    if label:
        return label
    words = field.replace("_", " ").strip()
    return words[:1].upper() + words[1:]


def _display(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def render_diff(diff: Mapping[str, Any]) -> str:
    parts: list[str] = []
    for field, values in diff.items():
        if field == CREATED_KEY:
            parts.append("Lead created")
            continue
        old_value, new_value = values
        label = humanize_field(field)
        if _is_empty(old_value):
            parts.append(f'{label} set to "{_display(new_value)}"')
        elif _is_empty(new_value):
            parts.append(f"{label} removed")
        else:
            parts.append(f'{label} changed from "{_display(old_value)}" to "{_display(new_value)}"')
    return ", ".join(parts) if parts else "No changes"
