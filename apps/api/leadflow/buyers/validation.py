"""Buyer lead validation.

One rule table is shared by the three write paths:

* ``validate_create`` - every required field must be present, status is forced to ``New``.
* ``validate_update`` - partial payload, only the keys that were sent are checked.
* ``validate_import`` - a CSV row; status is always ``New`` and tags default to empty.

Field rules run first, then the cross-field rules in a fixed order. Every
violation is collected so one submission reports all of its field errors.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import EmailStr, TypeAdapter, ValidationError

from leadflow.buyers.enums import (
    PROPERTY_TYPES_REQUIRING_BHK,
    Bhk,
    BuyerStatus,
    City,
    PropertyType,
    Purpose,
    Source,
    Timeline,
)
from leadflow.buyers.schemas import BuyerCreate, BuyerInput, BuyerUpdate
from leadflow.core.errors import ValidationFailed


BHK_REQUIRED_MESSAGE = "BHK is required for Apartment and Villa properties"
BUDGET_ORDER_MESSAGE = "Maximum budget must be greater than or equal to minimum budget"
BUDGET_MIN_POSITIVE_MESSAGE = "Budget minimum must be positive"
BUDGET_MAX_POSITIVE_MESSAGE = "Budget maximum must be positive"

# 1 lakh crore; well inside a BIGINT column
BUDGET_LIMIT = 10**12

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_email_adapter = TypeAdapter(EmailStr)


class _Absent(ValueError):
    """Raised by a parser when the raw value carries no data."""


@dataclass(frozen=True)
class FieldRule:
    name: str
    parse: Callable[[Any], Any]
    required: bool = False
    required_message: str = ""


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _text(label: str, *, max_length: int, min_length: int = 0) -> Callable[[Any], str]:
    def parse(value: Any) -> str:
        if _is_blank(value):
            raise _Absent()
        text = str(value).strip()
        if len(text) < min_length:
            raise ValueError(f"{label} is required")
        if len(text) > max_length:
            raise ValueError(f"{label} must be {max_length} characters or less")
        return text

    return parse


def _choice(label: str, enum_cls: type[StrEnum]) -> Callable[[Any], StrEnum]:
    allowed = [member.value for member in enum_cls]

    def parse(value: Any) -> StrEnum:
        if _is_blank(value):
            raise _Absent()
        candidate = str(value).strip()
        if candidate not in allowed:
            raise ValueError(f"Invalid {label}. Expected one of: {', '.join(allowed)}")
        return enum_cls(candidate)

    return parse


def _email(value: Any) -> str:
    if _is_blank(value):
        raise _Absent()
    try:
        return str(_email_adapter.validate_python(str(value).strip()))
    except ValidationError as exc:
        raise ValueError("Invalid email address") from exc


def parse_budget(value: Any) -> int | None:
    """Coerce a raw budget to an int; blank or non-numeric input is absent, never zero."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    match = _LEADING_INT_RE.match(str(value))
    if match is None:
        return None
    return int(match.group(1))


def _budget(label: str) -> Callable[[Any], int]:
    def parse(value: Any) -> int:
        parsed = parse_budget(value)
        if parsed is None:
            raise _Absent()
        if parsed > BUDGET_LIMIT:
            raise ValueError(f"{label} must be at most {BUDGET_LIMIT}")
        return parsed

    return parse


def parse_tags(value: Any) -> list[str]:
    if value is None:
        return []
    items: Iterable[Any] = value.split(",") if isinstance(value, str) else value
    return [str(item).strip() for item in items if item is not None and str(item).strip()]


FIELD_RULES: tuple[FieldRule, ...] = (
    FieldRule(
        "full_name",
        _text("Full name", min_length=1, max_length=80),
        required=True,
        required_message="Full name is required",
    ),
    FieldRule("email", _email),
    FieldRule(
        "phone",
        _text("Phone number", min_length=1, max_length=15),
        required=True,
        required_message="Phone number is required",
    ),
    FieldRule("city", _choice("city", City), required=True, required_message="City is required"),
    FieldRule(
        "property_type",
        _choice("property type", PropertyType),
        required=True,
        required_message="Property type is required",
    ),
    FieldRule("bhk", _choice("BHK", Bhk)),
    FieldRule("purpose", _choice("purpose", Purpose), required=True, required_message="Purpose is required"),
    FieldRule("budget_min", _budget("Budget minimum")),
    FieldRule("budget_max", _budget("Budget maximum")),
    FieldRule("timeline", _choice("timeline", Timeline), required=True, required_message="Timeline is required"),
    FieldRule("source", _choice("source", Source), required=True, required_message="Source is required"),
    FieldRule("status", _choice("status", BuyerStatus)),
    FieldRule("notes", _text("Notes", max_length=1000)),
    FieldRule("tags", parse_tags),
)

_RULES_BY_NAME = {rule.name: rule for rule in FIELD_RULES}


class _Errors(dict[str, list[str]]):
    def add(self, field: str, message: str) -> None:
        self.setdefault(field, []).append(message)


def decode_input(raw: BuyerInput | Mapping[str, Any]) -> BuyerInput:
    if isinstance(raw, BuyerInput):
        return raw
    try:
        return BuyerInput.model_validate(dict(raw))
    except ValidationError as exc:
        errors = _Errors()
        for error in exc.errors():
            location = error.get("loc") or ("payload",)
            errors.add(str(location[0]), str(error.get("msg", "Invalid value")))
        raise ValidationFailed(dict(errors)) from exc


def _apply_field_rules(
    payload: BuyerInput,
    fields: Iterable[str],
    *,
    partial: bool,
    errors: _Errors,
) -> dict[str, Any]:
    values: dict[str, Any] = {}
    present = payload.model_fields_set
    for name in fields:
        rule = _RULES_BY_NAME[name]
        raw = getattr(payload, name)
        if partial and name not in present:
            continue
        try:
            values[name] = rule.parse(raw)
        except _Absent:
            if rule.required:
                errors.add(name, rule.required_message)
            else:
                values[name] = None
        except ValueError as exc:
            errors.add(name, str(exc))
    return values


def _cross_field_errors(values: Mapping[str, Any], present: Iterable[str], errors: _Errors) -> None:
    keys = set(present)

    # (a) bhk required for apartments and villas
    if {"property_type", "bhk"} <= keys and "property_type" in values and "bhk" not in errors:
        if values["property_type"] in PROPERTY_TYPES_REQUIRING_BHK and not values.get("bhk"):
            errors.add("bhk", BHK_REQUIRED_MESSAGE)

    budget_min = values.get("budget_min") if "budget_min" in keys else None
    budget_max = values.get("budget_max") if "budget_max" in keys else None

    # (b) budget_max >= budget_min
    if budget_min is not None and budget_max is not None and budget_max < budget_min:
        errors.add("budget_max", BUDGET_ORDER_MESSAGE)
    # (c) budget_min positive
    if budget_min is not None and budget_min <= 0:
        errors.add("budget_min", BUDGET_MIN_POSITIVE_MESSAGE)
    # (d) budget_max positive
    if budget_max is not None and budget_max <= 0:
        errors.add("budget_max", BUDGET_MAX_POSITIVE_MESSAGE)


def _parse_token(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if _is_blank(value):
        raise _Absent()
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValueError("Invalid updated_at timestamp") from exc


def validate_create(raw: BuyerInput | Mapping[str, Any]) -> BuyerCreate:
    payload = decode_input(raw)
    errors = _Errors()
    fields = [rule.name for rule in FIELD_RULES if rule.name != "status"]
    values = _apply_field_rules(payload, fields, partial=False, errors=errors)
    _cross_field_errors(values, fields, errors)
    if errors:
        raise ValidationFailed(dict(errors))
    return BuyerCreate(**values, status=BuyerStatus.NEW)


def validate_import(raw: BuyerInput | Mapping[str, Any]) -> BuyerCreate:
    payload = decode_input(raw)
    errors = _Errors()
    fields = [rule.name for rule in FIELD_RULES if rule.name not in {"status", "tags"}]
    values = _apply_field_rules(payload, fields, partial=False, errors=errors)
    _cross_field_errors(values, fields, errors)
    if errors:
        raise ValidationFailed(dict(errors))
    tags = parse_tags(payload.tags) if "tags" in payload.model_fields_set else []
    return BuyerCreate(**values, status=BuyerStatus.NEW, tags=tags)


def validate_update(raw: BuyerInput | Mapping[str, Any]) -> BuyerUpdate:
    payload = decode_input(raw)
    errors = _Errors()
    fields = [rule.name for rule in FIELD_RULES]
    values = _apply_field_rules(payload, fields, partial=True, errors=errors)
    _cross_field_errors(values, values.keys(), errors)

    token: datetime | None = None
    try:
        token = _parse_token(payload.updated_at)
    except _Absent:
        errors.add("updated_at", "updated_at is required for updates")
    except ValueError as exc:
        errors.add("updated_at", str(exc))

    if errors or token is None:
        raise ValidationFailed(dict(errors))
    return BuyerUpdate(updated_at=token, **values)


def validate_merged(record: Mapping[str, Any]) -> None:
    """Re-check the cross-field rules on a stored record with an update applied."""
    errors = _Errors()
    _cross_field_errors(record, ("property_type", "bhk", "budget_min", "budget_max"), errors)
    if errors:
        raise ValidationFailed(dict(errors))


def validate_status(value: Any) -> BuyerStatus:
    try:
        return _RULES_BY_NAME["status"].parse(value)
    except _Absent as exc:
        raise ValidationFailed({"status": ["Status is required"]}) from exc
    except ValueError as exc:
        raise ValidationFailed({"status": [str(exc)]}) from exc
