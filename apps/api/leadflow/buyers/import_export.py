from __future__ import annotations

import csv
import io
import re
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Any

from leadflow.buyers.models import Buyer
from leadflow.buyers.schemas import BuyerCreate
from leadflow.buyers.validation import validate_import
from leadflow.core.errors import ValidationFailed

EXPORT_HEADERS = [
    "Full Name",
    "Email",
    "Phone",
    "City",
    "Property Type",
    "BHK",
    "Purpose",
    "Budget Min",
    "Budget Max",
    "Timeline",
    "Source",
    "Status",
    "Notes",
    "Tags",
    "Created At",
    "Updated At",
]

# normalised header -> buyer field; the first non-blank column wins when several map to one field
HEADER_ALIASES: dict[str, str] = {
    "fullname": "full_name",
    "full_name": "full_name",
    "email": "email",
    "phone": "phone",
    "phonenumber": "phone",
    "phone_number": "phone",
    "city": "city",
    "propertytype": "property_type",
    "property_type": "property_type",
    "bhk": "bhk",
    "purpose": "purpose",
    "budgetmin": "budget_min",
    "budget_min": "budget_min",
    "budgetmax": "budget_max",
    "budget_max": "budget_max",
    "timeline": "timeline",
    "source": "source",
    "notes": "notes",
    "tags": "tags",
}

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_header(header: str | None) -> str:
    return _WHITESPACE_RE.sub("", (header or "").strip().lower())


def _format_size(max_bytes: int) -> str:
    megabyte = 1024 * 1024
    if max_bytes >= megabyte and max_bytes % megabyte == 0:
        return f"{max_bytes // megabyte}MB"
    return f"{max_bytes} bytes"


def _row_to_payload(row: dict[str | None, Any]) -> dict[str, str]:
    payload: dict[str, str] = {}
    for header, raw in row.items():
        if header is None:
            continue
        field = HEADER_ALIASES.get(normalize_header(header))
        if field is None:
            continue
        value = raw if isinstance(raw, str) else ""
        if payload.get(field, "").strip():
            continue
        payload[field] = value
    return payload


def _is_blank_row(row: dict[str | None, Any]) -> bool:
    for value in row.values():
        if isinstance(value, str) and value.strip():
            return False
        if isinstance(value, list) and any(str(item).strip() for item in value):
            return False
    return True


def read_import_rows(content: bytes, *, max_bytes: int, max_rows: int) -> list[dict[str, str]]:
    """Decode an uploaded CSV into buyer payloads keyed by field name.

    Size and row caps are enforced here, before any row is validated.
    """
    if len(content) > max_bytes:
        raise ValidationFailed({"file": [f"File too large. Maximum size is {_format_size(max_bytes)}."]})
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationFailed({"file": ["CSV file must be UTF-8 encoded"]}) from exc

    reader = csv.DictReader(io.StringIO(text))
    try:
        rows = [row for row in reader if not _is_blank_row(row)]
    except csv.Error as exc:
        raise ValidationFailed({"file": [f"CSV parsing error: {exc}"]}) from exc

    if len(rows) > max_rows:
        raise ValidationFailed({"file": [f"Too many rows. Maximum {max_rows} rows allowed per import."]})
    return [_row_to_payload(row) for row in rows]


def validate_import_rows(payloads: Iterable[dict[str, str]]) -> list[BuyerCreate]:
    """Validate every row; if any fails, raise once with all row errors and nothing is written."""
    accepted: list[BuyerCreate] = []
    row_errors: list[dict[str, Any]] = []
    for index, payload in enumerate(payloads, start=1):
        try:
            accepted.append(validate_import(payload))
        except ValidationFailed as exc:
            row_errors.append({"row": index, "errors": exc.field_errors})
    if row_errors:
        raise ValidationFailed(row_errors=row_errors)
    return accepted


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def export_row(buyer: Buyer) -> list[str]:
    return [
        buyer.full_name,
        _text(buyer.email),
        buyer.phone,
        _text(buyer.city),
        _text(buyer.property_type),
        _text(buyer.bhk),
        _text(buyer.purpose),
        _text(buyer.budget_min),
        _text(buyer.budget_max),
        _text(buyer.timeline),
        _text(buyer.source),
        _text(buyer.status),
        _text(buyer.notes),
        ", ".join(buyer.tags or []),
        _iso(buyer.created_at),
        _iso(buyer.updated_at),
    ]


def render_export(buyers: Iterable[Buyer]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for buyer in buyers:
        writer.writerow(export_row(buyer))
    return output.getvalue()


def export_filename(today: date) -> str:
    return f"leads-{today.isoformat()}.csv"
