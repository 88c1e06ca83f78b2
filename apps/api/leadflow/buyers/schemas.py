from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from leadflow.buyers.enums import Bhk, BuyerStatus, City, PropertyType, Purpose, Source, Timeline


RawText = str | None
RawNumber = str | int | float | None


class BuyerInput(BaseModel):
    """Loosely typed buyer payload as it arrives from a form, JSON body or CSV row."""

    model_config = ConfigDict(extra="ignore")

    full_name: RawText = None
    email: RawText = None
    phone: RawText = None
    city: RawText = None
    property_type: RawText = None
    bhk: RawText = None
    purpose: RawText = None
    budget_min: RawNumber = None
    budget_max: RawNumber = None
    timeline: RawText = None
    source: RawText = None
    status: RawText = None
    notes: RawText = None
    tags: list[str] | str | None = None
    updated_at: datetime | str | None = None

    @field_validator(
        "full_name",
        "email",
        "phone",
        "city",
        "property_type",
        "bhk",
        "purpose",
        "timeline",
        "source",
        "status",
        "notes",
        mode="before",
    )
    @classmethod
    def _coerce_scalars_to_text(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tag_items(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value if item is not None]
        return value


class BuyerCreate(BaseModel):
    full_name: str
    email: str | None = None
    phone: str
    city: City
    property_type: PropertyType
    bhk: Bhk | None = None
    purpose: Purpose
    budget_min: int | None = None
    budget_max: int | None = None
    timeline: Timeline
    source: Source
    status: BuyerStatus = BuyerStatus.NEW
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)


class BuyerUpdate(BaseModel):
    updated_at: datetime
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    city: City | None = None
    property_type: PropertyType | None = None
    bhk: Bhk | None = None
    purpose: Purpose | None = None
    budget_min: int | None = None
    budget_max: int | None = None
    timeline: Timeline | None = None
    source: Source | None = None
    status: BuyerStatus | None = None
    notes: str | None = None
    tags: list[str] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"updated_at"})


class BuyerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str
    email: str | None
    phone: str
    city: City
    property_type: PropertyType
    bhk: Bhk | None
    purpose: Purpose
    budget_min: int | None
    budget_max: int | None
    timeline: Timeline
    source: Source
    status: BuyerStatus
    notes: str | None
    tags: list[str]
    owner_id: str
    created_at: datetime
    updated_at: datetime


class BuyerHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    buyer_id: UUID
    changed_by: str
    changed_at: datetime
    diff: dict[str, Any]
    summary: str


class BuyerDetailRead(BaseModel):
    buyer: BuyerRead
    history: list[BuyerHistoryRead]


class BuyerFilters(BaseModel):
    page: int = 1
    search: str | None = None
    city: City | None = None
    property_type: PropertyType | None = None
    status: BuyerStatus | None = None
    timeline: Timeline | None = None
    sort: str | None = None


class BuyerPage(BaseModel):
    items: list[BuyerRead]
    page: int
    limit: int
    total: int
    total_pages: int


class ImportResult(BaseModel):
    success: bool = True
    imported: int
    message: str
