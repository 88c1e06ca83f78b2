from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadflow.buyers.enums import Bhk, BuyerStatus, City, PropertyType, Purpose, Source, Timeline
from leadflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[StrEnum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Buyer(Base):
    __tablename__ = "buyers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    full_name: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str] = mapped_column(String(15), nullable=False)
    city: Mapped[City] = mapped_column(_enum_column(City, "city"), nullable=False)
    property_type: Mapped[PropertyType] = mapped_column(_enum_column(PropertyType, "property_type"), nullable=False)
    bhk: Mapped[Bhk | None] = mapped_column(_enum_column(Bhk, "bhk"), nullable=True)
    purpose: Mapped[Purpose] = mapped_column(_enum_column(Purpose, "purpose"), nullable=False)
    budget_min: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    budget_max: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    timeline: Mapped[Timeline] = mapped_column(_enum_column(Timeline, "timeline"), nullable=False)
    source: Mapped[Source] = mapped_column(_enum_column(Source, "source"), nullable=False)
    status: Mapped[BuyerStatus] = mapped_column(
        _enum_column(BuyerStatus, "status"),
        nullable=False,
        default=BuyerStatus.NEW,
        server_default=BuyerStatus.NEW.value,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    history: Mapped[list[BuyerHistory]] = relationship(
        "BuyerHistory",
        back_populates="buyer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BuyerHistory.changed_at",
    )

    __table_args__ = (
        Index("ix_buyers_owner_updated", "owner_id", "updated_at"),
        Index("ix_buyers_filters", "city", "property_type", "status", "timeline"),
    )


class BuyerHistory(Base):
    __tablename__ = "buyer_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("buyers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    changed_by: Mapped[str] = mapped_column(String(128), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    diff: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    buyer: Mapped[Buyer] = relationship("Buyer", back_populates="history")
