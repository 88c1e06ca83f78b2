from __future__ import annotations

import math
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from leadflow.buyers.models import Buyer
from leadflow.buyers.policy import Caller, can_view_all_buyers
from leadflow.buyers.schemas import BuyerFilters, BuyerPage, BuyerRead

DEFAULT_SORT_FIELD = "updated_at"
DEFAULT_SORT_DIRECTION = "desc"

SORTABLE_FIELDS = frozenset(column.key for column in Buyer.__table__.columns)


def parse_sort(sort: str | None) -> tuple[str, str]:
    """Split ``field:direction``; anything unrecognised falls back to ``updated_at desc``."""
    if not sort or ":" not in sort:
        return DEFAULT_SORT_FIELD, DEFAULT_SORT_DIRECTION
    field, _, direction = sort.partition(":")
    field = field.strip()
    if field not in SORTABLE_FIELDS:
        return DEFAULT_SORT_FIELD, DEFAULT_SORT_DIRECTION
    return field, "asc" if direction.strip().lower() == "asc" else "desc"


def scoped_statement(caller: Caller) -> Select[tuple[Buyer]]:
    stmt = select(Buyer)
    if not can_view_all_buyers(caller):
        stmt = stmt.where(Buyer.owner_id == caller.user_id)
    return stmt


_LIKE_ESCAPE = "/"


def _like_literal(text: str) -> str:
    for char in (_LIKE_ESCAPE, "%", "_"):
        text = text.replace(char, _LIKE_ESCAPE + char)
    return text


def apply_filters(stmt: Select[Any], filters: BuyerFilters) -> Select[Any]:
    search = (filters.search or "").strip()
    if search:
        # search text is matched literally, never as a LIKE pattern
        pattern = f"%{_like_literal(search)}%"
        stmt = stmt.where(
            or_(
                Buyer.full_name.ilike(pattern, escape=_LIKE_ESCAPE),
                Buyer.phone.ilike(pattern, escape=_LIKE_ESCAPE),
                Buyer.email.ilike(pattern, escape=_LIKE_ESCAPE),
            )
        )
    if filters.city is not None:
        stmt = stmt.where(Buyer.city == filters.city)
    if filters.property_type is not None:
        stmt = stmt.where(Buyer.property_type == filters.property_type)
    if filters.status is not None:
        stmt = stmt.where(Buyer.status == filters.status)
    if filters.timeline is not None:
        stmt = stmt.where(Buyer.timeline == filters.timeline)
    return stmt


def apply_sort(stmt: Select[Any], sort: str | None) -> Select[Any]:
    field, direction = parse_sort(sort)
    column = getattr(Buyer, field)
    ordering = column.asc() if direction == "asc" else column.desc()
    # id keeps pagination stable when the sort column has ties
    return stmt.order_by(ordering, Buyer.id.asc())


def list_buyers(session: Session, caller: Caller, filters: BuyerFilters, *, page_size: int) -> BuyerPage:
    page = max(filters.page, 1)
    stmt = apply_filters(scoped_statement(caller), filters)

    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = session.scalars(apply_sort(stmt, filters.sort).offset((page - 1) * page_size).limit(page_size)).all()

    return BuyerPage(
        items=[BuyerRead.model_validate(row) for row in rows],
        page=page,
        limit=page_size,
        total=total,
        total_pages=math.ceil(total / page_size) if page_size > 0 else 0,
    )


def export_statement(caller: Caller, filters: BuyerFilters) -> Select[tuple[Buyer]]:
    stmt = apply_filters(scoped_statement(caller), filters)
    return stmt.order_by(Buyer.updated_at.desc(), Buyer.id.asc())
