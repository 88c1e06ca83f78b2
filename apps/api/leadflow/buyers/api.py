from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, File, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from leadflow.buyers.policy import Caller, resolve_caller
from leadflow.buyers.schemas import (
    BuyerDetailRead,
    BuyerFilters,
    BuyerHistoryRead,
    BuyerPage,
    BuyerRead,
    ImportResult,
)
from leadflow.buyers.service import BuyerService
from leadflow.context import get_correlation_id
from leadflow.core.auth import AuthUser, get_current_user as get_auth_user
from leadflow.core.config import get_settings
from leadflow.core.database import get_db
from leadflow.core.errors import LeadFlowError, RateLimited, ValidationFailed
from leadflow.core.rate_limit import MutationRateLimiter, get_rate_limiter

router = APIRouter(prefix="/api/buyers", tags=["buyers"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__, headers=headers)


def lead_flow_error_response(request: Request, exc: LeadFlowError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


def field_errors_from(errors: Sequence[Mapping[str, Any]]) -> dict[str, list[str]]:
    """Group pydantic error entries by the field they point at."""
    field_errors: dict[str, list[str]] = {}
    for error in errors:
        location = [part for part in error.get("loc") or () if part not in {"query", "path", "body"}]
        field = str(location[0]) if location else "request"
        field_errors.setdefault(field, []).append(str(error.get("msg", "Invalid value")))
    return field_errors


def get_current_caller(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> Caller:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return resolve_caller(
        auth_user,
        admin_email=get_settings().demo_admin_email,
        correlation_id=correlation_id,
    )


def get_buyer_service(rate_limiter: MutationRateLimiter = Depends(get_rate_limiter)) -> BuyerService:
    return BuyerService(rate_limiter)


def _filters(
    page: int,
    search: str | None,
    city: str | None,
    property_type: str | None,
    status_filter: str | None,
    timeline: str | None,
    sort: str | None,
) -> BuyerFilters:
    raw = {
        "page": page,
        "search": search,
        "city": city or None,
        "property_type": property_type or None,
        "status": status_filter or None,
        "timeline": timeline or None,
        "sort": sort,
    }
    try:
        return BuyerFilters.model_validate(raw)
    except ValidationError as exc:
        raise ValidationFailed(field_errors_from(exc.errors())) from exc


@router.get("", response_model=BuyerPage)
def list_buyers(
    request: Request,
    page: int = Query(default=1),
    search: str | None = Query(default=None),
    city: str | None = Query(default=None),
    property_type: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    timeline: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> BuyerPage | JSONResponse:
    try:
        filters = _filters(page, search, city, property_type, status_filter, timeline, sort)
        return service.list_buyers(db, caller, filters)
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)


@router.post("", response_model=BuyerRead, status_code=status.HTTP_201_CREATED)
def create_buyer(
    request: Request,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> BuyerRead | JSONResponse:
    try:
        return service.create_buyer(db, caller, payload)
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)


@router.post("/import", response_model=ImportResult)
def import_buyers(
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> ImportResult | JSONResponse:
    try:
        content = file.file.read()
        return service.import_buyers(db, caller, content)
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)


@router.get("/export")
def export_buyers(
    request: Request,
    search: str | None = Query(default=None),
    city: str | None = Query(default=None),
    property_type: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    timeline: str | None = Query(default=None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> Response:
    try:
        filters = _filters(1, search, city, property_type, status_filter, timeline, None)
        filename, content = service.export_buyers(db, caller, filters)
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{buyer_id}", response_model=BuyerDetailRead)
def get_buyer(
    request: Request,
    buyer_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> BuyerDetailRead | JSONResponse:
    try:
        return service.get_buyer_detail(db, caller, buyer_id)
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)


@router.patch("/{buyer_id}", response_model=BuyerRead)
def update_buyer(
    request: Request,
    buyer_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> BuyerRead | JSONResponse:
    try:
        return service.update_buyer(db, caller, buyer_id, payload)
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)


@router.get("/{buyer_id}/history", response_model=list[BuyerHistoryRead])
def list_buyer_history(
    request: Request,
    buyer_id: uuid.UUID,
    limit: int | None = Query(default=None, ge=1, le=100),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> list[BuyerHistoryRead] | JSONResponse:
    try:
        return service.list_history(db, caller, buyer_id, limit)
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)


@router.post("/{buyer_id}/status", response_model=BuyerRead)
def change_buyer_status(
    request: Request,
    buyer_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    service: BuyerService = Depends(get_buyer_service),
) -> BuyerRead | JSONResponse:
    try:
        return service.change_status(db, caller, buyer_id, payload.get("status"))
    except LeadFlowError as exc:
        return lead_flow_error_response(request, exc)
