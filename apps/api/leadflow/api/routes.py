from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from leadflow.buyers.api import error_response, get_current_caller
from leadflow.buyers.api import router as buyers_router
from leadflow.buyers.policy import Caller, can_view_all_buyers
from leadflow.core.config import get_settings
from leadflow.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(buyers_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(caller: Caller = Depends(get_current_caller)) -> dict[str, str | bool | None]:
    return {
        "sub": caller.user_id,
        "email": caller.email,
        "is_admin": caller.is_admin,
    }


@router.get("/metrics", tags=["system"])
def metrics(request: Request, caller: Caller = Depends(get_current_caller)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        return error_response(request, status_code=404, code="NOT_FOUND", message="Not found")
    if not can_view_all_buyers(caller):
        return error_response(request, status_code=403, code="FORBIDDEN", message="Metrics are restricted to admins")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
