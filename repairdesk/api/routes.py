from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from repairdesk.audit.api import router as events_router
from repairdesk.core.auth import AuthUser, get_current_user
from repairdesk.core.config import get_settings
from repairdesk.metrics import generate_metrics_payload, metrics_content_type
from repairdesk.service_sheet.api import router as service_sheet_router

router = APIRouter()
router.include_router(service_sheet_router)
router.include_router(events_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "email": user.email,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
