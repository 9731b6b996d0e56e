from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from repairdesk.api.errors import error_response, require_any_permission, require_permission
from repairdesk.core.auth import AuthUser, get_current_user
from repairdesk.core.database import get_db
from repairdesk.service_sheet.errors import NotFoundError, ServiceSheetError
from repairdesk.service_sheet.schemas import ServiceSheetResult, ServiceSheetSaveRequest
from repairdesk.service_sheet.service import service_sheet_service


router = APIRouter(prefix="/api/repair", tags=["repair.service_sheet"])


def _domain_error(exc: ServiceSheetError) -> HTTPException:
    status_code = status.HTTP_404_NOT_FOUND if isinstance(exc, NotFoundError) else status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message, "details": exc.details},
    )


def _http_error(request: Request, exc: HTTPException, *, fallback_code: str) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return error_response(
            request,
            status_code=exc.status_code,
            code=str(exc.detail.get("code", fallback_code)),
            message=str(exc.detail.get("message", "")),
            details=exc.detail.get("details"),
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=fallback_code,
        message=str(exc.detail),
        details=exc.detail,
    )


@router.post("/leads/{lead_id}/trays/{tray_id}/service-sheet", response_model=ServiceSheetResult)
def save_service_sheet(
    request: Request,
    lead_id: uuid.UUID,
    tray_id: uuid.UUID,
    dto: ServiceSheetSaveRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ServiceSheetResult | JSONResponse:
    try:
        require_permission(user, "repair.service_sheet.write")
        try:
            return service_sheet_service.reconcile(db, lead_id=lead_id, tray_id=tray_id, request=dto, current_user=user)
        except ServiceSheetError as exc:
            raise _domain_error(exc) from exc
    except HTTPException as exc:
        return _http_error(request, exc, fallback_code="service_sheet_save_failed")


@router.get("/trays/{tray_id}/service-sheet", response_model=ServiceSheetResult)
def get_service_sheet(
    request: Request,
    tray_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ServiceSheetResult | JSONResponse:
    try:
        require_any_permission(user, ["repair.service_sheet.read", "repair.service_sheet.write"])
        try:
            return service_sheet_service.current_sheet(db, tray_id=tray_id)
        except ServiceSheetError as exc:
            raise _domain_error(exc) from exc
    except HTTPException as exc:
        return _http_error(request, exc, fallback_code="service_sheet_read_failed")
