from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from repairdesk.api.errors import error_response, require_permission
from repairdesk.audit.schemas import EventScope, ItemEventRead
from repairdesk.audit.service import audit_logger
from repairdesk.core.auth import AuthUser, get_current_user
from repairdesk.core.database import get_db


router = APIRouter(prefix="/api/repair", tags=["repair.events"])


@router.get("/events", response_model=list[ItemEventRead])
def list_events(
    request: Request,
    scope_type: EventScope | None = Query(default=None, alias="type"),
    item_id: uuid.UUID | None = Query(default=None),
    event_type: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ItemEventRead] | JSONResponse:
    try:
        require_permission(user, "repair.events.read")
        rows = audit_logger.list_events(
            db,
            scope_type=scope_type,
            item_id=item_id,
            event_type=event_type,
            cursor=cursor,
            limit=limit,
        )
        return [ItemEventRead.model_validate(row) for row in rows]
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="repair_events_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
