from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from repairdesk.audit.models import ItemEvent
from repairdesk.context import get_correlation_id


logger = logging.getLogger("repairdesk.audit")

EVENT_SCOPES = {"lead", "tray", "service_file"}


class AuditLogger:
    """Writes and reads the item event history. There is no update or delete."""

    def log(
        self,
        session: Session,
        *,
        scope_type: str,
        scope_id: uuid.UUID,
        message: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        actor_id: str | None = None,
        actor_name: str | None = None,
        correlation_id: str | None = None,
    ) -> ItemEvent:
        if scope_type not in EVENT_SCOPES:
            raise ValueError(f"unsupported event scope: {scope_type}")

        event = ItemEvent(
            type=scope_type,
            item_id=scope_id,
            event_type=event_type,
            message=message,
            payload=payload or {},
            actor_id=actor_id,
            actor_name=actor_name,
            correlation_id=correlation_id or get_correlation_id(),
        )
        session.add(event)
        session.flush()
        logger.info("item_event_recorded", extra={"event_type": event_type, "item_id": str(scope_id)})
        return event

    def list_events(
        self,
        session: Session,
        *,
        scope_type: str | None = None,
        item_id: uuid.UUID | None = None,
        event_type: str | None = None,
        cursor: str | None = None,
        limit: int = 50,
    ) -> list[ItemEvent]:
        stmt: Select[tuple[ItemEvent]] = select(ItemEvent)
        if scope_type:
            stmt = stmt.where(ItemEvent.type == scope_type)
        if item_id is not None:
            stmt = stmt.where(ItemEvent.item_id == item_id)
        if event_type:
            stmt = stmt.where(ItemEvent.event_type == event_type)

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        stmt = stmt.order_by(ItemEvent.created_at.desc(), ItemEvent.id.desc()).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())


audit_logger = AuditLogger()
