from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


EventScope = Literal["lead", "tray", "service_file"]


class ItemEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: str
    item_id: uuid.UUID
    event_type: str
    message: str
    payload: dict[str, Any]
    actor_id: str | None
    actor_name: str | None
    correlation_id: str | None
    created_at: datetime
