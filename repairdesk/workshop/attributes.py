from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator


LINE_ITEM_ATTRIBUTES_VERSION = 1


class LineItemAttributes(BaseModel):
    """Extended attributes of a tray item, stored as one JSON document.

    The record is immutable; callers derive a new one with ``model_copy``.
    Unknown keys from older documents are ignored, missing keys take the
    defaults below.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    schema_version: int = LINE_ITEM_ATTRIBUTES_VERSION
    name_snapshot: str | None = None
    unit_price: Decimal = Decimal("0")
    discount_pct: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    urgent: bool = False
    brand: str | None = None
    serial_number: str | None = None
    warranty: bool = False


class LineItemAttributesType(TypeDecorator[LineItemAttributes]):
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value: LineItemAttributes | dict[str, Any] | None, dialect: Dialect) -> dict[str, Any] | None:
        if value is None:
            return LineItemAttributes().model_dump(mode="json")
        if isinstance(value, dict):
            value = LineItemAttributes.model_validate(value)
        return value.model_dump(mode="json")

    def process_result_value(self, value: dict[str, Any] | None, dialect: Dialect) -> LineItemAttributes:
        if not value:
            return LineItemAttributes()
        return LineItemAttributes.model_validate(value)
