from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator

from repairdesk.service_sheet.snapshot import SnapshotItem
from repairdesk.workshop.attributes import LineItemAttributes


class ServiceCatalogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    price: Decimal = Decimal("0")
    department_id: uuid.UUID | None = None
    instrument_id: uuid.UUID | None = None


class InstrumentCatalogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    department_id: uuid.UUID | None = None


class PipelineCatalogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str


class _LineInputBase(BaseModel):
    # Ids that are not UUIDs are client-side placeholders for new rows.
    id: str | None = None
    name: str | None = None
    qty: int = Field(default=1, ge=1)
    price: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    discount_pct: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    urgent: bool = False
    instrument_id: uuid.UUID | None = None
    department_id: uuid.UUID | None = None
    technician_id: str | None = None
    pipeline_id: uuid.UUID | None = None
    brand: str | None = None
    serial_number: str | None = None
    warranty: bool = False


class ServiceLineInput(_LineInputBase):
    item_type: Literal["service"]
    service_id: uuid.UUID | None = None


class PartLineInput(_LineInputBase):
    item_type: Literal["part"]
    part_id: uuid.UUID | None = None


class InstrumentLineInput(_LineInputBase):
    item_type: Literal["instrument"] = "instrument"

    @field_validator("item_type", mode="before")
    @classmethod
    def _default_item_type(cls, value: Any) -> Any:
        return value or "instrument"


def _line_item_type(value: Any) -> str:
    if isinstance(value, dict):
        raw = value.get("item_type")
    else:
        raw = getattr(value, "item_type", None)
    return raw or "instrument"


WorkingSetItem = Annotated[
    Union[
        Annotated[ServiceLineInput, Tag("service")],
        Annotated[PartLineInput, Tag("part")],
        Annotated[InstrumentLineInput, Tag("instrument")],
    ],
    Discriminator(_line_item_type),
]


class ServiceSheetSaveRequest(BaseModel):
    items: list[WorkingSetItem] = Field(default_factory=list)
    previous_snapshot: list[SnapshotItem] = Field(default_factory=list)
    services: list[ServiceCatalogEntry] = Field(default_factory=list)
    instruments: list[InstrumentCatalogEntry] = Field(default_factory=list)
    pipelines: list[PipelineCatalogEntry] = Field(default_factory=list)
    active_pipeline_id: uuid.UUID | None = None
    global_discount_pct: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    subscription_type: Literal["services", "parts", "both"] | None = None

    @field_validator("subscription_type", mode="before")
    @classmethod
    def _blank_subscription(cls, value: Any) -> Any:
        return value or None


class TrayItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tray_id: uuid.UUID
    item_type: str
    service_id: uuid.UUID | None
    part_id: uuid.UUID | None
    instrument_id: uuid.UUID | None
    department_id: uuid.UUID
    technician_id: str | None
    pipeline: str | None
    qty: int
    attributes: LineItemAttributes
    created_at: datetime
    updated_at: datetime


class ServiceSheetResult(BaseModel):
    items: list[TrayItemRead]
    snapshot: list[SnapshotItem]
