from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from repairdesk.workshop.models import ITEM_TYPE_INSTRUMENT, TrayItem


class NamedEntry(Protocol):
    id: Any
    name: str


class SnapshotItem(BaseModel):
    """Flat, comparable view of one line item."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str | None = None
    qty: int = 1
    price: Decimal = Decimal("0")
    discount_pct: Decimal = Decimal("0")
    type: str = ITEM_TYPE_INSTRUMENT
    urgent: bool = False
    department: str | None = None
    technician: str | None = None
    pipeline: str | None = None
    brand: str | None = None
    serial_number: str | None = None
    warranty: bool = False
    instrument_id: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def bare_instrument_type(cls, value: Any) -> Any:
        # lines without a type are bare instruments
        return ITEM_TYPE_INSTRUMENT if value is None else value


def pipeline_ids_by_name(pipelines: Iterable[NamedEntry]) -> dict[str, str]:
    return {entry.name.strip().lower(): str(entry.id) for entry in pipelines if entry.name}


def to_snapshot(item: TrayItem | BaseModel | Mapping[str, Any], *, pipelines: Iterable[NamedEntry] = ()) -> SnapshotItem:
    """Project a persisted row, a working-set line or a loose mapping.

    Never raises on missing data: every field falls back to its default and
    a missing id falls back to ``"<name>:<type>"``.
    """
    if isinstance(item, TrayItem):
        return _from_row(item, pipeline_ids_by_name(pipelines))
    if isinstance(item, BaseModel):
        return _from_mapping(item.model_dump())
    return _from_mapping(item)


def to_snapshots(items: Iterable[TrayItem | BaseModel | Mapping[str, Any]], *, pipelines: Iterable[NamedEntry] = ()) -> list[SnapshotItem]:
    catalog = list(pipelines)
    return [to_snapshot(item, pipelines=catalog) for item in items]


def _from_row(row: TrayItem, pipeline_ids: dict[str, str]) -> SnapshotItem:
    attributes = row.attributes
    name = attributes.name_snapshot if attributes is not None else None
    pipeline_id = pipeline_ids.get(row.pipeline.strip().lower()) if row.pipeline else None
    return SnapshotItem(
        id=str(row.id) if row.id is not None else _fallback_id(name, row.item_type),
        name=name,
        qty=_as_int(row.qty),
        price=_as_decimal(attributes.unit_price if attributes is not None else None),
        discount_pct=_as_decimal(attributes.discount_pct if attributes is not None else None),
        type=row.item_type,
        urgent=bool(attributes.urgent) if attributes is not None else False,
        department=_as_str(row.department_id),
        technician=_as_str(row.technician_id),
        pipeline=pipeline_id,
        brand=attributes.brand if attributes is not None else None,
        serial_number=attributes.serial_number if attributes is not None else None,
        warranty=bool(attributes.warranty) if attributes is not None else False,
        instrument_id=_as_str(row.instrument_id),
    )


def _from_mapping(data: Mapping[str, Any]) -> SnapshotItem:
    name = _first(data, "name", "name_snapshot")
    item_type = _first(data, "type", "item_type")
    raw_id = data.get("id")
    return SnapshotItem(
        id=str(raw_id) if raw_id is not None else _fallback_id(name, item_type),
        name=name,
        qty=_as_int(data.get("qty")),
        price=_as_decimal(_first(data, "price", "unit_price")),
        discount_pct=_as_decimal(data.get("discount_pct")),
        type=_as_str(item_type),
        urgent=bool(data.get("urgent")),
        department=_as_str(_first(data, "department", "department_id")),
        technician=_as_str(_first(data, "technician", "technician_id")),
        pipeline=_as_str(_first(data, "pipeline", "pipeline_id")),
        brand=data.get("brand"),
        serial_number=data.get("serial_number"),
        warranty=bool(data.get("warranty")),
        instrument_id=_as_str(data.get("instrument_id")),
    )


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _fallback_id(name: str | None, item_type: str | None) -> str:
    return f"{name}:{item_type}"


def _as_int(value: Any) -> int:
    if value is None:
        return 1
    try:
        return int(value)
    except (TypeError, ValueError):
        return 1


def _as_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
