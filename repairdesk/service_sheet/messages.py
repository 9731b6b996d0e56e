from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from repairdesk.service_sheet.diff import FieldChange, SnapshotDiff
from repairdesk.service_sheet.pricing import SheetTotals, quantize_money
from repairdesk.service_sheet.references import UNASSIGNED, UNKNOWN, ResolvedReferences
from repairdesk.service_sheet.snapshot import SnapshotItem


HEADLINE = "Service sheet saved"
EMPTY = "—"
HEADLINE_NAMES_LIMIT = 3

TYPE_LABELS = {"service": "Service", "part": "Part", "instrument": "Instrument"}


@dataclass(frozen=True, slots=True)
class ComposedMessage:
    message: str
    payload: dict[str, Any]


def format_money(value: Decimal, currency: str = "RON") -> str:
    return f"{quantize_money(Decimal(value))} {currency}"


def format_pct(value: Decimal) -> str:
    normalized = Decimal(value).normalize()
    return f"{normalized:f}%"


def _yes_no(value: Any) -> str:
    return "Yes" if value else "No"


def _type_label(value: str | None) -> str:
    if not value:
        return TYPE_LABELS["instrument"]
    return TYPE_LABELS.get(value, str(value))


def _names(items: Sequence[SnapshotItem]) -> str:
    names = ", ".join(str(item.name) for item in items[:HEADLINE_NAMES_LIMIT])
    return f"{names}…" if len(items) > HEADLINE_NAMES_LIMIT else names


def compose_headline(diff: SnapshotDiff) -> str:
    chunks: list[str] = []
    if diff.added:
        chunks.append(f"added: {_names(diff.added)}")
    if diff.removed:
        chunks.append(f"removed: {_names(diff.removed)}")
    if diff.updated:
        chunks.append(f"updated: {_names([entry.item for entry in diff.updated])}")
    if not chunks:
        return HEADLINE
    return f"{HEADLINE} ({' · '.join(chunks)})"


def count_lines(snapshot: Sequence[SnapshotItem]) -> dict[str, int]:
    return {
        "services": sum(1 for item in snapshot if item.type == "service"),
        "parts": sum(1 for item in snapshot if item.type == "part"),
        "urgent_lines": sum(1 for item in snapshot if item.urgent),
    }


def compose_summary(
    counts: dict[str, int],
    totals: SheetTotals,
    *,
    global_discount_pct: Decimal,
    currency: str = "RON",
) -> str:
    parts = [
        f"services={counts['services']}, parts={counts['parts']}, urgent_lines={counts['urgent_lines']}, "
        f"total={format_money(totals.total, currency)}."
    ]
    if global_discount_pct > 0:
        parts.append(f"global discount {format_pct(global_discount_pct)}")
    if totals.total_discount > 0:
        parts.append(f"discounts total {format_money(totals.total_discount, currency)}")
    return ", ".join(parts)


def format_change(key: str, change: FieldChange, refs: ResolvedReferences, *, currency: str = "RON") -> dict[str, str]:
    if key == "qty":
        old, new = str(change.old), str(change.new)
    elif key == "price":
        old, new = format_money(change.old, currency), format_money(change.new, currency)
    elif key == "discount_pct":
        old, new = format_pct(change.old), format_pct(change.new)
    elif key in ("urgent", "warranty"):
        old, new = _yes_no(change.old), _yes_no(change.new)
    elif key == "technician":
        old, new = refs.technician_name(change.old), refs.technician_name(change.new)
    elif key == "department":
        old, new = _department_label(change.old, refs), _department_label(change.new, refs)
    elif key == "pipeline":
        old, new = _pipeline_label(change.old, refs), _pipeline_label(change.new, refs)
    elif key == "type":
        old, new = _type_label(change.old), _type_label(change.new)
    else:
        old, new = change.old or EMPTY, change.new or EMPTY
    return {"old": old, "new": new, "label": change.label}


def _department_label(department_id: str | None, refs: ResolvedReferences) -> str:
    if not department_id:
        return EMPTY
    return refs.department_name(department_id) or UNKNOWN


def _pipeline_label(pipeline_id: str | None, refs: ResolvedReferences) -> str:
    if not pipeline_id:
        return EMPTY
    return refs.pipeline_name(pipeline_id) or UNKNOWN


def _ref(entity_id: str | None, name: str | None) -> dict[str, str | None] | None:
    if not entity_id:
        return None
    return {"id": entity_id, "name": name}


def item_details(
    item: SnapshotItem,
    refs: ResolvedReferences,
    *,
    previous: SnapshotItem | None = None,
    changes: dict[str, FieldChange] | None = None,
    currency: str = "RON",
) -> dict[str, Any]:
    technician = refs.technician(item.technician)
    details: dict[str, Any] = {
        "id": item.id,
        "name": item.name,
        "type": item.type,
        "qty": item.qty,
        "price": str(item.price),
        "discount_pct": str(item.discount_pct),
        "urgent": item.urgent,
        "brand": item.brand,
        "serial_number": item.serial_number,
        "warranty": item.warranty,
        "instrument": _ref(item.instrument_id, refs.instrument_name(item.instrument_id)),
        "department": _ref(item.department, refs.department_name(item.department)),
        "pipeline": _ref(item.pipeline, refs.pipeline_name(item.pipeline)),
        "technician": technician.as_payload() if technician is not None else None,
        "tray": {"id": str(refs.tray.id), "number": refs.tray.number} if refs.tray is not None else None,
    }
    if previous is not None:
        previous_technician = refs.technician(previous.technician)
        details["previous"] = {
            "qty": previous.qty,
            "price": str(previous.price),
            "discount_pct": str(previous.discount_pct),
            "urgent": previous.urgent,
            "brand": previous.brand,
            "serial_number": previous.serial_number,
            "warranty": previous.warranty,
            "technician": (
                {"id": previous_technician.id, "name": previous_technician.name}
                if previous_technician is not None
                else None
            ),
        }
    if changes:
        details["changes"] = {key: format_change(key, change, refs, currency=currency) for key, change in changes.items()}
    return details


def instrument_usage(snapshot: Sequence[SnapshotItem], refs: ResolvedReferences) -> list[dict[str, Any]]:
    usage: dict[str, int] = {}
    for item in snapshot:
        if item.instrument_id:
            usage[item.instrument_id] = usage.get(item.instrument_id, 0) + item.qty
    return [
        {"id": instrument_id, "name": refs.instrument_name(instrument_id) or "Unknown instrument", "quantity": quantity}
        for instrument_id, quantity in usage.items()
    ]


def tray_payload(refs: ResolvedReferences) -> dict[str, Any] | None:
    tray = refs.tray
    if tray is None:
        return None
    return {
        "id": str(tray.id),
        "number": tray.number,
        "status": tray.status,
        "service_file_id": str(tray.service_file_id),
    }


def placement_payload(refs: ResolvedReferences) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    tray = refs.tray
    if tray is None:
        return None, None
    pipeline = {"id": str(tray.pipeline_id), "name": tray.pipeline_name} if tray.pipeline_id else None
    stage = {"id": str(tray.stage_id), "name": tray.stage_name} if tray.stage_id else None
    return pipeline, stage


def compose_service_sheet_message(
    snapshot: Sequence[SnapshotItem],
    diff: SnapshotDiff,
    totals: SheetTotals,
    refs: ResolvedReferences,
    *,
    global_discount_pct: Decimal = Decimal("0"),
    subscription_type: str | None = None,
    currency: str = "RON",
) -> ComposedMessage:
    counts = count_lines(snapshot)
    message = f"{compose_headline(diff)}. {compose_summary(counts, totals, global_discount_pct=global_discount_pct, currency=currency)}"
    payload: dict[str, Any] = {
        "totals": totals.as_payload(),
        "global_discount_pct": str(global_discount_pct),
        "subscription_type": subscription_type,
        "counts": counts,
        "instruments": instrument_usage(snapshot, refs),
        "diff": {
            "added": [item_details(item, refs, currency=currency) for item in diff.added],
            "removed": [item_details(item, refs, currency=currency) for item in diff.removed],
            "updated": [
                item_details(entry.item, refs, previous=entry.previous, changes=entry.changes, currency=currency)
                for entry in diff.updated
            ],
        },
        "tray": tray_payload(refs),
        "saved_by_user": refs.saved_by.as_payload() if refs.saved_by is not None else None,
    }
    return ComposedMessage(message=message, payload=payload)


def compose_assignment_message(
    *,
    item_id: str,
    item_name: str | None,
    item_type: str | None,
    technician_id: str,
    previous_technician_id: str | None,
    refs: ResolvedReferences,
) -> ComposedMessage:
    technician = refs.technician(technician_id)
    previous = refs.technician(previous_technician_id)
    technician_name = technician.name if technician is not None else UNKNOWN
    tray_label = refs.tray.label if refs.tray is not None else UNASSIGNED.lower()
    pipeline, stage = placement_payload(refs)

    message = f'Technician "{technician_name}" assigned to "{item_name or "item"}" on tray "{tray_label}"'
    payload: dict[str, Any] = {
        "item_id": item_id,
        "item_name": item_name,
        "item_type": item_type,
        "tray": tray_payload(refs),
        "technician": technician.as_payload() if technician is not None else None,
        "previous_technician": previous.as_payload() if previous is not None else None,
        "pipeline": pipeline,
        "stage": stage,
        "user": refs.saved_by.as_payload() if refs.saved_by is not None else None,
    }
    return ComposedMessage(message=message, payload=payload)
