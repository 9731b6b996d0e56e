from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from repairdesk.service_sheet.snapshot import SnapshotItem


TRACKED_FIELDS: dict[str, str] = {
    "qty": "Quantity",
    "price": "Price",
    "discount_pct": "Discount (%)",
    "urgent": "Urgent",
    "department": "Department",
    "technician": "Technician",
    "pipeline": "Pipeline",
    "name": "Name",
    "type": "Type",
    "brand": "Brand",
    "serial_number": "Serial number",
    "warranty": "Warranty",
}


@dataclass(frozen=True, slots=True)
class FieldChange:
    old: Any
    new: Any
    label: str


@dataclass(frozen=True, slots=True)
class UpdatedItem:
    item: SnapshotItem
    previous: SnapshotItem
    changes: dict[str, FieldChange]


@dataclass(frozen=True, slots=True)
class SnapshotDiff:
    added: list[SnapshotItem] = field(default_factory=list)
    removed: list[SnapshotItem] = field(default_factory=list)
    updated: list[UpdatedItem] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)


def field_changes(previous: SnapshotItem, current: SnapshotItem) -> dict[str, FieldChange]:
    changes: dict[str, FieldChange] = {}
    for key, label in TRACKED_FIELDS.items():
        old = getattr(previous, key)
        new = getattr(current, key)
        if old != new:
            changes[key] = FieldChange(old=old, new=new, label=label)
    return changes


def diff_snapshots(previous: Sequence[SnapshotItem], current: Sequence[SnapshotItem]) -> SnapshotDiff:
    previous_by_id = {item.id: item for item in previous}
    current_by_id = {item.id: item for item in current}

    added = [item for item in current if item.id not in previous_by_id]
    removed = [item for item in previous if item.id not in current_by_id]

    updated: list[UpdatedItem] = []
    for item in current:
        prior = previous_by_id.get(item.id)
        if prior is None:
            continue
        changes = field_changes(prior, item)
        if changes:
            updated.append(UpdatedItem(item=item, previous=prior, changes=changes))

    return SnapshotDiff(added=added, removed=removed, updated=updated)
