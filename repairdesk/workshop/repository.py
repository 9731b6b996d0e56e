from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from repairdesk.workshop.attributes import LineItemAttributes
from repairdesk.workshop.models import Pipeline, PipelineItem, ServiceFile, Stage, Tray, TrayItem


TRAY_ITEM_COLUMNS = {
    "item_type",
    "service_id",
    "part_id",
    "instrument_id",
    "department_id",
    "technician_id",
    "pipeline",
    "qty",
}


@dataclass(frozen=True, slots=True)
class TrayDetails:
    id: uuid.UUID
    number: str
    status: str | None
    service_file_id: uuid.UUID
    service_file_number: str | None = None
    pipeline_id: uuid.UUID | None = None
    pipeline_name: str | None = None
    stage_id: uuid.UUID | None = None
    stage_name: str | None = None

    @property
    def label(self) -> str:
        return f"{self.number} - {self.status}" if self.status else self.number


class TrayItemRepository:
    resource = "workshop.tray_item"

    def get(self, session: Session, item_id: uuid.UUID) -> TrayItem | None:
        return session.get(TrayItem, item_id)

    def list_for_tray(self, session: Session, tray_id: uuid.UUID) -> list[TrayItem]:
        stmt: Select[tuple[TrayItem]] = (
            select(TrayItem).where(TrayItem.tray_id == tray_id).order_by(TrayItem.created_at.asc(), TrayItem.id.asc())
        )
        return list(session.scalars(stmt).all())

    def find_with_department_and_instrument(self, session: Session, tray_id: uuid.UUID) -> TrayItem | None:
        stmt = (
            select(TrayItem)
            .where(
                and_(
                    TrayItem.tray_id == tray_id,
                    TrayItem.department_id.is_not(None),
                    TrayItem.instrument_id.is_not(None),
                )
            )
            .order_by(TrayItem.created_at.asc(), TrayItem.id.asc())
            .limit(1)
        )
        return session.scalar(stmt)

    def create(
        self,
        session: Session,
        *,
        tray_id: uuid.UUID,
        attributes: LineItemAttributes,
        **columns: Any,
    ) -> TrayItem:
        unknown = set(columns) - TRAY_ITEM_COLUMNS
        if unknown:
            raise ValueError(f"unknown tray item columns: {sorted(unknown)}")
        item = TrayItem(tray_id=tray_id, attributes=attributes, **columns)
        session.add(item)
        session.flush()
        return item

    def update(
        self,
        session: Session,
        item: TrayItem,
        *,
        columns: dict[str, Any] | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> TrayItem:
        columns = columns or {}
        unknown = set(columns) - TRAY_ITEM_COLUMNS
        if unknown:
            raise ValueError(f"unknown tray item columns: {sorted(unknown)}")

        for field_name, value in columns.items():
            setattr(item, field_name, value)
        if attributes:
            item.attributes = item.attributes.model_copy(update=attributes)
        session.flush()
        return item

    def delete(self, session: Session, item: TrayItem) -> None:
        session.delete(item)
        session.flush()


class TrayRepository:
    resource = "workshop.tray"

    def get(self, session: Session, tray_id: uuid.UUID) -> Tray | None:
        return session.get(Tray, tray_id)

    def get_for_lead(self, session: Session, *, lead_id: uuid.UUID, tray_id: uuid.UUID) -> Tray | None:
        stmt = (
            select(Tray)
            .join(ServiceFile, ServiceFile.id == Tray.service_file_id)
            .where(and_(Tray.id == tray_id, ServiceFile.lead_id == lead_id))
        )
        return session.scalar(stmt)

    def get_details(self, session: Session, tray_id: uuid.UUID) -> TrayDetails | None:
        row = session.execute(
            select(Tray.id, Tray.number, Tray.status, Tray.service_file_id, ServiceFile.number)
            .join(ServiceFile, ServiceFile.id == Tray.service_file_id)
            .where(Tray.id == tray_id)
        ).first()
        if row is None:
            return None

        placement = session.execute(
            select(Pipeline.id, Pipeline.name, Stage.id, Stage.name)
            .select_from(PipelineItem)
            .join(Pipeline, Pipeline.id == PipelineItem.pipeline_id)
            .join(Stage, Stage.id == PipelineItem.stage_id)
            .where(and_(PipelineItem.type == "tray", PipelineItem.item_id == tray_id))
        ).first()

        return TrayDetails(
            id=row[0],
            number=row[1],
            status=row[2],
            service_file_id=row[3],
            service_file_number=row[4],
            pipeline_id=placement[0] if placement else None,
            pipeline_name=placement[1] if placement else None,
            stage_id=placement[2] if placement else None,
            stage_name=placement[3] if placement else None,
        )
