from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from repairdesk.audit.service import AuditLogger
from repairdesk.context import get_correlation_id
from repairdesk.core.auth import AuthUser
from repairdesk.core.config import Settings, get_settings
from repairdesk.metrics import (
    observe_service_sheet_audit_failure,
    observe_service_sheet_mutations,
    observe_service_sheet_save,
)
from repairdesk.service_sheet.diff import SnapshotDiff, diff_snapshots
from repairdesk.service_sheet.errors import (
    LeadNotFoundError,
    LineItemNotFoundError,
    MissingInstrumentReferenceError,
    MissingPartNameError,
    MissingServiceReferenceError,
    ServiceSheetError,
    TrayNotFoundError,
    UnknownPipelineError,
    UnknownServiceError,
    UnresolvedDepartmentError,
)
from repairdesk.service_sheet.messages import compose_assignment_message, compose_service_sheet_message
from repairdesk.service_sheet.pricing import compute_totals
from repairdesk.service_sheet.references import ReferenceResolver, ResolvedReferences
from repairdesk.service_sheet.schemas import (
    InstrumentCatalogEntry,
    InstrumentLineInput,
    PartLineInput,
    PipelineCatalogEntry,
    ServiceCatalogEntry,
    ServiceLineInput,
    ServiceSheetResult,
    ServiceSheetSaveRequest,
    TrayItemRead,
)
from repairdesk.service_sheet.snapshot import SnapshotItem, to_snapshots
from repairdesk.workshop.attributes import LineItemAttributes
from repairdesk.workshop.models import (
    ITEM_TYPE_INSTRUMENT,
    ITEM_TYPE_PART,
    ITEM_TYPE_SERVICE,
    Lead,
    TrayItem,
)
from repairdesk.workshop.repository import TrayItemRepository, TrayRepository


logger = logging.getLogger("repairdesk.service_sheet")
tracer = trace.get_tracer("repairdesk.service_sheet")

LineInput = ServiceLineInput | PartLineInput | InstrumentLineInput


def parse_persisted_id(value: Any) -> uuid.UUID | None:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


@dataclass(frozen=True, slots=True)
class TechnicianAssignment:
    item_id: uuid.UUID
    item_name: str | None
    item_type: str | None
    technician_id: str
    previous_technician_id: str | None


@dataclass(slots=True)
class _SaveContext:
    tray_id: uuid.UUID
    request: ServiceSheetSaveRequest
    current_user: AuthUser
    settings: Settings
    services: dict[uuid.UUID, ServiceCatalogEntry]
    instruments: dict[uuid.UUID, InstrumentCatalogEntry]
    pipelines: list[PipelineCatalogEntry]
    in_department_pipeline: bool
    persisted_ids: set[uuid.UUID] = field(default_factory=set)
    assignments: list[TechnicianAssignment] = field(default_factory=list)

    def is_new(self, item: LineInput) -> bool:
        item_id = parse_persisted_id(item.id)
        if item_id is None:
            return True
        if item_id in self.persisted_ids:
            return False
        return not any(parse_persisted_id(prev.id) == item_id for prev in self.request.previous_snapshot)

    @property
    def pipelines_by_id(self) -> dict[uuid.UUID, PipelineCatalogEntry]:
        return {entry.id: entry for entry in self.pipelines}

    def pipeline_name(self, pipeline_id: uuid.UUID | None) -> str | None:
        if pipeline_id is None:
            return None
        entry = self.pipelines_by_id.get(pipeline_id)
        if entry is None:
            raise UnknownPipelineError(
                "pipeline is not in the catalog",
                details={"pipeline_id": str(pipeline_id)},
            )
        return entry.name

    def pipeline_named(self, name: str) -> str | None:
        wanted = name.strip().lower()
        for entry in self.pipelines:
            if entry.name.strip().lower() == wanted:
                return entry.name
        return None

    def default_technician(self, explicit: str | None) -> str | None:
        technician_id = _clean(explicit)
        if technician_id is not None:
            return technician_id
        if self.in_department_pipeline:
            return None
        return self.current_user.sub


@dataclass(slots=True)
class ServiceSheetService:
    """Reconciles a tray's working set of line items and records the history."""

    items: TrayItemRepository = field(default_factory=TrayItemRepository)
    trays: TrayRepository = field(default_factory=TrayRepository)
    references: ReferenceResolver = field(default_factory=ReferenceResolver)
    audit: AuditLogger = field(default_factory=AuditLogger)

    def reconcile(
        self,
        session: Session,
        *,
        lead_id: uuid.UUID,
        tray_id: uuid.UUID,
        request: ServiceSheetSaveRequest,
        current_user: AuthUser,
    ) -> ServiceSheetResult:
        started = time.perf_counter()
        correlation_id = get_correlation_id()

        with tracer.start_as_current_span("service_sheet.reconcile") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("tray_id", str(tray_id))
            span.set_attribute("items", len(request.items))
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            try:
                self._ensure_scope(session, lead_id=lead_id, tray_id=tray_id)
                ctx = self._build_context(session, tray_id=tray_id, request=request, current_user=current_user)

                deleted = self._delete_pass(session, ctx)
                patched = self._update_pass(session, ctx)
                created = self._create_pass(session, ctx)

                rows = self.items.list_for_tray(session, tray_id)
                snapshot = to_snapshots(rows, pipelines=ctx.pipelines)
                diff = diff_snapshots(request.previous_snapshot, snapshot)

                refs = self._resolve_references(session, ctx, diff)
                self._log_assignments(session, ctx, refs)
                self._log_save(session, ctx, lead_id=lead_id, snapshot=snapshot, diff=diff, refs=refs)

                result = ServiceSheetResult(
                    items=[TrayItemRead.model_validate(row) for row in rows],
                    snapshot=snapshot,
                )
                session.commit()
            except ServiceSheetError as exc:
                session.rollback()
                observe_service_sheet_save("rejected", time.perf_counter() - started)
                span.set_attribute("error_code", exc.code)
                logger.warning(
                    "service_sheet_rejected",
                    extra={"lead_id": str(lead_id), "tray_id": str(tray_id), "error_code": exc.code, "error": exc.message[:500]},
                )
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                observe_service_sheet_save("failed", time.perf_counter() - started)
                logger.exception(
                    "service_sheet_store_failed",
                    extra={"lead_id": str(lead_id), "tray_id": str(tray_id), "error": str(exc)[:500]},
                )
                raise

            observe_service_sheet_save("saved", time.perf_counter() - started)
            observe_service_sheet_mutations("delete", deleted)
            observe_service_sheet_mutations("update", patched)
            observe_service_sheet_mutations("create", created)
            span.set_attribute("added", len(diff.added))
            span.set_attribute("removed", len(diff.removed))
            span.set_attribute("updated", len(diff.updated))
            logger.info(
                "service_sheet_saved",
                extra={
                    "lead_id": str(lead_id),
                    "tray_id": str(tray_id),
                    "added": len(diff.added),
                    "removed": len(diff.removed),
                    "updated": len(diff.updated),
                    "deleted": deleted,
                    "patched": patched,
                    "created_count": created,
                },
            )
            return result

    def current_sheet(self, session: Session, *, tray_id: uuid.UUID) -> ServiceSheetResult:
        if self.trays.get(session, tray_id) is None:
            raise TrayNotFoundError("tray not found", details={"tray_id": str(tray_id)})
        rows = self.items.list_for_tray(session, tray_id)
        snapshot = to_snapshots(rows, pipelines=self.references.pipeline_catalog(session))
        return ServiceSheetResult(items=[TrayItemRead.model_validate(row) for row in rows], snapshot=snapshot)

    def _ensure_scope(self, session: Session, *, lead_id: uuid.UUID, tray_id: uuid.UUID) -> None:
        if session.get(Lead, lead_id) is None:
            raise LeadNotFoundError("lead not found", details={"lead_id": str(lead_id)})
        if self.trays.get_for_lead(session, lead_id=lead_id, tray_id=tray_id) is None:
            raise TrayNotFoundError("tray not found", details={"tray_id": str(tray_id)})

    def _build_context(
        self,
        session: Session,
        *,
        tray_id: uuid.UUID,
        request: ServiceSheetSaveRequest,
        current_user: AuthUser,
    ) -> _SaveContext:
        settings = get_settings()
        pipelines = list(request.pipelines) or self.references.pipeline_catalog(session)
        active = next((entry for entry in pipelines if entry.id == request.active_pipeline_id), None)
        return _SaveContext(
            tray_id=tray_id,
            request=request,
            current_user=current_user,
            settings=settings,
            services={entry.id: entry for entry in request.services},
            instruments={entry.id: entry for entry in request.instruments},
            pipelines=pipelines,
            in_department_pipeline=settings.is_department_pipeline(active.name if active else None),
            persisted_ids={row.id for row in self.items.list_for_tray(session, tray_id)},
        )

    def _owned_row(self, session: Session, ctx: _SaveContext, item_id: uuid.UUID) -> TrayItem:
        row = self.items.get(session, item_id)
        if row is None or row.tray_id != ctx.tray_id:
            raise LineItemNotFoundError("line item not found on tray", details={"item_id": str(item_id)})
        return row

    def _delete_pass(self, session: Session, ctx: _SaveContext) -> int:
        current_ids = {parse_persisted_id(item.id) for item in ctx.request.items} - {None}
        deleted = 0
        for prev in ctx.request.previous_snapshot:
            prev_id = parse_persisted_id(prev.id)
            if prev_id is None or prev_id in current_ids:
                continue
            row = self.items.get(session, prev_id)
            if row is None:
                # already removed by a concurrent save
                continue
            if row.tray_id != ctx.tray_id:
                raise LineItemNotFoundError("line item not found on tray", details={"item_id": str(prev_id)})
            self.items.delete(session, row)
            deleted += 1
        return deleted

    def _update_pass(self, session: Session, ctx: _SaveContext) -> int:
        previous_by_id = {prev.id: prev for prev in ctx.request.previous_snapshot}
        patched = 0
        for item in ctx.request.items:
            item_id = parse_persisted_id(item.id)
            if item_id is None:
                continue
            prev = previous_by_id.get(str(item_id)) or previous_by_id.get(str(item.id))
            if prev is None:
                continue

            columns, attributes = self._patch_for(ctx, item, prev)
            if not columns and not attributes:
                continue

            row = self._owned_row(session, ctx, item_id)
            self.items.update(session, row, columns=columns, attributes=attributes)
            patched += 1

            technician_id = columns.get("technician_id")
            if technician_id and technician_id != prev.technician:
                ctx.assignments.append(
                    TechnicianAssignment(
                        item_id=row.id,
                        item_name=row.attributes.name_snapshot,
                        item_type=row.item_type,
                        technician_id=technician_id,
                        previous_technician_id=prev.technician,
                    )
                )
        return patched

    def _patch_for(self, ctx: _SaveContext, item: LineInput, prev: SnapshotItem) -> tuple[dict[str, Any], dict[str, Any]]:
        columns: dict[str, Any] = {}
        attributes: dict[str, Any] = {}

        if item.item_type != prev.type:
            columns["item_type"] = item.item_type
            if isinstance(item, ServiceLineInput):
                definition = self._service_definition(ctx, item)
                columns["service_id"] = definition.id
                columns["part_id"] = None
                columns["pipeline"] = ctx.pipeline_name(item.pipeline_id)
                columns["technician_id"] = _clean(item.technician_id)
                attributes["name_snapshot"] = _clean(item.name) or definition.name
                instrument_id = definition.instrument_id or item.instrument_id
                if instrument_id is not None:
                    columns["instrument_id"] = instrument_id
                department_id = self._service_department(ctx, definition, instrument_id)
                if department_id is not None:
                    columns["department_id"] = department_id
            elif isinstance(item, PartLineInput):
                columns["service_id"] = None
                columns["part_id"] = item.part_id
            else:
                columns["service_id"] = None
                columns["part_id"] = None

        if item.qty != prev.qty:
            columns["qty"] = item.qty
        if item.price != prev.price:
            attributes["unit_price"] = item.price
        if item.discount_pct != prev.discount_pct:
            attributes["discount_pct"] = item.discount_pct
        if item.urgent != prev.urgent:
            attributes["urgent"] = item.urgent

        if "technician_id" not in columns and _clean(item.technician_id) != _clean(prev.technician):
            columns["technician_id"] = ctx.default_technician(item.technician_id)

        pipeline_id = str(item.pipeline_id) if item.pipeline_id is not None else None
        if "pipeline" not in columns and pipeline_id != _clean(prev.pipeline):
            columns["pipeline"] = ctx.pipeline_name(item.pipeline_id)

        name = _clean(item.name)
        if "name_snapshot" not in attributes and name is not None and name != _clean(prev.name):
            attributes["name_snapshot"] = name

        brand = _clean(item.brand)
        if brand != _clean(prev.brand):
            attributes["brand"] = brand
        serial_number = _clean(item.serial_number)
        if serial_number != _clean(prev.serial_number):
            attributes["serial_number"] = serial_number
        if item.warranty != prev.warranty:
            attributes["warranty"] = item.warranty

        return columns, attributes

    def _create_pass(self, session: Session, ctx: _SaveContext) -> int:
        created = 0
        for item in ctx.request.items:
            if not ctx.is_new(item):
                continue
            if isinstance(item, ServiceLineInput):
                row = self._create_service(session, ctx, item)
            elif isinstance(item, PartLineInput):
                row = self._create_part(session, ctx, item)
            else:
                row = self._create_instrument(session, ctx, item)
            created += 1

            if row.technician_id:
                ctx.assignments.append(
                    TechnicianAssignment(
                        item_id=row.id,
                        item_name=row.attributes.name_snapshot,
                        item_type=row.item_type,
                        technician_id=row.technician_id,
                        previous_technician_id=None,
                    )
                )
        return created

    def _service_definition(self, ctx: _SaveContext, item: ServiceLineInput) -> ServiceCatalogEntry:
        if item.service_id is None:
            raise MissingServiceReferenceError("service line requires a service_id")
        definition = ctx.services.get(item.service_id)
        if definition is None:
            raise UnknownServiceError(
                "service is not in the catalog",
                details={"service_id": str(item.service_id)},
            )
        return definition

    def _service_department(
        self,
        ctx: _SaveContext,
        definition: ServiceCatalogEntry,
        instrument_id: uuid.UUID | None,
    ) -> uuid.UUID | None:
        if definition.department_id is not None:
            return definition.department_id
        instrument = ctx.instruments.get(instrument_id) if instrument_id is not None else None
        return instrument.department_id if instrument is not None else None

    def _attributes_for(self, item: LineInput, *, name: str | None, unit_price: Any) -> LineItemAttributes:
        return LineItemAttributes(
            name_snapshot=name,
            unit_price=unit_price,
            discount_pct=item.discount_pct,
            urgent=item.urgent,
            brand=_clean(item.brand),
            serial_number=_clean(item.serial_number),
            warranty=item.warranty,
        )

    def _create_service(self, session: Session, ctx: _SaveContext, item: ServiceLineInput) -> TrayItem:
        definition = self._service_definition(ctx, item)
        instrument_id = item.instrument_id or definition.instrument_id
        department_id = item.department_id or self._service_department(ctx, definition, instrument_id)
        if department_id is None:
            raise UnresolvedDepartmentError(
                "could not resolve a department for the service line",
                details={"service_id": str(definition.id)},
            )

        return self.items.create(
            session,
            tray_id=ctx.tray_id,
            item_type=ITEM_TYPE_SERVICE,
            service_id=definition.id,
            instrument_id=instrument_id,
            department_id=department_id,
            technician_id=ctx.default_technician(item.technician_id),
            pipeline=ctx.pipeline_name(item.pipeline_id),
            qty=item.qty,
            attributes=self._attributes_for(item, name=definition.name, unit_price=definition.price),
        )

    def _create_part(self, session: Session, ctx: _SaveContext, item: PartLineInput) -> TrayItem:
        name = _clean(item.name)
        if name is None:
            raise MissingPartNameError("part line requires a name")

        department_id = item.department_id
        instrument_id = item.instrument_id

        if department_id is None or instrument_id is None:
            sibling_department, sibling_instrument = self._sibling_service_context(ctx)
            department_id = department_id or sibling_department
            instrument_id = instrument_id or sibling_instrument

        if department_id is None or instrument_id is None:
            existing = self.items.find_with_department_and_instrument(session, ctx.tray_id)
            if existing is not None:
                department_id = department_id or existing.department_id
                instrument_id = instrument_id or existing.instrument_id

        if department_id is None:
            department_id = self.references.department_ids_by_name(session).get(
                ctx.settings.parts_fallback_department.strip().lower()
            )

        if department_id is None or instrument_id is None:
            raise UnresolvedDepartmentError(
                "could not resolve department and instrument for the part line",
                details={
                    "name": name,
                    "department_id": str(department_id) if department_id else None,
                    "instrument_id": str(instrument_id) if instrument_id else None,
                },
            )

        pipeline = ctx.pipeline_name(item.pipeline_id) if item.pipeline_id else ctx.pipeline_named(ctx.settings.parts_fallback_pipeline)
        return self.items.create(
            session,
            tray_id=ctx.tray_id,
            item_type=ITEM_TYPE_PART,
            part_id=item.part_id,
            instrument_id=instrument_id,
            department_id=department_id,
            technician_id=ctx.default_technician(item.technician_id),
            pipeline=pipeline,
            qty=item.qty,
            attributes=self._attributes_for(item, name=name, unit_price=item.price),
        )

    def _sibling_service_context(self, ctx: _SaveContext) -> tuple[uuid.UUID | None, uuid.UUID | None]:
        for sibling in ctx.request.items:
            if not isinstance(sibling, ServiceLineInput):
                continue
            definition = ctx.services.get(sibling.service_id) if sibling.service_id else None
            instrument_id = sibling.instrument_id or (definition.instrument_id if definition else None)
            if instrument_id is None:
                continue
            department_id = sibling.department_id
            if department_id is None and definition is not None:
                department_id = self._service_department(ctx, definition, instrument_id)
            if department_id is None:
                instrument = ctx.instruments.get(instrument_id)
                department_id = instrument.department_id if instrument else None
            return department_id, instrument_id
        return None, None

    def _create_instrument(self, session: Session, ctx: _SaveContext, item: InstrumentLineInput) -> TrayItem:
        if item.instrument_id is None:
            raise MissingInstrumentReferenceError("instrument line requires an instrument_id")
        instrument = ctx.instruments.get(item.instrument_id)
        department_id = item.department_id or (instrument.department_id if instrument else None)
        if department_id is None:
            raise UnresolvedDepartmentError(
                "could not resolve a department for the instrument line",
                details={"instrument_id": str(item.instrument_id)},
            )

        return self.items.create(
            session,
            tray_id=ctx.tray_id,
            item_type=ITEM_TYPE_INSTRUMENT,
            instrument_id=item.instrument_id,
            department_id=department_id,
            technician_id=ctx.default_technician(item.technician_id),
            pipeline=ctx.pipeline_name(item.pipeline_id),
            qty=item.qty,
            attributes=self._attributes_for(
                item,
                name=_clean(item.name) or (instrument.name if instrument else None),
                unit_price=item.price,
            ),
        )

    def _resolve_references(self, session: Session, ctx: _SaveContext, diff: SnapshotDiff) -> ResolvedReferences:
        technician_ids: set[str] = set()
        for assignment in ctx.assignments:
            technician_ids.add(assignment.technician_id)
            if assignment.previous_technician_id:
                technician_ids.add(assignment.previous_technician_id)
        for entry in [*diff.added, *diff.removed]:
            if entry.technician:
                technician_ids.add(entry.technician)
        for updated in diff.updated:
            technician_ids.update(tech for tech in (updated.item.technician, updated.previous.technician) if tech)

        try:
            with session.begin_nested():
                return self.references.resolve(
                    session,
                    tray_id=ctx.tray_id,
                    technician_ids=technician_ids,
                    current_user=ctx.current_user,
                    instruments=ctx.request.instruments,
                    pipelines=ctx.pipelines,
                )
        except Exception as exc:
            observe_service_sheet_audit_failure("reference_resolution")
            logger.exception(
                "service_sheet_reference_resolution_failed",
                extra={"tray_id": str(ctx.tray_id), "error": str(exc)[:500]},
            )
            return ResolvedReferences(
                instruments={str(entry.id): entry.name for entry in ctx.request.instruments},
                pipelines={str(entry.id): entry.name for entry in ctx.pipelines},
            )

    def _write_event(self, session: Session, *, event_type: str, **kwargs: Any) -> None:
        try:
            with session.begin_nested():
                self.audit.log(session, event_type=event_type, **kwargs)
        except Exception as exc:
            observe_service_sheet_audit_failure(event_type)
            logger.exception(
                "service_sheet_audit_failed",
                extra={"event_type": event_type, "error": str(exc)[:500]},
            )

    def _log_assignments(self, session: Session, ctx: _SaveContext, refs: ResolvedReferences) -> None:
        actor_id, actor_name = _actor(refs, ctx.current_user)
        for assignment in ctx.assignments:
            composed = compose_assignment_message(
                item_id=str(assignment.item_id),
                item_name=assignment.item_name,
                item_type=assignment.item_type,
                technician_id=assignment.technician_id,
                previous_technician_id=assignment.previous_technician_id,
                refs=refs,
            )
            self._write_event(
                session,
                event_type="technician_assigned",
                scope_type="tray",
                scope_id=ctx.tray_id,
                message=composed.message,
                payload=composed.payload,
                actor_id=actor_id,
                actor_name=actor_name,
            )

    def _log_save(
        self,
        session: Session,
        ctx: _SaveContext,
        *,
        lead_id: uuid.UUID,
        snapshot: Sequence[SnapshotItem],
        diff: SnapshotDiff,
        refs: ResolvedReferences,
    ) -> None:
        totals = compute_totals(
            snapshot,
            global_discount_pct=ctx.request.global_discount_pct,
            subscription_type=ctx.request.subscription_type,
            urgent_markup_pct=ctx.settings.urgent_markup_pct,
        )
        composed = compose_service_sheet_message(
            snapshot,
            diff,
            totals,
            refs,
            global_discount_pct=ctx.request.global_discount_pct,
            subscription_type=ctx.request.subscription_type,
            currency=ctx.settings.currency_code,
        )
        actor_id, actor_name = _actor(refs, ctx.current_user)
        self._write_event(
            session,
            event_type="service_sheet_save",
            scope_type="lead",
            scope_id=lead_id,
            message=composed.message,
            payload=composed.payload,
            actor_id=actor_id,
            actor_name=actor_name,
        )


def _actor(refs: ResolvedReferences, current_user: AuthUser) -> tuple[str, str | None]:
    if refs.saved_by is not None:
        return refs.saved_by.id, refs.saved_by.name
    return current_user.sub, None


service_sheet_service = ServiceSheetService()
