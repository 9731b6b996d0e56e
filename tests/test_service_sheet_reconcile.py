from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import repairdesk.audit.models  # noqa: F401
from repairdesk.audit.models import ItemEvent
from repairdesk.core.auth import AuthUser
from repairdesk.core.config import get_settings
from repairdesk.core.database import Base
from repairdesk.service_sheet.errors import (
    LeadNotFoundError,
    LineItemNotFoundError,
    MissingInstrumentReferenceError,
    MissingPartNameError,
    MissingServiceReferenceError,
    TrayNotFoundError,
    UnknownPipelineError,
    UnknownServiceError,
    UnresolvedDepartmentError,
)
from repairdesk.service_sheet.references import ReferenceResolver
from repairdesk.service_sheet.service import ServiceSheetService
from repairdesk.workshop.attributes import LineItemAttributes
from repairdesk.workshop.models import Tray, TrayItem
from repairdesk.workshop.repository import TrayItemRepository
from repairdesk.workshop.seed import WorkshopSeedHelper
from tests.factories import Workshop, working_line


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def service() -> ServiceSheetService:
    return ServiceSheetService()


def _events(session: Session, event_type: str) -> list[ItemEvent]:
    stmt = select(ItemEvent).where(ItemEvent.event_type == event_type).order_by(ItemEvent.created_at.asc())
    return list(session.scalars(stmt).all())


def _row_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(TrayItem)) or 0


def _save(service: ServiceSheetService, session: Session, workshop: Workshop, user: AuthUser, items, **kwargs):  # type: ignore[no-untyped-def]
    return service.reconcile(
        session,
        lead_id=workshop.lead_id,
        tray_id=workshop.tray_id,
        request=workshop.request(items, **kwargs),
        current_user=user,
    )


def test_new_service_line_outside_department_pipeline_defaults_to_saver(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    result = _save(service, db_session, workshop, current_user, [workshop.service_line(qty=2)])

    assert len(result.items) == 1
    row = result.items[0]
    assert row.item_type == "service"
    assert row.service_id == workshop.service.id
    assert row.department_id == workshop.saloane_id
    assert row.instrument_id == workshop.instrument.id
    assert row.technician_id == "user-1"
    assert row.attributes.name_snapshot == "Ascutire foarfeca"
    assert row.attributes.unit_price == Decimal("100.00")

    assert result.snapshot[0].id == str(row.id)
    assert result.snapshot[0].qty == 2

    saves = _events(db_session, "service_sheet_save")
    assert len(saves) == 1
    assert saves[0].type == "lead"
    assert saves[0].item_id == workshop.lead_id
    assert saves[0].message.startswith("Service sheet saved (added: Ascutire foarfeca)")
    assert saves[0].payload["totals"]["total"] == "200.00"
    assert saves[0].actor_id == "user-1"
    assert saves[0].actor_name == "reception"

    assignments = _events(db_session, "technician_assigned")
    assert len(assignments) == 1
    assert assignments[0].type == "tray"
    assert assignments[0].item_id == workshop.tray_id
    assert assignments[0].message == 'Technician "reception" assigned to "Ascutire foarfeca" on tray "T-101 - in_lucru"'
    assert assignments[0].payload["pipeline"]["name"] == "Saloane"
    assert assignments[0].payload["stage"]["name"] == "In lucru"


def test_department_pipeline_leaves_new_lines_unassigned(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    result = _save(service, db_session, workshop, current_user, [workshop.service_line()], active="Saloane")

    assert result.items[0].technician_id is None
    assert _events(db_session, "technician_assigned") == []
    assert len(_events(db_session, "service_sheet_save")) == 1


def test_explicit_technician_wins_in_department_pipeline(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    result = _save(
        service,
        db_session,
        workshop,
        current_user,
        [workshop.service_line(technician_id="tech-a")],
        active="Saloane",
    )

    assert result.items[0].technician_id == "tech-a"
    assignments = _events(db_session, "technician_assigned")
    assert len(assignments) == 1
    assert assignments[0].payload["technician"]["name"] == "Ana Pop"


def test_service_department_falls_back_to_instrument_department(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    result = _save(
        service,
        db_session,
        workshop,
        current_user,
        [{"id": "tmp-1", "item_type": "service", "service_id": workshop.service_via_instrument.id}],
    )

    assert result.items[0].department_id == workshop.saloane_id
    assert result.items[0].attributes.unit_price == Decimal("40.00")


def test_resave_without_changes_records_plain_headline(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(service, db_session, workshop, current_user, [workshop.service_line()])

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [working_line(item) for item in first.snapshot],
        previous=first.snapshot,
    )

    assert second.snapshot == first.snapshot
    saves = _events(db_session, "service_sheet_save")
    assert len(saves) == 2
    assert saves[-1].message.startswith("Service sheet saved. services=1")
    assert saves[-1].payload["diff"] == {"added": [], "removed": [], "updated": []}
    assert len(_events(db_session, "technician_assigned")) == 1


def test_quantity_and_technician_change_is_one_updated_entry(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(service, db_session, workshop, current_user, [workshop.service_line(technician_id="tech-a")])
    item = first.snapshot[0]

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [working_line(item, qty=2, technician_id="tech-b")],
        previous=first.snapshot,
    )

    assert second.items[0].qty == 2
    assert second.items[0].technician_id == "tech-b"

    save = _events(db_session, "service_sheet_save")[-1]
    assert save.message.startswith("Service sheet saved (updated: Ascutire foarfeca)")
    updated = save.payload["diff"]["updated"]
    assert len(updated) == 1
    assert set(updated[0]["changes"]) == {"qty", "technician"}
    assert updated[0]["changes"]["technician"] == {"old": "Ana Pop", "new": "Bogdan Ion", "label": "Technician"}

    assignments = _events(db_session, "technician_assigned")
    assert len(assignments) == 2
    assert assignments[-1].payload["technician"]["id"] == "tech-b"
    assert assignments[-1].payload["previous_technician"]["name"] == "Ana Pop"


def test_clearing_technician_outside_department_pipeline_assigns_saver(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(service, db_session, workshop, current_user, [workshop.service_line(technician_id="tech-a")])

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [working_line(first.snapshot[0], technician_id=None)],
        previous=first.snapshot,
    )

    assert second.items[0].technician_id == "user-1"
    assignments = _events(db_session, "technician_assigned")
    assert len(assignments) == 2
    assert assignments[-1].payload["previous_technician"]["name"] == "Ana Pop"


def test_clearing_technician_in_department_pipeline_unassigns(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(
        service,
        db_session,
        workshop,
        current_user,
        [workshop.service_line(technician_id="tech-a")],
        active="Saloane",
    )

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [working_line(first.snapshot[0], technician_id=None)],
        previous=first.snapshot,
        active="Saloane",
    )

    assert second.items[0].technician_id is None
    assert len(_events(db_session, "technician_assigned")) == 1


def test_remove_line_and_add_part_in_one_save(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(service, db_session, workshop, current_user, [workshop.service_line()])
    removed_id = first.items[0].id

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [{"id": "tmp-2", "item_type": "part", "name": "Lama", "price": "20", "instrument_id": workshop.instrument.id}],
        previous=first.snapshot,
    )

    assert db_session.get(TrayItem, removed_id) is None
    assert [row.item_type for row in second.items] == ["part"]
    part = second.items[0]
    assert part.department_id == workshop.reparatii_id
    assert part.pipeline == "Reparatii"

    diff = _events(db_session, "service_sheet_save")[-1].payload["diff"]
    assert [entry["name"] for entry in diff["removed"]] == ["Ascutire foarfeca"]
    assert [entry["name"] for entry in diff["added"]] == ["Lama"]
    assert diff["updated"] == []


def test_part_takes_department_and_instrument_from_sibling_service(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    result = _save(
        service,
        db_session,
        workshop,
        current_user,
        [workshop.service_line(), {"id": "tmp-2", "item_type": "part", "name": "Lama", "price": "20"}],
    )

    part = next(row for row in result.items if row.item_type == "part")
    assert part.department_id == workshop.saloane_id
    assert part.instrument_id == workshop.instrument.id


def test_part_takes_department_and_instrument_from_persisted_line(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(service, db_session, workshop, current_user, [workshop.service_line()])

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [
            working_line(first.snapshot[0]),
            {"id": "tmp-2", "item_type": "part", "name": "Lama", "price": "20"},
        ],
        previous=first.snapshot,
    )

    part = next(row for row in second.items if row.item_type == "part")
    assert part.department_id == workshop.saloane_id
    assert part.instrument_id == workshop.instrument.id


def test_unresolvable_part_is_rejected_without_writes(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    with pytest.raises(UnresolvedDepartmentError):
        _save(service, db_session, workshop, current_user, [{"id": "tmp-1", "item_type": "part", "name": "Lama"}])

    assert _row_count(db_session) == 0
    assert _events(db_session, "service_sheet_save") == []


def test_failure_after_a_write_rolls_back_the_whole_save(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    with pytest.raises(MissingInstrumentReferenceError):
        _save(
            service,
            db_session,
            workshop,
            current_user,
            [workshop.service_line(), {"id": "tmp-2", "item_type": "instrument"}],
        )

    assert _row_count(db_session) == 0
    assert _events(db_session, "technician_assigned") == []


@pytest.mark.parametrize(
    ("line", "error"),
    [
        ({"id": "tmp-1", "item_type": "service"}, MissingServiceReferenceError),
        ({"id": "tmp-1", "item_type": "service", "service_id": uuid.uuid4()}, UnknownServiceError),
        ({"id": "tmp-1", "item_type": "part", "name": "  "}, MissingPartNameError),
    ],
)
def test_invalid_new_lines_are_rejected(
    db_session: Session,
    workshop: Workshop,
    service: ServiceSheetService,
    current_user: AuthUser,
    line: dict,
    error: type[Exception],
) -> None:
    with pytest.raises(error):
        _save(service, db_session, workshop, current_user, [line])
    assert _row_count(db_session) == 0


def test_unknown_pipeline_is_rejected(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    with pytest.raises(UnknownPipelineError):
        _save(service, db_session, workshop, current_user, [workshop.service_line(pipeline_id=uuid.uuid4())])


def test_instrument_line_becomes_service_line(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(
        service,
        db_session,
        workshop,
        current_user,
        [{"id": "tmp-1", "item_type": "instrument", "instrument_id": workshop.instrument.id}],
    )
    assert first.items[0].attributes.name_snapshot == "Foarfeca"
    assert first.items[0].department_id == workshop.saloane_id

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [working_line(first.snapshot[0], item_type="service", name=None, service_id=workshop.service.id)],
        previous=first.snapshot,
    )

    row = second.items[0]
    assert row.item_type == "service"
    assert row.service_id == workshop.service.id
    assert row.part_id is None
    assert row.attributes.name_snapshot == "Ascutire foarfeca"
    changes = _events(db_session, "service_sheet_save")[-1].payload["diff"]["updated"][0]["changes"]
    assert changes["type"] == {"old": "Instrument", "new": "Service", "label": "Type"}


def test_line_already_removed_by_another_save_is_skipped(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(service, db_session, workshop, current_user, [workshop.service_line()])
    ghost = first.snapshot[0].model_copy(update={"id": str(uuid.uuid4()), "name": "Lama"})

    second = _save(service, db_session, workshop, current_user, [working_line(first.snapshot[0])], previous=[*first.snapshot, ghost])

    assert _row_count(db_session) == 1
    assert second.snapshot == first.snapshot
    removed = _events(db_session, "service_sheet_save")[-1].payload["diff"]["removed"]
    assert [entry["name"] for entry in removed] == ["Lama"]


def test_baseline_line_of_another_tray_is_not_found(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(service, db_session, workshop, current_user, [workshop.service_line()])
    tray = db_session.get(Tray, workshop.tray_id)
    other_tray = Tray(number="T-102", service_file_id=tray.service_file_id)
    db_session.add(other_tray)
    db_session.flush()
    foreign = TrayItemRepository().create(
        db_session,
        tray_id=other_tray.id,
        attributes=LineItemAttributes(name_snapshot="Foarfeca"),
        item_type="instrument",
        instrument_id=workshop.instrument.id,
        department_id=workshop.saloane_id,
    )
    db_session.commit()
    stolen = first.snapshot[0].model_copy(update={"id": str(foreign.id)})

    with pytest.raises(LineItemNotFoundError):
        _save(service, db_session, workshop, current_user, [working_line(first.snapshot[0])], previous=[*first.snapshot, stolen])

    assert _row_count(db_session) == 2


def test_uuid_shaped_temporary_id_creates_a_line(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    temp_id = str(uuid.uuid4())

    result = _save(service, db_session, workshop, current_user, [workshop.service_line(id=temp_id)])

    assert _row_count(db_session) == 1
    assert len(result.items) == 1
    assert str(result.items[0].id) != temp_id
    assert _events(db_session, "service_sheet_save")[-1].message.startswith("Service sheet saved (added: Ascutire foarfeca)")


def test_untyped_instrument_baseline_is_not_an_update(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    first = _save(
        service,
        db_session,
        workshop,
        current_user,
        [{"id": "tmp-1", "item_type": None, "instrument_id": workshop.instrument.id}],
    )
    baseline = [{**item.model_dump(mode="json"), "type": None} for item in first.snapshot]

    second = _save(
        service,
        db_session,
        workshop,
        current_user,
        [working_line(first.snapshot[0], item_type=None)],
        previous_snapshot=baseline,
    )

    assert second.snapshot == first.snapshot
    saves = _events(db_session, "service_sheet_save")
    assert saves[-1].payload["diff"] == {"added": [], "removed": [], "updated": []}
    assert "(updated" not in saves[-1].message


def test_save_succeeds_with_info_logging_enabled(
    db_session: Session,
    workshop: Workshop,
    service: ServiceSheetService,
    current_user: AuthUser,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    WorkshopSeedHelper().seed_defaults(db_session)
    result = _save(service, db_session, workshop, current_user, [workshop.service_line()])

    assert len(result.items) == 1
    saved = [record for record in caplog.records if record.getMessage() == "service_sheet_saved"]
    assert len(saved) == 1
    assert saved[0].created_count == 1
    seeded = [record for record in caplog.records if record.getMessage() == "workshop_reference_data_seeded"]
    assert seeded and seeded[0].created_count >= 1


def test_scope_is_checked_before_any_write(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    request = workshop.request([workshop.service_line()])

    with pytest.raises(LeadNotFoundError):
        service.reconcile(db_session, lead_id=uuid.uuid4(), tray_id=workshop.tray_id, request=request, current_user=current_user)
    with pytest.raises(TrayNotFoundError):
        service.reconcile(
            db_session, lead_id=workshop.other_lead_id, tray_id=workshop.tray_id, request=request, current_user=current_user
        )

    assert _row_count(db_session) == 0


def test_audit_failure_does_not_fail_the_save(
    db_session: Session,
    workshop: Workshop,
    service: ServiceSheetService,
    current_user: AuthUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_log(*args: object, **kwargs: object) -> None:
        raise RuntimeError("audit store unavailable")

    before = REGISTRY.get_sample_value("service_sheet_audit_failures_total", {"event_type": "service_sheet_save"}) or 0.0
    monkeypatch.setattr(service.audit, "log", broken_log)

    result = _save(service, db_session, workshop, current_user, [workshop.service_line()])

    assert _row_count(db_session) == 1
    assert result.items[0].technician_id == "user-1"
    assert _events(db_session, "service_sheet_save") == []
    after = REGISTRY.get_sample_value("service_sheet_audit_failures_total", {"event_type": "service_sheet_save"})
    assert after == before + 1


def test_reference_resolution_failure_still_records_event(
    db_session: Session,
    workshop: Workshop,
    current_user: AuthUser,
) -> None:
    class UnavailableResolver(ReferenceResolver):
        def resolve(self, *args: object, **kwargs: object) -> None:  # type: ignore[override]
            raise RuntimeError("member directory unavailable")

    degraded = ServiceSheetService(references=UnavailableResolver())

    _save(degraded, db_session, workshop, current_user, [workshop.service_line()])

    saves = _events(db_session, "service_sheet_save")
    assert len(saves) == 1
    assert saves[0].payload["saved_by_user"] is None
    assert saves[0].actor_id == "user-1"
    assert saves[0].payload["instruments"] == [
        {"id": str(workshop.instrument.id), "name": "Foarfeca", "quantity": 1}
    ]


def test_current_sheet_reads_rows_and_snapshot(
    db_session: Session, workshop: Workshop, service: ServiceSheetService, current_user: AuthUser
) -> None:
    saloane = workshop.pipeline("Saloane")
    _save(service, db_session, workshop, current_user, [workshop.service_line(pipeline_id=saloane.id)])

    sheet = service.current_sheet(db_session, tray_id=workshop.tray_id)

    assert len(sheet.items) == 1
    assert sheet.items[0].pipeline == "Saloane"
    assert sheet.snapshot[0].pipeline == str(saloane.id)

    with pytest.raises(TrayNotFoundError):
        service.current_sheet(db_session, tray_id=uuid.uuid4())
