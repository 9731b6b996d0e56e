from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import repairdesk.audit.models  # noqa: F401
from repairdesk.core.auth import AuthUser
from repairdesk.core.cache import ReferenceCache
from repairdesk.core.database import Base
from repairdesk.service_sheet.references import ReferenceResolver, person_display_name
from repairdesk.workshop.models import Member
from repairdesk.workshop.seed import WorkshopSeedHelper
from tests.factories import Workshop


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


@pytest.fixture()
def statements(db_session: Session) -> Generator[list[str], None, None]:
    seen: list[str] = []
    engine = db_session.get_bind()

    def record(conn, cursor, statement, parameters, context, executemany) -> None:  # type: ignore[no-untyped-def]
        seen.append(statement)

    event.listen(engine, "before_cursor_execute", record)
    yield seen
    event.remove(engine, "before_cursor_execute", record)


def test_display_name_fallbacks() -> None:
    member = Member(user_id="tech-a", name="Ana Pop", email="ana@example.com")
    nameless = Member(user_id="tech-c", name=None, email="carla@example.com")

    assert person_display_name("tech-a", member=member, email=None, prefix="Technician") == "Ana Pop"
    assert person_display_name("tech-c", member=nameless, email="carla@example.com", prefix="Technician") == "carla@example.com"
    assert person_display_name("user-1", member=None, email="reception@example.com", prefix="User") == "reception"
    assert person_display_name("0123456789abcdef", member=None, email=None, prefix="Technician") == "Technician 01234567"


def test_resolve_batches_lookups(
    db_session: Session, workshop: Workshop, current_user: AuthUser, statements: list[str]
) -> None:
    resolver = ReferenceResolver(cache=ReferenceCache(ttl_seconds=60))
    technician_ids = ["tech-a", "tech-b", "ghost-0123456789", "tech-a", ""]

    refs = resolver.resolve(
        db_session,
        tray_id=workshop.tray_id,
        technician_ids=technician_ids,
        current_user=current_user,
        instruments=[workshop.instrument],
        pipelines=workshop.pipelines,
    )

    selects = [statement for statement in statements if statement.lstrip().upper().startswith("SELECT")]
    assert len(selects) == 4

    assert refs.technician_name("tech-a") == "Ana Pop"
    assert refs.technician("tech-a").email == "ana@example.com"
    assert refs.technician_name("ghost-0123456789") == "Technician ghost-01"
    assert refs.technician_name(None) == "Unassigned"
    assert refs.technician_name("not-requested") == "Unknown"
    assert refs.saved_by is not None
    assert refs.saved_by.name == "reception"
    assert refs.saved_by.email == "reception@example.com"
    assert refs.department_name(str(workshop.saloane_id)) == "Saloane"
    assert refs.instrument_name(str(workshop.instrument.id)) == "Foarfeca"
    assert refs.pipeline_name(str(workshop.pipeline("Saloane").id)) == "Saloane"

    assert refs.tray is not None
    assert refs.tray.label == "T-101 - in_lucru"
    assert refs.tray.service_file_number == "FS-7"
    assert refs.tray.pipeline_name == "Saloane"
    assert refs.tray.stage_name == "In lucru"


def test_departments_are_served_from_cache_until_written(
    db_session: Session, workshop: Workshop, current_user: AuthUser, statements: list[str]
) -> None:
    cache = ReferenceCache(ttl_seconds=60)
    resolver = ReferenceResolver(cache=cache)
    seed = WorkshopSeedHelper(cache=cache)

    first = resolver.department_names(db_session)
    statements.clear()
    assert resolver.department_names(db_session) == first
    assert statements == []

    seed.upsert_department(db_session, "Gravura")
    assert "Gravura" in resolver.department_names(db_session).values()
    assert resolver.department_ids_by_name(db_session)["gravura"]


def test_unknown_tray_resolves_without_details(db_session: Session, workshop: Workshop) -> None:
    refs = ReferenceResolver(cache=ReferenceCache(ttl_seconds=60)).resolve(
        db_session,
        tray_id=uuid.uuid4(),
        technician_ids=[],
    )

    assert refs.tray is None
    assert refs.saved_by is None
    assert refs.technicians == {}
