from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from repairdesk.core.auth import AuthUser
from repairdesk.core.cache import reset_reference_cache
from repairdesk.service_sheet.schemas import InstrumentCatalogEntry, PipelineCatalogEntry, ServiceCatalogEntry
from repairdesk.workshop.models import (
    Instrument,
    Lead,
    Member,
    PipelineItem,
    ServiceDefinition,
    ServiceFile,
    Tray,
)
from repairdesk.workshop.seed import WorkshopSeedHelper
from tests.factories import WRITE_ROLES, Workshop


@pytest.fixture(autouse=True)
def clean_reference_cache() -> Generator[None, None, None]:
    reset_reference_cache()
    yield
    reset_reference_cache()


@pytest.fixture()
def current_user() -> AuthUser:
    return AuthUser(sub="user-1", roles=list(WRITE_ROLES), email="reception@example.com")


@pytest.fixture()
def workshop(db_session: Session) -> Workshop:
    seed = WorkshopSeedHelper()
    seed.seed_defaults(db_session)
    receptie = seed.ensure_pipeline(db_session, "Receptie")
    saloane = seed.upsert_department(db_session, "Saloane")
    reparatii = seed.upsert_department(db_session, "Reparatii")
    saloane_pipeline = seed.ensure_pipeline(db_session, "Saloane")

    instrument = Instrument(name="Foarfeca", department_id=saloane.id)
    db_session.add(instrument)
    db_session.flush()

    service = ServiceDefinition(
        name="Ascutire foarfeca",
        price=Decimal("100.00"),
        department_id=saloane.id,
        instrument_id=instrument.id,
    )
    service_via_instrument = ServiceDefinition(name="Revizie", price=Decimal("40.00"), instrument_id=instrument.id)
    db_session.add_all([service, service_via_instrument])

    db_session.add_all(
        [
            Member(user_id="tech-a", name="Ana Pop", email="ana@example.com"),
            Member(user_id="tech-b", name="Bogdan Ion", email="bogdan@example.com"),
        ]
    )

    lead = Lead(full_name="Client Salon")
    other_lead = Lead(full_name="Other Client")
    db_session.add_all([lead, other_lead])
    db_session.flush()

    service_file = ServiceFile(lead_id=lead.id, number="FS-7")
    db_session.add(service_file)
    db_session.flush()

    tray = Tray(number="T-101", status="in_lucru", service_file_id=service_file.id)
    db_session.add(tray)
    db_session.flush()

    stage = next(stage for stage in saloane_pipeline.stages if stage.name == "In lucru")
    db_session.add(PipelineItem(type="tray", item_id=tray.id, pipeline_id=saloane_pipeline.id, stage_id=stage.id))
    db_session.commit()

    pipelines = [PipelineCatalogEntry(id=receptie.id, name="Receptie")]
    for name in ("Saloane", "Reparatii"):
        pipelines.append(PipelineCatalogEntry(id=seed.ensure_pipeline(db_session, name).id, name=name))

    return Workshop(
        lead_id=lead.id,
        tray_id=tray.id,
        other_lead_id=other_lead.id,
        saloane_id=saloane.id,
        reparatii_id=reparatii.id,
        instrument=InstrumentCatalogEntry.model_validate(instrument),
        service=ServiceCatalogEntry.model_validate(service),
        service_via_instrument=ServiceCatalogEntry.model_validate(service_via_instrument),
        pipelines=pipelines,
    )
