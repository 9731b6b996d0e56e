from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from repairdesk.core.auth import AuthUser
from repairdesk.core.cache import ReferenceCache, get_reference_cache
from repairdesk.service_sheet.schemas import InstrumentCatalogEntry, PipelineCatalogEntry
from repairdesk.workshop.models import Department, Member, Pipeline
from repairdesk.workshop.repository import TrayDetails, TrayRepository
from repairdesk.workshop.seed import DEPARTMENTS_CACHE_KEY, PIPELINES_CACHE_KEY


UNASSIGNED = "Unassigned"
UNKNOWN = "Unknown"


@dataclass(frozen=True, slots=True)
class PersonRef:
    id: str
    name: str
    email: str | None = None

    def as_payload(self) -> dict[str, str | None]:
        return {"id": self.id, "name": self.name, "email": self.email}


@dataclass(slots=True)
class ResolvedReferences:
    technicians: dict[str, PersonRef] = field(default_factory=dict)
    departments: dict[str, str] = field(default_factory=dict)
    instruments: dict[str, str] = field(default_factory=dict)
    pipelines: dict[str, str] = field(default_factory=dict)
    tray: TrayDetails | None = None
    saved_by: PersonRef | None = None

    def technician(self, technician_id: str | None) -> PersonRef | None:
        if not technician_id:
            return None
        return self.technicians.get(technician_id)

    def technician_name(self, technician_id: str | None) -> str:
        if not technician_id:
            return UNASSIGNED
        ref = self.technicians.get(technician_id)
        return ref.name if ref is not None else UNKNOWN

    def department_name(self, department_id: str | None) -> str | None:
        if not department_id:
            return None
        return self.departments.get(department_id)

    def instrument_name(self, instrument_id: str | None) -> str | None:
        if not instrument_id:
            return None
        return self.instruments.get(instrument_id)

    def pipeline_name(self, pipeline_id: str | None) -> str | None:
        if not pipeline_id:
            return None
        return self.pipelines.get(pipeline_id)


def person_display_name(user_id: str, *, member: Member | None, email: str | None, prefix: str) -> str:
    if member is not None and member.name:
        return member.name
    if member is not None and email:
        return email
    if email:
        return email.split("@", 1)[0]
    return f"{prefix} {user_id[:8]}"


@dataclass(slots=True)
class ReferenceResolver:
    """Batched lookups used to enrich audit events.

    One query for members, one for tray details plus one for its kanban
    placement. Departments and pipelines come from the reference cache.
    """

    cache: ReferenceCache | None = None
    trays: TrayRepository = field(default_factory=TrayRepository)

    def _cache(self) -> ReferenceCache:
        return self.cache or get_reference_cache()

    def department_names(self, session: Session) -> dict[str, str]:
        def load() -> dict[str, str]:
            rows = session.execute(select(Department.id, Department.name)).all()
            return {str(row[0]): row[1] for row in rows}

        return self._cache().get_or_load(DEPARTMENTS_CACHE_KEY, load)

    def department_ids_by_name(self, session: Session) -> dict[str, uuid.UUID]:
        return {name.strip().lower(): uuid.UUID(department_id) for department_id, name in self.department_names(session).items()}

    def pipeline_catalog(self, session: Session) -> list[PipelineCatalogEntry]:
        def load() -> list[PipelineCatalogEntry]:
            rows = session.scalars(select(Pipeline).order_by(Pipeline.name.asc())).all()
            return [PipelineCatalogEntry.model_validate(row) for row in rows]

        return self._cache().get_or_load(PIPELINES_CACHE_KEY, load)

    def resolve(
        self,
        session: Session,
        *,
        tray_id: uuid.UUID,
        technician_ids: Iterable[str],
        current_user: AuthUser | None = None,
        instruments: Iterable[InstrumentCatalogEntry] = (),
        pipelines: Iterable[PipelineCatalogEntry] = (),
    ) -> ResolvedReferences:
        wanted = {tech_id for tech_id in technician_ids if tech_id}
        saver_id = current_user.sub if current_user is not None and current_user.sub else None
        lookup_ids = wanted | ({saver_id} if saver_id else set())

        members: dict[str, Member] = {}
        if lookup_ids:
            stmt = select(Member).where(Member.user_id.in_(sorted(lookup_ids)))
            members = {member.user_id: member for member in session.scalars(stmt).all()}

        technicians = {
            tech_id: _person(tech_id, members.get(tech_id), current_user, "Technician") for tech_id in sorted(wanted)
        }
        saved_by = _person(saver_id, members.get(saver_id), current_user, "User") if saver_id else None

        return ResolvedReferences(
            technicians=technicians,
            departments=self.department_names(session),
            instruments={str(entry.id): entry.name for entry in instruments},
            pipelines={str(entry.id): entry.name for entry in pipelines},
            tray=self.trays.get_details(session, tray_id),
            saved_by=saved_by,
        )


def _person(user_id: str, member: Member | None, current_user: AuthUser | None, prefix: str) -> PersonRef:
    # Only the saving user's own email is known without a directory lookup.
    email = current_user.email if current_user is not None and current_user.sub == user_id else None
    return PersonRef(
        id=user_id,
        name=person_display_name(user_id, member=member, email=email, prefix=prefix),
        email=(member.email if member is not None and member.email else email),
    )
