from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from repairdesk.core.cache import ReferenceCache, get_reference_cache
from repairdesk.core.config import get_settings
from repairdesk.workshop.models import Department, Pipeline, Stage


logger = logging.getLogger("repairdesk.lifecycle")

DEPARTMENTS_CACHE_KEY = "departments"
PIPELINES_CACHE_KEY = "pipelines"

DEFAULT_STAGES = ("Noua", "In lucru", "De facturat", "Finalizata")


class WorkshopSeedHelper:
    """Idempotent writers for departments and pipelines.

    Every write drops the matching reference-cache entry so readers never
    see a department or pipeline list older than the last write.
    """

    def __init__(self, cache: ReferenceCache | None = None) -> None:
        self._cache = cache

    @property
    def cache(self) -> ReferenceCache:
        return self._cache or get_reference_cache()

    def upsert_department(self, session: Session, name: str) -> Department:
        department = session.scalar(select(Department).where(Department.name == name))
        if department is None:
            department = Department(name=name)
            session.add(department)
            session.flush()
        self.cache.invalidate(DEPARTMENTS_CACHE_KEY)
        return department

    def rename_department(self, session: Session, department: Department, name: str) -> Department:
        department.name = name
        session.flush()
        self.cache.invalidate(DEPARTMENTS_CACHE_KEY)
        return department

    def ensure_pipeline(self, session: Session, name: str, stages: tuple[str, ...] = DEFAULT_STAGES) -> Pipeline:
        pipeline = session.scalar(select(Pipeline).where(Pipeline.name == name))
        if pipeline is None:
            pipeline = Pipeline(name=name)
            pipeline.stages = [Stage(name=stage_name, position=index) for index, stage_name in enumerate(stages)]
            session.add(pipeline)
            session.flush()
        self.cache.invalidate(PIPELINES_CACHE_KEY)
        return pipeline

    def seed_defaults(self, session: Session) -> None:
        settings = get_settings()
        names = list(dict.fromkeys([*settings.department_pipeline_names, settings.parts_fallback_department]))
        for name in names:
            self.upsert_department(session, name)
        for name in dict.fromkeys([*settings.department_pipeline_names, settings.parts_fallback_pipeline]):
            self.ensure_pipeline(session, name)
        session.commit()
        logger.info("workshop_reference_data_seeded", extra={"created_count": len(names)})
