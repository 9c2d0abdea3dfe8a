from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from er_core.infrastructure.db.models_sqlalchemy import Hospital


class HospitalRepository:
    def get(self, session: Session, hospital_id: int) -> Hospital | None:
        return session.get(Hospital, hospital_id)

    def get_by_slug(self, session: Session, slug: str) -> Hospital | None:
        stmt = select(Hospital).where(Hospital.slug == slug)
        return session.execute(stmt).scalar_one_or_none()

    def create(self, session: Session, *, name: str, slug: str) -> Hospital:
        hospital = Hospital(name=name, slug=slug)
        session.add(hospital)
        session.flush()
        return hospital
