from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from er_core.infrastructure.db.models_sqlalchemy import TriageAssessment


class TriageRepository:
    def add(
        self,
        session: Session,
        *,
        encounter_id: int,
        hospital_id: int,
        ctas_level: int,
        priority_score: int,
        note: str | None,
        vitals_json: str | None,
        created_by_user_id: int | None,
    ) -> TriageAssessment:
        assessment = TriageAssessment(
            encounter_id=encounter_id,
            hospital_id=hospital_id,
            ctas_level=ctas_level,
            priority_score=priority_score,
            note=note,
            vitals_json=vitals_json,
            created_by_user_id=created_by_user_id,
        )
        session.add(assessment)
        session.flush()
        return assessment

    def list_for_encounter(self, session: Session, encounter_id: int) -> list[TriageAssessment]:
        stmt = (
            select(TriageAssessment)
            .where(TriageAssessment.encounter_id == encounter_id)
            .order_by(TriageAssessment.created_at.desc(), TriageAssessment.id.desc())
        )
        return list(session.execute(stmt).scalars())
