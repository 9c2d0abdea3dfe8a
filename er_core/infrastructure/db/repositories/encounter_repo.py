from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, cast

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from er_core.domain.constants import ACTIVE_STATUSES, EncounterStatus
from er_core.domain.models.encounter import EncounterSnapshot
from er_core.infrastructure.db.models_sqlalchemy import Encounter, utc_now


class EncounterRepository:
    def get(self, session: Session, encounter_id: int) -> Encounter | None:
        return session.get(Encounter, encounter_id)

    def get_for_hospital(self, session: Session, hospital_id: int, encounter_id: int) -> Encounter | None:
        """Return the encounter only when it belongs to ``hospital_id``."""
        encounter = session.get(Encounter, encounter_id)
        if encounter is None or cast(int | None, encounter.hospital_id) != hospital_id:
            return None
        return encounter

    def get_hospital_id(self, session: Session, encounter_id: int) -> int | None:
        stmt = select(Encounter.hospital_id).where(Encounter.id == encounter_id)
        return session.execute(stmt).scalar_one_or_none()

    def create(
        self,
        session: Session,
        *,
        hospital_id: int | None,
        patient_id: int | None,
        patient_name: str | None,
        chief_complaint: str | None,
        details: str | None,
        expected_at: datetime | None,
    ) -> Encounter:
        now = utc_now()
        encounter = Encounter(
            hospital_id=hospital_id,
            patient_id=patient_id,
            patient_name=patient_name,
            status=EncounterStatus.EXPECTED.value,
            chief_complaint=chief_complaint,
            details=details,
            expected_at=expected_at or now,
            created_at=now,
            updated_at=now,
            current_priority_score=0,
        )
        session.add(encounter)
        session.flush()
        return encounter

    def update_status(
        self,
        session: Session,
        encounter_id: int,
        *,
        expected_status: str,
        new_status: str,
        stamps: dict[str, datetime],
        updated_at: datetime,
    ) -> int:
        """Conditional status write; returns the affected row count (0 on a lost update)."""
        values: dict[str, Any] = {"status": new_status, "updated_at": updated_at, **stamps}
        stmt = (
            update(Encounter)
            .where(Encounter.id == encounter_id, Encounter.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        return cast(int, cast(Any, result).rowcount)

    def bind_hospital(
        self,
        session: Session,
        encounter_id: int,
        *,
        hospital_id: int,
        patient_id: int,
        updated_at: datetime,
    ) -> None:
        stmt = (
            update(Encounter)
            .where(Encounter.id == encounter_id)
            .values(hospital_id=hospital_id, patient_id=patient_id, updated_at=updated_at)
            .execution_options(synchronize_session=False)
        )
        session.execute(stmt)

    def apply_triage(
        self,
        session: Session,
        encounter_id: int,
        *,
        triage_id: int,
        ctas_level: int,
        priority_score: int,
        triaged_at: datetime,
    ) -> None:
        stmt = (
            update(Encounter)
            .where(Encounter.id == encounter_id)
            .values(
                current_triage_id=triage_id,
                current_ctas_level=ctas_level,
                current_priority_score=priority_score,
                triaged_at=triaged_at,
                updated_at=triaged_at,
            )
            .execution_options(synchronize_session=False)
        )
        session.execute(stmt)

    def list_for_hospital(
        self,
        session: Session,
        hospital_id: int,
        *,
        statuses: Iterable[str] | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> tuple[list[Encounter], int]:
        stmt = select(Encounter).where(Encounter.hospital_id == hospital_id)
        status_list = list(statuses or [])
        if status_list:
            stmt = stmt.where(Encounter.status.in_(status_list))
        if since is not None:
            stmt = stmt.where(Encounter.created_at >= since)
        total_stmt = select(func.count()).select_from(stmt.subquery())
        total = cast(int, session.execute(total_stmt).scalar_one())
        stmt = stmt.order_by(
            Encounter.current_priority_score.desc(),
            Encounter.created_at.asc(),
            Encounter.id.asc(),
        ).limit(limit)
        return list(session.execute(stmt).scalars()), total

    def list_waiting_queue(self, session: Session, hospital_id: int) -> list[Encounter]:
        stmt = (
            select(Encounter)
            .where(
                Encounter.hospital_id == hospital_id,
                Encounter.status == EncounterStatus.WAITING.value,
            )
            .order_by(
                Encounter.current_priority_score.desc(),
                Encounter.created_at.asc(),
                Encounter.id.asc(),
            )
        )
        return list(session.execute(stmt).scalars())

    def list_active(self, session: Session, hospital_id: int) -> list[Encounter]:
        stmt = (
            select(Encounter)
            .where(
                Encounter.hospital_id == hospital_id,
                Encounter.status.in_([status.value for status in ACTIVE_STATUSES]),
            )
            .order_by(Encounter.id.asc())
        )
        return list(session.execute(stmt).scalars())

    def list_for_patient(self, session: Session, patient_id: int) -> list[Encounter]:
        stmt = (
            select(Encounter)
            .where(Encounter.patient_id == patient_id)
            .order_by(Encounter.created_at.desc(), Encounter.id.desc())
        )
        return list(session.execute(stmt).scalars())

    def list_ids_for_rule_evaluation(self, session: Session, *, limit: int) -> list[int]:
        """Active encounters bound to a hospital, least recently touched first."""
        stmt = (
            select(Encounter.id)
            .where(
                Encounter.hospital_id.is_not(None),
                Encounter.status.in_([status.value for status in ACTIVE_STATUSES]),
            )
            .order_by(Encounter.updated_at.asc(), Encounter.id.asc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())

    @staticmethod
    def to_snapshot(encounter: Encounter) -> EncounterSnapshot:
        return EncounterSnapshot(
            id=cast(int, encounter.id),
            hospital_id=cast(int | None, encounter.hospital_id),
            status=EncounterStatus(cast(str, encounter.status)),
            chief_complaint=cast(str | None, encounter.chief_complaint),
            current_ctas_level=cast(int | None, encounter.current_ctas_level),
            patient_id=cast(int | None, encounter.patient_id),
            patient_name=cast(str | None, encounter.patient_name),
            created_at=cast(datetime | None, encounter.created_at),
            updated_at=cast(datetime | None, encounter.updated_at),
            arrived_at=cast(datetime | None, encounter.arrived_at),
            triaged_at=cast(datetime | None, encounter.triaged_at),
            waiting_at=cast(datetime | None, encounter.waiting_at),
        )
