from __future__ import annotations

from datetime import datetime
from typing import Any, cast

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from er_core.infrastructure.db.models_sqlalchemy import EncounterEvent


class EncounterEventRepository:
    def add_event(
        self,
        session: Session,
        *,
        encounter_id: int,
        hospital_id: int,
        event_type: str,
        metadata_json: str | None,
        actor_user_id: int | None = None,
        actor_patient_id: int | None = None,
    ) -> EncounterEvent:
        event = EncounterEvent(
            encounter_id=encounter_id,
            hospital_id=hospital_id,
            type=event_type,
            metadata_json=metadata_json,
            actor_user_id=actor_user_id,
            actor_patient_id=actor_patient_id,
        )
        session.add(event)
        session.flush()
        return event

    def get(self, session: Session, event_id: int) -> EncounterEvent | None:
        return session.get(EncounterEvent, event_id)

    def list_pending_ids(self, session: Session, *, created_before: datetime, limit: int) -> list[int]:
        stmt = (
            select(EncounterEvent.id)
            .where(
                EncounterEvent.processed_at.is_(None),
                EncounterEvent.created_at < created_before,
            )
            .order_by(EncounterEvent.created_at.asc(), EncounterEvent.id.asc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())

    def mark_processed(self, session: Session, event_id: int, processed_at: datetime) -> bool:
        """Stamp ``processed_at`` once; False when another worker already did."""
        stmt = (
            update(EncounterEvent)
            .where(EncounterEvent.id == event_id, EncounterEvent.processed_at.is_(None))
            .values(processed_at=processed_at)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        return cast(int, cast(Any, result).rowcount) == 1

    def list_for_encounter(
        self,
        session: Session,
        encounter_id: int,
        *,
        after_event_id: int | None = None,
        limit: int = 100,
    ) -> list[EncounterEvent]:
        stmt = select(EncounterEvent).where(EncounterEvent.encounter_id == encounter_id)
        if after_event_id is not None:
            stmt = stmt.where(EncounterEvent.id > after_event_id)
        stmt = stmt.order_by(EncounterEvent.created_at.asc(), EncounterEvent.id.asc()).limit(limit)
        return list(session.execute(stmt).scalars())
