"""Transactional outbox: every domain mutation records an immutable event row.

``append_event`` never opens its own transaction. It writes through the
caller's session so the event commits or rolls back with the mutation.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, cast

from sqlalchemy.orm import Session

from er_core.application.dto.event_dto import EncounterEventDto
from er_core.application.errors import NotFoundError, ValidationError
from er_core.domain.constants import EventType
from er_core.domain.models.encounter import SYSTEM_ACTOR, EventActor
from er_core.infrastructure.db.json_columns import from_json, to_json
from er_core.infrastructure.db.models_sqlalchemy import EncounterEvent
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.repositories.event_repo import EncounterEventRepository
from er_core.infrastructure.db.session import session_scope

logger = logging.getLogger(__name__)


def event_to_dto(event: EncounterEvent) -> EncounterEventDto:
    return EncounterEventDto(
        id=cast(int, event.id),
        encounter_id=cast(int, event.encounter_id),
        hospital_id=cast(int, event.hospital_id),
        type=EventType(cast(str, event.type)),
        metadata=from_json(event.metadata_json, default={}) or {},
        actor_user_id=cast(int | None, event.actor_user_id),
        actor_patient_id=cast(int | None, event.actor_patient_id),
        created_at=cast(datetime, event.created_at),
        processed_at=cast(datetime | None, event.processed_at),
    )


class EventOutbox:
    def __init__(
        self,
        event_repo: EncounterEventRepository | None = None,
        encounter_repo: EncounterRepository | None = None,
        session_factory: Callable = session_scope,
    ) -> None:
        self.event_repo = event_repo or EncounterEventRepository()
        self.encounter_repo = encounter_repo or EncounterRepository()
        self.session_factory = session_factory

    def append_event(
        self,
        session: Session,
        *,
        encounter_id: int,
        hospital_id: int | None,
        event_type: str,
        metadata: dict[str, Any] | None = None,
        actor: EventActor = SYSTEM_ACTOR,
    ) -> EncounterEvent | None:
        """Record an event inside the caller's transaction.

        Returns None, after a warning, when the encounter has no hospital yet
        (pre-confirmation intake). Nothing is pushed for such encounters.
        """
        if event_type not in EventType.values():
            raise ValidationError(f"Unknown event type: {event_type}")
        if actor.is_ambiguous:
            raise ValidationError("Event actor must be a user or a patient, not both")

        resolved_hospital_id = hospital_id
        if resolved_hospital_id is None:
            resolved_hospital_id = self.encounter_repo.get_hospital_id(session, encounter_id)
        if resolved_hospital_id is None:
            logger.warning(
                "Skipping %s event for encounter %s: no hospital assigned",
                event_type,
                encounter_id,
            )
            return None

        event = self.event_repo.add_event(
            session,
            encounter_id=encounter_id,
            hospital_id=resolved_hospital_id,
            event_type=event_type,
            metadata_json=to_json(metadata or {}),
            actor_user_id=actor.user_id,
            actor_patient_id=actor.patient_id,
        )
        logger.debug("Appended %s event %s for encounter %s", event_type, event.id, encounter_id)
        return event

    def list_events(
        self,
        hospital_id: int,
        encounter_id: int,
        *,
        after_event_id: int | None = None,
        limit: int = 100,
    ) -> list[EncounterEventDto]:
        if limit < 1 or limit > 500:
            raise ValidationError("limit must be between 1 and 500")
        with self.session_factory() as session:
            encounter = self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id)
            if encounter is None:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            events = self.event_repo.list_for_encounter(
                session,
                encounter_id,
                after_event_id=after_event_id,
                limit=limit,
            )
            return [event_to_dto(event) for event in events]
