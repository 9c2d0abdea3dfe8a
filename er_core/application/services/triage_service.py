from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import cast

from er_core.application.dto.triage_dto import TriageCreateRequest, TriageDto
from er_core.application.errors import ConflictError, NotFoundError
from er_core.application.services.alert_evaluator import AlertEvaluator
from er_core.application.services.event_dispatcher import EventDispatcher, enqueue_committed
from er_core.application.services.event_outbox import EventOutbox
from er_core.domain.constants import EventType
from er_core.domain.models.encounter import EventActor
from er_core.domain.rules.encounter_rules import compute_priority_score, is_terminal
from er_core.infrastructure.db.json_columns import from_json, to_json
from er_core.infrastructure.db.models_sqlalchemy import TriageAssessment, utc_now
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.repositories.triage_repo import TriageRepository
from er_core.infrastructure.db.session import session_scope

logger = logging.getLogger(__name__)


def triage_to_dto(assessment: TriageAssessment) -> TriageDto:
    return TriageDto(
        id=cast(int, assessment.id),
        encounter_id=cast(int, assessment.encounter_id),
        hospital_id=cast(int, assessment.hospital_id),
        ctas_level=cast(int, assessment.ctas_level),
        priority_score=cast(int, assessment.priority_score),
        note=cast(str | None, assessment.note),
        vitals=from_json(assessment.vitals_json, default=None),
        created_by_user_id=cast(int | None, assessment.created_by_user_id),
        created_at=cast(datetime, assessment.created_at),
    )


class TriageService:
    def __init__(
        self,
        triage_repo: TriageRepository | None = None,
        encounter_repo: EncounterRepository | None = None,
        outbox: EventOutbox | None = None,
        evaluator: AlertEvaluator | None = None,
        dispatcher: EventDispatcher | None = None,
        session_factory: Callable = session_scope,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.triage_repo = triage_repo or TriageRepository()
        self.encounter_repo = encounter_repo or EncounterRepository()
        self.outbox = outbox or EventOutbox(encounter_repo=self.encounter_repo)
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self._clock = clock

    def create_assessment(
        self,
        hospital_id: int,
        encounter_id: int,
        request: TriageCreateRequest,
        actor_user_id: int | None = None,
    ) -> TriageDto:
        now = self._clock()
        priority_score = compute_priority_score(request.ctas_level)
        with self.session_factory() as session:
            encounter = self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id)
            if encounter is None:
                logger.warning("Encounter %s not found for triage in hospital %s", encounter_id, hospital_id)
                raise NotFoundError(f"Encounter {encounter_id} not found")
            if is_terminal(cast(str, encounter.status)):
                raise ConflictError(f"Encounter {encounter_id} is closed ({encounter.status})")

            assessment = self.triage_repo.add(
                session,
                encounter_id=encounter_id,
                hospital_id=hospital_id,
                ctas_level=request.ctas_level,
                priority_score=priority_score,
                note=request.note,
                vitals_json=to_json(request.vitals),
                created_by_user_id=actor_user_id,
            )
            self.encounter_repo.apply_triage(
                session,
                encounter_id,
                triage_id=cast(int, assessment.id),
                ctas_level=request.ctas_level,
                priority_score=priority_score,
                triaged_at=now,
            )
            session.refresh(encounter)

            event = self.outbox.append_event(
                session,
                encounter_id=encounter_id,
                hospital_id=hospital_id,
                event_type=EventType.TRIAGE_CREATED,
                metadata={
                    "triageId": cast(int, assessment.id),
                    "ctasLevel": request.ctas_level,
                    "priorityScore": priority_score,
                },
                actor=EventActor(user_id=actor_user_id),
            )
            event_ids: list[int | None] = [cast(int, event.id) if event is not None else None]
            if self.evaluator is not None:
                snapshot = self.encounter_repo.to_snapshot(encounter)
                event_ids.extend(self.evaluator.evaluate_encounter_tx(session, snapshot, now))
            dto = triage_to_dto(assessment)

        logger.info(
            "Triage %s recorded for encounter %s (CTAS %s, priority %s)",
            dto.id,
            encounter_id,
            dto.ctas_level,
            dto.priority_score,
        )
        enqueue_committed(self.dispatcher, event_ids)
        return dto

    def list_assessments(self, hospital_id: int, encounter_id: int) -> list[TriageDto]:
        with self.session_factory() as session:
            if self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id) is None:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            return [triage_to_dto(item) for item in self.triage_repo.list_for_encounter(session, encounter_id)]
