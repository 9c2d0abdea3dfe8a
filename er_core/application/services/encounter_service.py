"""Encounter lifecycle: creation, intake confirmation and status transitions.

All status changes go through ``_run_transition`` so the status write, the
STATUS_CHANGE event and any event-triggered alerts commit together.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, cast

from er_core.application.dto.encounter_dto import (
    EncounterCreateRequest,
    EncounterDetailDto,
    EncounterDto,
    EncounterListDto,
    EncounterListFilters,
    LocationDto,
    PatientEncounterDto,
    QueuePositionDto,
)
from er_core.application.errors import ConflictError, NotFoundError, ValidationError
from er_core.application.services.alert_evaluator import AlertEvaluator
from er_core.application.services.alert_service import alert_to_dto
from er_core.application.services.event_dispatcher import EventDispatcher, enqueue_committed
from er_core.application.services.event_outbox import EventOutbox
from er_core.application.services.location_cache import LocationCache, LocationPing
from er_core.application.services.messaging_service import message_to_dto
from er_core.application.services.triage_service import triage_to_dto
from er_core.domain.constants import EncounterStatus, EventType
from er_core.domain.models.encounter import SYSTEM_ACTOR, EventActor
from er_core.domain.rules.encounter_rules import (
    AVG_MINUTES_PER_QUEUED_PATIENT,
    Transition,
    can_apply,
    get_transition,
    is_terminal,
    transition_for_target,
)
from er_core.infrastructure.db.models_sqlalchemy import Encounter, utc_now
from er_core.infrastructure.db.repositories.alert_repo import AlertRepository
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.repositories.hospital_repo import HospitalRepository
from er_core.infrastructure.db.repositories.message_repo import MessageRepository
from er_core.infrastructure.db.repositories.triage_repo import TriageRepository
from er_core.infrastructure.db.session import session_scope

logger = logging.getLogger(__name__)

_TIMESTAMP_KEYS = {
    "arrived_at": "arrivedAt",
    "triaged_at": "triagedAt",
    "waiting_at": "waitingAt",
    "departed_at": "departedAt",
    "cancelled_at": "cancelledAt",
}


def _timestamps_metadata(encounter: Encounter) -> dict[str, str | None]:
    result: dict[str, str | None] = {}
    for field_name, key in _TIMESTAMP_KEYS.items():
        value = cast(datetime | None, getattr(encounter, field_name))
        result[key] = value.isoformat() if value is not None else None
    return result


class EncounterService:
    def __init__(
        self,
        encounter_repo: EncounterRepository | None = None,
        hospital_repo: HospitalRepository | None = None,
        triage_repo: TriageRepository | None = None,
        message_repo: MessageRepository | None = None,
        alert_repo: AlertRepository | None = None,
        outbox: EventOutbox | None = None,
        evaluator: AlertEvaluator | None = None,
        dispatcher: EventDispatcher | None = None,
        location_cache: LocationCache | None = None,
        session_factory: Callable = session_scope,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.encounter_repo = encounter_repo or EncounterRepository()
        self.hospital_repo = hospital_repo or HospitalRepository()
        self.triage_repo = triage_repo or TriageRepository()
        self.message_repo = message_repo or MessageRepository()
        self.alert_repo = alert_repo or AlertRepository()
        self.outbox = outbox or EventOutbox(encounter_repo=self.encounter_repo)
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.location_cache = location_cache or LocationCache()
        self.session_factory = session_factory
        self._clock = clock

    # --- creation -------------------------------------------------------

    def create_encounter(self, request: EncounterCreateRequest, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        with self.session_factory() as session:
            if request.hospital_id is not None and self.hospital_repo.get(session, request.hospital_id) is None:
                raise NotFoundError(f"Hospital {request.hospital_id} not found")
            encounter = self.encounter_repo.create(
                session,
                hospital_id=request.hospital_id,
                patient_id=request.patient_id,
                patient_name=request.patient_name,
                chief_complaint=request.chief_complaint,
                details=request.details,
                expected_at=request.expected_at,
            )
            event = self.outbox.append_event(
                session,
                encounter_id=cast(int, encounter.id),
                hospital_id=request.hospital_id,
                event_type=EventType.ENCOUNTER_CREATED,
                metadata={"status": cast(str, encounter.status)},
                actor=actor,
            )
            dto = EncounterDto.model_validate(encounter)
            event_id = cast(int, event.id) if event is not None else None
        logger.info("Encounter %s created (hospital %s)", dto.id, dto.hospital_id)
        enqueue_committed(self.dispatcher, [event_id])
        return dto

    def confirm_intake(self, encounter_id: int, patient_id: int, hospital_id: int) -> EncounterDto:
        """Bind a patient's unassigned intake encounter to a hospital."""
        with self.session_factory() as session:
            if self.hospital_repo.get(session, hospital_id) is None:
                raise NotFoundError(f"Hospital {hospital_id} not found")
            encounter = self.encounter_repo.get(session, encounter_id)
            owner_id = cast(int | None, encounter.patient_id) if encounter is not None else None
            if encounter is None or (owner_id is not None and owner_id != patient_id):
                raise NotFoundError(f"Encounter {encounter_id} not found")
            bound_hospital_id = cast(int | None, encounter.hospital_id)
            if bound_hospital_id is not None:
                if bound_hospital_id != hospital_id:
                    raise ConflictError(
                        f"Encounter {encounter_id} is already confirmed for hospital {bound_hospital_id}"
                    )
                return EncounterDto.model_validate(encounter)
            if is_terminal(cast(str, encounter.status)):
                raise ConflictError(f"Encounter {encounter_id} is closed ({encounter.status})")

            self.encounter_repo.bind_hospital(
                session,
                encounter_id,
                hospital_id=hospital_id,
                patient_id=patient_id,
                updated_at=self._clock(),
            )
            session.refresh(encounter)
            event = self.outbox.append_event(
                session,
                encounter_id=encounter_id,
                hospital_id=hospital_id,
                event_type=EventType.ENCOUNTER_CREATED,
                metadata={"status": cast(str, encounter.status), "intake": "confirmed"},
                actor=EventActor(patient_id=patient_id),
            )
            dto = EncounterDto.model_validate(encounter)
            event_id = cast(int, event.id) if event is not None else None
        logger.info("Intake encounter %s confirmed for hospital %s", encounter_id, hospital_id)
        enqueue_committed(self.dispatcher, [event_id])
        return dto

    # --- transitions ----------------------------------------------------

    def transition(
        self,
        hospital_id: int,
        encounter_id: int,
        key: str,
        actor: EventActor = SYSTEM_ACTOR,
    ) -> EncounterDto:
        transition = get_transition(key)
        if transition is None:
            raise ValidationError(f"Unknown transition: {key}")
        return self._run_transition(hospital_id, encounter_id, actor, lambda _current: transition)

    def update_status(
        self,
        hospital_id: int,
        encounter_id: int,
        target_status: str,
        actor: EventActor = SYSTEM_ACTOR,
    ) -> EncounterDto:
        if target_status not in EncounterStatus.values():
            raise ValidationError(f"Unknown status: {target_status}")

        def _resolve(current_status: str) -> Transition:
            resolved = transition_for_target(current_status, target_status)
            if resolved is None:
                raise ConflictError(f"Cannot move encounter {encounter_id} from {current_status} to {target_status}")
            return resolved

        return self._run_transition(hospital_id, encounter_id, actor, _resolve)

    def confirm(self, hospital_id: int, encounter_id: int, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        return self.transition(hospital_id, encounter_id, "confirm", actor)

    def mark_arrived(self, hospital_id: int, encounter_id: int, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        return self.transition(hospital_id, encounter_id, "mark_arrived", actor)

    def start_exam(self, hospital_id: int, encounter_id: int, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        return self.transition(hospital_id, encounter_id, "start_exam", actor)

    def create_waiting(self, hospital_id: int, encounter_id: int, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        return self.transition(hospital_id, encounter_id, "create_waiting", actor)

    def discharge(self, hospital_id: int, encounter_id: int, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        return self.transition(hospital_id, encounter_id, "discharge", actor)

    def cancel(self, hospital_id: int, encounter_id: int, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        return self.transition(hospital_id, encounter_id, "cancel", actor)

    def mark_unresolved(self, hospital_id: int, encounter_id: int, actor: EventActor = SYSTEM_ACTOR) -> EncounterDto:
        return self.transition(hospital_id, encounter_id, "mark_unresolved", actor)

    def _run_transition(
        self,
        hospital_id: int,
        encounter_id: int,
        actor: EventActor,
        resolve: Callable[[str], Transition],
    ) -> EncounterDto:
        now = self._clock()
        with self.session_factory() as session:
            encounter = self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id)
            if encounter is None:
                logger.warning("Encounter %s not found in hospital %s", encounter_id, hospital_id)
                raise NotFoundError(f"Encounter {encounter_id} not found")
            current_status = cast(str, encounter.status)
            if is_terminal(current_status):
                logger.warning("Transition attempted on terminal encounter %s (%s)", encounter_id, current_status)
                raise ConflictError(f"Encounter {encounter_id} is terminal ({current_status})")

            transition = resolve(current_status)
            if not can_apply(transition, current_status):
                logger.warning(
                    "Invalid transition %s for encounter %s from %s",
                    transition.key,
                    encounter_id,
                    current_status,
                )
                raise ConflictError(
                    f"Invalid transition {transition.key} from {current_status} to {transition.to}"
                )

            stamps: dict[str, datetime] = {}
            field_name = transition.timestamp_field
            if field_name and getattr(encounter, field_name) is None:
                stamps[field_name] = now
            updated = self.encounter_repo.update_status(
                session,
                encounter_id,
                expected_status=current_status,
                new_status=transition.to.value,
                stamps=stamps,
                updated_at=now,
            )
            if updated != 1:
                raise ConflictError(f"Encounter {encounter_id} was updated by another request. Refresh and retry.")
            session.refresh(encounter)

            event = self.outbox.append_event(
                session,
                encounter_id=encounter_id,
                hospital_id=hospital_id,
                event_type=EventType.STATUS_CHANGE,
                metadata={
                    "fromStatus": current_status,
                    "toStatus": transition.to.value,
                    "transition": transition.key,
                    "timestamps": _timestamps_metadata(encounter),
                },
                actor=actor,
            )
            event_ids: list[int | None] = [cast(int, event.id) if event is not None else None]
            if self.evaluator is not None:
                snapshot = self.encounter_repo.to_snapshot(encounter)
                event_ids.extend(self.evaluator.evaluate_encounter_tx(session, snapshot, now))
            dto = EncounterDto.model_validate(encounter)

        logger.info(
            "Encounter %s moved %s -> %s via %s",
            encounter_id,
            current_status,
            transition.to.value,
            transition.key,
        )
        enqueue_committed(self.dispatcher, event_ids)
        return dto

    # --- reads ----------------------------------------------------------

    def list_encounters(self, hospital_id: int, filters: EncounterListFilters | None = None) -> EncounterListDto:
        filters = filters or EncounterListFilters()
        with self.session_factory() as session:
            rows, total = self.encounter_repo.list_for_hospital(
                session,
                hospital_id,
                statuses=[status.value for status in filters.statuses or []],
                since=filters.since,
                limit=filters.limit,
            )
            return EncounterListDto(items=[EncounterDto.model_validate(row) for row in rows], total=total)

    def get_encounter(self, hospital_id: int, encounter_id: int) -> EncounterDetailDto:
        with self.session_factory() as session:
            encounter = self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id)
            if encounter is None:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            return EncounterDetailDto(
                encounter=EncounterDto.model_validate(encounter),
                triage_history=[
                    triage_to_dto(item) for item in self.triage_repo.list_for_encounter(session, encounter_id)
                ],
                messages=[
                    message_to_dto(item) for item in self.message_repo.list_for_encounter(session, encounter_id)
                ],
                alerts=[alert_to_dto(item) for item in self.alert_repo.list_for_encounter(session, encounter_id)],
            )

    def get_encounter_for_patient(self, encounter_id: int, patient_id: int) -> PatientEncounterDto:
        with self.session_factory() as session:
            encounter = self.encounter_repo.get(session, encounter_id)
            if encounter is None or cast(int | None, encounter.patient_id) != patient_id:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            messages = self.message_repo.list_for_encounter(session, encounter_id, include_internal=False)
            return PatientEncounterDto(
                id=cast(int, encounter.id),
                hospital_id=cast(int | None, encounter.hospital_id),
                status=EncounterStatus(cast(str, encounter.status)),
                chief_complaint=cast(str | None, encounter.chief_complaint),
                details=cast(str | None, encounter.details),
                expected_at=cast(datetime | None, encounter.expected_at),
                arrived_at=cast(datetime | None, encounter.arrived_at),
                created_at=cast(datetime, encounter.created_at),
                messages=[message_to_dto(item) for item in messages],
            )

    def list_encounters_for_patient(self, patient_id: int) -> list[EncounterDto]:
        with self.session_factory() as session:
            return [EncounterDto.model_validate(row) for row in self.encounter_repo.list_for_patient(session, patient_id)]

    def get_queue_position(self, hospital_id: int, encounter_id: int) -> QueuePositionDto:
        with self.session_factory() as session:
            encounter = self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id)
            if encounter is None:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            queue_ids = [cast(int, row.id) for row in self.encounter_repo.list_waiting_queue(session, hospital_id)]
            status = EncounterStatus(cast(str, encounter.status))
        position = queue_ids.index(encounter_id) + 1 if encounter_id in queue_ids else 0
        return QueuePositionDto(
            encounter_id=encounter_id,
            status=status,
            position=position,
            estimated_wait_minutes=position * AVG_MINUTES_PER_QUEUED_PATIENT,
            total_in_queue=len(queue_ids),
        )

    # --- location pings -------------------------------------------------

    def record_location(self, encounter_id: int, patient_id: int, latitude: float, longitude: float) -> LocationDto:
        if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
            raise ValidationError("Coordinates out of range")
        with self.session_factory() as session:
            encounter = self.encounter_repo.get(session, encounter_id)
            if encounter is None or cast(int | None, encounter.patient_id) != patient_id:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            if is_terminal(cast(str, encounter.status)):
                raise ConflictError(f"Encounter {encounter_id} is closed ({encounter.status})")
        ping = LocationPing(
            encounter_id=encounter_id,
            patient_id=patient_id,
            latitude=latitude,
            longitude=longitude,
            recorded_at=self._clock(),
        )
        self.location_cache.put(ping)
        logger.debug("Location recorded for encounter %s", encounter_id)
        return _location_dto(ping)

    def get_location(self, hospital_id: int, encounter_id: int) -> LocationDto | None:
        with self.session_factory() as session:
            if self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id) is None:
                raise NotFoundError(f"Encounter {encounter_id} not found")
        ping = self.location_cache.get(encounter_id)
        return _location_dto(ping) if ping is not None else None


def _location_dto(ping: LocationPing) -> LocationDto:
    payload: dict[str, Any] = {
        "encounter_id": ping.encounter_id,
        "patient_id": ping.patient_id,
        "latitude": ping.latitude,
        "longitude": ping.longitude,
        "recorded_at": ping.recorded_at,
    }
    return LocationDto.model_validate(payload)
