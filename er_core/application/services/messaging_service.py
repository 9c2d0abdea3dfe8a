from __future__ import annotations

import logging
from collections.abc import Callable
from typing import cast

from sqlalchemy.orm import Session

from er_core.application.dto.message_dto import MessageCreateRequest, MessageDto
from er_core.application.errors import ConflictError, NotFoundError
from er_core.application.services.alert_service import AlertService
from er_core.application.services.event_dispatcher import EventDispatcher, enqueue_committed
from er_core.application.services.event_outbox import EventOutbox
from er_core.domain.constants import AlertSeverity, AlertType, EventType, SenderType
from er_core.domain.models.encounter import EventActor
from er_core.domain.rules.encounter_rules import is_terminal
from er_core.infrastructure.db.models_sqlalchemy import Message, utc_now
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.repositories.message_repo import MessageRepository
from er_core.infrastructure.db.session import session_scope

logger = logging.getLogger(__name__)


def message_to_dto(message: Message) -> MessageDto:
    return MessageDto.model_validate(message)


class MessagingService:
    def __init__(
        self,
        message_repo: MessageRepository | None = None,
        encounter_repo: EncounterRepository | None = None,
        outbox: EventOutbox | None = None,
        alert_service: AlertService | None = None,
        dispatcher: EventDispatcher | None = None,
        session_factory: Callable = session_scope,
    ) -> None:
        self.message_repo = message_repo or MessageRepository()
        self.encounter_repo = encounter_repo or EncounterRepository()
        self.outbox = outbox or EventOutbox(encounter_repo=self.encounter_repo)
        self.alert_service = alert_service or AlertService(
            encounter_repo=self.encounter_repo,
            outbox=self.outbox,
            session_factory=session_factory,
        )
        self.dispatcher = dispatcher
        self.session_factory = session_factory

    def create_staff_message(
        self,
        hospital_id: int,
        encounter_id: int,
        request: MessageCreateRequest,
        actor_user_id: int,
    ) -> MessageDto:
        with self.session_factory() as session:
            if self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id) is None:
                logger.warning("Encounter %s not found for message in hospital %s", encounter_id, hospital_id)
                raise NotFoundError(f"Encounter {encounter_id} not found")
            message = self.message_repo.add(
                session,
                encounter_id=encounter_id,
                hospital_id=hospital_id,
                sender_type=SenderType.USER.value,
                content=request.content,
                created_by_user_id=actor_user_id,
                is_internal=request.is_internal,
            )
            event_id = self._append_message_event(session, message, EventActor(user_id=actor_user_id))
            dto = message_to_dto(message)
        enqueue_committed(self.dispatcher, [event_id])
        return dto

    def create_patient_message(
        self,
        encounter_id: int,
        patient_id: int,
        request: MessageCreateRequest,
    ) -> MessageDto:
        """Patient message; ``is_worsening`` also raises a PATIENT_WORSENING alert."""
        actor = EventActor(patient_id=patient_id)
        with self.session_factory() as session:
            encounter = self.encounter_repo.get(session, encounter_id)
            if encounter is None or cast(int | None, encounter.patient_id) != patient_id:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            hospital_id = cast(int | None, encounter.hospital_id)
            if hospital_id is None:
                raise ConflictError(f"Encounter {encounter_id} is not confirmed with a hospital yet")
            if is_terminal(cast(str, encounter.status)):
                raise ConflictError(f"Encounter {encounter_id} is closed ({encounter.status})")

            message = self.message_repo.add(
                session,
                encounter_id=encounter_id,
                hospital_id=hospital_id,
                sender_type=SenderType.PATIENT.value,
                content=request.content,
                created_by_patient_id=patient_id,
                is_internal=False,
                is_worsening=request.is_worsening,
            )
            event_ids = [self._append_message_event(session, message, actor)]

            if request.is_worsening:
                alert, alert_event_id = self.alert_service.create_alert_tx(
                    session,
                    encounter_id=encounter_id,
                    hospital_id=hospital_id,
                    alert_type=AlertType.PATIENT_WORSENING,
                    severity=AlertSeverity.HIGH,
                    metadata={"messageId": cast(int, message.id), "message": "Patient reports feeling worse"},
                    actor=actor,
                    skip_if_open=True,
                )
                if alert is None:
                    logger.info("Worsening alert already open for encounter %s", encounter_id)
                event_ids.append(alert_event_id)
            dto = message_to_dto(message)
        enqueue_committed(self.dispatcher, event_ids)
        return dto

    def list_messages(self, hospital_id: int, encounter_id: int) -> list[MessageDto]:
        with self.session_factory() as session:
            if self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id) is None:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            return [message_to_dto(item) for item in self.message_repo.list_for_encounter(session, encounter_id)]

    def list_messages_for_patient(self, encounter_id: int, patient_id: int) -> list[MessageDto]:
        with self.session_factory() as session:
            encounter = self.encounter_repo.get(session, encounter_id)
            if encounter is None or cast(int | None, encounter.patient_id) != patient_id:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            messages = self.message_repo.list_for_encounter(session, encounter_id, include_internal=False)
            return [message_to_dto(item) for item in messages]

    def mark_message_read(self, message_id: int, hospital_id: int, actor_user_id: int) -> MessageDto:
        """Set ``read_at`` once; MESSAGE_READ is emitted only on the first read."""
        event_id: int | None = None
        with self.session_factory() as session:
            message = self.message_repo.get(session, message_id)
            if message is None or cast(int, message.hospital_id) != hospital_id:
                logger.warning("Message %s not found for hospital %s", message_id, hospital_id)
                raise NotFoundError(f"Message {message_id} not found")
            if self.message_repo.mark_read(session, message_id, user_id=actor_user_id, at=utc_now()):
                session.refresh(message)
                event = self.outbox.append_event(
                    session,
                    encounter_id=cast(int, message.encounter_id),
                    hospital_id=hospital_id,
                    event_type=EventType.MESSAGE_READ,
                    metadata={"messageId": message_id},
                    actor=EventActor(user_id=actor_user_id),
                )
                event_id = cast(int, event.id) if event is not None else None
            dto = message_to_dto(message)
        enqueue_committed(self.dispatcher, [event_id])
        return dto

    def _append_message_event(self, session: Session, message: Message, actor: EventActor) -> int | None:
        event = self.outbox.append_event(
            session,
            encounter_id=cast(int, message.encounter_id),
            hospital_id=cast(int, message.hospital_id),
            event_type=EventType.MESSAGE_CREATED,
            metadata={
                "messageId": cast(int, message.id),
                "senderType": cast(str, message.sender_type),
                "isInternal": bool(message.is_internal),
                "isWorsening": bool(message.is_worsening),
            },
            actor=actor,
        )
        return cast(int, event.id) if event is not None else None
