from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import Inbox, stored_event_types, stored_events

from er_core.application.dto.encounter_dto import EncounterCreateRequest
from er_core.application.dto.message_dto import MessageCreateRequest
from er_core.application.errors import ConflictError, NotFoundError
from er_core.container import Container
from er_core.domain.constants import AlertSeverity, AlertType, EventType, SenderType
from er_core.infrastructure.db.json_columns import from_json
from er_core.infrastructure.db.models_sqlalchemy import utc_now
from er_core.infrastructure.db.session import SessionFactory

PATIENT_ID = 4100


def patient_encounter(container: Container, hospital_id: int | None) -> int:
    return container.encounter_service.create_encounter(
        EncounterCreateRequest(hospital_id=hospital_id, patient_id=PATIENT_ID, patient_name="Ari Stone")
    ).id


def pending_event_ids(container: Container, session_factory: SessionFactory) -> list[int]:
    with session_factory() as session:
        return container.event_repo.list_pending_ids(
            session,
            created_before=utc_now() + timedelta(seconds=1),
            limit=50,
        )


def test_worsening_message_creates_alert_and_reaches_both_topics(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    encounter_id = patient_encounter(container, hospital_id)
    for event_id in pending_event_ids(container, session_factory):
        container.dispatcher.dispatch_now(event_id)

    dashboard = Inbox()
    patient_app = Inbox()
    container.hub.connect(dashboard, hospital_id=hospital_id)
    container.hub.connect(patient_app, encounter_ids=[encounter_id])

    message = container.messaging_service.create_patient_message(
        encounter_id,
        PATIENT_ID,
        MessageCreateRequest(content="The pain is much worse now", is_worsening=True),
    )

    assert message.sender_type == SenderType.PATIENT
    assert message.is_worsening is True
    alerts = container.alert_service.list_for_encounter(hospital_id, encounter_id)
    assert [(alert.type, alert.severity) for alert in alerts] == [(AlertType.PATIENT_WORSENING, AlertSeverity.HIGH)]
    assert alerts[0].metadata == {"messageId": message.id, "message": "Patient reports feeling worse"}

    pending = pending_event_ids(container, session_factory)
    assert len(pending) == 2
    for event_id in pending:
        assert container.dispatcher.dispatch_now(event_id) is True

    assert dashboard.events() == ["message.created", "alert.created"]
    assert patient_app.events() == ["message.created", "alert.created"]
    assert dashboard.event_ids() == pending
    assert dashboard.messages[0].payload["metadata"]["isWorsening"] is True
    assert pending_event_ids(container, session_factory) == []


def test_second_worsening_message_keeps_single_open_alert(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    encounter_id = patient_encounter(container, hospital_id)
    request = MessageCreateRequest(content="Still worse", is_worsening=True)

    container.messaging_service.create_patient_message(encounter_id, PATIENT_ID, request)
    container.messaging_service.create_patient_message(encounter_id, PATIENT_ID, request)

    assert len(container.alert_service.list_for_encounter(hospital_id, encounter_id)) == 1
    assert len(container.messaging_service.list_messages(hospital_id, encounter_id)) == 2
    assert stored_event_types(session_factory, encounter_id).count(EventType.MESSAGE_CREATED) == 2
    assert stored_event_types(session_factory, encounter_id).count(EventType.ALERT_CREATED) == 1


def test_patient_message_rules(container: Container, hospital_id: int) -> None:
    unconfirmed = patient_encounter(container, None)
    confirmed = patient_encounter(container, hospital_id)
    request = MessageCreateRequest(content="Hello")

    with pytest.raises(ConflictError):
        container.messaging_service.create_patient_message(unconfirmed, PATIENT_ID, request)
    with pytest.raises(NotFoundError):
        container.messaging_service.create_patient_message(confirmed, PATIENT_ID + 1, request)

    container.encounter_service.cancel(hospital_id, confirmed)
    with pytest.raises(ConflictError):
        container.messaging_service.create_patient_message(confirmed, PATIENT_ID, request)


def test_staff_message_event_metadata(container: Container, session_factory: SessionFactory, hospital_id: int) -> None:
    encounter_id = patient_encounter(container, hospital_id)

    message = container.messaging_service.create_staff_message(
        hospital_id,
        encounter_id,
        MessageCreateRequest(content="  Lab results pending  ", is_internal=True),
        actor_user_id=12,
    )

    assert message.content == "Lab results pending"
    assert message.sender_type == SenderType.USER
    event = stored_events(session_factory, encounter_id)[-1]
    assert event.type == EventType.MESSAGE_CREATED
    assert event.actor_user_id == 12
    assert from_json(event.metadata_json) == {
        "messageId": message.id,
        "senderType": "USER",
        "isInternal": True,
        "isWorsening": False,
    }
    assert container.messaging_service.list_messages_for_patient(encounter_id, PATIENT_ID) == []


def test_mark_read_emits_event_only_once(container: Container, session_factory: SessionFactory, hospital_id: int) -> None:
    encounter_id = patient_encounter(container, hospital_id)
    message = container.messaging_service.create_patient_message(
        encounter_id,
        PATIENT_ID,
        MessageCreateRequest(content="When is my turn?"),
    )

    first = container.messaging_service.mark_message_read(message.id, hospital_id, actor_user_id=12)
    second = container.messaging_service.mark_message_read(message.id, hospital_id, actor_user_id=13)

    assert first.read_at is not None
    assert second.read_at == first.read_at
    assert second.read_by_user_id == 12
    assert stored_event_types(session_factory, encounter_id).count(EventType.MESSAGE_READ) == 1
    with pytest.raises(NotFoundError):
        container.messaging_service.mark_message_read(message.id, hospital_id + 1, actor_user_id=12)


def test_worsening_message_survives_concurrent_alert_insert(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    encounter_id = patient_encounter(container, hospital_id)
    request = MessageCreateRequest(content="Getting dizzy", is_worsening=True)
    container.messaging_service.create_patient_message(encounter_id, PATIENT_ID, request)
    # the open-alert check misses a row committed by another transaction
    monkeypatch.setattr(container.alert_repo, "find_open", lambda *_args, **_kwargs: None)

    second = container.messaging_service.create_patient_message(encounter_id, PATIENT_ID, request)

    messages = container.messaging_service.list_messages(hospital_id, encounter_id)
    assert [message.id for message in messages][-1] == second.id
    assert len(messages) == 2
    assert len(container.alert_service.list_for_encounter(hospital_id, encounter_id)) == 1
    assert stored_event_types(session_factory, encounter_id).count(EventType.MESSAGE_CREATED) == 2
    assert stored_event_types(session_factory, encounter_id).count(EventType.ALERT_CREATED) == 1
