from __future__ import annotations

from typing import cast

import pytest
from conftest import seed_hospital, stored_event_types, stored_events

from er_core.application.dto.encounter_dto import EncounterCreateRequest, EncounterListFilters
from er_core.application.dto.message_dto import MessageCreateRequest
from er_core.application.dto.triage_dto import TriageCreateRequest
from er_core.application.errors import ConflictError, NotFoundError, ValidationError
from er_core.container import Container
from er_core.domain.constants import EncounterStatus, EventType
from er_core.domain.models.encounter import EventActor
from er_core.infrastructure.db.json_columns import from_json
from er_core.infrastructure.db.models_sqlalchemy import Encounter
from er_core.infrastructure.db.session import SessionFactory

STAFF = EventActor.user(7)


def create(container: Container, hospital_id: int | None, **kwargs) -> int:
    payload = {"patient_id": 501, "patient_name": "Chris Park", "chief_complaint": "Twisted knee"}
    payload.update(kwargs)
    dto = container.encounter_service.create_encounter(
        EncounterCreateRequest(hospital_id=hospital_id, **payload),
        actor=STAFF,
    )
    return dto.id


def test_lifecycle_records_status_events_and_stamps(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    service = container.encounter_service
    encounter_id = create(container, hospital_id)

    admitted = service.mark_arrived(hospital_id, encounter_id, actor=STAFF)
    in_triage = service.start_exam(hospital_id, encounter_id, actor=STAFF)
    waiting = service.create_waiting(hospital_id, encounter_id, actor=STAFF)
    done = service.discharge(hospital_id, encounter_id, actor=STAFF)

    assert admitted.status == EncounterStatus.ADMITTED
    assert admitted.arrived_at is not None
    assert in_triage.triaged_at is not None
    assert waiting.waiting_at is not None
    assert done.status == EncounterStatus.COMPLETE
    assert done.departed_at is not None
    assert done.arrived_at == admitted.arrived_at

    events = stored_events(session_factory, encounter_id)
    assert [event.type for event in events] == [
        EventType.ENCOUNTER_CREATED,
        EventType.STATUS_CHANGE,
        EventType.STATUS_CHANGE,
        EventType.STATUS_CHANGE,
        EventType.STATUS_CHANGE,
    ]
    last = from_json(events[-1].metadata_json)
    assert last["fromStatus"] == "WAITING"
    assert last["toStatus"] == "COMPLETE"
    assert last["transition"] == "discharge"
    assert last["timestamps"]["departedAt"] == done.departed_at.isoformat()
    assert all(event.actor_user_id == 7 for event in events)
    assert all(event.processed_at is None for event in events)


def test_transition_from_terminal_is_rejected_without_side_effects(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    service = container.encounter_service
    encounter_id = create(container, hospital_id)
    service.cancel(hospital_id, encounter_id)
    before = stored_event_types(session_factory, encounter_id)

    with pytest.raises(ConflictError):
        service.mark_arrived(hospital_id, encounter_id)
    with pytest.raises(ConflictError):
        service.update_status(hospital_id, encounter_id, "WAITING")

    with session_factory() as session:
        row = session.get(Encounter, encounter_id)
        assert row is not None
        assert row.status == "CANCELLED"
        assert row.arrived_at is None
    assert stored_event_types(session_factory, encounter_id) == before


def test_disallowed_and_unknown_transitions(container: Container, hospital_id: int) -> None:
    service = container.encounter_service
    encounter_id = create(container, hospital_id)

    with pytest.raises(ConflictError):
        service.discharge(hospital_id, encounter_id)
    with pytest.raises(ValidationError):
        service.transition(hospital_id, encounter_id, "teleport")
    with pytest.raises(ValidationError):
        service.update_status(hospital_id, encounter_id, "ON_HOLD")
    with pytest.raises(ConflictError):
        service.update_status(hospital_id, encounter_id, "COMPLETE")


def test_update_status_resolves_transition_by_target(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    service = container.encounter_service
    encounter_id = create(container, hospital_id)

    service.update_status(hospital_id, encounter_id, "ADMITTED")
    dto = service.update_status(hospital_id, encounter_id, "TRIAGE")

    assert dto.status == EncounterStatus.TRIAGE
    metadata = from_json(stored_events(session_factory, encounter_id)[-1].metadata_json)
    assert metadata["transition"] == "start_exam"


def test_timestamps_are_stamped_only_once(container: Container, hospital_id: int) -> None:
    service = container.encounter_service
    encounter_id = create(container, hospital_id)
    service.mark_arrived(hospital_id, encounter_id)
    first = service.start_exam(hospital_id, encounter_id)
    service.create_waiting(hospital_id, encounter_id)
    again = service.start_exam(hospital_id, encounter_id)

    assert again.status == EncounterStatus.TRIAGE
    assert again.triaged_at == first.triaged_at


def test_other_hospital_cannot_see_or_move_encounter(container: Container, session_factory: SessionFactory) -> None:
    first_hospital = seed_hospital(session_factory, "north")
    second_hospital = seed_hospital(session_factory, "south")
    encounter_id = create(container, first_hospital)

    with pytest.raises(NotFoundError):
        container.encounter_service.mark_arrived(second_hospital, encounter_id)
    with pytest.raises(NotFoundError):
        container.encounter_service.get_encounter(second_hospital, encounter_id)


def test_create_for_unknown_hospital_fails(container: Container) -> None:
    with pytest.raises(NotFoundError):
        create(container, 999)


def test_intake_without_hospital_records_no_event_until_confirmed(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    service = container.encounter_service
    encounter_id = create(container, None, patient_id=880)
    assert stored_event_types(session_factory, encounter_id) == []

    confirmed = service.confirm_intake(encounter_id, 880, hospital_id)
    repeated = service.confirm_intake(encounter_id, 880, hospital_id)

    assert confirmed.hospital_id == hospital_id
    assert repeated.hospital_id == hospital_id
    events = stored_events(session_factory, encounter_id)
    assert [event.type for event in events] == [EventType.ENCOUNTER_CREATED]
    assert events[0].actor_patient_id == 880


def test_confirm_intake_rejects_other_patient_and_other_hospital(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    service = container.encounter_service
    other_hospital = seed_hospital(session_factory, "east")
    encounter_id = create(container, None, patient_id=881)

    with pytest.raises(NotFoundError):
        service.confirm_intake(encounter_id, 999, hospital_id)
    service.confirm_intake(encounter_id, 881, hospital_id)
    with pytest.raises(ConflictError):
        service.confirm_intake(encounter_id, 881, other_hospital)


def test_list_encounters_orders_by_priority_and_reports_total(container: Container, hospital_id: int) -> None:
    low = create(container, hospital_id, patient_name="Low")
    high = create(container, hospital_id, patient_name="High")
    unscored = create(container, hospital_id, patient_name="Unscored")
    container.encounter_service.mark_arrived(hospital_id, low)
    container.encounter_service.mark_arrived(hospital_id, high)
    container.triage_service.create_assessment(hospital_id, low, TriageCreateRequest(ctas_level=4), 7)
    container.triage_service.create_assessment(hospital_id, high, TriageCreateRequest(ctas_level=3), 7)

    listing = container.encounter_service.list_encounters(hospital_id)
    assert [item.id for item in listing.items] == [high, low, unscored]
    assert listing.total == 3

    admitted_only = container.encounter_service.list_encounters(
        hospital_id,
        EncounterListFilters(statuses=[EncounterStatus.ADMITTED], limit=1),
    )
    assert [item.id for item in admitted_only.items] == [high]
    assert admitted_only.total == 2


def test_queue_position_follows_priority(container: Container, hospital_id: int) -> None:
    service = container.encounter_service
    ids = [create(container, hospital_id, patient_name=f"P{index}") for index in range(3)]
    for encounter_id, ctas in zip(ids, (5, 3, 4), strict=True):
        service.mark_arrived(hospital_id, encounter_id)
        container.triage_service.create_assessment(hospital_id, encounter_id, TriageCreateRequest(ctas_level=ctas))
    for encounter_id in ids[:2]:
        service.create_waiting(hospital_id, encounter_id)

    first = service.get_queue_position(hospital_id, ids[1])
    second = service.get_queue_position(hospital_id, ids[0])
    not_queued = service.get_queue_position(hospital_id, ids[2])

    assert (first.position, first.estimated_wait_minutes, first.total_in_queue) == (1, 15, 2)
    assert (second.position, second.estimated_wait_minutes) == (2, 30)
    assert not_queued.position == 0
    assert not_queued.estimated_wait_minutes == 0
    assert not_queued.status == EncounterStatus.ADMITTED


def test_location_is_cached_for_owner_only(container: Container, hospital_id: int) -> None:
    service = container.encounter_service
    encounter_id = create(container, hospital_id, patient_id=600)

    assert service.get_location(hospital_id, encounter_id) is None
    with pytest.raises(NotFoundError):
        service.record_location(encounter_id, 601, 45.5, -73.5)
    with pytest.raises(ValidationError):
        service.record_location(encounter_id, 600, 91.0, 0.0)

    service.record_location(encounter_id, 600, 45.5, -73.5)
    location = service.get_location(hospital_id, encounter_id)
    assert location is not None
    assert (location.latitude, location.longitude) == (45.5, -73.5)

    service.cancel(hospital_id, encounter_id)
    with pytest.raises(ConflictError):
        service.record_location(encounter_id, 600, 45.6, -73.5)


def test_patient_view_hides_internal_messages(container: Container, hospital_id: int) -> None:
    encounter_id = create(container, hospital_id, patient_id=700)
    container.messaging_service.create_staff_message(
        hospital_id,
        encounter_id,
        MessageCreateRequest(content="Bed 4 is free", is_internal=True),
        7,
    )
    container.messaging_service.create_staff_message(
        hospital_id,
        encounter_id,
        MessageCreateRequest(content="We are ready for you"),
        7,
    )

    view = container.encounter_service.get_encounter_for_patient(encounter_id, 700)
    detail = container.encounter_service.get_encounter(hospital_id, encounter_id)

    assert [message.content for message in view.messages] == ["We are ready for you"]
    assert len(detail.messages) == 2
    with pytest.raises(NotFoundError):
        container.encounter_service.get_encounter_for_patient(encounter_id, 701)
    assert [item.id for item in container.encounter_service.list_encounters_for_patient(700)] == [encounter_id]


def test_events_are_listed_after_cursor(container: Container, hospital_id: int) -> None:
    encounter_id = create(container, hospital_id)
    container.encounter_service.mark_arrived(hospital_id, encounter_id)
    container.encounter_service.start_exam(hospital_id, encounter_id)

    events = container.outbox.list_events(hospital_id, encounter_id)
    later = container.outbox.list_events(hospital_id, encounter_id, after_event_id=events[0].id)

    assert [event.type for event in events] == ["ENCOUNTER_CREATED", "STATUS_CHANGE", "STATUS_CHANGE"]
    assert [event.id for event in later] == [event.id for event in events[1:]]
    assert cast(dict, later[-1].metadata)["toStatus"] == "TRIAGE"
    with pytest.raises(ValidationError):
        container.outbox.list_events(hospital_id, encounter_id, limit=0)
