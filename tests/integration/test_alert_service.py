from __future__ import annotations

from datetime import datetime
from typing import cast

import pytest
from conftest import seed_hospital, stored_event_types, stored_events

from er_core.application.dto.alert_dto import AlertCreateRequest
from er_core.application.dto.encounter_dto import EncounterCreateRequest
from er_core.application.errors import ConflictError, NotFoundError
from er_core.container import Container
from er_core.domain.constants import AlertSeverity, EventType
from er_core.infrastructure.db.json_columns import from_json
from er_core.infrastructure.db.session import SessionFactory


def create_encounter(container: Container, hospital_id: int) -> int:
    return container.encounter_service.create_encounter(
        EncounterCreateRequest(hospital_id=hospital_id, patient_name="Robin Hale", chief_complaint="Back pain")
    ).id


def test_duplicate_open_alert_is_a_conflict(container: Container, hospital_id: int) -> None:
    encounter_id = create_encounter(container, hospital_id)
    request = AlertCreateRequest(encounter_id=encounter_id, type="FALL_RISK", severity=AlertSeverity.HIGH)

    created = container.alert_service.create_alert(request, hospital_id, actor_user_id=3)
    with pytest.raises(ConflictError):
        container.alert_service.create_alert(request, hospital_id, actor_user_id=3)

    alerts = container.alert_service.list_for_encounter(hospital_id, encounter_id)
    assert [alert.id for alert in alerts] == [created.id]


def test_acknowledge_and_resolve_happen_once(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    encounter_id = create_encounter(container, hospital_id)
    alert = container.alert_service.create_alert(
        AlertCreateRequest(encounter_id=encounter_id, type="FALL_RISK"),
        hospital_id,
        actor_user_id=3,
    )

    acknowledged = container.alert_service.acknowledge(alert.id, hospital_id, actor_user_id=4)
    with pytest.raises(ConflictError):
        container.alert_service.acknowledge(alert.id, hospital_id, actor_user_id=5)
    resolved = container.alert_service.resolve(alert.id, hospital_id, actor_user_id=4)
    with pytest.raises(ConflictError):
        container.alert_service.resolve(alert.id, hospital_id, actor_user_id=5)

    assert acknowledged.acknowledged_by_user_id == 4
    assert acknowledged.resolved_at is None
    assert resolved.resolved_by_user_id == 4
    assert resolved.acknowledged_at == acknowledged.acknowledged_at
    assert resolved.is_open is False
    assert stored_event_types(session_factory, encounter_id) == [
        EventType.ENCOUNTER_CREATED,
        EventType.ALERT_CREATED,
        EventType.ALERT_ACKNOWLEDGED,
        EventType.ALERT_RESOLVED,
    ]


def test_new_alert_allowed_after_resolve(container: Container, hospital_id: int) -> None:
    encounter_id = create_encounter(container, hospital_id)
    request = AlertCreateRequest(encounter_id=encounter_id, type="ISOLATION_REQUIRED")
    first = container.alert_service.create_alert(request, hospital_id)
    container.alert_service.resolve(first.id, hospital_id)

    second = container.alert_service.create_alert(request, hospital_id)

    assert second.id != first.id
    assert second.is_open


def test_unacknowledged_list_is_newest_first_and_hospital_scoped(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    other_hospital = seed_hospital(session_factory, "west")
    encounter_id = create_encounter(container, hospital_id)
    other_encounter = create_encounter(container, other_hospital)

    first = container.alert_service.create_alert(AlertCreateRequest(encounter_id=encounter_id, type="A"), hospital_id)
    second = container.alert_service.create_alert(AlertCreateRequest(encounter_id=encounter_id, type="B"), hospital_id)
    third = container.alert_service.create_alert(AlertCreateRequest(encounter_id=encounter_id, type="C"), hospital_id)
    container.alert_service.create_alert(AlertCreateRequest(encounter_id=other_encounter, type="A"), other_hospital)
    container.alert_service.acknowledge(second.id, hospital_id)

    pending = container.alert_service.list_unacknowledged(hospital_id)

    assert [alert.id for alert in pending] == [third.id, first.id]


def test_alerts_are_scoped_to_hospital(container: Container, session_factory: SessionFactory, hospital_id: int) -> None:
    other_hospital = seed_hospital(session_factory, "harbor")
    encounter_id = create_encounter(container, hospital_id)
    alert = container.alert_service.create_alert(AlertCreateRequest(encounter_id=encounter_id, type="A"), hospital_id)

    with pytest.raises(NotFoundError):
        container.alert_service.acknowledge(alert.id, other_hospital)
    with pytest.raises(NotFoundError):
        container.alert_service.create_alert(AlertCreateRequest(encounter_id=encounter_id, type="B"), other_hospital)


def test_alert_metadata_round_trips(container: Container, hospital_id: int) -> None:
    encounter_id = create_encounter(container, hospital_id)
    alert = container.alert_service.create_alert(
        AlertCreateRequest(encounter_id=encounter_id, type="LAB_CRITICAL", metadata={"potassium": 6.8}),
        hospital_id,
    )
    assert alert.metadata == {"potassium": 6.8}
    assert alert.severity == AlertSeverity.MEDIUM


def test_explicit_create_still_conflicts_on_concurrent_insert(
    container: Container,
    hospital_id: int,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    encounter_id = create_encounter(container, hospital_id)
    request = AlertCreateRequest(encounter_id=encounter_id, type="FALL_RISK")
    container.alert_service.create_alert(request, hospital_id)
    monkeypatch.setattr(container.alert_repo, "find_open", lambda *_args, **_kwargs: None)

    with pytest.raises(ConflictError):
        container.alert_service.create_alert(request, hospital_id)

    assert len(container.alert_service.list_for_encounter(hospital_id, encounter_id)) == 1


def test_resolved_alert_stays_unacknowledged_until_acknowledged(container: Container, hospital_id: int) -> None:
    encounter_id = create_encounter(container, hospital_id)
    alert = container.alert_service.create_alert(AlertCreateRequest(encounter_id=encounter_id, type="A"), hospital_id)
    container.alert_service.resolve(alert.id, hospital_id, actor_user_id=4)

    pending = container.alert_service.list_unacknowledged(hospital_id)
    assert [item.id for item in pending] == [alert.id]
    assert pending[0].resolved_at is not None

    container.alert_service.acknowledge(alert.id, hospital_id, actor_user_id=4)
    assert container.alert_service.list_unacknowledged(hospital_id) == []


def test_close_events_carry_their_timestamps(
    container: Container,
    session_factory: SessionFactory,
    hospital_id: int,
) -> None:
    encounter_id = create_encounter(container, hospital_id)
    alert = container.alert_service.create_alert(AlertCreateRequest(encounter_id=encounter_id, type="A"), hospital_id)

    acknowledged = container.alert_service.acknowledge(alert.id, hospital_id, actor_user_id=4)
    resolved = container.alert_service.resolve(alert.id, hospital_id, actor_user_id=4)

    metadata = {event.type: from_json(event.metadata_json) for event in stored_events(session_factory, encounter_id)}
    assert "acknowledgedAt" not in metadata[EventType.ALERT_CREATED]
    assert metadata[EventType.ALERT_ACKNOWLEDGED]["acknowledgedAt"] == cast(datetime, acknowledged.acknowledged_at).isoformat()
    assert "resolvedAt" not in metadata[EventType.ALERT_ACKNOWLEDGED]
    assert metadata[EventType.ALERT_RESOLVED]["resolvedAt"] == cast(datetime, resolved.resolved_at).isoformat()
