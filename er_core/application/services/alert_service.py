from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, cast

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from er_core.application.dto.alert_dto import AlertCreateRequest, AlertDto
from er_core.application.errors import ConflictError, NotFoundError
from er_core.application.services.event_dispatcher import EventDispatcher, enqueue_committed
from er_core.application.services.event_outbox import EventOutbox
from er_core.domain.constants import AlertSeverity, EventType
from er_core.domain.models.encounter import SYSTEM_ACTOR, EventActor
from er_core.infrastructure.db.json_columns import from_json, to_json
from er_core.infrastructure.db.models_sqlalchemy import Alert, utc_now
from er_core.infrastructure.db.repositories.alert_repo import AlertRepository
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.session import session_scope

logger = logging.getLogger(__name__)


def alert_to_dto(alert: Alert) -> AlertDto:
    return AlertDto(
        id=cast(int, alert.id),
        encounter_id=cast(int, alert.encounter_id),
        hospital_id=cast(int, alert.hospital_id),
        type=cast(str, alert.type),
        severity=AlertSeverity(cast(str, alert.severity)),
        metadata=from_json(alert.metadata_json, default=None),
        created_at=cast(datetime, alert.created_at),
        acknowledged_at=cast(datetime | None, alert.acknowledged_at),
        acknowledged_by_user_id=cast(int | None, alert.acknowledged_by_user_id),
        resolved_at=cast(datetime | None, alert.resolved_at),
        resolved_by_user_id=cast(int | None, alert.resolved_by_user_id),
    )


def _alert_event_metadata(alert: Alert) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "alertId": cast(int, alert.id),
        "type": cast(str, alert.type),
        "severity": cast(str, alert.severity),
    }
    acknowledged_at = cast(datetime | None, alert.acknowledged_at)
    if acknowledged_at is not None:
        metadata["acknowledgedAt"] = acknowledged_at.isoformat()
    resolved_at = cast(datetime | None, alert.resolved_at)
    if resolved_at is not None:
        metadata["resolvedAt"] = resolved_at.isoformat()
    return metadata


def _outranks(severity: str, current: str) -> bool:
    return AlertSeverity(severity).rank < AlertSeverity(current).rank


class AlertService:
    def __init__(
        self,
        alert_repo: AlertRepository | None = None,
        encounter_repo: EncounterRepository | None = None,
        outbox: EventOutbox | None = None,
        dispatcher: EventDispatcher | None = None,
        session_factory: Callable = session_scope,
    ) -> None:
        self.alert_repo = alert_repo or AlertRepository()
        self.encounter_repo = encounter_repo or EncounterRepository()
        self.outbox = outbox or EventOutbox(encounter_repo=self.encounter_repo)
        self.dispatcher = dispatcher
        self.session_factory = session_factory

    def create_alert_tx(
        self,
        session: Session,
        *,
        encounter_id: int,
        hospital_id: int,
        alert_type: str,
        severity: str,
        metadata: dict[str, Any] | None = None,
        actor: EventActor = SYSTEM_ACTOR,
        skip_if_open: bool = False,
        escalate_open: bool = False,
    ) -> tuple[Alert | None, int | None]:
        """Insert an alert plus its ALERT_CREATED event in the caller's transaction.

        Returns ``(alert, event_id)``. With ``skip_if_open`` an existing open
        alert of the same type yields ``(None, None)`` instead of a conflict.
        With ``escalate_open`` an open alert of lower severity is raised to
        ``severity`` in place and an ALERT_ESCALATED event is appended.
        """
        existing = self.alert_repo.find_open(session, encounter_id, alert_type)
        if existing is not None:
            if escalate_open and _outranks(str(severity), cast(str, existing.severity)):
                return self._escalate_tx(session, existing, str(severity), metadata, actor)
            if skip_if_open:
                return None, None
            raise ConflictError(f"An open {alert_type} alert already exists for encounter {encounter_id}")
        try:
            with session.begin_nested():
                alert = self.alert_repo.add(
                    session,
                    encounter_id=encounter_id,
                    hospital_id=hospital_id,
                    alert_type=alert_type,
                    severity=str(severity),
                    metadata_json=to_json(metadata),
                )
        except IntegrityError as exc:
            # another transaction opened the same alert after our check
            if skip_if_open or escalate_open:
                logger.info("Open %s alert for encounter %s appeared concurrently; skipped", alert_type, encounter_id)
                return None, None
            raise ConflictError(
                f"An open {alert_type} alert already exists for encounter {encounter_id}"
            ) from exc
        event = self.outbox.append_event(
            session,
            encounter_id=encounter_id,
            hospital_id=hospital_id,
            event_type=EventType.ALERT_CREATED,
            metadata=_alert_event_metadata(alert),
            actor=actor,
        )
        logger.info(
            "Alert %s (%s/%s) created for encounter %s",
            alert.id,
            alert_type,
            severity,
            encounter_id,
        )
        return alert, cast(int, event.id) if event is not None else None

    def _escalate_tx(
        self,
        session: Session,
        alert: Alert,
        severity: str,
        metadata: dict[str, Any] | None,
        actor: EventActor,
    ) -> tuple[Alert | None, int | None]:
        previous = cast(str, alert.severity)
        if not self.alert_repo.escalate(
            session,
            cast(int, alert.id),
            from_severity=previous,
            to_severity=severity,
            metadata_json=to_json(metadata),
        ):
            return None, None
        session.refresh(alert)
        event_metadata = _alert_event_metadata(alert)
        event_metadata["previousSeverity"] = previous
        event = self.outbox.append_event(
            session,
            encounter_id=cast(int, alert.encounter_id),
            hospital_id=cast(int, alert.hospital_id),
            event_type=EventType.ALERT_ESCALATED,
            metadata=event_metadata,
            actor=actor,
        )
        logger.info("Alert %s escalated from %s to %s", alert.id, previous, severity)
        return alert, cast(int, event.id) if event is not None else None

    def create_alert(
        self,
        request: AlertCreateRequest,
        hospital_id: int,
        actor_user_id: int | None = None,
    ) -> AlertDto:
        actor = EventActor(user_id=actor_user_id)
        with self.session_factory() as session:
            encounter = self.encounter_repo.get_for_hospital(session, hospital_id, request.encounter_id)
            if encounter is None:
                raise NotFoundError(f"Encounter {request.encounter_id} not found")
            alert, event_id = self.create_alert_tx(
                session,
                encounter_id=request.encounter_id,
                hospital_id=hospital_id,
                alert_type=request.type,
                severity=request.severity,
                metadata=request.metadata,
                actor=actor,
            )
            dto = alert_to_dto(cast(Alert, alert))
        enqueue_committed(self.dispatcher, [event_id])
        return dto

    def acknowledge(self, alert_id: int, hospital_id: int, actor_user_id: int | None = None) -> AlertDto:
        return self._close_step(
            alert_id,
            hospital_id,
            actor_user_id,
            mark=self.alert_repo.mark_acknowledged,
            event_type=EventType.ALERT_ACKNOWLEDGED,
            verb="acknowledged",
        )

    def resolve(self, alert_id: int, hospital_id: int, actor_user_id: int | None = None) -> AlertDto:
        return self._close_step(
            alert_id,
            hospital_id,
            actor_user_id,
            mark=self.alert_repo.mark_resolved,
            event_type=EventType.ALERT_RESOLVED,
            verb="resolved",
        )

    def list_unacknowledged(self, hospital_id: int) -> list[AlertDto]:
        with self.session_factory() as session:
            return [alert_to_dto(alert) for alert in self.alert_repo.list_unacknowledged(session, hospital_id)]

    def list_for_encounter(self, hospital_id: int, encounter_id: int) -> list[AlertDto]:
        with self.session_factory() as session:
            if self.encounter_repo.get_for_hospital(session, hospital_id, encounter_id) is None:
                raise NotFoundError(f"Encounter {encounter_id} not found")
            return [alert_to_dto(alert) for alert in self.alert_repo.list_for_encounter(session, encounter_id)]

    def _close_step(
        self,
        alert_id: int,
        hospital_id: int,
        actor_user_id: int | None,
        *,
        mark: Callable[..., bool],
        event_type: EventType,
        verb: str,
    ) -> AlertDto:
        with self.session_factory() as session:
            alert = self.alert_repo.get(session, alert_id)
            if alert is None or cast(int, alert.hospital_id) != hospital_id:
                raise NotFoundError(f"Alert {alert_id} not found")
            if not mark(session, alert_id, user_id=actor_user_id, at=utc_now()):
                raise ConflictError(f"Alert {alert_id} is already {verb}")
            session.refresh(alert)
            event = self.outbox.append_event(
                session,
                encounter_id=cast(int, alert.encounter_id),
                hospital_id=hospital_id,
                event_type=event_type,
                metadata=_alert_event_metadata(alert),
                actor=EventActor(user_id=actor_user_id),
            )
            dto = alert_to_dto(alert)
            event_id = cast(int, event.id) if event is not None else None
        logger.info("Alert %s %s by user %s", alert_id, verb, actor_user_id)
        enqueue_committed(self.dispatcher, [event_id])
        return dto
