from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from er_core.application.errors import ConflictError
from er_core.application.services.alert_service import AlertService
from er_core.application.services.event_dispatcher import EventDispatcher, enqueue_committed
from er_core.domain.models.alerts import RuleMatch
from er_core.domain.models.encounter import EncounterSnapshot
from er_core.domain.rules.alert_rules import (
    DEFAULT_THRESHOLDS,
    AlertThresholds,
    first_match,
    reassessment_overdue,
)
from er_core.domain.rules.encounter_rules import is_terminal
from er_core.infrastructure.db.models_sqlalchemy import utc_now
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.session import session_scope

logger = logging.getLogger(__name__)


def _match_metadata(match: RuleMatch) -> dict[str, Any]:
    metadata: dict[str, Any] = {"rule": match.rule, "message": match.message}
    if match.elapsed_minutes is not None:
        metadata["elapsedMinutes"] = match.elapsed_minutes
    if match.threshold_minutes is not None:
        metadata["thresholdMinutes"] = match.threshold_minutes
    return metadata


class AlertEvaluator:
    """Server-side rule evaluation that persists alerts.

    Runs periodically over active encounters (``run_once``) and inline in the
    transaction of status transitions and triage (``evaluate_encounter_tx``).
    """

    def __init__(
        self,
        alert_service: AlertService | None = None,
        encounter_repo: EncounterRepository | None = None,
        dispatcher: EventDispatcher | None = None,
        session_factory: Callable = session_scope,
        *,
        thresholds: AlertThresholds = DEFAULT_THRESHOLDS,
        reassessment_overdue_minutes: int = 30,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.encounter_repo = encounter_repo or EncounterRepository()
        self.alert_service = alert_service or AlertService(
            encounter_repo=self.encounter_repo,
            session_factory=session_factory,
        )
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.thresholds = thresholds
        self.reassessment_overdue_minutes = reassessment_overdue_minutes
        self.batch_size = batch_size
        self._clock = clock

    def candidate_matches(self, snapshot: EncounterSnapshot, now: datetime) -> list[RuleMatch]:
        candidates: list[RuleMatch] = []
        overdue = reassessment_overdue(snapshot, now, self.reassessment_overdue_minutes)
        if overdue is not None:
            candidates.append(overdue)
        match = first_match(snapshot, now, self.thresholds)
        if match is not None:
            candidates.append(match)
        return candidates

    def evaluate_encounter_tx(
        self,
        session: Session,
        snapshot: EncounterSnapshot,
        now: datetime | None = None,
    ) -> list[int]:
        """Create or escalate alerts for the matching rules; returns the new event ids."""
        if snapshot.hospital_id is None or is_terminal(snapshot.status):
            return []
        current = now or self._clock()
        event_ids: list[int] = []
        for match in self.candidate_matches(snapshot, current):
            alert, event_id = self.alert_service.create_alert_tx(
                session,
                encounter_id=snapshot.id,
                hospital_id=snapshot.hospital_id,
                alert_type=match.alert_type,
                severity=match.severity,
                metadata=_match_metadata(match),
                skip_if_open=True,
                escalate_open=True,
            )
            if alert is not None and event_id is not None:
                event_ids.append(event_id)
        return event_ids

    def run_once(self, now: datetime | None = None) -> int:
        """Evaluate one batch of active encounters, each in its own transaction."""
        current = now or self._clock()
        with self.session_factory() as session:
            encounter_ids = self.encounter_repo.list_ids_for_rule_evaluation(session, limit=self.batch_size)

        created = 0
        for encounter_id in encounter_ids:
            try:
                with self.session_factory() as session:
                    encounter = self.encounter_repo.get(session, encounter_id)
                    if encounter is None:
                        continue
                    snapshot = self.encounter_repo.to_snapshot(encounter)
                    event_ids = self.evaluate_encounter_tx(session, snapshot, current)
            except ConflictError as exc:
                logger.warning("Alert evaluation for encounter %s skipped: %s", encounter_id, exc)
                continue
            except Exception:  # noqa: BLE001
                logger.exception("Alert evaluation failed for encounter %s", encounter_id)
                continue
            created += len(event_ids)
            enqueue_committed(self.dispatcher, event_ids)

        if created:
            logger.info("Alert evaluation raised %s alerts over %s encounters", created, len(encounter_ids))
        return created
