from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import cast

from er_core.application.dto.alert_dto import AlertDto
from er_core.application.services.alert_service import alert_to_dto
from er_core.domain.models.alerts import UnifiedAlert
from er_core.domain.rules.alert_rules import DEFAULT_THRESHOLDS, AlertThresholds, derive_alerts, merge_alerts
from er_core.infrastructure.db.models_sqlalchemy import utc_now
from er_core.infrastructure.db.repositories.alert_repo import AlertRepository
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.session import session_scope


def server_alert_to_unified(alert: AlertDto) -> UnifiedAlert:
    metadata = alert.metadata or {}
    return UnifiedAlert(
        id=f"server-{alert.id}",
        source="server",
        encounter_id=alert.encounter_id,
        type=alert.type,
        severity=alert.severity,
        message=cast(str, metadata.get("message") or alert.type),
        timestamp=alert.created_at,
        acknowledged=alert.acknowledged_at is not None,
        resolved=alert.resolved_at is not None,
        server_alert_id=alert.id,
    )


class AlertFeedService:
    """Read-only merge of server alerts and derived alerts for a dashboard."""

    def __init__(
        self,
        alert_repo: AlertRepository | None = None,
        encounter_repo: EncounterRepository | None = None,
        session_factory: Callable = session_scope,
        *,
        thresholds: AlertThresholds = DEFAULT_THRESHOLDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.alert_repo = alert_repo or AlertRepository()
        self.encounter_repo = encounter_repo or EncounterRepository()
        self.session_factory = session_factory
        self.thresholds = thresholds
        self._clock = clock

    def build_feed(
        self,
        hospital_id: int,
        dismissed_ids: Iterable[str] = (),
        now: datetime | None = None,
    ) -> list[UnifiedAlert]:
        current = now or self._clock()
        with self.session_factory() as session:
            server_alerts = [
                server_alert_to_unified(alert_to_dto(alert))
                for alert in self.alert_repo.list_unacknowledged(session, hospital_id)
            ]
            snapshots = [
                self.encounter_repo.to_snapshot(encounter)
                for encounter in self.encounter_repo.list_active(session, hospital_id)
            ]
        derived = derive_alerts(snapshots, now=current, thresholds=self.thresholds)
        return merge_alerts(server_alerts, derived, dismissed_ids=dismissed_ids)
