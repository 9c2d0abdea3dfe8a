from __future__ import annotations

from datetime import datetime
from typing import Any, cast

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from er_core.infrastructure.db.models_sqlalchemy import Alert


class AlertRepository:
    def get(self, session: Session, alert_id: int) -> Alert | None:
        return session.get(Alert, alert_id)

    def find_open(self, session: Session, encounter_id: int, alert_type: str) -> Alert | None:
        stmt = select(Alert).where(
            Alert.encounter_id == encounter_id,
            Alert.type == alert_type,
            Alert.resolved_at.is_(None),
        )
        return session.execute(stmt).scalars().first()

    def add(
        self,
        session: Session,
        *,
        encounter_id: int,
        hospital_id: int,
        alert_type: str,
        severity: str,
        metadata_json: str | None,
    ) -> Alert:
        alert = Alert(
            encounter_id=encounter_id,
            hospital_id=hospital_id,
            type=alert_type,
            severity=severity,
            metadata_json=metadata_json,
        )
        session.add(alert)
        session.flush()
        return alert

    def mark_acknowledged(self, session: Session, alert_id: int, *, user_id: int | None, at: datetime) -> bool:
        stmt = (
            update(Alert)
            .where(Alert.id == alert_id, Alert.acknowledged_at.is_(None))
            .values(acknowledged_at=at, acknowledged_by_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        return cast(int, cast(Any, session.execute(stmt)).rowcount) == 1

    def mark_resolved(self, session: Session, alert_id: int, *, user_id: int | None, at: datetime) -> bool:
        stmt = (
            update(Alert)
            .where(Alert.id == alert_id, Alert.resolved_at.is_(None))
            .values(resolved_at=at, resolved_by_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        return cast(int, cast(Any, session.execute(stmt)).rowcount) == 1

    def escalate(
        self,
        session: Session,
        alert_id: int,
        *,
        from_severity: str,
        to_severity: str,
        metadata_json: str | None,
    ) -> bool:
        stmt = (
            update(Alert)
            .where(
                Alert.id == alert_id,
                Alert.severity == from_severity,
                Alert.resolved_at.is_(None),
            )
            .values(severity=to_severity, metadata_json=metadata_json)
            .execution_options(synchronize_session=False)
        )
        return cast(int, cast(Any, session.execute(stmt)).rowcount) == 1

    def list_unacknowledged(self, session: Session, hospital_id: int) -> list[Alert]:
        # resolved alerts stay listed until someone acknowledges them
        stmt = (
            select(Alert)
            .where(Alert.hospital_id == hospital_id, Alert.acknowledged_at.is_(None))
            .order_by(Alert.created_at.desc(), Alert.id.desc())
        )
        return list(session.execute(stmt).scalars())

    def list_for_encounter(self, session: Session, encounter_id: int) -> list[Alert]:
        stmt = (
            select(Alert)
            .where(Alert.encounter_id == encounter_id)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
        )
        return list(session.execute(stmt).scalars())
