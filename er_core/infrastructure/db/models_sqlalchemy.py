from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.sql import expression

naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    # avoid constraint_name token to allow unnamed CheckConstraint
    "ck": "ck_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=naming_convention)


class Base(DeclarativeBase):
    metadata = metadata


def utc_now() -> datetime:
    # Stored naive, always UTC.
    return datetime.now(UTC).replace(tzinfo=None)


class Hospital(Base):
    __tablename__ = "hospitals"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(120), nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class Encounter(Base):
    __tablename__ = "encounters"

    id = Column(Integer, primary_key=True)
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=True, index=True)
    patient_id = Column(Integer, nullable=True, index=True)
    patient_name = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default="EXPECTED")
    chief_complaint = Column(Text, nullable=True)
    details = Column(Text, nullable=True)

    expected_at = Column(DateTime, nullable=True)
    arrived_at = Column(DateTime, nullable=True)
    triaged_at = Column(DateTime, nullable=True)
    waiting_at = Column(DateTime, nullable=True)
    departed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    current_triage_id = Column(Integer, nullable=True)
    current_ctas_level = Column(Integer, nullable=True)
    current_priority_score = Column(Integer, nullable=False, server_default=text("0"))

    hospital = relationship("Hospital")

    __table_args__ = (
        CheckConstraint(
            "status in ('EXPECTED','ADMITTED','TRIAGE','WAITING','COMPLETE','UNRESOLVED','CANCELLED')",
            name="ck_encounters_status",
        ),
        CheckConstraint(
            "current_ctas_level IS NULL OR current_ctas_level BETWEEN 1 AND 5",
            name="ck_encounters_ctas_level",
        ),
        Index("ix_encounters_hospital_status", "hospital_id", "status"),
    )


class TriageAssessment(Base):
    __tablename__ = "triage_assessments"

    id = Column(Integer, primary_key=True)
    encounter_id = Column(Integer, ForeignKey("encounters.id"), nullable=False, index=True)
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=False)
    ctas_level = Column(Integer, nullable=False)
    priority_score = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)
    vitals_json = Column(Text, nullable=True)
    created_by_user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("ctas_level BETWEEN 1 AND 5", name="ck_triage_assessments_ctas_level"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    encounter_id = Column(Integer, ForeignKey("encounters.id"), nullable=False, index=True)
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=False)
    sender_type = Column(String(20), nullable=False)
    created_by_user_id = Column(Integer, nullable=True)
    created_by_patient_id = Column(Integer, nullable=True)
    content = Column(Text, nullable=False)
    is_internal = Column(Boolean, nullable=False, server_default=expression.false())
    is_worsening = Column(Boolean, nullable=False, server_default=expression.false())
    created_at = Column(DateTime, nullable=False, default=utc_now)
    read_at = Column(DateTime, nullable=True)
    read_by_user_id = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("sender_type in ('PATIENT','USER','SYSTEM')", name="ck_messages_sender_type"),
    )


class EncounterEvent(Base):
    __tablename__ = "encounter_events"

    id = Column(Integer, primary_key=True)
    encounter_id = Column(Integer, ForeignKey("encounters.id"), nullable=False)
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=False)
    type = Column(String(40), nullable=False)
    metadata_json = Column(Text, nullable=True)
    actor_user_id = Column(Integer, nullable=True)
    actor_patient_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "actor_user_id IS NULL OR actor_patient_id IS NULL",
            name="ck_encounter_events_single_actor",
        ),
        Index("ix_encounter_events_encounter_created", "encounter_id", "created_at"),
        Index("ix_encounter_events_pending", "processed_at", "created_at"),
    )


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True)
    encounter_id = Column(Integer, ForeignKey("encounters.id"), nullable=False)
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=False)
    type = Column(String(120), nullable=False)
    severity = Column(String(20), nullable=False)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by_user_id = Column(Integer, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by_user_id = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("severity in ('LOW','MEDIUM','HIGH','CRITICAL')", name="ck_alerts_severity"),
        Index("ix_alerts_hospital_ack", "hospital_id", "acknowledged_at"),
        Index(
            "uq_alerts_open_encounter_type",
            "encounter_id",
            "type",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )
