from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class EncounterSnapshot:
    """Read-only view of an encounter, enough to evaluate alert rules."""

    id: int
    hospital_id: int | None
    status: str
    chief_complaint: str | None = None
    current_ctas_level: int | None = None
    patient_id: int | None = None
    patient_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    arrived_at: datetime | None = None
    triaged_at: datetime | None = None
    waiting_at: datetime | None = None

    @property
    def display_name(self) -> str:
        if self.patient_name:
            return self.patient_name
        if self.patient_id is not None:
            return f"Patient #{self.patient_id}"
        return f"Encounter #{self.id}"


@dataclass(frozen=True, slots=True)
class EventActor:
    """Who caused an event: a staff user, a patient, or neither for the system."""

    user_id: int | None = None
    patient_id: int | None = None

    @classmethod
    def user(cls, user_id: int) -> EventActor:
        return cls(user_id=user_id)

    @classmethod
    def patient(cls, patient_id: int) -> EventActor:
        return cls(patient_id=patient_id)

    @property
    def is_ambiguous(self) -> bool:
        return self.user_id is not None and self.patient_id is not None


SYSTEM_ACTOR = EventActor()
