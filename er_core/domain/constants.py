from __future__ import annotations

from enum import StrEnum


class EncounterStatus(StrEnum):
    EXPECTED = "EXPECTED"
    ADMITTED = "ADMITTED"
    TRIAGE = "TRIAGE"
    WAITING = "WAITING"
    COMPLETE = "COMPLETE"
    UNRESOLVED = "UNRESOLVED"
    CANCELLED = "CANCELLED"

    @classmethod
    def values(cls) -> list[str]:
        return [item.value for item in cls]


TERMINAL_STATUSES = frozenset(
    {EncounterStatus.COMPLETE, EncounterStatus.CANCELLED, EncounterStatus.UNRESOLVED}
)
ACTIVE_STATUSES = frozenset(
    {
        EncounterStatus.EXPECTED,
        EncounterStatus.ADMITTED,
        EncounterStatus.TRIAGE,
        EncounterStatus.WAITING,
    }
)
IN_HOSPITAL_STATUSES = frozenset(
    {EncounterStatus.ADMITTED, EncounterStatus.TRIAGE, EncounterStatus.WAITING}
)


class EventType(StrEnum):
    ENCOUNTER_CREATED = "ENCOUNTER_CREATED"
    STATUS_CHANGE = "STATUS_CHANGE"
    TRIAGE_CREATED = "TRIAGE_CREATED"
    TRIAGE_COMPLETED = "TRIAGE_COMPLETED"
    MESSAGE_CREATED = "MESSAGE_CREATED"
    MESSAGE_READ = "MESSAGE_READ"
    ALERT_CREATED = "ALERT_CREATED"
    ALERT_ACKNOWLEDGED = "ALERT_ACKNOWLEDGED"
    ALERT_RESOLVED = "ALERT_RESOLVED"
    ALERT_ESCALATED = "ALERT_ESCALATED"

    @classmethod
    def values(cls) -> list[str]:
        return [item.value for item in cls]


class AlertSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Sort rank, 0 being the most urgent."""
        return _SEVERITY_RANK[self]

    @classmethod
    def values(cls) -> list[str]:
        return [item.value for item in cls]


_SEVERITY_RANK = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.HIGH: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.LOW: 3,
}


class SenderType(StrEnum):
    PATIENT = "PATIENT"
    USER = "USER"
    SYSTEM = "SYSTEM"

    @classmethod
    def values(cls) -> list[str]:
        return [item.value for item in cls]


class AlertType(StrEnum):
    PATIENT_WORSENING = "PATIENT_WORSENING"
    TRIAGE_REASSESSMENT_OVERDUE = "TRIAGE_REASSESSMENT_OVERDUE"
    CTAS1_NOT_IN_TRIAGE = "CTAS1_NOT_IN_TRIAGE"
    CTAS2_LONG_WAIT = "CTAS2_LONG_WAIT"
    CRITICAL_COMPLAINT = "CRITICAL_COMPLAINT"
    ADMITTED_LONG_WAIT = "ADMITTED_LONG_WAIT"
    TRIAGE_STALE = "TRIAGE_STALE"
    WAITING_LONG = "WAITING_LONG"
