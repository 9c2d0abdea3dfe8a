from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from er_core.application.dto.alert_dto import AlertDto
from er_core.application.dto.message_dto import MessageDto
from er_core.application.dto.triage_dto import TriageDto
from er_core.domain.constants import EncounterStatus

MAX_LIST_LIMIT = 500


class EncounterCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    hospital_id: int | None = None
    patient_id: int | None = None
    patient_name: str | None = Field(default=None, max_length=200)
    chief_complaint: str | None = Field(default=None, max_length=500)
    details: str | None = Field(default=None, max_length=4000)
    expected_at: datetime | None = None


class EncounterDto(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    hospital_id: int | None
    patient_id: int | None = None
    patient_name: str | None = None
    status: EncounterStatus
    chief_complaint: str | None = None
    details: str | None = None
    expected_at: datetime | None = None
    arrived_at: datetime | None = None
    triaged_at: datetime | None = None
    waiting_at: datetime | None = None
    departed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    current_ctas_level: int | None = None
    current_priority_score: int = 0


class EncounterListFilters(BaseModel):
    statuses: list[EncounterStatus] | None = None
    since: datetime | None = None
    limit: int = Field(default=100, ge=1, le=MAX_LIST_LIMIT)


class EncounterListDto(BaseModel):
    items: list[EncounterDto] = Field(default_factory=list)
    total: int = 0


class EncounterDetailDto(BaseModel):
    encounter: EncounterDto
    triage_history: list[TriageDto] = Field(default_factory=list)
    messages: list[MessageDto] = Field(default_factory=list)
    alerts: list[AlertDto] = Field(default_factory=list)


class PatientEncounterDto(BaseModel):
    """Patient-facing view: no triage history, alerts or internal messages."""

    id: int
    hospital_id: int | None
    status: EncounterStatus
    chief_complaint: str | None = None
    details: str | None = None
    expected_at: datetime | None = None
    arrived_at: datetime | None = None
    created_at: datetime
    messages: list[MessageDto] = Field(default_factory=list)


class QueuePositionDto(BaseModel):
    encounter_id: int
    status: EncounterStatus
    # 0 when the encounter is not in the WAITING queue
    position: int = 0
    estimated_wait_minutes: int = 0
    total_in_queue: int = 0


class LocationPingRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class LocationDto(BaseModel):
    encounter_id: int
    patient_id: int
    latitude: float
    longitude: float
    recorded_at: datetime
