from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from er_core.domain.constants import EventType


class EncounterEventDto(BaseModel):
    id: int
    encounter_id: int
    hospital_id: int
    type: EventType
    metadata: dict[str, Any] = Field(default_factory=dict)
    actor_user_id: int | None = None
    actor_patient_id: int | None = None
    created_at: datetime
    processed_at: datetime | None = None
