from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from er_core.domain.constants import SenderType


class MessageCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    content: str = Field(min_length=1, max_length=2000)
    is_internal: bool = False
    # Patient-side flag: "I feel worse"
    is_worsening: bool = False


class MessageDto(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    encounter_id: int
    hospital_id: int
    sender_type: SenderType
    created_by_user_id: int | None = None
    created_by_patient_id: int | None = None
    content: str
    is_internal: bool = False
    is_worsening: bool = False
    created_at: datetime
    read_at: datetime | None = None
    read_by_user_id: int | None = None
