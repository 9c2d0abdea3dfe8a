from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TriageCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    ctas_level: int = Field(ge=1, le=5)
    note: str | None = Field(default=None, max_length=2000)
    vitals: dict[str, Any] | None = None


class TriageDto(BaseModel):
    id: int
    encounter_id: int
    hospital_id: int
    ctas_level: int
    priority_score: int
    note: str | None = None
    vitals: dict[str, Any] | None = None
    created_by_user_id: int | None = None
    created_at: datetime
