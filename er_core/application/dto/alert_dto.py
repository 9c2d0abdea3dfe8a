from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from er_core.domain.constants import AlertSeverity


class AlertCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    encounter_id: int
    type: str = Field(min_length=1, max_length=120)
    severity: AlertSeverity = AlertSeverity.MEDIUM
    metadata: dict[str, Any] | None = None


class AlertDto(BaseModel):
    id: int
    encounter_id: int
    hospital_id: int
    type: str
    severity: AlertSeverity
    metadata: dict[str, Any] | None = None
    created_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by_user_id: int | None = None
    resolved_at: datetime | None = None
    resolved_by_user_id: int | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None
