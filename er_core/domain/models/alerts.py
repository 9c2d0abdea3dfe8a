from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from er_core.domain.constants import AlertSeverity


@dataclass(frozen=True, slots=True)
class RuleMatch:
    rule: str
    alert_type: str
    severity: AlertSeverity
    message: str
    timestamp: datetime | None
    elapsed_minutes: int | None = None
    threshold_minutes: int | None = None


@dataclass(frozen=True, slots=True)
class DerivedAlert:
    # Deterministic id: derived-<encounterId>-<ruleName>
    id: str
    encounter_id: int
    type: str
    severity: AlertSeverity
    message: str
    patient_name: str
    timestamp: datetime | None
    acknowledged: bool = False


@dataclass(frozen=True, slots=True)
class UnifiedAlert:
    id: str
    source: Literal["server", "derived"]
    encounter_id: int
    type: str
    severity: AlertSeverity
    message: str
    timestamp: datetime | None
    acknowledged: bool = False
    resolved: bool = False
    server_alert_id: int | None = None
