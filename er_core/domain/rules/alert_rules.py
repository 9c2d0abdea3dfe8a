"""Alert rule table shared by the server evaluator and the derived-alert feed.

Rules are ordered by priority and only the first match per encounter fires,
so a CTAS-1/CTAS-2 match suppresses the generic "admitted too long" rule.
The server-only reassessment rule lives outside the table because it is
evaluated independently of it.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

from er_core.domain.constants import IN_HOSPITAL_STATUSES, AlertSeverity, AlertType, EncounterStatus
from er_core.domain.models.alerts import DerivedAlert, RuleMatch, UnifiedAlert
from er_core.domain.models.encounter import EncounterSnapshot


@dataclass(frozen=True, slots=True)
class AlertThresholds:
    admitted_wait_warning_minutes: int = 30
    admitted_wait_critical_minutes: int = 60
    triage_stale_minutes: int = 20
    waiting_long_warning_minutes: int = 45
    waiting_long_critical_minutes: int = 90


DEFAULT_THRESHOLDS = AlertThresholds()

CRITICAL_COMPLAINT_KEYWORDS: tuple[str, ...] = (
    "chest pain",
    "difficulty breathing",
    "shortness of breath",
    "unconscious",
    "unresponsive",
    "cardiac arrest",
    "stroke",
    "seizure",
    "severe bleeding",
    "anaphylaxis",
)

RuleFn = Callable[[EncounterSnapshot, datetime, AlertThresholds], RuleMatch | None]


@dataclass(frozen=True, slots=True)
class AlertRule:
    name: str
    alert_type: str
    evaluate: RuleFn


def as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def minutes_since(value: datetime | None, now: datetime) -> float:
    if value is None:
        return 0.0
    return (as_utc_naive(now) - as_utc_naive(value)).total_seconds() / 60.0


def _ctas1_waiting(snapshot: EncounterSnapshot, now: datetime, thresholds: AlertThresholds) -> RuleMatch | None:
    if snapshot.current_ctas_level != 1:
        return None
    if snapshot.status not in (EncounterStatus.ADMITTED, EncounterStatus.WAITING):
        return None
    return RuleMatch(
        rule="ctas1-waiting",
        alert_type=AlertType.CTAS1_NOT_IN_TRIAGE,
        severity=AlertSeverity.CRITICAL,
        message=f"{snapshot.display_name} is CTAS-1 but still {snapshot.status.lower()}",
        timestamp=snapshot.updated_at,
    )


def _ctas2_admitted_long(
    snapshot: EncounterSnapshot, now: datetime, thresholds: AlertThresholds
) -> RuleMatch | None:
    if snapshot.current_ctas_level != 2 or snapshot.status != EncounterStatus.ADMITTED:
        return None
    mins = minutes_since(snapshot.arrived_at, now)
    if mins < thresholds.admitted_wait_warning_minutes:
        return None
    elapsed = round(mins)
    critical = mins >= thresholds.admitted_wait_critical_minutes
    return RuleMatch(
        rule="ctas2-admitted-long",
        alert_type=AlertType.CTAS2_LONG_WAIT,
        severity=AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
        message=f"{snapshot.display_name} (CTAS-2) admitted {elapsed} min ago, not yet triaged",
        timestamp=snapshot.updated_at,
        elapsed_minutes=elapsed,
        threshold_minutes=(
            thresholds.admitted_wait_critical_minutes if critical else thresholds.admitted_wait_warning_minutes
        ),
    )


def _critical_complaint(
    snapshot: EncounterSnapshot, now: datetime, thresholds: AlertThresholds
) -> RuleMatch | None:
    if snapshot.status not in (EncounterStatus.EXPECTED, EncounterStatus.ADMITTED):
        return None
    keyword = match_critical_keyword(snapshot.chief_complaint)
    if keyword is None:
        return None
    return RuleMatch(
        rule="critical-complaint",
        alert_type=AlertType.CRITICAL_COMPLAINT,
        severity=AlertSeverity.HIGH,
        message=f'{snapshot.display_name}: "{snapshot.chief_complaint}" (not yet triaged)',
        timestamp=snapshot.created_at,
    )


def _admitted_long(snapshot: EncounterSnapshot, now: datetime, thresholds: AlertThresholds) -> RuleMatch | None:
    if snapshot.status != EncounterStatus.ADMITTED:
        return None
    mins = minutes_since(snapshot.arrived_at, now)
    if mins < thresholds.admitted_wait_critical_minutes:
        return None
    elapsed = round(mins)
    return RuleMatch(
        rule="admitted-long",
        alert_type=AlertType.ADMITTED_LONG_WAIT,
        severity=AlertSeverity.MEDIUM,
        message=f"{snapshot.display_name} has been admitted for {elapsed} min without triage",
        timestamp=snapshot.updated_at,
        elapsed_minutes=elapsed,
        threshold_minutes=thresholds.admitted_wait_critical_minutes,
    )


def _triage_stale(snapshot: EncounterSnapshot, now: datetime, thresholds: AlertThresholds) -> RuleMatch | None:
    if snapshot.status != EncounterStatus.TRIAGE:
        return None
    mins = minutes_since(snapshot.triaged_at or snapshot.updated_at, now)
    if mins < thresholds.triage_stale_minutes:
        return None
    elapsed = round(mins)
    return RuleMatch(
        rule="triage-stale",
        alert_type=AlertType.TRIAGE_STALE,
        severity=AlertSeverity.MEDIUM,
        message=f"{snapshot.display_name} has been in triage for {elapsed} min",
        timestamp=snapshot.updated_at,
        elapsed_minutes=elapsed,
        threshold_minutes=thresholds.triage_stale_minutes,
    )


def _waiting_long(snapshot: EncounterSnapshot, now: datetime, thresholds: AlertThresholds) -> RuleMatch | None:
    if snapshot.status != EncounterStatus.WAITING:
        return None
    mins = minutes_since(snapshot.waiting_at or snapshot.updated_at, now)
    if mins < thresholds.waiting_long_warning_minutes:
        return None
    elapsed = round(mins)
    critical = mins >= thresholds.waiting_long_critical_minutes
    return RuleMatch(
        rule="waiting-long",
        alert_type=AlertType.WAITING_LONG,
        severity=AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
        message=f"{snapshot.display_name} has been waiting for {elapsed} min",
        timestamp=snapshot.updated_at,
        elapsed_minutes=elapsed,
        threshold_minutes=(
            thresholds.waiting_long_critical_minutes if critical else thresholds.waiting_long_warning_minutes
        ),
    )


RULES: tuple[AlertRule, ...] = (
    AlertRule("ctas1-waiting", AlertType.CTAS1_NOT_IN_TRIAGE, _ctas1_waiting),
    AlertRule("ctas2-admitted-long", AlertType.CTAS2_LONG_WAIT, _ctas2_admitted_long),
    AlertRule("critical-complaint", AlertType.CRITICAL_COMPLAINT, _critical_complaint),
    AlertRule("admitted-long", AlertType.ADMITTED_LONG_WAIT, _admitted_long),
    AlertRule("triage-stale", AlertType.TRIAGE_STALE, _triage_stale),
    AlertRule("waiting-long", AlertType.WAITING_LONG, _waiting_long),
)


def match_critical_keyword(chief_complaint: str | None) -> str | None:
    if not chief_complaint:
        return None
    lowered = chief_complaint.casefold()
    for keyword in CRITICAL_COMPLAINT_KEYWORDS:
        if keyword in lowered:
            return keyword
    return None


def first_match(
    snapshot: EncounterSnapshot,
    now: datetime,
    thresholds: AlertThresholds = DEFAULT_THRESHOLDS,
    rules: Sequence[AlertRule] = RULES,
) -> RuleMatch | None:
    for rule in rules:
        match = rule.evaluate(snapshot, now, thresholds)
        if match is not None:
            return match
    return None


def reassessment_overdue(
    snapshot: EncounterSnapshot,
    now: datetime,
    threshold_minutes: int,
) -> RuleMatch | None:
    """Server-only periodic rule: the last triage is older than the threshold."""
    if snapshot.status not in IN_HOSPITAL_STATUSES or snapshot.triaged_at is None:
        return None
    mins = minutes_since(snapshot.triaged_at, now)
    if mins <= threshold_minutes:
        return None
    elapsed = round(mins)
    return RuleMatch(
        rule="triage-reassessment-overdue",
        alert_type=AlertType.TRIAGE_REASSESSMENT_OVERDUE,
        severity=AlertSeverity.MEDIUM,
        message=f"{snapshot.display_name} last triaged {elapsed} min ago, reassessment overdue",
        timestamp=snapshot.triaged_at,
        elapsed_minutes=elapsed,
        threshold_minutes=threshold_minutes,
    )


def derived_alert_id(encounter_id: int, rule_name: str) -> str:
    return f"derived-{encounter_id}-{rule_name}"


def derive_alerts(
    snapshots: Iterable[EncounterSnapshot],
    *,
    now: datetime | None = None,
    thresholds: AlertThresholds = DEFAULT_THRESHOLDS,
) -> list[DerivedAlert]:
    current = now or datetime.now(UTC)
    alerts: list[DerivedAlert] = []
    for snapshot in snapshots:
        match = first_match(snapshot, current, thresholds)
        if match is None:
            continue
        alerts.append(
            DerivedAlert(
                id=derived_alert_id(snapshot.id, match.rule),
                encounter_id=snapshot.id,
                type=match.alert_type,
                severity=match.severity,
                message=match.message,
                patient_name=snapshot.display_name,
                timestamp=match.timestamp,
            )
        )
    return sort_by_severity(alerts)


_T = TypeVar("_T", DerivedAlert, UnifiedAlert)


def sort_by_severity(items: Iterable[_T]) -> list[_T]:
    """Stable sort, CRITICAL first and LOW last."""
    return sorted(items, key=lambda item: AlertSeverity(item.severity).rank)


def merge_alerts(
    server_alerts: Iterable[UnifiedAlert],
    derived: Iterable[DerivedAlert],
    *,
    dismissed_ids: Iterable[str] = (),
) -> list[UnifiedAlert]:
    dismissed = set(dismissed_ids)
    unified = list(server_alerts)
    for alert in derived:
        if alert.id in dismissed:
            continue
        unified.append(
            UnifiedAlert(
                id=alert.id,
                source="derived",
                encounter_id=alert.encounter_id,
                type=alert.type,
                severity=alert.severity,
                message=alert.message,
                timestamp=alert.timestamp,
                acknowledged=alert.acknowledged,
            )
        )
    return sort_by_severity(unified)
