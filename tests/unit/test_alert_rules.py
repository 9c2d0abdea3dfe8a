from __future__ import annotations

from datetime import UTC, datetime, timedelta
from itertools import permutations

from er_core.domain.constants import AlertSeverity, AlertType, EncounterStatus
from er_core.domain.models.alerts import DerivedAlert, UnifiedAlert
from er_core.domain.models.encounter import EncounterSnapshot
from er_core.domain.rules.alert_rules import (
    derive_alerts,
    first_match,
    match_critical_keyword,
    merge_alerts,
    reassessment_overdue,
    sort_by_severity,
)

NOW = datetime(2025, 3, 1, 12, 0, 0)


def snapshot(**overrides) -> EncounterSnapshot:
    values = {
        "id": 7,
        "hospital_id": 1,
        "status": EncounterStatus.ADMITTED,
        "patient_name": "Jane Roe",
        "created_at": NOW - timedelta(minutes=90),
        "updated_at": NOW - timedelta(minutes=5),
    }
    values.update(overrides)
    return EncounterSnapshot(**values)


def test_ctas2_admitted_65_minutes_is_critical_and_wins_over_admitted_long() -> None:
    match = first_match(snapshot(current_ctas_level=2, arrived_at=NOW - timedelta(minutes=65)), NOW)

    assert match is not None
    assert match.rule == "ctas2-admitted-long"
    assert match.alert_type == AlertType.CTAS2_LONG_WAIT
    assert match.severity == AlertSeverity.CRITICAL
    assert "65 min" in match.message
    assert match.threshold_minutes == 60


def test_ctas2_admitted_between_thresholds_is_high() -> None:
    match = first_match(snapshot(current_ctas_level=2, arrived_at=NOW - timedelta(minutes=45)), NOW)
    assert match is not None
    assert match.severity == AlertSeverity.HIGH
    assert "45 min" in match.message


def test_ctas2_below_warning_falls_through_to_nothing() -> None:
    assert first_match(snapshot(current_ctas_level=2, arrived_at=NOW - timedelta(minutes=10)), NOW) is None


def test_ctas1_waiting_is_critical_regardless_of_time() -> None:
    match = first_match(snapshot(status=EncounterStatus.WAITING, current_ctas_level=1, waiting_at=NOW), NOW)
    assert match is not None
    assert match.alert_type == AlertType.CTAS1_NOT_IN_TRIAGE
    assert match.severity == AlertSeverity.CRITICAL


def test_critical_complaint_is_case_insensitive() -> None:
    match = first_match(snapshot(status=EncounterStatus.EXPECTED, chief_complaint="Sudden CHEST PAIN at rest"), NOW)
    assert match is not None
    assert match.alert_type == AlertType.CRITICAL_COMPLAINT
    assert match.severity == AlertSeverity.HIGH
    assert match_critical_keyword("mild headache") is None
    assert match_critical_keyword(None) is None


def test_critical_complaint_not_raised_once_in_triage() -> None:
    match = first_match(
        snapshot(status=EncounterStatus.TRIAGE, chief_complaint="stroke", triaged_at=NOW - timedelta(minutes=2)),
        NOW,
    )
    assert match is None


def test_admitted_long_without_ctas() -> None:
    match = first_match(snapshot(arrived_at=NOW - timedelta(minutes=61)), NOW)
    assert match is not None
    assert match.alert_type == AlertType.ADMITTED_LONG_WAIT
    assert match.severity == AlertSeverity.MEDIUM


def test_triage_stale_falls_back_to_updated_at() -> None:
    stale = snapshot(status=EncounterStatus.TRIAGE, triaged_at=None, updated_at=NOW - timedelta(minutes=25))
    fresh = snapshot(status=EncounterStatus.TRIAGE, triaged_at=NOW - timedelta(minutes=5))

    match = first_match(stale, NOW)
    assert match is not None
    assert match.alert_type == AlertType.TRIAGE_STALE
    assert "25 min" in match.message
    assert first_match(fresh, NOW) is None


def test_waiting_long_escalates_at_critical_threshold() -> None:
    warning = first_match(snapshot(status=EncounterStatus.WAITING, waiting_at=NOW - timedelta(minutes=50)), NOW)
    critical = first_match(snapshot(status=EncounterStatus.WAITING, waiting_at=NOW - timedelta(minutes=95)), NOW)

    assert warning is not None and warning.severity == AlertSeverity.HIGH
    assert critical is not None and critical.severity == AlertSeverity.CRITICAL


def test_terminal_encounters_never_match() -> None:
    for status in (EncounterStatus.COMPLETE, EncounterStatus.CANCELLED, EncounterStatus.UNRESOLVED):
        item = snapshot(status=status, current_ctas_level=1, chief_complaint="seizure")
        assert first_match(item, NOW) is None


def test_timezone_aware_now_is_normalized() -> None:
    aware_now = NOW.replace(tzinfo=UTC)
    match = first_match(snapshot(current_ctas_level=2, arrived_at=NOW - timedelta(minutes=65)), aware_now)
    assert match is not None
    assert match.severity == AlertSeverity.CRITICAL


def test_reassessment_overdue_only_for_in_hospital_triaged() -> None:
    overdue = reassessment_overdue(
        snapshot(status=EncounterStatus.WAITING, triaged_at=NOW - timedelta(minutes=40)),
        NOW,
        30,
    )
    assert overdue is not None
    assert overdue.alert_type == AlertType.TRIAGE_REASSESSMENT_OVERDUE
    assert overdue.severity == AlertSeverity.MEDIUM
    assert overdue.threshold_minutes == 30

    assert reassessment_overdue(snapshot(triaged_at=None), NOW, 30) is None
    assert reassessment_overdue(
        snapshot(status=EncounterStatus.COMPLETE, triaged_at=NOW - timedelta(minutes=40)), NOW, 30
    ) is None
    assert reassessment_overdue(
        snapshot(status=EncounterStatus.TRIAGE, triaged_at=NOW - timedelta(minutes=10)), NOW, 30
    ) is None


def test_derive_alerts_ids_and_severity_order() -> None:
    items = [
        snapshot(id=1, arrived_at=NOW - timedelta(minutes=70)),
        snapshot(id=2, status=EncounterStatus.WAITING, current_ctas_level=1, waiting_at=NOW),
        snapshot(id=3, status=EncounterStatus.EXPECTED, chief_complaint="shortness of breath"),
        snapshot(id=4, status=EncounterStatus.EXPECTED, chief_complaint="rash"),
    ]

    alerts = derive_alerts(items, now=NOW)

    assert [alert.id for alert in alerts] == [
        "derived-2-ctas1-waiting",
        "derived-3-critical-complaint",
        "derived-1-admitted-long",
    ]
    assert all(alert.acknowledged is False for alert in alerts)
    assert alerts[0].patient_name == "Jane Roe"


def test_derive_alerts_is_deterministic() -> None:
    items = [snapshot(id=11, current_ctas_level=2, arrived_at=NOW - timedelta(minutes=65))]
    assert derive_alerts(items, now=NOW) == derive_alerts(items, now=NOW)


def _derived(alert_id: str, severity: AlertSeverity) -> DerivedAlert:
    return DerivedAlert(
        id=alert_id,
        encounter_id=1,
        type="X",
        severity=severity,
        message=alert_id,
        patient_name="P",
        timestamp=NOW,
    )


def test_sort_by_severity_is_stable() -> None:
    items = [
        _derived("low", AlertSeverity.LOW),
        _derived("high-a", AlertSeverity.HIGH),
        _derived("critical", AlertSeverity.CRITICAL),
        _derived("high-b", AlertSeverity.HIGH),
        _derived("medium", AlertSeverity.MEDIUM),
    ]
    assert [item.id for item in sort_by_severity(items)] == ["critical", "high-a", "high-b", "medium", "low"]


def test_sort_by_severity_orders_any_permutation() -> None:
    expected = [AlertSeverity.CRITICAL, AlertSeverity.HIGH, AlertSeverity.MEDIUM, AlertSeverity.LOW]
    for order in permutations(expected):
        items = [_derived(severity.value, severity) for severity in order]
        assert [item.severity for item in sort_by_severity(items)] == expected

    ties = [_derived("high-a", AlertSeverity.HIGH), _derived("high-b", AlertSeverity.HIGH), _derived("low", AlertSeverity.LOW)]
    for order in permutations(ties):
        high_ids = [item.id for item in order if item.severity == AlertSeverity.HIGH]
        result = sort_by_severity(list(order))
        assert [item.id for item in result[:2]] == high_ids
        assert result[2].id == "low"


def test_merge_alerts_drops_dismissed_derived_only() -> None:
    server = UnifiedAlert(
        id="server-5",
        source="server",
        encounter_id=1,
        type="PATIENT_WORSENING",
        severity=AlertSeverity.HIGH,
        message="Patient reports feeling worse",
        timestamp=NOW,
        server_alert_id=5,
    )
    derived = [_derived("derived-1-a", AlertSeverity.CRITICAL), _derived("derived-1-b", AlertSeverity.LOW)]

    feed = merge_alerts([server], derived, dismissed_ids={"derived-1-b", "server-5"})

    assert [item.id for item in feed] == ["derived-1-a", "server-5"]
    assert feed[0].source == "derived"
    assert feed[1].server_alert_id == 5
