from __future__ import annotations

from dataclasses import dataclass

from er_core.domain.constants import TERMINAL_STATUSES, EncounterStatus

_NON_TERMINAL = frozenset(
    {
        EncounterStatus.EXPECTED,
        EncounterStatus.ADMITTED,
        EncounterStatus.TRIAGE,
        EncounterStatus.WAITING,
    }
)
_IN_HOSPITAL = frozenset({EncounterStatus.ADMITTED, EncounterStatus.TRIAGE, EncounterStatus.WAITING})

_PRIORITY_BY_CTAS = {1: 100, 2: 80, 3: 60, 4: 40, 5: 20}

AVG_MINUTES_PER_QUEUED_PATIENT = 15


@dataclass(frozen=True, slots=True)
class Transition:
    key: str
    to: EncounterStatus
    allowed_from: frozenset[EncounterStatus]
    timestamp_field: str | None = None


TRANSITIONS: dict[str, Transition] = {
    item.key: item
    for item in (
        Transition("confirm", EncounterStatus.ADMITTED, frozenset({EncounterStatus.EXPECTED}), "arrived_at"),
        Transition("mark_arrived", EncounterStatus.ADMITTED, frozenset({EncounterStatus.EXPECTED}), "arrived_at"),
        Transition(
            "start_exam",
            EncounterStatus.TRIAGE,
            frozenset({EncounterStatus.ADMITTED, EncounterStatus.WAITING}),
            "triaged_at",
        ),
        Transition(
            "create_waiting",
            EncounterStatus.WAITING,
            frozenset({EncounterStatus.ADMITTED, EncounterStatus.TRIAGE}),
            "waiting_at",
        ),
        Transition("discharge", EncounterStatus.COMPLETE, _IN_HOSPITAL, "departed_at"),
        Transition("cancel", EncounterStatus.CANCELLED, _NON_TERMINAL, "cancelled_at"),
        Transition("mark_unresolved", EncounterStatus.UNRESOLVED, _NON_TERMINAL, "departed_at"),
    )
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def get_transition(key: str) -> Transition | None:
    return TRANSITIONS.get(key)


def can_apply(transition: Transition, current_status: str) -> bool:
    return current_status in transition.allowed_from


def transition_for_target(current_status: str, target_status: str) -> Transition | None:
    """Pick the first transition reaching ``target_status`` from ``current_status``."""
    for transition in TRANSITIONS.values():
        if transition.to == target_status and can_apply(transition, current_status):
            return transition
    return None


def compute_priority_score(ctas_level: int) -> int:
    return _PRIORITY_BY_CTAS.get(ctas_level, 0)
