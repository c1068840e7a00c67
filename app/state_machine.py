from enum import Enum
from typing import Dict, FrozenSet


class SyncPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    FAILED = "failed"
    PARTIALLY_APPLIED = "partially_applied"


SYNC_PHASE_TRANSITIONS: Dict[SyncPhase, FrozenSet[SyncPhase]] = {
    SyncPhase.IDLE: frozenset({SyncPhase.FETCHING}),
    SyncPhase.FETCHING: frozenset({SyncPhase.APPLYING, SyncPhase.FAILED}),
    SyncPhase.APPLYING: frozenset({SyncPhase.IDLE, SyncPhase.PARTIALLY_APPLIED}),
    SyncPhase.FAILED: frozenset({SyncPhase.IDLE}),
    SyncPhase.PARTIALLY_APPLIED: frozenset({SyncPhase.IDLE}),
}


class InvalidPhaseTransitionError(Exception):
    def __init__(self, current_phase: SyncPhase, target_phase: SyncPhase, message: str):
        self.current_phase = current_phase
        self.target_phase = target_phase
        self.message = message
        super().__init__(message)


def validate_phase_transition(current_phase: SyncPhase, target_phase: SyncPhase) -> None:
    valid_targets = SYNC_PHASE_TRANSITIONS.get(current_phase, frozenset())
    if target_phase not in valid_targets:
        valid_list = ", ".join(sorted(f"'{p.value}'" for p in valid_targets)) or "none"
        raise InvalidPhaseTransitionError(
            current_phase,
            target_phase,
            f"Cannot transition sync from '{current_phase.value}' to '{target_phase.value}'. "
            f"Valid transitions from '{current_phase.value}': {valid_list}."
        )


def can_transition(current_phase: SyncPhase, target_phase: SyncPhase) -> bool:
    return target_phase in SYNC_PHASE_TRANSITIONS.get(current_phase, frozenset())


def get_valid_transitions(current_phase: SyncPhase) -> FrozenSet[SyncPhase]:
    return SYNC_PHASE_TRANSITIONS.get(current_phase, frozenset())
