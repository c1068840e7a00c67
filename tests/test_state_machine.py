import pytest
from app.state_machine import (
    SYNC_PHASE_TRANSITIONS,
    InvalidPhaseTransitionError,
    SyncPhase,
    can_transition,
    get_valid_transitions,
    validate_phase_transition,
)


class TestSyncPhaseTransitions:
    def test_idle_can_start_fetching(self):
        assert can_transition(SyncPhase.IDLE, SyncPhase.FETCHING)

    def test_idle_cannot_jump_to_applying(self):
        assert not can_transition(SyncPhase.IDLE, SyncPhase.APPLYING)

    def test_fetching_can_apply_or_fail(self):
        assert get_valid_transitions(SyncPhase.FETCHING) == frozenset({SyncPhase.APPLYING, SyncPhase.FAILED})

    def test_applying_cannot_fail(self):
        assert not can_transition(SyncPhase.APPLYING, SyncPhase.FAILED)

    def test_applying_ends_idle_or_partial(self):
        assert can_transition(SyncPhase.APPLYING, SyncPhase.IDLE)
        assert can_transition(SyncPhase.APPLYING, SyncPhase.PARTIALLY_APPLIED)

    def test_terminal_outcomes_return_to_idle(self):
        assert get_valid_transitions(SyncPhase.FAILED) == frozenset({SyncPhase.IDLE})
        assert get_valid_transitions(SyncPhase.PARTIALLY_APPLIED) == frozenset({SyncPhase.IDLE})

    def test_every_phase_has_transitions(self):
        for phase in SyncPhase:
            assert phase in SYNC_PHASE_TRANSITIONS


class TestValidatePhaseTransition:
    def test_valid_transition_passes(self):
        validate_phase_transition(SyncPhase.FETCHING, SyncPhase.APPLYING)

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidPhaseTransitionError) as exc_info:
            validate_phase_transition(SyncPhase.FAILED, SyncPhase.APPLYING)
        assert exc_info.value.current_phase == SyncPhase.FAILED
        assert exc_info.value.target_phase == SyncPhase.APPLYING
        assert "'idle'" in exc_info.value.message
