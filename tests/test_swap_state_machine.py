"""
Tests for the pure swap execution state machine
"""

import pytest

from services.swap_state_machine import (
    InvalidTransitionError,
    SwapEvent,
    SwapPhase,
    SwapState,
    can_cancel,
    progress,
    transition,
)


def _run(*events):
    state = SwapState()
    for event in events:
        state = transition(state, event)
    return state


class TestHappyPaths:
    """Phase sequences for both directions"""

    def test_off_ramp_sequence(self):
        state = _run(
            SwapEvent.SUBMIT, SwapEvent.LIMITS_PASSED, SwapEvent.ADMISSION_PASSED,
            SwapEvent.APPROVAL_REQUIRED, SwapEvent.APPROVAL_GRANTED, SwapEvent.LEDGER_COMMITTED,
            SwapEvent.LEDGER_SUCCEEDED, SwapEvent.TRANSFER_ACCEPTED,
        )
        assert state.phase == SwapPhase.COMPLETED
        assert state.ledger_committed
        assert progress(state) == 100

    def test_on_ramp_registration(self):
        state = _run(SwapEvent.SUBMIT, SwapEvent.LIMITS_PASSED, SwapEvent.ON_RAMP_REGISTERED)
        assert state.phase == SwapPhase.COMPLETED

    def test_progress_values(self):
        state = transition(SwapState(), SwapEvent.SUBMIT)
        assert progress(state) == 10
        state = transition(state, SwapEvent.LIMITS_PASSED)
        assert progress(state) == 25
        state = transition(state, SwapEvent.ADMISSION_PASSED)
        assert progress(state) == 30
        state = transition(state, SwapEvent.APPROVAL_REQUIRED)
        assert progress(state) == 40

    def test_transition_does_not_mutate(self):
        start = SwapState()
        transition(start, SwapEvent.SUBMIT)
        assert start.phase == SwapPhase.IDLE


class TestCancellationWindow:
    """cancel is accepted only before the ledger leg commits"""

    def test_cancel_while_validating(self):
        state = _run(SwapEvent.SUBMIT)
        assert can_cancel(state)
        assert transition(state, SwapEvent.CANCEL).phase == SwapPhase.CANCELLED

    def test_cancel_while_waiting_for_approval(self):
        state = _run(SwapEvent.SUBMIT, SwapEvent.LIMITS_PASSED, SwapEvent.ADMISSION_PASSED,
                     SwapEvent.APPROVAL_REQUIRED)
        assert can_cancel(state)
        assert transition(state, SwapEvent.CANCEL).phase == SwapPhase.CANCELLED

    def test_cancel_refused_after_commit(self):
        state = _run(SwapEvent.SUBMIT, SwapEvent.LIMITS_PASSED, SwapEvent.ADMISSION_PASSED,
                     SwapEvent.LEDGER_COMMITTED)
        assert state.phase == SwapPhase.EXECUTING_LEDGER_TX
        assert not can_cancel(state)
        with pytest.raises(InvalidTransitionError):
            transition(state, SwapEvent.CANCEL)

    def test_cancel_refused_during_payment_rail(self):
        state = _run(SwapEvent.SUBMIT, SwapEvent.LIMITS_PASSED, SwapEvent.ADMISSION_PASSED,
                     SwapEvent.LEDGER_COMMITTED, SwapEvent.LEDGER_SUCCEEDED)
        assert state.phase == SwapPhase.EXECUTING_PAYMENT_RAIL
        assert not state.to_dict()["canCancel"]
        with pytest.raises(InvalidTransitionError):
            transition(state, SwapEvent.CANCEL)

    @pytest.mark.parametrize("phase", [SwapPhase.IDLE, SwapPhase.COMPLETED, SwapPhase.FAILED, SwapPhase.CANCELLED])
    def test_no_cancel_outside_execution(self, phase):
        assert not can_cancel(SwapState(phase=phase))


class TestFailuresAndRetry:
    """Failure transitions, validation errors and retry"""

    def test_validation_failure_returns_to_idle(self):
        state = transition(_run(SwapEvent.SUBMIT), SwapEvent.VALIDATION_FAILED, "Minimum SUI amount is 0.1")
        assert state.phase == SwapPhase.IDLE
        assert state.error == "Minimum SUI amount is 0.1"

    def test_fail_from_payment_rail(self):
        state = _run(SwapEvent.SUBMIT, SwapEvent.LIMITS_PASSED, SwapEvent.ADMISSION_PASSED,
                     SwapEvent.LEDGER_COMMITTED, SwapEvent.LEDGER_SUCCEEDED)
        failed = transition(state, SwapEvent.FAIL, "boom")
        assert failed.phase == SwapPhase.FAILED
        assert failed.error == "boom"

    def test_fail_not_allowed_from_terminal(self):
        with pytest.raises(InvalidTransitionError):
            transition(SwapState(phase=SwapPhase.COMPLETED), SwapEvent.FAIL)

    def test_retry_resets_state(self):
        state = _run(SwapEvent.SUBMIT, SwapEvent.LIMITS_PASSED, SwapEvent.ADMISSION_FAILED)
        assert state.phase == SwapPhase.FAILED
        reset = transition(state, SwapEvent.RETRY)
        assert reset == SwapState()

    def test_unknown_pair_rejected(self):
        with pytest.raises(InvalidTransitionError):
            transition(SwapState(), SwapEvent.TRANSFER_ACCEPTED)
