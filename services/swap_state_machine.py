"""
Swap Execution State Machine
============================

In-memory execution state of one swap, separate from the persisted
TransactionStatus. transition() is a pure function over an explicit table;
the orchestrator performs the side effects.

    idle -> validating -> executing_ledger_tx -> executing_payment_rail -> completed
                 |              |   ^
                 |              v   |
                 |        waiting_for_approval
                 +-> completed (ON_RAMP, payment instructions issued)

failed and cancelled are reachable from every non-terminal phase;
cancel is only accepted while can_cancel() holds.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class SwapPhase(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    EXECUTING_LEDGER_TX = "executing_ledger_tx"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    EXECUTING_PAYMENT_RAIL = "executing_payment_rail"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SwapEvent(Enum):
    SUBMIT = "submit"
    VALIDATION_FAILED = "validation_failed"
    LIMITS_PASSED = "limits_passed"
    ADMISSION_PASSED = "admission_passed"
    ADMISSION_FAILED = "admission_failed"
    ON_RAMP_REGISTERED = "on_ramp_registered"
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_GRANTED = "approval_granted"
    LEDGER_COMMITTED = "ledger_committed"
    LEDGER_SUCCEEDED = "ledger_succeeded"
    LEDGER_FAILED = "ledger_failed"
    TRANSFER_ACCEPTED = "transfer_accepted"
    TRANSFER_FAILED = "transfer_failed"
    FAIL = "fail"
    CANCEL = "cancel"
    RETRY = "retry"


TERMINAL_PHASES = frozenset({SwapPhase.COMPLETED, SwapPhase.FAILED, SwapPhase.CANCELLED})


class InvalidTransitionError(Exception):
    """Raised when an event is not allowed in the current phase"""

    def __init__(self, phase: SwapPhase, event: SwapEvent):
        self.phase = phase
        self.event = event
        super().__init__(f"Event {event.value} is not allowed in phase {phase.value}")


@dataclass(frozen=True)
class SwapState:
    """Execution state snapshot. ledger_committed closes the cancellation window."""
    phase: SwapPhase = SwapPhase.IDLE
    ledger_committed: bool = False
    validation_passed: bool = False
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> Dict:
        return {
            "status": self.phase.value,
            "progress": progress(self),
            "canCancel": can_cancel(self),
            "error": self.error,
        }


_PHASE_TABLE: Dict[Tuple[SwapPhase, SwapEvent], SwapPhase] = {
    (SwapPhase.IDLE, SwapEvent.SUBMIT): SwapPhase.VALIDATING,

    (SwapPhase.VALIDATING, SwapEvent.VALIDATION_FAILED): SwapPhase.IDLE,
    (SwapPhase.VALIDATING, SwapEvent.LIMITS_PASSED): SwapPhase.VALIDATING,
    (SwapPhase.VALIDATING, SwapEvent.ADMISSION_FAILED): SwapPhase.FAILED,
    (SwapPhase.VALIDATING, SwapEvent.ADMISSION_PASSED): SwapPhase.EXECUTING_LEDGER_TX,
    (SwapPhase.VALIDATING, SwapEvent.ON_RAMP_REGISTERED): SwapPhase.COMPLETED,
    (SwapPhase.VALIDATING, SwapEvent.CANCEL): SwapPhase.CANCELLED,

    (SwapPhase.EXECUTING_LEDGER_TX, SwapEvent.APPROVAL_REQUIRED): SwapPhase.WAITING_FOR_APPROVAL,
    (SwapPhase.EXECUTING_LEDGER_TX, SwapEvent.LEDGER_COMMITTED): SwapPhase.EXECUTING_LEDGER_TX,
    (SwapPhase.EXECUTING_LEDGER_TX, SwapEvent.LEDGER_SUCCEEDED): SwapPhase.EXECUTING_PAYMENT_RAIL,
    (SwapPhase.EXECUTING_LEDGER_TX, SwapEvent.LEDGER_FAILED): SwapPhase.FAILED,
    (SwapPhase.EXECUTING_LEDGER_TX, SwapEvent.CANCEL): SwapPhase.CANCELLED,

    (SwapPhase.WAITING_FOR_APPROVAL, SwapEvent.APPROVAL_GRANTED): SwapPhase.EXECUTING_LEDGER_TX,
    (SwapPhase.WAITING_FOR_APPROVAL, SwapEvent.LEDGER_FAILED): SwapPhase.FAILED,
    (SwapPhase.WAITING_FOR_APPROVAL, SwapEvent.CANCEL): SwapPhase.CANCELLED,

    (SwapPhase.EXECUTING_PAYMENT_RAIL, SwapEvent.TRANSFER_ACCEPTED): SwapPhase.COMPLETED,
    (SwapPhase.EXECUTING_PAYMENT_RAIL, SwapEvent.TRANSFER_FAILED): SwapPhase.FAILED,

    (SwapPhase.FAILED, SwapEvent.RETRY): SwapPhase.IDLE,
}


def can_cancel(state: SwapState) -> bool:
    """Cancellation is only possible before the ledger leg commits"""
    if state.phase == SwapPhase.VALIDATING:
        return True
    if state.phase in (SwapPhase.EXECUTING_LEDGER_TX, SwapPhase.WAITING_FOR_APPROVAL):
        return not state.ledger_committed
    return False


def progress(state: SwapState) -> int:
    """Percentage shown to the user for the current phase"""
    if state.phase == SwapPhase.VALIDATING:
        return 25 if state.validation_passed else 10
    return {
        SwapPhase.IDLE: 0,
        SwapPhase.EXECUTING_LEDGER_TX: 30,
        SwapPhase.WAITING_FOR_APPROVAL: 40,
        SwapPhase.EXECUTING_PAYMENT_RAIL: 60,
        SwapPhase.COMPLETED: 100,
        SwapPhase.FAILED: 0,
        SwapPhase.CANCELLED: 0,
    }[state.phase]


def transition(state: SwapState, event: SwapEvent, error: Optional[str] = None) -> SwapState:
    """Pure (state, event) -> state. Raises InvalidTransitionError for a disallowed event."""
    if event == SwapEvent.CANCEL and not can_cancel(state):
        raise InvalidTransitionError(state.phase, event)

    if event == SwapEvent.FAIL:
        if state.is_terminal or state.phase == SwapPhase.IDLE:
            raise InvalidTransitionError(state.phase, event)
        return replace(state, phase=SwapPhase.FAILED, error=error)

    next_phase = _PHASE_TABLE.get((state.phase, event))
    if next_phase is None:
        raise InvalidTransitionError(state.phase, event)

    if event == SwapEvent.RETRY:
        return SwapState()
    if event == SwapEvent.SUBMIT:
        return SwapState(phase=SwapPhase.VALIDATING)
    if event == SwapEvent.LIMITS_PASSED:
        return replace(state, validation_passed=True, error=None)
    if event == SwapEvent.LEDGER_COMMITTED:
        return replace(state, ledger_committed=True)
    if event == SwapEvent.VALIDATION_FAILED:
        return SwapState(phase=SwapPhase.IDLE, error=error)

    return replace(
        state,
        phase=next_phase,
        error=error if next_phase in (SwapPhase.FAILED, SwapPhase.CANCELLED, SwapPhase.IDLE) else state.error,
    )
