"""
Swap Orchestrator
=================

Drives one swap through the execution state machine and performs its side effects.

OFF_RAMP order (never reordered):
    limits -> payout balance guard -> PENDING record -> ledger leg -> payout recipient -> transfer
The payment rail is only called after the ledger settlement ref has been stored.

ON_RAMP:
    limits -> treasury balance guard -> PENDING record -> payment instructions
Money only moves later, when the reconciliation webhook confirms the fiat payment.

Every transition that has a transaction record writes to it in the same step
as the progress signal; a failed write leaves the execution state unchanged.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable

from config import Config
from models import (
    SwapDirection, TokenType, TransactionStatus, TransferStatus, FailureCategory, SwapTransaction,
)
from services.audit_logger import get_audit_logger
from services.ledger_adapter import LedgerHooks, LedgerAbortedError
from services.swap_state_machine import (
    SwapState, SwapPhase, SwapEvent, transition, can_cancel,
)
from services.transaction_ledger import StateTransitionError
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

REQUIRED_BANK_FIELDS = ("account_number", "bank_code", "account_name")


@dataclass
class SwapRequest:
    """A user's swap submission with amounts frozen at quote time"""
    direction: SwapDirection
    token_type: TokenType
    token_amount: Decimal
    fiat_amount: Decimal
    counterparty_address: str
    exchange_rate: Optional[Decimal] = None
    bank_details: Dict[str, str] = field(default_factory=dict)
    payment_source: Dict[str, str] = field(default_factory=dict)


@dataclass
class SwapOutcome:
    """What the caller gets back from submit()"""
    state: SwapState
    transaction: Optional[SwapTransaction] = None
    message: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    payment_instructions: Optional[Dict[str, Any]] = None
    transfer_status: Optional[TransferStatus] = None
    requires_manual_reconciliation: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state.phase == SwapPhase.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.state.to_dict(),
            "message": self.message,
            "errors": self.errors,
            "warnings": self.warnings,
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "paymentInstructions": self.payment_instructions,
            "transferStatus": self.transfer_status.value if self.transfer_status else None,
            "requiresManualReconciliation": self.requires_manual_reconciliation,
        }


ProgressListener = Callable[[Dict[str, Any]], None]


class SwapOrchestrator:
    """Executes a single swap attempt; create a new instance (or retry()) per attempt"""

    def __init__(
        self,
        ledger_adapter=None,
        payment_rail=None,
        balance_guard=None,
        limits_service=None,
        transaction_ledger=None,
        system_control=None,
        on_progress: Optional[ProgressListener] = None,
        poll_transfer_status: bool = False,
        poller_registry=None,
    ):
        if ledger_adapter is None:
            from services.ledger_adapter import get_ledger_adapter
            ledger_adapter = get_ledger_adapter()
        if payment_rail is None:
            from services.paystack_service import get_payment_rail
            payment_rail = get_payment_rail()
        if balance_guard is None:
            from services.balance_guard import BalanceGuard
            balance_guard = BalanceGuard(payment_rail=payment_rail, ledger=ledger_adapter)
        if limits_service is None:
            from services.transaction_limits_service import get_transaction_limits_service
            limits_service = get_transaction_limits_service()
        if transaction_ledger is None:
            from services.transaction_ledger import get_transaction_ledger
            transaction_ledger = get_transaction_ledger()
        if system_control is None:
            from services.system_control_service import get_system_control_service
            system_control = get_system_control_service()

        self.ledger_adapter = ledger_adapter
        self.payment_rail = payment_rail
        self.balance_guard = balance_guard
        self.limits = limits_service
        self.ledger = transaction_ledger
        self.system_control = system_control
        self.on_progress = on_progress
        self.poll_transfer_status = poll_transfer_status
        if poll_transfer_status and poller_registry is None:
            from services.transfer_status_poller import transfer_poller_registry
            poller_registry = transfer_poller_registry
        self.poller_registry = poller_registry
        self.audit = get_audit_logger()

        self._state = SwapState()
        self._transaction_id: Optional[str] = None

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    @property
    def state(self) -> SwapState:
        return self._state

    @property
    def transaction_id(self) -> Optional[str]:
        return self._transaction_id

    @property
    def cancelled(self) -> bool:
        return self._state.phase == SwapPhase.CANCELLED

    def _apply(self, event: SwapEvent, error: Optional[str] = None, write: Optional[Callable[[], None]] = None):
        """Compute the next state, perform the record write, then commit state and emit progress"""
        new_state = transition(self._state, event, error)
        if write is not None:
            write()
        if self._transaction_id:
            self.ledger.record_execution_phase(self._transaction_id, new_state.phase.value)
        self._state = new_state
        self._emit()

    def _emit(self, **extra):
        if self.on_progress is None:
            return
        payload = {**self._state.to_dict(), "transactionId": self._transaction_id, **extra}
        try:
            self.on_progress(payload)
        except Exception as e:
            logger.error(f"❌ PROGRESS_LISTENER_FAILED: {self._transaction_id}: {e}")

    def _on_transfer_update(self, transaction_id: str, status: TransferStatus):
        self._emit(transferStatus=status.value)

    def _transaction(self) -> Optional[SwapTransaction]:
        return self.ledger.get(self._transaction_id) if self._transaction_id else None

    def _outcome(self, message: Optional[str] = None, **kwargs) -> SwapOutcome:
        transaction = self._transaction()
        return SwapOutcome(
            state=self._state,
            transaction=transaction,
            message=message or self._state.error,
            requires_manual_reconciliation=bool(transaction and transaction.requires_manual_reconciliation),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # User controls
    # ------------------------------------------------------------------

    def cancel(self) -> bool:
        """Cooperative cancel; refused once the ledger leg has committed"""
        if not can_cancel(self._state):
            logger.info(f"🚫 CANCEL_REFUSED: {self._transaction_id} in {self._state.phase.value}")
            return False

        write = None
        if self._transaction_id:
            transaction_id = self._transaction_id

            def write():
                self.ledger.transition_status(
                    transaction_id,
                    TransactionStatus.CANCELLED,
                    failure_category=FailureCategory.CANCELLED,
                    failure_reason="Cancelled by user",
                )

        self._apply(SwapEvent.CANCEL, error="Cancelled by user", write=write)
        logger.info(f"🛑 SWAP_CANCELLED: {self._transaction_id}")
        return True

    def retry(self):
        """Reset to idle; the next submit() creates a new transaction and reference"""
        self._apply(SwapEvent.RETRY)
        self._transaction_id = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, request: SwapRequest) -> SwapOutcome:
        self._apply(SwapEvent.SUBMIT)
        logger.info(
            f"🚀 SWAP_SUBMITTED: {request.direction.value} {request.token_amount} {request.token_type.value} "
            f"/ ₦{request.fiat_amount}"
        )

        try:
            return await self._run(request)
        except Exception as e:
            logger.error(f"❌ SWAP_UNEXPECTED_ERROR: {self._transaction_id}: {e}", exc_info=True)
            return self._fail_unexpected(e)

    async def _run(self, request: SwapRequest) -> SwapOutcome:
        errors = self._check_request(request)
        if errors:
            return self._reject(errors)

        try:
            limits_result = await asyncio.wait_for(
                asyncio.to_thread(
                    self.limits.validate,
                    request.direction, request.token_type, request.token_amount, request.fiat_amount,
                ),
                timeout=Config.BALANCE_CHECK_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.error(f"❌ LIMITS_CHECK_UNAVAILABLE: {type(e).__name__}: {e}")
            return self._reject(["Unable to verify transaction limits, please try again"])

        if self.cancelled:
            return self._outcome()
        if not limits_result.is_valid:
            return self._reject(limits_result.errors, limits_result.warnings)

        self._apply(SwapEvent.LIMITS_PASSED)
        warnings = list(limits_result.warnings)

        guard = await self.balance_guard.check(
            request.direction, request.token_type, request.token_amount, request.fiat_amount
        )
        if self.cancelled:
            return self._outcome(warnings=warnings)

        snapshot = self._verification_snapshot(request, guard, warnings)

        if not guard.can_proceed:
            return self._admission_failed(request, guard.error_message, snapshot, warnings)

        if request.direction == SwapDirection.ON_RAMP:
            return self._register_on_ramp(request, snapshot, warnings)

        return await self._execute_off_ramp(request, snapshot, warnings)

    def _check_request(self, request: SwapRequest) -> List[str]:
        errors = []
        paused, reason = self.system_control.pause_state()
        if paused:
            errors.append(f"System is paused: {reason}")
            return errors

        if not request.counterparty_address:
            errors.append("Wallet address is required")
        if request.direction == SwapDirection.OFF_RAMP:
            missing = [name for name in REQUIRED_BANK_FIELDS if not (request.bank_details or {}).get(name)]
            if missing:
                errors.append(f"Missing bank details: {', '.join(missing)}")
        return errors

    def _reject(self, errors: List[str], warnings: Optional[List[str]] = None) -> SwapOutcome:
        """Validation failure: back to idle, nothing persisted"""
        message = "; ".join(errors)
        self._apply(SwapEvent.VALIDATION_FAILED, error=message)
        logger.info(f"🚫 SWAP_VALIDATION_FAILED: {message}")
        return SwapOutcome(state=self._state, message=message, errors=list(errors), warnings=list(warnings or []))

    @staticmethod
    def _verification_snapshot(request: SwapRequest, guard, warnings: List[str]) -> Dict[str, Any]:
        return {
            "tokenAmount": str(request.token_amount),
            "fiatAmount": str(request.fiat_amount),
            "exchangeRate": str(request.exchange_rate) if request.exchange_rate is not None else None,
            "tokenType": request.token_type.value,
            "direction": request.direction.value,
            "guard": guard.to_dict(),
            "warnings": warnings,
            "validatedAt": datetime.now(timezone.utc).isoformat(),
        }

    def _create_record(self, request: SwapRequest, snapshot: Dict[str, Any], **kwargs):
        record = self.ledger.create(
            direction=request.direction,
            token_type=request.token_type,
            token_amount=request.token_amount,
            fiat_amount=request.fiat_amount,
            counterparty_address=request.counterparty_address,
            exchange_rate=request.exchange_rate,
            bank_details=request.bank_details,
            payment_source=request.payment_source,
            verification_snapshot=snapshot,
            **kwargs,
        )
        self._transaction_id = record.id

    def _admission_failed(self, request, message: str, snapshot, warnings) -> SwapOutcome:
        """Admission failures are always persisted as FAILED for audit"""
        self._apply(
            SwapEvent.ADMISSION_FAILED,
            error=message,
            write=lambda: self._create_record(
                request, snapshot,
                status=TransactionStatus.FAILED,
                failure_category=FailureCategory.ADMISSION,
                failure_reason=message,
            ),
        )
        self.audit.record(
            "swap_admission_failed",
            entity_id=self._transaction_id,
            details={"direction": request.direction.value, "reason": message},
            source="orchestrator",
        )
        return self._outcome(message=message, errors=[message], warnings=warnings)

    def _register_on_ramp(self, request, snapshot, warnings) -> SwapOutcome:
        self._apply(SwapEvent.ON_RAMP_REGISTERED, write=lambda: self._create_record(request, snapshot))
        transaction = self._transaction()

        instructions = {
            "transactionId": transaction.id,
            "paymentReference": transaction.payment_reference,
            "amount": str(MonetaryDecimal.quantize_ngn(request.fiat_amount)),
            "amountKobo": MonetaryDecimal.to_kobo(request.fiat_amount),
            "currency": Config.PAYSTACK_CURRENCY,
            "tokenAmount": str(request.token_amount),
            "tokenType": request.token_type.value,
            "recipientAddress": request.counterparty_address,
            "instructions": (
                f"Pay {MonetaryDecimal.format_ngn(request.fiat_amount)} using reference "
                f"{transaction.payment_reference}. Tokens are credited once the payment is confirmed."
            ),
        }
        logger.info(f"📨 ONRAMP_REGISTERED: {transaction.id} ref={transaction.payment_reference}")
        self.audit.record(
            "onramp_registered",
            entity_id=transaction.id,
            reference=transaction.payment_reference,
            source="orchestrator",
        )
        return SwapOutcome(
            state=self._state,
            transaction=transaction,
            message="Awaiting payment",
            warnings=warnings,
            payment_instructions=instructions,
        )

    # ------------------------------------------------------------------
    # OFF_RAMP execution
    # ------------------------------------------------------------------

    def _ledger_hooks(self) -> LedgerHooks:
        def on_approval_required():
            if not self.cancelled:
                self._apply(SwapEvent.APPROVAL_REQUIRED)

        def on_approval_granted():
            if not self.cancelled:
                self._apply(SwapEvent.APPROVAL_GRANTED)

        def on_commit():
            self._apply(SwapEvent.LEDGER_COMMITTED)

        return LedgerHooks(
            on_approval_required=on_approval_required,
            on_approval_granted=on_approval_granted,
            on_commit=on_commit,
            should_abort=lambda: self.cancelled,
        )

    async def _execute_off_ramp(self, request: SwapRequest, snapshot, warnings) -> SwapOutcome:
        self._apply(SwapEvent.ADMISSION_PASSED, write=lambda: self._create_record(request, snapshot))
        transaction = self._transaction()
        transaction_id = transaction.id
        reference = transaction.payment_reference
        logger.info(f"🚀 OFFRAMP_START: {transaction_id} ref={reference}")

        # Ledger leg
        try:
            settlement = await self.ledger_adapter.create_off_ramp_transaction(
                request.token_type,
                request.token_amount,
                request.bank_details,
                reference,
                hooks=self._ledger_hooks(),
            )
        except LedgerAbortedError:
            return self._outcome(warnings=warnings)
        except Exception as e:
            if self.cancelled:
                return self._outcome(warnings=warnings)
            # After on_commit the signed transaction was submitted; its on-chain outcome is unknown
            outcome_unknown = self._state.ledger_committed
            if outcome_unknown:
                message = (
                    f"Token transfer could not be confirmed: {e}. No Naira payout was attempted. "
                    f"This swap has been flagged for manual reconciliation."
                )
                logger.critical(f"🚨 LEDGER_OUTCOME_UNCONFIRMED: {transaction_id} ref={reference}: {e}")
            else:
                message = f"Token transfer failed: {e}. No Naira payout was attempted."
                logger.error(f"❌ LEDGER_LEG_FAILED: {transaction_id}: {e}")
            self._apply(
                SwapEvent.LEDGER_FAILED,
                error=message,
                write=lambda: self.ledger.transition_status(
                    transaction_id,
                    TransactionStatus.FAILED,
                    failure_category=FailureCategory.LEDGER_EXECUTION,
                    failure_reason=message,
                    requires_manual_reconciliation=outcome_unknown,
                ),
            )
            self.audit.record(
                "offramp_ledger_unconfirmed" if outcome_unknown else "offramp_ledger_failed",
                entity_id=transaction_id, reference=reference,
                details={"error": str(e)}, source="orchestrator",
            )
            return self._outcome(message=message, errors=[message], warnings=warnings)

        if self.cancelled:
            # Ledger confirmed without announcing its commit; the swap can no longer be unwound here
            self.ledger.flag_for_manual_reconciliation(
                transaction_id,
                f"Ledger settled ({settlement.settlement_ref}) after the swap was cancelled",
            )
            return self._outcome(warnings=warnings)

        if not self._state.ledger_committed:
            self._apply(SwapEvent.LEDGER_COMMITTED)

        def store_settlement():
            if not self.ledger.record_ledger_settlement(
                transaction_id, settlement.settlement_ref, settlement.confirmed_at
            ):
                raise StateTransitionError(f"Ledger settlement for {transaction_id} could not be stored")

        self._apply(SwapEvent.LEDGER_SUCCEEDED, write=store_settlement)

        return await self._execute_payout(request, transaction_id, reference, settlement.settlement_ref, warnings)

    async def _execute_payout(self, request, transaction_id, reference, settlement_ref, warnings) -> SwapOutcome:
        bank = request.bank_details
        try:
            recipient_code = await self.payment_rail.create_recipient(
                bank["account_number"], bank["bank_code"], bank["account_name"]
            )
            transfer = await self.payment_rail.initiate_transfer(
                recipient_code,
                request.fiat_amount,
                f"{Config.PLATFORM_NAME} swap {reference}",
                idempotency_key=reference,
            )
        except Exception as e:
            logger.error(f"❌ PAYOUT_AFTER_LEDGER_FAILED: {transaction_id} ledger_ref={settlement_ref}: {e}")
            return self._payout_failed(transaction_id, reference, settlement_ref, str(e), warnings)

        if not transfer.accepted:
            return self._payout_failed(
                transaction_id, reference, settlement_ref,
                f"transfer {transfer.transfer_id} returned status '{transfer.raw_status}'", warnings,
                record_transfer=lambda: self.ledger.record_payout(
                    transaction_id, recipient_code, transfer.transfer_id, transfer.status
                ),
            )

        def store_payout():
            self.ledger.record_payout(transaction_id, recipient_code, transfer.transfer_id, transfer.status)
            if transfer.status == TransferStatus.SUCCESS:
                self.ledger.transition_status(
                    transaction_id, TransactionStatus.COMPLETED, transfer_status=transfer.status
                )

        self._apply(SwapEvent.TRANSFER_ACCEPTED, write=store_payout)

        if transfer.status == TransferStatus.SUCCESS:
            message = "Naira payout sent"
        elif transfer.status == TransferStatus.ACTION_REQUIRED:
            message = "Naira payout accepted and awaiting transfer authorization"
        else:
            message = "Naira payout accepted and processing"

        logger.info(f"✅ OFFRAMP_COMPLETE: {transaction_id} transfer={transfer.transfer_id} ({transfer.status.value})")
        if self.poll_transfer_status and transfer.status != TransferStatus.SUCCESS:
            self.poller_registry.watch(
                transaction_id,
                payment_rail=self.payment_rail,
                transaction_ledger=self.ledger,
                on_update=self._on_transfer_update,
            )
        self.audit.record(
            "offramp_payout_initiated",
            entity_id=transaction_id,
            reference=reference,
            details={"transfer_id": transfer.transfer_id, "transfer_status": transfer.status.value},
            source="orchestrator",
        )
        return self._outcome(message=message, warnings=warnings, transfer_status=transfer.status)

    def _payout_failed(self, transaction_id, reference, settlement_ref, detail, warnings,
                       record_transfer=None) -> SwapOutcome:
        """Token leg already settled: distinct failure routed to manual reconciliation"""
        message = (
            f"Your tokens were received (ledger ref {settlement_ref}) but the Naira payout failed: {detail}. "
            f"This swap has been flagged for manual reconciliation."
        )

        def write():
            if record_transfer is not None:
                record_transfer()
            self.ledger.transition_status(
                transaction_id,
                TransactionStatus.FAILED,
                failure_category=FailureCategory.PAYMENT_RAIL_AFTER_LEDGER,
                failure_reason=message,
                requires_manual_reconciliation=True,
            )

        self._apply(SwapEvent.TRANSFER_FAILED, error=message, write=write)
        logger.critical(f"🚨 MANUAL_RECONCILIATION_REQUIRED: {transaction_id} ref={reference}")
        self.audit.record(
            "offramp_payout_failed_after_ledger",
            entity_id=transaction_id,
            reference=reference,
            details={"ledger_ref": settlement_ref, "error": detail},
            source="orchestrator",
        )
        return self._outcome(message=message, errors=[message], warnings=warnings)

    def _fail_unexpected(self, error: Exception) -> SwapOutcome:
        """Last-resort failure path for errors outside the known categories"""
        if self._state.is_terminal or self._state.phase == SwapPhase.IDLE:
            return self._outcome()

        transaction = self._transaction()
        ledger_settled = bool(transaction and transaction.ledger_settlement_ref)
        if ledger_settled:
            category = FailureCategory.PAYMENT_RAIL_AFTER_LEDGER
            message = (
                f"Your tokens were received but the swap could not be completed: {error}. "
                f"This swap has been flagged for manual reconciliation."
            )
        elif self._state.ledger_committed:
            category = FailureCategory.LEDGER_EXECUTION
            message = f"Token transfer could not be confirmed: {error}. No Naira payout was attempted."
        else:
            category = FailureCategory.ADMISSION
            message = f"Swap could not be started: {error}"

        def write():
            if transaction is not None:
                self.ledger.transition_status(
                    transaction.id,
                    TransactionStatus.FAILED,
                    failure_category=category,
                    failure_reason=message,
                    requires_manual_reconciliation=ledger_settled or self._state.ledger_committed,
                )

        try:
            self._apply(SwapEvent.FAIL, error=message, write=write)
        except Exception as e:
            logger.critical(f"🚨 SWAP_FAILURE_NOT_RECORDED: {self._transaction_id}: {e}")
            self._state = transition(self._state, SwapEvent.FAIL, message)
        return self._outcome(message=message, errors=[message])
