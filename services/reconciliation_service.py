"""
Paystack Reconciliation Service

Applies authenticated Paystack notifications to the transaction ledger:

- charge.success   ON_RAMP payment received: PENDING -> CONFIRMED, then treasury
                   re-check and token crediting -> COMPLETED (or FAILED)
- charge.failed    ON_RAMP payment failed: PENDING -> FAILED
- charge.dispute.* informational, audited only
- transfer.*       OFF_RAMP payout outcome: PENDING -> COMPLETED / FAILED

Notifications are matched by payment reference only. Every status write goes
through the ledger's compare-and-set so a redelivered event, or one racing the
orchestrator, is a no-op beyond logging.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import managed_session
from models import (
    PaymentRecord, SwapDirection, SwapTransaction, TokenType, TransactionStatus,
    FailureCategory, TransferStatus,
)
from services.audit_logger import get_audit_logger
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

AUDIT_SOURCE = "paystack-webhook"


@dataclass
class ReconciliationResult:
    """What a notification did; returned for logging and tests, never sent to the rail"""
    action: str
    transaction_id: Optional[str] = None
    detail: Optional[str] = None


class ReconciliationService:
    """Dispatches Paystack events against the matched swap transaction"""

    def __init__(self, transaction_ledger=None, balance_guard=None, token_crediting=None,
                 session_factory=None):
        if transaction_ledger is None:
            from services.transaction_ledger import get_transaction_ledger
            transaction_ledger = get_transaction_ledger()
        self.ledger = transaction_ledger
        self._balance_guard = balance_guard
        self._token_crediting = token_crediting
        self.session_factory = session_factory
        self.audit = get_audit_logger()

        self._handlers = {
            "charge.success": self._handle_charge_success,
            "charge.failed": self._handle_charge_failed,
            "charge.dispute.create": self._handle_dispute,
            "transfer.success": self._handle_transfer_success,
            "transfer.failed": self._handle_transfer_failed,
            "transfer.reversed": self._handle_transfer_failed,
        }

    @property
    def balance_guard(self):
        if self._balance_guard is None:
            from services.balance_guard import BalanceGuard
            self._balance_guard = BalanceGuard()
        return self._balance_guard

    @property
    def token_crediting(self):
        if self._token_crediting is None:
            from services.token_crediting_service import get_token_crediting_service
            self._token_crediting = get_token_crediting_service()
        return self._token_crediting

    async def process_event(self, payload: Dict[str, Any]) -> ReconciliationResult:
        """Apply one authenticated notification. Unexpected errors propagate to the caller."""
        if not isinstance(payload, dict):
            raise ValueError("Webhook payload must be a JSON object")

        event = payload.get("event") or ""
        data = payload.get("data") or {}
        reference = data.get("reference")

        logger.info(
            f"📨 PAYSTACK_WEBHOOK: {event} ref={reference} status={data.get('status')} "
            f"amount={data.get('amount')}"
        )
        self.audit.record(
            "paystack_webhook_received",
            reference=reference,
            source=AUDIT_SOURCE,
            details={"event": event, "status": data.get("status"), "amount": data.get("amount")},
        )

        handler = self._handlers.get(event)
        if handler is None:
            logger.info(f"ℹ️ PAYSTACK_WEBHOOK_UNHANDLED: {event} ref={reference}")
            self.audit.record(
                "webhook_unhandled_event", reference=reference, source=AUDIT_SOURCE,
                details={"event": event},
            )
            return ReconciliationResult("unhandled", detail=event)

        if not reference:
            logger.warning(f"⚠️ PAYSTACK_WEBHOOK_NO_REFERENCE: {event}")
            self.audit.record(
                "webhook_unmatched_reference", source=AUDIT_SOURCE,
                details={"event": event, "reason": "missing reference"},
            )
            return ReconciliationResult("unmatched", detail="missing reference")

        record = self.ledger.get_by_reference(reference)
        if record is None:
            logger.warning(f"⚠️ PAYSTACK_WEBHOOK_UNMATCHED: {event} ref={reference} has no transaction")
            self.audit.record(
                "webhook_unmatched_reference", reference=reference, source=AUDIT_SOURCE,
                details={"event": event},
            )
            return ReconciliationResult("unmatched", detail=reference)

        return await handler(record, event, data)

    # ------------------------------------------------------------------
    # Charge events (ON_RAMP)
    # ------------------------------------------------------------------

    async def _handle_charge_success(self, record: SwapTransaction, event: str,
                                     data: Dict[str, Any]) -> ReconciliationResult:
        if record.direction_enum != SwapDirection.ON_RAMP:
            return self._anomaly(record, event, "charge notification for an OFF_RAMP transaction")

        if record.status_enum != TransactionStatus.PENDING:
            return self._duplicate(record, event)

        paid = MonetaryDecimal.from_kobo(data.get("amount") or 0)
        currency = (data.get("currency") or "NGN").upper()
        expected = Decimal(record.fiat_amount)

        if currency != "NGN" or paid < expected:
            reason = (
                f"Payment of {MonetaryDecimal.format_ngn(paid)} {currency} does not cover "
                f"the expected {MonetaryDecimal.format_ngn(expected)}"
            )
            applied = self.ledger.transition_status(
                record.id, TransactionStatus.FAILED,
                from_statuses={TransactionStatus.PENDING},
                failure_category=FailureCategory.PAYMENT_FAILED,
                failure_reason=reason,
                payment_data=self._payment_data(data),
            )
            if not applied:
                return self._duplicate(record, event)
            logger.warning(f"⚠️ ONRAMP_UNDERPAID: {record.id} {reason}")
            self._save_payment_record(record, event, data)
            self.audit.record(
                "payment_amount_mismatch", entity_id=record.id, reference=record.payment_reference,
                source=AUDIT_SOURCE, details={"paid": paid, "expected": expected, "currency": currency},
            )
            return ReconciliationResult("failed", record.id, reason)

        if paid > expected:
            logger.warning(f"⚠️ ONRAMP_OVERPAID: {record.id} paid={paid} expected={expected}")
            self.audit.record(
                "payment_overpaid", entity_id=record.id, reference=record.payment_reference,
                source=AUDIT_SOURCE, details={"paid": paid, "expected": expected},
            )

        confirmed = self.ledger.transition_status(
            record.id, TransactionStatus.CONFIRMED,
            payment_data=self._payment_data(data),
        )
        if not confirmed:
            return self._duplicate(record, event)

        self._save_payment_record(record, event, data)
        self.audit.record(
            "payment_confirmed", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE, details={"amount": paid, "currency": currency},
        )
        logger.info(f"✅ ONRAMP_PAYMENT_CONFIRMED: {record.id} {MonetaryDecimal.format_ngn(paid)}")

        return await self._settle_on_ramp(record)

    async def _settle_on_ramp(self, record: SwapTransaction) -> ReconciliationResult:
        """Re-check the treasury and credit tokens for a CONFIRMED record"""
        token_type = TokenType(record.token_type)
        token_amount = Decimal(record.token_amount)

        decision = await self.balance_guard.check(
            SwapDirection.ON_RAMP, token_type, token_amount, record.fiat_amount
        )
        if not decision.can_proceed:
            reason = f"insufficient treasury at settlement time: {decision.error_message}"
            self.ledger.transition_status(
                record.id, TransactionStatus.FAILED,
                failure_category=FailureCategory.SETTLEMENT_TREASURY,
                failure_reason=reason,
                requires_manual_reconciliation=True,
            )
            logger.critical(f"🚨 ONRAMP_TREASURY_SHORT: {record.id} {reason}")
            self.audit.record(
                "settlement_treasury_insufficient", entity_id=record.id,
                reference=record.payment_reference, source=AUDIT_SOURCE,
                details={"guard": decision.to_dict()},
            )
            return ReconciliationResult("failed", record.id, reason)

        try:
            credit = await self.token_crediting.credit_tokens(
                record.counterparty_address, token_amount, token_type,
                record.id, record.payment_reference,
            )
        except Exception as e:
            reason = f"Payment received but token crediting failed: {e}"
            self.ledger.transition_status(
                record.id, TransactionStatus.FAILED,
                failure_category=FailureCategory.CREDITING,
                failure_reason=reason,
                requires_manual_reconciliation=True,
            )
            logger.critical(f"🚨 TOKEN_CREDIT_FAILED: {record.id}: {e}")
            self.audit.record(
                "token_crediting_failed", entity_id=record.id, reference=record.payment_reference,
                source=AUDIT_SOURCE, details={"error": str(e)},
            )
            return ReconciliationResult("failed", record.id, reason)

        self.ledger.transition_status(
            record.id, TransactionStatus.COMPLETED, credit_reference=credit.transaction_hash,
        )
        self.audit.record(
            "tokens_credited", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE,
            details={
                "tokenAmount": token_amount,
                "tokenType": token_type.value,
                "recipient": record.counterparty_address,
                "transactionHash": credit.transaction_hash,
            },
        )
        logger.info(f"🎉 ONRAMP_COMPLETED: {record.id} hash={credit.transaction_hash}")
        return ReconciliationResult("completed", record.id, credit.transaction_hash)

    async def _handle_charge_failed(self, record: SwapTransaction, event: str,
                                    data: Dict[str, Any]) -> ReconciliationResult:
        if record.direction_enum != SwapDirection.ON_RAMP:
            return self._anomaly(record, event, "charge notification for an OFF_RAMP transaction")

        reason = f"Payment failed: {data.get('gateway_response') or data.get('status') or 'declined'}"
        applied = self.ledger.transition_status(
            record.id, TransactionStatus.FAILED,
            from_statuses={TransactionStatus.PENDING},
            failure_category=FailureCategory.PAYMENT_FAILED,
            failure_reason=reason,
            payment_data=self._payment_data(data),
        )
        if not applied:
            return self._duplicate(record, event)

        self._save_payment_record(record, event, data)
        self.audit.record(
            "payment_failed", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE, details={"gatewayResponse": data.get("gateway_response")},
        )
        logger.warning(f"❌ ONRAMP_PAYMENT_FAILED: {record.id} {reason}")
        return ReconciliationResult("failed", record.id, reason)

    async def _handle_dispute(self, record: SwapTransaction, event: str,
                              data: Dict[str, Any]) -> ReconciliationResult:
        logger.warning(f"⚠️ PAYMENT_DISPUTE: {record.id} ref={record.payment_reference} status={record.status}")
        self.audit.record(
            "payment_dispute", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE,
            details={"event": event, "status": record.status, "dispute": data},
        )
        return ReconciliationResult("dispute_recorded", record.id)

    # ------------------------------------------------------------------
    # Transfer events (OFF_RAMP payout)
    # ------------------------------------------------------------------

    async def _handle_transfer_success(self, record: SwapTransaction, event: str,
                                       data: Dict[str, Any]) -> ReconciliationResult:
        if record.direction_enum != SwapDirection.OFF_RAMP:
            return self._anomaly(record, event, "transfer notification for an ON_RAMP transaction")
        if not record.ledger_settlement_ref:
            return self._anomaly(record, event, "transfer notification before ledger settlement")
        if (record.status_enum == TransactionStatus.FAILED
                and record.failure_category == FailureCategory.PAYMENT_RAIL_AFTER_LEDGER.value):
            return self._record_payout_after_failure(record, event, data)

        self.ledger.update_transfer_status(record.id, TransferStatus.SUCCESS)
        applied = self.ledger.transition_status(
            record.id, TransactionStatus.COMPLETED,
            from_statuses={TransactionStatus.PENDING},
            transfer_status=TransferStatus.SUCCESS,
        )
        if not applied:
            return self._duplicate(record, event)

        self.audit.record(
            "payout_completed", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE, details={"transferCode": data.get("transfer_code")},
        )
        logger.info(f"🎉 OFFRAMP_COMPLETED: {record.id} via {event}")
        return ReconciliationResult("completed", record.id)

    def _record_payout_after_failure(self, record: SwapTransaction, event: str,
                                     data: Dict[str, Any]) -> ReconciliationResult:
        """The payout went through although the orchestrator recorded it as failed.
        Status stays FAILED and flagged; the transfer is stored so no one pays out twice."""
        transfer_code = data.get("transfer_code") or str(data.get("id") or "")
        recipient = data.get("recipient")
        recipient_code = recipient.get("recipient_code") if isinstance(recipient, dict) else recipient

        if record.payout_transfer_id is None and transfer_code:
            self.ledger.record_payout(record.id, recipient_code, transfer_code, TransferStatus.SUCCESS)
        else:
            self.ledger.update_transfer_status(record.id, TransferStatus.SUCCESS)

        detail = (
            f"Naira payout {transfer_code or record.payout_transfer_id} succeeded after the swap was "
            f"recorded as failed; do not pay out again"
        )
        self.ledger.flag_for_manual_reconciliation(record.id, detail)
        self.audit.record(
            "payout_succeeded_after_failure", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE, details={"event": event, "transferCode": transfer_code},
        )
        logger.critical(f"🚨 PAYOUT_SUCCEEDED_AFTER_FAILURE: {record.id} transfer={transfer_code}")
        return ReconciliationResult("flagged", record.id, detail)

    async def _handle_transfer_failed(self, record: SwapTransaction, event: str,
                                      data: Dict[str, Any]) -> ReconciliationResult:
        if record.direction_enum != SwapDirection.OFF_RAMP:
            return self._anomaly(record, event, "transfer notification for an ON_RAMP transaction")

        reason = (
            f"Your tokens were received (ledger ref {record.ledger_settlement_ref}) but the "
            f"Naira payout {event.split('.')[-1]}: {data.get('reason') or data.get('status') or 'no reason given'}"
        )

        if record.status_enum == TransactionStatus.COMPLETED:
            # Money already reported delivered; only an operator can unwind this
            self.ledger.update_transfer_status(record.id, TransferStatus.FAILED)
            self.ledger.flag_for_manual_reconciliation(record.id, reason)
            self.audit.record(
                "payout_reversed_after_completion", entity_id=record.id,
                reference=record.payment_reference, source=AUDIT_SOURCE, details={"event": event},
            )
            return ReconciliationResult("flagged", record.id, reason)

        applied = self.ledger.transition_status(
            record.id, TransactionStatus.FAILED,
            from_statuses={TransactionStatus.PENDING},
            failure_category=FailureCategory.PAYMENT_RAIL_AFTER_LEDGER,
            failure_reason=reason,
            requires_manual_reconciliation=True,
            transfer_status=TransferStatus.FAILED,
        )
        if not applied:
            return self._duplicate(record, event)

        logger.critical(f"🚨 OFFRAMP_PAYOUT_FAILED: {record.id} {reason}")
        self.audit.record(
            "payout_failed", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE, details={"event": event, "reason": data.get("reason")},
        )
        return ReconciliationResult("failed", record.id, reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _duplicate(self, record: SwapTransaction, event: str) -> ReconciliationResult:
        current = self.ledger.get(record.id)
        status = current.status if current is not None else record.status
        logger.info(f"⏭️ PAYSTACK_WEBHOOK_DUPLICATE: {event} for {record.id} already {status}")
        self.audit.record(
            "webhook_duplicate", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE, details={"event": event, "status": status},
        )
        return ReconciliationResult("duplicate", record.id, status)

    def _anomaly(self, record: SwapTransaction, event: str, reason: str) -> ReconciliationResult:
        logger.warning(f"⚠️ PAYSTACK_WEBHOOK_ANOMALY: {event} for {record.id}: {reason}")
        self.audit.record(
            "webhook_anomaly", entity_id=record.id, reference=record.payment_reference,
            source=AUDIT_SOURCE, details={"event": event, "reason": reason},
        )
        return ReconciliationResult("ignored", record.id, reason)

    @staticmethod
    def _payment_data(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "paystackReference": data.get("reference"),
            "amount": data.get("amount"),
            "currency": data.get("currency"),
            "paidAt": data.get("paid_at"),
            "gatewayResponse": data.get("gateway_response"),
            "channel": data.get("channel"),
        }

    def _save_payment_record(self, record: SwapTransaction, event: str, data: Dict[str, Any]) -> bool:
        try:
            with managed_session(self.session_factory) as session:
                session.add(PaymentRecord(
                    transaction_id=record.id,
                    event_type=event,
                    paystack_reference=data.get("reference"),
                    amount=MonetaryDecimal.from_kobo(data.get("amount") or 0),
                    currency=data.get("currency"),
                    status=data.get("status"),
                    gateway_response=data.get("gateway_response"),
                    webhook_data=data,
                ))
            return True
        except IntegrityError:
            logger.info(f"⏭️ PAYMENT_RECORD_EXISTS: {event} ref={data.get('reference')}")
            return False
        except SQLAlchemyError as e:
            logger.error(f"❌ PAYMENT_RECORD_FAILED: {record.id} {event}: {e}")
            return False


# Global service instance
reconciliation_service = ReconciliationService()


def get_reconciliation_service() -> ReconciliationService:
    return reconciliation_service
