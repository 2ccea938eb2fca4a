"""
Transaction Ledger
==================

Durable record of every swap attempt and the single source of truth for its status.

Status only moves forward:

    PENDING -> CONFIRMED -> COMPLETED
       |           |
       +-> FAILED <+        PENDING -> COMPLETED (OFF_RAMP payout accepted)
       +-> CANCELLED

Every status write is a compare-and-set (UPDATE ... WHERE status IN predecessors).
When another writer got there first the write is dropped and logged, never forced,
so the orchestrator and the reconciliation webhook can race safely.

OFF_RAMP legs are checkpointed: CREATED -> LEDGER_SETTLED -> PAYOUT_INITIATED.
A payout can only be recorded on a row whose ledger settlement is already stored.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Set, Optional, List, Any

from sqlalchemy import select, update, func, and_, case

from config import Config
from database import managed_session
from models import (
    SwapTransaction, SwapDirection, TokenType, TransactionStatus, FailureCategory,
    SettlementCheckpoint, TransferStatus,
)
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Raised when a write would break the ledger's ordering rules"""
    pass


# new status -> statuses it may be written over
ALLOWED_PREDECESSORS: Dict[TransactionStatus, Set[TransactionStatus]] = {
    TransactionStatus.CONFIRMED: {TransactionStatus.PENDING},
    TransactionStatus.COMPLETED: {TransactionStatus.PENDING, TransactionStatus.CONFIRMED},
    TransactionStatus.FAILED: {TransactionStatus.PENDING, TransactionStatus.CONFIRMED},
    TransactionStatus.CANCELLED: {TransactionStatus.PENDING},
}

# Columns a status transition may set alongside the status
TRANSITION_FIELDS = frozenset({
    "failure_category", "failure_reason", "requires_manual_reconciliation",
    "transfer_status", "payment_data", "credit_reference",
})


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return current in ALLOWED_PREDECESSORS.get(new, set())


def generate_payment_reference(direction: SwapDirection) -> str:
    """Unique correlation key, assigned before any external call"""
    prefix = "ON" if direction == SwapDirection.ON_RAMP else "OFF"
    return f"SWF_{prefix}_{datetime.now(timezone.utc):%Y%m%d%H%M%S}_{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _value(item):
    return item.value if hasattr(item, "value") else item


class TransactionLedger:
    """Persistence and compare-and-set status updates for swap transactions"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(
        self,
        direction: SwapDirection,
        token_type: TokenType,
        token_amount: Decimal,
        fiat_amount: Decimal,
        counterparty_address: str,
        exchange_rate: Optional[Decimal] = None,
        bank_details: Optional[Dict[str, str]] = None,
        payment_source: Optional[Dict[str, str]] = None,
        verification_snapshot: Optional[Dict[str, Any]] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
        failure_category: Optional[FailureCategory] = None,
        failure_reason: Optional[str] = None,
    ) -> SwapTransaction:
        """Create a new record with a fresh id and payment reference"""
        if status not in (TransactionStatus.PENDING, TransactionStatus.FAILED):
            raise StateTransitionError(f"A transaction cannot be created as {status.value}")

        bank_details = bank_details or {}
        payment_source = payment_source or {}
        now = _now()

        record = SwapTransaction(
            id=str(uuid.uuid4()),
            direction=direction.value,
            token_type=token_type.value,
            token_amount=MonetaryDecimal.quantize_token(token_amount),
            fiat_amount=MonetaryDecimal.quantize_ngn(fiat_amount),
            exchange_rate=MonetaryDecimal.quantize_rate(exchange_rate) if exchange_rate is not None else None,
            counterparty_address=counterparty_address,
            bank_account_number=bank_details.get("account_number"),
            bank_code=bank_details.get("bank_code"),
            bank_name=bank_details.get("bank_name"),
            bank_account_name=bank_details.get("account_name"),
            payment_source_account=payment_source.get("account_number"),
            payment_source_name=payment_source.get("account_name"),
            payment_reference=generate_payment_reference(direction),
            status=status.value,
            checkpoint=SettlementCheckpoint.CREATED.value,
            failure_category=_value(failure_category),
            failure_reason=failure_reason,
            requires_manual_reconciliation=False,
            verification_snapshot=verification_snapshot,
            version=1,
            created_at=now,
            updated_at=now,
        )

        with managed_session(self.session_factory) as session:
            session.add(record)

        logger.info(
            f"📝 TX_CREATED: {record.id} {direction.value} {token_type.value} "
            f"status={status.value} ref={record.payment_reference}"
        )
        return record

    def get(self, transaction_id: str) -> Optional[SwapTransaction]:
        with managed_session(self.session_factory) as session:
            return session.get(SwapTransaction, transaction_id)

    def get_by_reference(self, payment_reference: str) -> Optional[SwapTransaction]:
        with managed_session(self.session_factory) as session:
            return session.execute(
                select(SwapTransaction).where(SwapTransaction.payment_reference == payment_reference)
            ).scalar_one_or_none()

    def get_by_transfer_id(self, transfer_id: str) -> Optional[SwapTransaction]:
        with managed_session(self.session_factory) as session:
            return session.execute(
                select(SwapTransaction).where(SwapTransaction.payout_transfer_id == transfer_id)
            ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Compare-and-set writes
    # ------------------------------------------------------------------

    def transition_status(self, transaction_id: str, new_status: TransactionStatus,
                          from_statuses: Optional[Set[TransactionStatus]] = None, **fields) -> bool:
        """Advance status if the persisted status allows it. Returns False when the write was dropped.

        from_statuses narrows the allowed predecessors further, never widens them.
        """
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields not settable on a status transition: {sorted(unknown)}")

        allowed = ALLOWED_PREDECESSORS.get(new_status, set())
        if from_statuses is not None:
            allowed = allowed & set(from_statuses)
        predecessors = [status.value for status in allowed]
        if not predecessors:
            raise StateTransitionError(f"No transition leads to {new_status.value}")

        values = {key: _value(value) for key, value in fields.items()}

        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(SwapTransaction)
                .where(and_(
                    SwapTransaction.id == transaction_id,
                    SwapTransaction.status.in_(predecessors),
                ))
                .values(
                    status=new_status.value,
                    version=SwapTransaction.version + 1,
                    updated_at=_now(),
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

            if not applied:
                current = session.execute(
                    select(SwapTransaction.status).where(SwapTransaction.id == transaction_id)
                ).scalar_one_or_none()

        if applied:
            logger.info(f"🔄 TX_STATUS: {transaction_id} -> {new_status.value}")
        elif current is None:
            logger.warning(f"⚠️ TX_STATUS_UNKNOWN_ID: {transaction_id} -> {new_status.value} ignored")
        else:
            logger.info(
                f"⏭️ TX_STATUS_CAS_SKIPPED: {transaction_id} is {current}, "
                f"{new_status.value} not applied"
            )
        return applied

    def record_ledger_settlement(self, transaction_id: str, settlement_ref: str,
                                 settled_at: Optional[datetime] = None) -> bool:
        """Store the on-chain settlement ref and move the checkpoint to LEDGER_SETTLED"""
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(SwapTransaction)
                .where(and_(
                    SwapTransaction.id == transaction_id,
                    SwapTransaction.status == TransactionStatus.PENDING.value,
                    SwapTransaction.ledger_settlement_ref.is_(None),
                ))
                .values(
                    ledger_settlement_ref=settlement_ref,
                    ledger_settled_at=settled_at or _now(),
                    checkpoint=SettlementCheckpoint.LEDGER_SETTLED.value,
                    version=SwapTransaction.version + 1,
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if applied:
            logger.info(f"⛓️ TX_LEDGER_SETTLED: {transaction_id} ref={settlement_ref}")
        else:
            logger.error(f"❌ TX_LEDGER_SETTLEMENT_NOT_RECORDED: {transaction_id} ref={settlement_ref}")
        return applied

    def record_payout(self, transaction_id: str, recipient_code: str, transfer_id: str,
                      transfer_status: TransferStatus) -> bool:
        """Store the payout transfer. Refused unless the ledger settlement is already stored."""
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(SwapTransaction)
                .where(and_(
                    SwapTransaction.id == transaction_id,
                    SwapTransaction.ledger_settlement_ref.isnot(None),
                    SwapTransaction.payout_transfer_id.is_(None),
                ))
                .values(
                    payout_recipient_code=recipient_code,
                    payout_transfer_id=transfer_id,
                    payout_initiated_at=_now(),
                    # A webhook may already have completed the swap; keep its transfer status
                    transfer_status=case(
                        (SwapTransaction.status == TransactionStatus.COMPLETED.value, SwapTransaction.transfer_status),
                        else_=transfer_status.value,
                    ),
                    checkpoint=SettlementCheckpoint.PAYOUT_INITIATED.value,
                    version=SwapTransaction.version + 1,
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                logger.info(f"💸 TX_PAYOUT_RECORDED: {transaction_id} transfer={transfer_id}")
                return True

            row = session.execute(
                select(SwapTransaction.ledger_settlement_ref, SwapTransaction.payout_transfer_id)
                .where(SwapTransaction.id == transaction_id)
            ).one_or_none()

        if row is None:
            raise StateTransitionError(f"Unknown transaction {transaction_id}")
        if row.ledger_settlement_ref is None:
            logger.critical(f"🚨 TX_PAYOUT_BEFORE_LEDGER: {transaction_id} transfer={transfer_id} refused")
            raise StateTransitionError(
                f"Payout cannot be recorded for {transaction_id} before its ledger settlement"
            )
        logger.warning(
            f"⚠️ TX_PAYOUT_ALREADY_RECORDED: {transaction_id} has transfer {row.payout_transfer_id}, "
            f"{transfer_id} ignored"
        )
        return False

    def update_transfer_status(self, transaction_id: str, transfer_status: TransferStatus) -> bool:
        """Refresh the payout transfer status without touching the swap status"""
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(SwapTransaction)
                .where(and_(
                    SwapTransaction.id == transaction_id,
                    SwapTransaction.payout_transfer_id.isnot(None),
                ))
                .values(transfer_status=transfer_status.value, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def record_execution_phase(self, transaction_id: str, phase: str) -> bool:
        """Store the orchestrator's current execution phase"""
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(SwapTransaction)
                .where(SwapTransaction.id == transaction_id)
                .values(execution_phase=phase, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def flag_for_manual_reconciliation(self, transaction_id: str, reason: str) -> bool:
        """Raise the manual-reconciliation flag without touching the status"""
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(SwapTransaction)
                .where(SwapTransaction.id == transaction_id)
                .values(
                    requires_manual_reconciliation=True,
                    failure_reason=reason,
                    version=SwapTransaction.version + 1,
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
        if applied:
            logger.critical(f"🚨 TX_MANUAL_RECONCILIATION: {transaction_id}: {reason}")
        return applied

    # ------------------------------------------------------------------
    # Admin queries
    # ------------------------------------------------------------------

    def list_transactions(self, status: Optional[TransactionStatus] = None,
                          direction: Optional[SwapDirection] = None,
                          limit: int = 50) -> List[SwapTransaction]:
        query = select(SwapTransaction)
        if status is not None:
            query = query.where(SwapTransaction.status == status.value)
        if direction is not None:
            query = query.where(SwapTransaction.direction == direction.value)
        query = query.order_by(SwapTransaction.created_at.desc()).limit(limit)

        with managed_session(self.session_factory) as session:
            return list(session.execute(query).scalars().all())

    def get_stats(self) -> Dict[str, Any]:
        """Counts by status plus today's completed NGN volume"""
        start_of_day = _now().replace(hour=0, minute=0, second=0, microsecond=0)

        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(SwapTransaction.status, func.count(SwapTransaction.id))
                .group_by(SwapTransaction.status)
            ).all()
            daily_volume = session.execute(
                select(func.coalesce(func.sum(SwapTransaction.fiat_amount), 0))
                .where(and_(
                    SwapTransaction.status == TransactionStatus.COMPLETED.value,
                    SwapTransaction.created_at >= start_of_day,
                ))
            ).scalar()
            manual = session.execute(
                select(func.count(SwapTransaction.id))
                .where(SwapTransaction.requires_manual_reconciliation.is_(True))
            ).scalar()

        by_status = {status.value: 0 for status in TransactionStatus}
        for status, count in rows:
            by_status[status] = count

        return {
            "total": sum(by_status.values()),
            "byStatus": by_status,
            "dailyVolumeNgn": str(MonetaryDecimal.quantize_ngn(daily_volume or 0)),
            "requiresManualReconciliation": manual or 0,
        }

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def find_stranded_settlements(self, older_than: Optional[timedelta] = None) -> List[SwapTransaction]:
        """OFF_RAMP rows whose token leg settled but no payout was recorded"""
        older_than = older_than or timedelta(minutes=Config.STRANDED_SETTLEMENT_MINUTES)
        cutoff = _now() - older_than

        with managed_session(self.session_factory) as session:
            return list(session.execute(
                select(SwapTransaction).where(and_(
                    SwapTransaction.direction == SwapDirection.OFF_RAMP.value,
                    SwapTransaction.checkpoint == SettlementCheckpoint.LEDGER_SETTLED.value,
                    SwapTransaction.payout_transfer_id.is_(None),
                    SwapTransaction.status == TransactionStatus.PENDING.value,
                    SwapTransaction.ledger_settled_at < cutoff,
                ))
            ).scalars().all())

    def flag_stranded_settlements(self, older_than: Optional[timedelta] = None) -> List[str]:
        """Mark stranded settlements FAILED for manual reconciliation. Never resumes a payout."""
        flagged = []
        for record in self.find_stranded_settlements(older_than):
            applied = self.transition_status(
                record.id,
                TransactionStatus.FAILED,
                failure_category=FailureCategory.PAYMENT_RAIL_AFTER_LEDGER,
                failure_reason=(
                    "Token leg settled but no payout was recorded; "
                    "requires manual reconciliation"
                ),
                requires_manual_reconciliation=True,
            )
            if applied:
                logger.critical(
                    f"🚨 STRANDED_SETTLEMENT: {record.id} ledger_ref={record.ledger_settlement_ref} "
                    f"flagged for manual reconciliation"
                )
                flagged.append(record.id)
        return flagged


# Global ledger instance
transaction_ledger = TransactionLedger()


def get_transaction_ledger() -> TransactionLedger:
    """Get the shared transaction ledger"""
    return transaction_ledger
