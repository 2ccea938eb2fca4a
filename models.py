"""
SwitcherFi Swap Settlement - Database Schema
============================================

Schema for the token <-> Naira swap settlement service:
- Swap transactions (ON_RAMP and OFF_RAMP) and their durable status
- Admin-managed transaction limits (versioned)
- Payment records matched from Paystack charge notifications
- Append-only audit trail
- System-wide emergency pause switch
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    UniqueConstraint, Index, func, JSON
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class SwapDirection(Enum):
    """Which way value moves through the platform"""
    ON_RAMP = "ON_RAMP"    # Naira in, token out
    OFF_RAMP = "OFF_RAMP"  # Token in, Naira out


class TokenType(Enum):
    """Supported fungible tokens"""
    SUI = "SUI"
    USDC = "USDC"
    USDT = "USDT"


class TransactionStatus(Enum):
    """Durable, externally visible swap status"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})


class TransferStatus(Enum):
    """Normalized payment-rail transfer status"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ACTION_REQUIRED = "action_required"


class FailureCategory(Enum):
    """Why a swap ended FAILED or CANCELLED"""
    VALIDATION = "validation"
    ADMISSION = "admission"
    LEDGER_EXECUTION = "ledger_execution"
    PAYMENT_RAIL_AFTER_LEDGER = "payment_rail_after_ledger"
    PAYMENT_FAILED = "payment_failed"
    SETTLEMENT_TREASURY = "settlement_treasury"
    CREDITING = "crediting"
    CANCELLED = "cancelled"


class SettlementCheckpoint(Enum):
    """Persisted progress marker for the OFF_RAMP two-leg settlement"""
    CREATED = "created"
    LEDGER_SETTLED = "ledger_settled"
    PAYOUT_INITIATED = "payout_initiated"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class SwapTransaction(Base):
    """A single user-initiated swap attempt. Never deleted."""
    __tablename__ = 'swap_transactions'

    id = Column(String(36), primary_key=True)
    direction = Column(String(10), nullable=False, index=True)
    token_type = Column(String(10), nullable=False)

    # Amounts frozen at submission
    token_amount = Column(Numeric(38, 18), nullable=False)
    fiat_amount = Column(Numeric(18, 2), nullable=False)
    exchange_rate = Column(Numeric(28, 8), nullable=True)

    counterparty_address = Column(String(128), nullable=False)

    # OFF_RAMP payout destination
    bank_account_number = Column(String(20), nullable=True)
    bank_code = Column(String(20), nullable=True)
    bank_name = Column(String(100), nullable=True)
    bank_account_name = Column(String(200), nullable=True)

    # ON_RAMP payment source
    payment_source_account = Column(String(20), nullable=True)
    payment_source_name = Column(String(200), nullable=True)

    # Correlation key for every external call and notification
    payment_reference = Column(String(100), nullable=False, unique=True, index=True)

    # Ledger leg
    ledger_settlement_ref = Column(String(128), nullable=True)
    ledger_settled_at = Column(DateTime(timezone=True), nullable=True)

    # Payment-rail leg
    payout_recipient_code = Column(String(100), nullable=True)
    payout_transfer_id = Column(String(100), nullable=True, index=True)
    payout_initiated_at = Column(DateTime(timezone=True), nullable=True)
    transfer_status = Column(String(20), nullable=True)

    # Orchestrator execution phase, written together with every progress signal
    execution_phase = Column(String(30), nullable=True)

    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    checkpoint = Column(String(30), nullable=False, default=SettlementCheckpoint.CREATED.value)
    failure_category = Column(String(40), nullable=True)
    failure_reason = Column(Text, nullable=True)
    requires_manual_reconciliation = Column(Boolean, nullable=False, default=False)

    verification_snapshot = Column(JSON, nullable=True)
    payment_data = Column(JSON, nullable=True)
    credit_reference = Column(String(128), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_swap_transactions_status_direction', 'status', 'direction'),
        Index('ix_swap_transactions_checkpoint', 'checkpoint', 'direction'),
        Index('ix_swap_transactions_created_at', 'created_at'),
    )

    @property
    def direction_enum(self) -> SwapDirection:
        return SwapDirection(self.direction)

    @property
    def status_enum(self) -> TransactionStatus:
        return TransactionStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_TRANSACTION_STATUSES

    def to_dict(self) -> dict:
        """Serialize for API responses"""
        return {
            "id": self.id,
            "direction": self.direction,
            "tokenType": self.token_type,
            "tokenAmount": str(self.token_amount),
            "fiatAmount": str(self.fiat_amount),
            "exchangeRate": str(self.exchange_rate) if self.exchange_rate is not None else None,
            "counterpartyAddress": self.counterparty_address,
            "bankAccount": self.bank_account_number,
            "bankCode": self.bank_code,
            "bankName": self.bank_name,
            "paymentSourceAccount": self.payment_source_account,
            "paymentSourceName": self.payment_source_name,
            "paymentReference": self.payment_reference,
            "ledgerSettlementRef": self.ledger_settlement_ref,
            "transferId": self.payout_transfer_id,
            "transferStatus": self.transfer_status,
            "status": self.status,
            "executionPhase": self.execution_phase,
            "failureCategory": self.failure_category,
            "failureReason": self.failure_reason,
            "requiresManualReconciliation": bool(self.requires_manual_reconciliation),
            "verificationSnapshot": self.verification_snapshot,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<SwapTransaction {self.id} {self.direction} {self.status}>"


class TransactionLimitsRecord(Base):
    """Versioned transaction limits configuration. Latest version wins."""
    __tablename__ = 'transaction_limits'

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(Integer, nullable=False, unique=True)
    on_ramp = Column(JSON, nullable=False)
    off_ramp = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_by = Column(String(128), nullable=False, default="system")
    last_updated = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PaymentRecord(Base):
    """A charge notification matched to a swap transaction"""
    __tablename__ = 'payment_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    paystack_reference = Column(String(100), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(10), nullable=True)
    status = Column(String(30), nullable=True)
    gateway_response = Column(Text, nullable=True)
    webhook_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('paystack_reference', 'event_type', name='uq_payment_record_reference_event'),
    )


class AuditLog(Base):
    """Append-only audit trail for compliance and operator follow-up"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(80), nullable=False, index=True)
    entity_id = Column(String(64), nullable=True, index=True)
    reference = Column(String(100), nullable=True, index=True)
    actor = Column(String(128), nullable=False, default="system")
    source = Column(String(50), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_audit_logs_action_created', 'action', 'created_at'),
    )


class SystemSettings(Base):
    """Single-row system switches (emergency pause)"""
    __tablename__ = 'system_settings'

    id = Column(Integer, primary_key=True, default=1)
    system_paused = Column(Boolean, nullable=False, default=False)
    pause_reason = Column(Text, nullable=True)
    paused_by = Column(String(128), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    resumed_by = Column(String(128), nullable=True)
    resumed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
