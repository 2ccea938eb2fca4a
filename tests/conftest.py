"""
Shared fixtures for the swap settlement test suite

- In-memory SQLite database (StaticPool) with a fresh schema per test
- Fake ledger, payment rail and token crediting adapters that record calls
- Factories for swap requests and persisted transactions
"""

import os

# Must be set before config/database are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SIMULATION_MODE", "false")

import asyncio
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional

import pytest

from database import engine
from models import Base, SwapDirection, TokenType, TransferStatus
from services.ledger_adapter import LedgerHooks, LedgerSettlement, LedgerAbortedError
from services.paystack_service import TransferResult, normalize_transfer_status
from services.token_crediting_service import CreditResult


@pytest.fixture(autouse=True)
def fresh_schema():
    """Every test starts from empty tables"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


class FakeLedgerAdapter:
    """Ledger adapter that walks the approval hooks and records every call"""

    def __init__(self, treasury: Optional[Dict[str, Decimal]] = None, error: Optional[Exception] = None,
                 balance_error: Optional[Exception] = None, approval_gate: Optional[asyncio.Event] = None):
        self.treasury = treasury if treasury is not None else {
            "SUI": Decimal("950"), "USDC": Decimal("4800"), "USDT": Decimal("2850"),
        }
        self.error = error
        self.balance_error = balance_error
        self.approval_gate = approval_gate
        self.approval_requested = asyncio.Event()
        self.calls: List[tuple] = []
        self.settlement_ref = f"0xDIGEST{uuid.uuid4().hex[:16]}"

    async def _settle(self, hooks: Optional[LedgerHooks]) -> LedgerSettlement:
        hooks = hooks or LedgerHooks()
        hooks.on_approval_required()
        self.approval_requested.set()
        if self.approval_gate is not None:
            await self.approval_gate.wait()
        hooks.on_approval_granted()
        if hooks.should_abort():
            raise LedgerAbortedError("Cancelled before ledger submission")
        if self.error is not None:
            raise self.error
        hooks.on_commit()
        return LedgerSettlement(settlement_ref=self.settlement_ref, confirmed_at=datetime.now(timezone.utc))

    async def create_off_ramp_transaction(self, token_type, token_amount, bank_details,
                                          payment_reference, hooks=None):
        self.calls.append(("create_off_ramp_transaction", token_type, token_amount, payment_reference))
        return await self._settle(hooks)

    async def create_on_ramp_transaction(self, token_type, token_amount, recipient_address,
                                         payment_reference, hooks=None):
        self.calls.append(("create_on_ramp_transaction", token_type, token_amount, payment_reference))
        return await self._settle(hooks)

    async def get_treasury_balance(self, token_type: TokenType) -> Dict[str, Any]:
        self.calls.append(("get_treasury_balance", token_type))
        if self.balance_error is not None:
            raise self.balance_error
        available = self.treasury.get(token_type.value, Decimal("0"))
        return {
            "balance": available,
            "availableBalance": available,
            "lockedBalance": Decimal("0"),
            "lastUpdated": datetime.now(timezone.utc),
        }

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakePaymentRail:
    """Payout rail returning a configurable transfer status"""

    def __init__(self, balance: Decimal = Decimal("5000000"), transfer_status: str = "success",
                 transfer_error: Optional[Exception] = None, balance_error: Optional[Exception] = None,
                 status_sequence: Optional[List[str]] = None):
        self.balance = balance
        self.transfer_status = transfer_status
        self.transfer_error = transfer_error
        self.balance_error = balance_error
        self.status_sequence = list(status_sequence or [])
        self.calls: List[tuple] = []
        self.transfer_id = f"TRF_{uuid.uuid4().hex[:10]}"

    async def create_recipient(self, account_number, bank_code, account_name) -> str:
        self.calls.append(("create_recipient", account_number, bank_code, account_name))
        return "RCP_test123"

    async def initiate_transfer(self, recipient_code, amount_ngn, reason, idempotency_key) -> TransferResult:
        self.calls.append(("initiate_transfer", recipient_code, amount_ngn, idempotency_key))
        if self.transfer_error is not None:
            raise self.transfer_error
        return TransferResult(
            transfer_id=self.transfer_id,
            status=normalize_transfer_status(self.transfer_status),
            raw_status=self.transfer_status,
            reference=idempotency_key,
        )

    async def get_transfer_status(self, transfer_id) -> TransferStatus:
        self.calls.append(("get_transfer_status", transfer_id))
        raw = self.status_sequence.pop(0) if self.status_sequence else self.transfer_status
        if isinstance(raw, Exception):
            raise raw
        return normalize_transfer_status(raw)

    async def get_balance(self, currency: str = "NGN") -> Dict[str, Any]:
        self.calls.append(("get_balance", currency))
        if self.balance_error is not None:
            raise self.balance_error
        return {
            "currency": currency,
            "balance": self.balance,
            "availableBalance": self.balance,
            "lockedBalance": Decimal("0"),
            "lastUpdated": datetime.now(timezone.utc),
        }

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeTokenCrediting:
    """Token crediting trigger that records calls"""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[tuple] = []

    async def credit_tokens(self, recipient, token_amount, token_type, transaction_id, payment_reference):
        self.calls.append((recipient, token_amount, token_type, transaction_id, payment_reference))
        if self.error is not None:
            raise self.error
        return CreditResult(
            transaction_hash=f"0xCREDIT{len(self.calls)}",
            token_amount=token_amount,
            token_type=token_type.value,
        )


class FakeResponse:
    """aiohttp response stand-in usable as an async context manager"""

    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession and records each request"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


@pytest.fixture
def fake_ledger():
    return FakeLedgerAdapter()


@pytest.fixture
def fake_rail():
    return FakePaymentRail()


@pytest.fixture
def fake_crediting():
    return FakeTokenCrediting()


BANK_DETAILS = {
    "account_number": "0123456789",
    "bank_code": "058",
    "account_name": "Ada Obi",
    "bank_name": "GTBank",
}

SUI_ADDRESS = "0x" + "ab" * 32


@pytest.fixture
def off_ramp_request():
    from services.swap_orchestrator import SwapRequest

    def _make(**overrides):
        values = dict(
            direction=SwapDirection.OFF_RAMP,
            token_type=TokenType.SUI,
            token_amount=Decimal("10"),
            fiat_amount=Decimal("600000"),
            counterparty_address=SUI_ADDRESS,
            exchange_rate=Decimal("60000"),
            bank_details=dict(BANK_DETAILS),
        )
        values.update(overrides)
        return SwapRequest(**values)

    return _make


@pytest.fixture
def on_ramp_request():
    from services.swap_orchestrator import SwapRequest

    def _make(**overrides):
        values = dict(
            direction=SwapDirection.ON_RAMP,
            token_type=TokenType.SUI,
            token_amount=Decimal("5"),
            fiat_amount=Decimal("300000"),
            counterparty_address=SUI_ADDRESS,
            exchange_rate=Decimal("60000"),
            payment_source={"account_number": "0987654321", "account_name": "Ada Obi"},
        )
        values.update(overrides)
        return SwapRequest(**values)

    return _make


@pytest.fixture
def make_transaction():
    """Persist a PENDING transaction directly through the ledger"""
    from services.transaction_ledger import get_transaction_ledger

    def _make(direction=SwapDirection.ON_RAMP, token_type=TokenType.SUI,
              token_amount=Decimal("5"), fiat_amount=Decimal("300000"), **kwargs):
        return get_transaction_ledger().create(
            direction=direction,
            token_type=token_type,
            token_amount=token_amount,
            fiat_amount=fiat_amount,
            counterparty_address=SUI_ADDRESS,
            bank_details=dict(BANK_DETAILS) if direction == SwapDirection.OFF_RAMP else None,
            **kwargs,
        )

    return _make
