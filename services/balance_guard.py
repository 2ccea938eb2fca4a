#!/usr/bin/env python3
"""
BalanceGuard: Admission Control for Swaps

Decides whether a swap may proceed before any irreversible step:
- OFF_RAMP needs enough NGN in the payout rail balance
- ON_RAMP needs enough of the token in the ledger treasury

Policy:
- Every check re-reads the balance; snapshots are never cached between requests
- Balance reads are bounded by BALANCE_CHECK_TIMEOUT_SECONDS
- An unreadable balance (error or timeout) blocks the swap (fail closed)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List, Union

from config import Config
from models import SwapDirection, TokenType
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

FIAT_CURRENCY = "NGN"


@dataclass
class BalanceSnapshot:
    """Normalized point-in-time balance from either side"""
    currency: str
    balance: Decimal
    available_balance: Decimal
    locked_balance: Decimal
    last_updated: datetime

    @classmethod
    def from_payload(cls, currency: str, payload: Dict[str, Any]) -> "BalanceSnapshot":
        available = MonetaryDecimal.to_decimal(payload.get("availableBalance"), f"{currency}_available")
        locked = MonetaryDecimal.to_decimal(payload.get("lockedBalance"), f"{currency}_locked")
        balance = payload.get("balance")
        return cls(
            currency=currency,
            balance=MonetaryDecimal.to_decimal(balance, currency) if balance is not None else available + locked,
            available_balance=available,
            locked_balance=locked,
            last_updated=payload.get("lastUpdated") or datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and audit details"""
        return {
            "currency": self.currency,
            "balance": str(self.balance),
            "availableBalance": str(self.available_balance),
            "lockedBalance": str(self.locked_balance),
            "lastUpdated": self.last_updated.isoformat(),
        }


@dataclass
class GuardDecision:
    """Admission verdict with the balances it was based on"""
    can_proceed: bool
    currency: str
    required: Decimal
    available: Optional[Decimal] = None
    error_message: Optional[str] = None
    balances: Dict[str, BalanceSnapshot] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "canProceed": self.can_proceed,
            "currency": self.currency,
            "required": str(self.required),
            "available": str(self.available) if self.available is not None else None,
            "errorMessage": self.error_message,
            "balances": {currency: snapshot.to_dict() for currency, snapshot in self.balances.items()},
        }


def _format_amount(currency: str, amount: Decimal) -> str:
    if currency == FIAT_CURRENCY:
        return MonetaryDecimal.format_ngn(amount)
    return MonetaryDecimal.format_token(amount, currency)


class BalanceGuard:
    """Fail-closed balance gate in front of the ledger and payout legs"""

    def __init__(self, payment_rail=None, ledger=None, timeout: Optional[float] = None):
        if payment_rail is None:
            from services.paystack_service import get_payment_rail
            payment_rail = get_payment_rail()
        if ledger is None:
            from services.ledger_adapter import get_ledger_adapter
            ledger = get_ledger_adapter()
        self.payment_rail = payment_rail
        self.ledger = ledger
        self.timeout = timeout if timeout is not None else Config.BALANCE_CHECK_TIMEOUT_SECONDS

    async def _read_fiat_balance(self) -> BalanceSnapshot:
        payload = await asyncio.wait_for(self.payment_rail.get_balance(FIAT_CURRENCY), timeout=self.timeout)
        return BalanceSnapshot.from_payload(FIAT_CURRENCY, payload)

    async def _read_treasury_balance(self, token_type: TokenType) -> BalanceSnapshot:
        payload = await asyncio.wait_for(self.ledger.get_treasury_balance(token_type), timeout=self.timeout)
        return BalanceSnapshot.from_payload(token_type.value, payload)

    async def check(
        self,
        direction: Union[SwapDirection, str],
        token_type: Union[TokenType, str],
        token_amount,
        fiat_amount,
    ) -> GuardDecision:
        """Re-read the guarded balance and decide whether the swap may proceed"""
        direction = SwapDirection(direction) if not isinstance(direction, SwapDirection) else direction
        token_type = TokenType(token_type) if not isinstance(token_type, TokenType) else token_type

        if direction == SwapDirection.OFF_RAMP:
            currency = FIAT_CURRENCY
            required = MonetaryDecimal.to_decimal(fiat_amount, "guard_required_ngn")
            side = "payout"
        else:
            currency = token_type.value
            required = MonetaryDecimal.to_decimal(token_amount, "guard_required_token")
            side = "treasury"

        try:
            if direction == SwapDirection.OFF_RAMP:
                snapshot = await self._read_fiat_balance()
            else:
                snapshot = await self._read_treasury_balance(token_type)
        except asyncio.TimeoutError:
            logger.error(f"⏱️ BALANCE_GUARD_TIMEOUT: {side} balance for {currency} not read within {self.timeout}s")
            return GuardDecision(
                can_proceed=False,
                currency=currency,
                required=required,
                error_message=f"Unable to verify {side} balance: balance check timed out",
            )
        except Exception as e:
            logger.error(f"❌ BALANCE_GUARD_UNAVAILABLE: {side} balance for {currency}: {e}")
            return GuardDecision(
                can_proceed=False,
                currency=currency,
                required=required,
                error_message=f"Unable to verify {side} balance: {e}",
            )

        available = snapshot.available_balance
        balances = {currency: snapshot}

        if not MonetaryDecimal.is_sufficient_balance(available, required):
            message = (
                f"Insufficient {side} balance: Available {_format_amount(currency, available)}, "
                f"Required {_format_amount(currency, required)}"
            )
            logger.warning(f"🚫 BALANCE_GUARD_BLOCKED: {direction.value} {message}")
            return GuardDecision(
                can_proceed=False,
                currency=currency,
                required=required,
                available=available,
                error_message=message,
                balances=balances,
            )

        logger.info(
            f"✅ BALANCE_GUARD_PASSED: {direction.value} {currency} available={available} required={required}"
        )
        return GuardDecision(
            can_proceed=True,
            currency=currency,
            required=required,
            available=available,
            balances=balances,
        )

    async def get_overview(self) -> List[Dict[str, Any]]:
        """Fresh balances for the payout rail and every treasury token"""
        readers = [(FIAT_CURRENCY, self._read_fiat_balance())]
        readers += [(token.value, self._read_treasury_balance(token)) for token in TokenType]

        results = await asyncio.gather(*(reader for _, reader in readers), return_exceptions=True)

        overview = []
        for (currency, _), result in zip(readers, results):
            if isinstance(result, BaseException):
                logger.warning(f"⚠️ TREASURY_OVERVIEW: {currency} balance unavailable: {result!r}")
                overview.append({"currency": currency, "error": str(result) or type(result).__name__})
            else:
                overview.append(result.to_dict())
        return overview
