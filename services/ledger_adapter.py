"""
Ledger Adapter - on-chain leg of a swap

OFF_RAMP: the user's wallet approves a swap transaction that locks the token in
the swap contract; the adapter submits it to a Sui full node and returns the
transaction digest as the settlement reference.
ON_RAMP: the treasury operator wallet approves a transfer of tokens out of the
treasury to the user.

The adapter reports its progress through LedgerHooks so the orchestrator can
expose the approval sub-state and close the cancellation window at commit.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, Callable, Awaitable, Protocol

import aiohttp

from config import Config
from models import TokenType
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class LedgerExecutionError(Exception):
    """The on-chain leg failed or could not be confirmed"""
    pass


class LedgerAbortedError(LedgerExecutionError):
    """The caller withdrew before the transaction was submitted"""
    pass


# Base units per token and the treasury object field holding each balance
TOKEN_DECIMALS = {
    TokenType.SUI: 9,
    TokenType.USDC: 6,
    TokenType.USDT: 6,
}

TREASURY_BALANCE_FIELDS = {
    TokenType.SUI: ("available_balance", "locked_balance"),
    TokenType.USDC: ("usdc_available_balance", "usdc_locked_balance"),
    TokenType.USDT: ("usdt_available_balance", "usdt_locked_balance"),
}


def _noop(*args, **kwargs):
    return None


def _never_abort() -> bool:
    return False


@dataclass
class LedgerHooks:
    """Progress callbacks from the adapter back to its caller"""
    on_approval_required: Callable[[], None] = _noop
    on_approval_granted: Callable[[], None] = _noop
    on_commit: Callable[[], None] = _noop
    should_abort: Callable[[], bool] = _never_abort


@dataclass
class LedgerSettlement:
    """A confirmed on-chain transaction"""
    settlement_ref: str
    confirmed_at: datetime
    raw: Dict[str, Any] = field(default_factory=dict)


# A wallet approver receives the unsigned request and returns {"tx_bytes", "signature"}
WalletApprover = Callable[[Dict[str, Any]], Awaitable[Dict[str, str]]]


class LedgerAdapter(Protocol):
    async def create_off_ramp_transaction(
        self, token_type: TokenType, token_amount: Decimal, bank_details: Dict[str, str],
        payment_reference: str, hooks: Optional[LedgerHooks] = None,
    ) -> LedgerSettlement:
        ...

    async def create_on_ramp_transaction(
        self, token_type: TokenType, token_amount: Decimal, recipient_address: str,
        payment_reference: str, hooks: Optional[LedgerHooks] = None,
    ) -> LedgerSettlement:
        ...

    async def get_treasury_balance(self, token_type: TokenType) -> Dict[str, Any]:
        ...


def to_base_units(token_type: TokenType, amount: Decimal) -> int:
    return int(MonetaryDecimal.to_decimal(amount) * (Decimal(10) ** TOKEN_DECIMALS[token_type]))


def from_base_units(token_type: TokenType, value) -> Decimal:
    return MonetaryDecimal.to_decimal(value) / (Decimal(10) ** TOKEN_DECIMALS[token_type])


class SuiLedgerAdapter:
    """Sui JSON-RPC implementation of the ledger leg"""

    def __init__(self, approver: Optional[WalletApprover] = None, rpc_url: Optional[str] = None,
                 treasury_id: Optional[str] = None, swap_contract_id: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.approver = approver
        self.rpc_url = rpc_url or Config.SUI_RPC_URL
        self.treasury_id = treasury_id or Config.TREASURY_ID
        self.swap_contract_id = swap_contract_id or Config.SWAP_CONTRACT_ID
        self.timeout = timeout or Config.SUI_RPC_TIMEOUT_SECONDS

    async def _rpc(self, method: str, params: list) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.post(self.rpc_url, json=payload, timeout=timeout) as response:
                    response_data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Sui RPC network error on {method}: {type(e).__name__}: {e}")
            raise LedgerExecutionError(f"Sui RPC unreachable ({method})") from e

        if response.status != 200 or response_data.get("error"):
            error = response_data.get("error") or {}
            logger.error(f"Sui RPC error on {method}: {response.status} - {error}")
            raise LedgerExecutionError(error.get("message") or f"Sui RPC HTTP {response.status}")
        return response_data.get("result") or {}

    async def _approve_and_execute(self, request: Dict[str, Any], hooks: LedgerHooks) -> LedgerSettlement:
        if self.approver is None:
            raise LedgerExecutionError("No wallet approver attached to the ledger adapter")

        if hooks.should_abort():
            logger.info(f"🛑 LEDGER_ABORTED_BEFORE_APPROVAL: {request.get('payment_reference')}")
            raise LedgerAbortedError("Cancelled before wallet approval")

        hooks.on_approval_required()
        signed = await self.approver(request)
        hooks.on_approval_granted()

        if hooks.should_abort():
            logger.info(f"🛑 LEDGER_ABORTED_BEFORE_SUBMIT: {request.get('payment_reference')}")
            raise LedgerAbortedError("Cancelled before ledger submission")

        if not signed or not signed.get("tx_bytes") or not signed.get("signature"):
            raise LedgerExecutionError("Wallet approval was rejected")

        hooks.on_commit()
        result = await self._rpc("sui_executeTransactionBlock", [
            signed["tx_bytes"],
            [signed["signature"]],
            {"showEffects": True},
            "WaitForLocalExecution",
        ])

        status = (result.get("effects") or {}).get("status") or {}
        if status.get("status") != "success":
            raise LedgerExecutionError(f"Ledger transaction failed: {status.get('error') or 'unknown error'}")

        digest = result.get("digest")
        if not digest:
            raise LedgerExecutionError("Ledger did not return a transaction digest")
        return LedgerSettlement(settlement_ref=digest, confirmed_at=datetime.now(timezone.utc), raw=result)

    async def create_off_ramp_transaction(self, token_type, token_amount, bank_details,
                                          payment_reference, hooks=None):
        hooks = hooks or LedgerHooks()
        request = {
            "kind": "initiate_off_ramp",
            "swap_contract_id": self.swap_contract_id,
            "token_type": token_type.value,
            "amount": to_base_units(token_type, token_amount),
            "bank_account": bank_details.get("account_number"),
            "bank_code": bank_details.get("bank_code"),
            "payment_reference": payment_reference,
        }
        settlement = await self._approve_and_execute(request, hooks)
        logger.info(f"⛓️ OFFRAMP_LEDGER_CONFIRMED: {payment_reference} digest={settlement.settlement_ref}")
        return settlement

    async def create_on_ramp_transaction(self, token_type, token_amount, recipient_address,
                                         payment_reference, hooks=None):
        hooks = hooks or LedgerHooks()
        request = {
            "kind": "initiate_on_ramp",
            "swap_contract_id": self.swap_contract_id,
            "treasury_id": self.treasury_id,
            "token_type": token_type.value,
            "amount": to_base_units(token_type, token_amount),
            "recipient": recipient_address,
            "payment_reference": payment_reference,
        }
        settlement = await self._approve_and_execute(request, hooks)
        logger.info(f"⛓️ ONRAMP_LEDGER_CONFIRMED: {payment_reference} digest={settlement.settlement_ref}")
        return settlement

    async def get_treasury_balance(self, token_type: TokenType) -> Dict[str, Any]:
        """Read the treasury object; a missing field is an error, never zero-filled"""
        if not self.treasury_id:
            raise LedgerExecutionError("TREASURY_ID not configured")

        result = await self._rpc("sui_getObject", [self.treasury_id, {"showContent": True}])
        content = (result.get("data") or {}).get("content") or {}
        fields = content.get("fields")
        if not fields:
            raise LedgerExecutionError("Treasury object not found or invalid")

        available_field, locked_field = TREASURY_BALANCE_FIELDS[token_type]
        if available_field not in fields:
            raise LedgerExecutionError(f"Treasury has no {token_type.value} balance field")

        available = from_base_units(token_type, fields[available_field])
        locked = from_base_units(token_type, fields.get(locked_field, 0))
        return {
            "currency": token_type.value,
            "balance": available + locked,
            "availableBalance": available,
            "lockedBalance": locked,
            "lastUpdated": datetime.now(timezone.utc),
        }


class SimulatedLedgerAdapter:
    """Ledger leg used only when SIMULATION_MODE is explicitly enabled"""

    def __init__(self, balances: Optional[Dict[str, Decimal]] = None):
        self.balances = dict(balances or Config.SIMULATED_TREASURY_BALANCES)

    async def _settle(self, kind: str, payment_reference: str, hooks: Optional[LedgerHooks]) -> LedgerSettlement:
        hooks = hooks or LedgerHooks()
        hooks.on_approval_required()
        hooks.on_approval_granted()
        if hooks.should_abort():
            raise LedgerAbortedError("Cancelled before ledger submission")
        hooks.on_commit()
        digest = f"SIM_{uuid.uuid4().hex}"
        logger.warning(f"🧪 SIMULATION: {kind} {payment_reference} digest={digest}")
        return LedgerSettlement(settlement_ref=digest, confirmed_at=datetime.now(timezone.utc))

    async def create_off_ramp_transaction(self, token_type, token_amount, bank_details,
                                          payment_reference, hooks=None):
        return await self._settle("off_ramp", payment_reference, hooks)

    async def create_on_ramp_transaction(self, token_type, token_amount, recipient_address,
                                         payment_reference, hooks=None):
        settlement = await self._settle("on_ramp", payment_reference, hooks)
        self.balances[token_type.value] = self.balances.get(token_type.value, Decimal("0")) - token_amount
        return settlement

    async def get_treasury_balance(self, token_type: TokenType) -> Dict[str, Any]:
        available = self.balances.get(token_type.value, Decimal("0"))
        return {
            "currency": token_type.value,
            "balance": available,
            "availableBalance": available,
            "lockedBalance": Decimal("0"),
            "lastUpdated": datetime.now(timezone.utc),
        }


_ledger_adapter = None


def get_ledger_adapter(approver: Optional[WalletApprover] = None):
    """Shared ledger adapter; simulated only when SIMULATION_MODE is on"""
    global _ledger_adapter
    if Config.SIMULATION_MODE:
        if _ledger_adapter is None:
            logger.warning("🧪 SIMULATION_MODE: using simulated ledger adapter")
            _ledger_adapter = SimulatedLedgerAdapter()
        return _ledger_adapter
    if approver is not None:
        return SuiLedgerAdapter(approver=approver)
    if _ledger_adapter is None:
        _ledger_adapter = SuiLedgerAdapter()
    return _ledger_adapter
