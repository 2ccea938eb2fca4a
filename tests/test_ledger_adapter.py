"""
Tests for the Sui ledger adapter and its approval hooks
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import aiohttp

from models import TokenType
from services.ledger_adapter import (
    LedgerAbortedError,
    LedgerExecutionError,
    LedgerHooks,
    SimulatedLedgerAdapter,
    SuiLedgerAdapter,
    from_base_units,
    to_base_units,
)

SIGNED = {"tx_bytes": "AAEC", "signature": "sig=="}

EXECUTED = {"digest": "9xDigest", "effects": {"status": {"status": "success"}}}


class RecordingHooks:
    def __init__(self, abort=False, abort_on_grant=False):
        self.events = []
        self.abort = abort
        self.abort_on_grant = abort_on_grant

    def _granted(self):
        self.events.append("approval_granted")
        if self.abort_on_grant:
            self.abort = True

    def build(self):
        return LedgerHooks(
            on_approval_required=lambda: self.events.append("approval_required"),
            on_approval_granted=self._granted,
            on_commit=lambda: self.events.append("commit"),
            should_abort=lambda: self.abort,
        )


def adapter_with(approver_result=SIGNED, rpc_result=EXECUTED):
    adapter = SuiLedgerAdapter(
        approver=AsyncMock(return_value=approver_result),
        rpc_url="https://fullnode.test", treasury_id="0xTREASURY", swap_contract_id="0xSWAP",
    )
    adapter._rpc = AsyncMock(return_value=rpc_result)
    return adapter


class TestBaseUnits:
    def test_sui_has_nine_decimals(self):
        assert to_base_units(TokenType.SUI, Decimal("1.5")) == 1500000000

    def test_stablecoins_have_six_decimals(self):
        assert to_base_units(TokenType.USDC, Decimal("2.25")) == 2250000
        assert from_base_units(TokenType.USDT, 4800000000) == Decimal("4800")


class TestOffRampTransaction:
    """Approval, commit and confirmation"""

    @pytest.mark.asyncio
    async def test_hooks_fire_in_order(self):
        adapter = adapter_with()
        hooks = RecordingHooks()

        settlement = await adapter.create_off_ramp_transaction(
            TokenType.SUI, Decimal("10"), {"account_number": "0123456789", "bank_code": "058"},
            "SWF_OFF_1", hooks=hooks.build(),
        )

        assert settlement.settlement_ref == "9xDigest"
        assert hooks.events == ["approval_required", "approval_granted", "commit"]
        request = adapter.approver.await_args.args[0]
        assert request["amount"] == 10000000000
        assert request["payment_reference"] == "SWF_OFF_1"
        assert adapter._rpc.await_args.args[0] == "sui_executeTransactionBlock"

    @pytest.mark.asyncio
    async def test_abort_after_approval_never_submits(self):
        adapter = adapter_with()
        hooks = RecordingHooks(abort_on_grant=True)

        with pytest.raises(LedgerAbortedError):
            await adapter.create_off_ramp_transaction(TokenType.SUI, Decimal("1"), {}, "SWF_OFF_2",
                                                      hooks=hooks.build())

        assert "commit" not in hooks.events
        adapter._rpc.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_swap_never_asks_wallet(self):
        adapter = adapter_with()
        hooks = RecordingHooks(abort=True)

        with pytest.raises(LedgerAbortedError):
            await adapter.create_off_ramp_transaction(TokenType.SUI, Decimal("1"), {}, "SWF_OFF_5",
                                                      hooks=hooks.build())

        assert hooks.events == []
        adapter.approver.assert_not_called()
        adapter._rpc.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_approval(self):
        adapter = adapter_with(approver_result=None)
        with pytest.raises(LedgerExecutionError, match="rejected"):
            await adapter.create_off_ramp_transaction(TokenType.SUI, Decimal("1"), {}, "SWF_OFF_3")
        adapter._rpc.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_effects(self):
        adapter = adapter_with(rpc_result={"digest": "9x", "effects": {"status": {
            "status": "failure", "error": "InsufficientCoinBalance"}}})
        with pytest.raises(LedgerExecutionError, match="InsufficientCoinBalance"):
            await adapter.create_off_ramp_transaction(TokenType.SUI, Decimal("1"), {}, "SWF_OFF_4")

    @pytest.mark.asyncio
    async def test_no_approver_attached(self):
        adapter = SuiLedgerAdapter(rpc_url="https://fullnode.test")
        with pytest.raises(LedgerExecutionError):
            await adapter.create_on_ramp_transaction(TokenType.SUI, Decimal("1"), "0xabc", "SWF_ON_1")


class TestTreasuryBalance:
    """Treasury object reads"""

    @pytest.mark.asyncio
    async def test_reads_token_fields(self):
        adapter = adapter_with(rpc_result={"data": {"content": {"fields": {
            "available_balance": "950000000000",
            "locked_balance": "50000000000",
            "usdc_available_balance": "4800000000",
        }}}})

        sui = await adapter.get_treasury_balance(TokenType.SUI)
        usdc = await adapter.get_treasury_balance(TokenType.USDC)

        assert sui["availableBalance"] == Decimal("950")
        assert sui["balance"] == Decimal("1000")
        assert usdc["availableBalance"] == Decimal("4800")
        assert usdc["lockedBalance"] == Decimal("0")

    @pytest.mark.asyncio
    async def test_missing_field_is_error(self):
        adapter = adapter_with(rpc_result={"data": {"content": {"fields": {"available_balance": "1"}}}})
        with pytest.raises(LedgerExecutionError):
            await adapter.get_treasury_balance(TokenType.USDT)

    @pytest.mark.asyncio
    async def test_missing_object_is_error(self):
        adapter = adapter_with(rpc_result={})
        with pytest.raises(LedgerExecutionError):
            await adapter.get_treasury_balance(TokenType.SUI)

    @pytest.mark.asyncio
    async def test_unconfigured_treasury(self):
        with patch("config.Config.TREASURY_ID", None):
            adapter = SuiLedgerAdapter(rpc_url="https://fullnode.test")
        with pytest.raises(LedgerExecutionError):
            await adapter.get_treasury_balance(TokenType.SUI)

    @pytest.mark.asyncio
    async def test_rpc_network_error(self):
        adapter = SuiLedgerAdapter(rpc_url="https://fullnode.test", treasury_id="0xTREASURY")
        with patch("aiohttp.ClientSession", side_effect=aiohttp.ClientConnectionError("refused")):
            with pytest.raises(LedgerExecutionError, match="unreachable"):
                await adapter.get_treasury_balance(TokenType.SUI)


class TestSimulatedLedger:
    @pytest.mark.asyncio
    async def test_on_ramp_draws_down_treasury(self):
        adapter = SimulatedLedgerAdapter(balances={"SUI": Decimal("100")})
        settlement = await adapter.create_on_ramp_transaction(TokenType.SUI, Decimal("5"), "0xabc", "SWF_ON_2")

        assert settlement.settlement_ref.startswith("SIM_")
        assert (await adapter.get_treasury_balance(TokenType.SUI))["availableBalance"] == Decimal("95")
