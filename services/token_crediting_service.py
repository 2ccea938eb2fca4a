"""
Token Crediting Service

Pays out the token side of an ON_RAMP swap once its fiat payment has been
authenticated and matched. Uses the configured crediting endpoint when
TOKEN_CREDITING_URL is set, otherwise the ledger adapter's on-ramp call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any

import aiohttp

from config import Config
from models import TokenType

logger = logging.getLogger(__name__)


class TokenCreditingError(Exception):
    """Token crediting was rejected or could not be confirmed"""
    pass


@dataclass
class CreditResult:
    transaction_hash: str
    token_amount: Decimal
    token_type: str
    raw: Dict[str, Any] = field(default_factory=dict)


class TokenCreditingService:
    """Credits purchased tokens to a user's address"""

    def __init__(self, ledger=None, crediting_url: Optional[str] = None, timeout: Optional[int] = None):
        self.crediting_url = crediting_url if crediting_url is not None else Config.TOKEN_CREDITING_URL
        self.timeout = timeout or Config.TOKEN_CREDITING_TIMEOUT_SECONDS
        self._ledger = ledger

    @property
    def ledger(self):
        if self._ledger is None:
            from services.ledger_adapter import get_ledger_adapter
            self._ledger = get_ledger_adapter()
        return self._ledger

    async def credit_tokens(
        self,
        recipient: str,
        token_amount: Decimal,
        token_type: TokenType,
        transaction_id: str,
        payment_reference: str,
    ) -> CreditResult:
        """Credit tokens for a verified payment; raises TokenCreditingError on failure"""
        if not recipient or token_amount is None or token_amount <= 0:
            raise TokenCreditingError("Invalid token crediting parameters")

        logger.info(
            f"🪙 TOKEN_CREDIT_START: {token_amount} {token_type.value} -> {recipient} "
            f"tx={transaction_id} ref={payment_reference}"
        )

        if self.crediting_url:
            result = await self._credit_via_endpoint(recipient, token_amount, token_type,
                                                     transaction_id, payment_reference)
        else:
            result = await self._credit_via_ledger(recipient, token_amount, token_type, payment_reference)

        logger.info(f"✅ TOKEN_CREDIT_DONE: tx={transaction_id} hash={result.transaction_hash}")
        return result

    async def _credit_via_ledger(self, recipient, token_amount, token_type, payment_reference) -> CreditResult:
        from services.ledger_adapter import LedgerExecutionError

        try:
            settlement = await self.ledger.create_on_ramp_transaction(
                token_type, token_amount, recipient, payment_reference
            )
        except LedgerExecutionError as e:
            raise TokenCreditingError(f"Ledger crediting failed: {e}") from e
        return CreditResult(
            transaction_hash=settlement.settlement_ref,
            token_amount=token_amount,
            token_type=token_type.value,
            raw=settlement.raw,
        )

    async def _credit_via_endpoint(self, recipient, token_amount, token_type,
                                   transaction_id, payment_reference) -> CreditResult:
        payload = {
            "userAddress": recipient,
            "tokenAmount": str(token_amount),
            "tokenType": token_type.value,
            "transactionId": transaction_id,
            "paymentReference": payment_reference,
        }
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.post(self.crediting_url, json=payload, timeout=timeout) as response:
                    response_data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ TOKEN_CREDIT_NETWORK: {type(e).__name__}: {e}")
            raise TokenCreditingError(f"Token crediting endpoint unreachable: {type(e).__name__}") from e

        if response.status != 200 or not (response_data or {}).get("success"):
            error = (response_data or {}).get("error") or f"HTTP {response.status}"
            logger.error(f"❌ TOKEN_CREDIT_REJECTED: tx={transaction_id}: {error}")
            raise TokenCreditingError(error)

        transaction_hash = response_data.get("transactionHash")
        if not transaction_hash:
            raise TokenCreditingError("Token crediting returned no transaction hash")
        return CreditResult(
            transaction_hash=transaction_hash,
            token_amount=token_amount,
            token_type=token_type.value,
            raw=response_data,
        )


_token_crediting_service = None


def get_token_crediting_service() -> TokenCreditingService:
    """Get the shared token crediting service"""
    global _token_crediting_service
    if _token_crediting_service is None:
        _token_crediting_service = TokenCreditingService()
    return _token_crediting_service
