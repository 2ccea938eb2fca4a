"""
Paystack Service - NGN payout rail

Creates transfer recipients, initiates transfers keyed by the swap's payment
reference, looks up transfer status and reads the payout balance.
Every raw transfer status is normalized through normalize_transfer_status().
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, Protocol

import aiohttp

from config import Config
from models import TransferStatus
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class PaymentRailError(Exception):
    """Raised when the payment rail rejects a request or cannot be reached"""

    def __init__(self, message: str, status_code: Optional[int] = None, response_data: Optional[Dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


# Case-insensitive raw status -> normalized bucket
TRANSFER_STATUS_TABLE = {
    "success": TransferStatus.SUCCESS,
    "successful": TransferStatus.SUCCESS,
    "pending": TransferStatus.PENDING,
    "processing": TransferStatus.PENDING,
    "queued": TransferStatus.PENDING,
    "received": TransferStatus.PENDING,
    "otp": TransferStatus.ACTION_REQUIRED,
    "failed": TransferStatus.FAILED,
    "reversed": TransferStatus.FAILED,
    "abandoned": TransferStatus.FAILED,
    "blocked": TransferStatus.FAILED,
    "rejected": TransferStatus.FAILED,
}

ACCEPTED_TRANSFER_STATUSES = frozenset({
    TransferStatus.SUCCESS,
    TransferStatus.PENDING,
    TransferStatus.ACTION_REQUIRED,
})


def normalize_transfer_status(raw_status) -> TransferStatus:
    """Map any raw transfer status onto pending/success/failed/action_required"""
    key = str(raw_status or "").strip().lower()
    normalized = TRANSFER_STATUS_TABLE.get(key)
    if normalized is None:
        logger.warning(f"⚠️ TRANSFER_STATUS_ANOMALY: unrecognized status {raw_status!r} - treating as failed")
        return TransferStatus.FAILED
    return normalized


@dataclass
class TransferResult:
    """Outcome of a transfer initiation"""
    transfer_id: str
    status: TransferStatus
    raw_status: str
    reference: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.status in ACCEPTED_TRANSFER_STATUSES


class PaymentRailAdapter(Protocol):
    """What the orchestrator and balance guard need from a payout rail"""

    async def create_recipient(self, account_number: str, bank_code: str, account_name: str) -> str:
        ...

    async def initiate_transfer(
        self, recipient_code: str, amount_ngn: Decimal, reason: str, idempotency_key: str
    ) -> TransferResult:
        ...

    async def get_transfer_status(self, transfer_id: str) -> TransferStatus:
        ...

    async def get_balance(self, currency: str = "NGN") -> Dict[str, Any]:
        ...


class PaystackService:
    """Paystack API client for NGN payouts"""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.secret_key = secret_key or Config.PAYSTACK_SECRET_KEY
        self.base_url = (base_url or Config.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.PAYSTACK_TIMEOUT_SECONDS

        if not self.secret_key:
            logger.warning("Paystack secret key not configured - payout rail unavailable")

    def is_available(self) -> bool:
        """Check if Paystack is properly configured"""
        return bool(self.secret_key)

    async def _make_request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict[str, Any]:
        """Authenticated request; returns the response 'data' member or raises PaymentRailError"""
        if not self.is_available():
            raise PaymentRailError("Paystack secret key not configured")

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.request(method, url, headers=headers, json=data, timeout=timeout) as response:
                    response_data = await response.json(content_type=None)

                    if response.status in (200, 201) and response_data and response_data.get("status"):
                        logger.info(f"Paystack API success: {method} {endpoint}")
                        return response_data.get("data") or {}

                    message = (response_data or {}).get("message") or f"HTTP {response.status}"
                    if response.status == 401:
                        logger.error("🔑 Paystack authentication failed - check PAYSTACK_SECRET_KEY")
                    else:
                        logger.error(f"Paystack API error: {response.status} - {response_data}")
                    raise PaymentRailError(message, status_code=response.status, response_data=response_data)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error_detail = str(e) or type(e).__name__
            if isinstance(e, asyncio.TimeoutError):
                error_context = f"Timeout connecting to Paystack API ({self.base_url})"
            else:
                error_context = f"Network error accessing Paystack API ({self.base_url})"
            logger.error(f"Paystack network error: {error_context} - {error_detail}")
            raise PaymentRailError(f"{error_context}: {error_detail}") from e

    async def create_recipient(self, account_number: str, bank_code: str, account_name: str) -> str:
        """Create an NGN bank transfer recipient and return its recipient code"""
        payload = {
            "type": "nuban",
            "name": account_name,
            "account_number": account_number,
            "bank_code": bank_code,
            "currency": Config.PAYSTACK_CURRENCY,
        }
        data = await self._make_request("POST", "/transferrecipient", payload)
        recipient_code = data.get("recipient_code")
        if not recipient_code:
            raise PaymentRailError("Paystack did not return a recipient code", response_data=data)
        logger.info(f"🏦 PAYSTACK_RECIPIENT_CREATED: {recipient_code} for account ****{account_number[-4:]}")
        return recipient_code

    async def initiate_transfer(
        self, recipient_code: str, amount_ngn: Decimal, reason: str, idempotency_key: str
    ) -> TransferResult:
        """Initiate a transfer from the balance; idempotency_key is sent as the transfer reference"""
        payload = {
            "source": "balance",
            "amount": MonetaryDecimal.to_kobo(amount_ngn),
            "recipient": recipient_code,
            "reason": reason,
            "reference": idempotency_key,
        }
        data = await self._make_request("POST", "/transfer", payload)
        transfer_id = data.get("transfer_code") or str(data.get("id") or "")
        if not transfer_id:
            raise PaymentRailError("Paystack did not return a transfer code", response_data=data)

        raw_status = data.get("status", "")
        result = TransferResult(
            transfer_id=transfer_id,
            status=normalize_transfer_status(raw_status),
            raw_status=raw_status,
            reference=data.get("reference", idempotency_key),
            raw=data,
        )
        logger.info(f"💸 PAYSTACK_TRANSFER_INITIATED: {transfer_id} ref={idempotency_key} status={raw_status}")
        return result

    async def get_transfer_status(self, transfer_id: str) -> TransferStatus:
        data = await self._make_request("GET", f"/transfer/{transfer_id}")
        return normalize_transfer_status(data.get("status"))

    async def get_balance(self, currency: str = "NGN") -> Dict[str, Any]:
        """Payout balance for a currency, amounts converted from kobo"""
        data = await self._make_request("GET", "/balance")
        entries = data if isinstance(data, list) else [data]
        for entry in entries:
            if str(entry.get("currency", "")).upper() == currency.upper():
                balance = MonetaryDecimal.from_kobo(entry.get("balance", 0))
                return {
                    "currency": currency.upper(),
                    "balance": balance,
                    "availableBalance": balance,
                    "lockedBalance": Decimal("0"),
                    "lastUpdated": datetime.now(timezone.utc),
                }
        raise PaymentRailError(f"Paystack returned no {currency} balance")


class SimulatedPaymentRail:
    """Payout rail used only when SIMULATION_MODE is explicitly enabled"""

    def __init__(self, balance: Optional[Decimal] = None):
        self.balance = balance if balance is not None else Config.SIMULATED_FIAT_BALANCE
        self.transfers: Dict[str, TransferResult] = {}

    async def create_recipient(self, account_number: str, bank_code: str, account_name: str) -> str:
        recipient_code = f"RCP_SIM_{uuid.uuid4().hex[:12]}"
        logger.warning(f"🧪 SIMULATION: recipient {recipient_code} for account ****{account_number[-4:]}")
        return recipient_code

    async def initiate_transfer(
        self, recipient_code: str, amount_ngn: Decimal, reason: str, idempotency_key: str
    ) -> TransferResult:
        # Same reference returns the same transfer
        if idempotency_key in self.transfers:
            return self.transfers[idempotency_key]
        result = TransferResult(
            transfer_id=f"TRF_SIM_{uuid.uuid4().hex[:12]}",
            status=TransferStatus.SUCCESS,
            raw_status="success",
            reference=idempotency_key,
        )
        self.transfers[idempotency_key] = result
        logger.warning(f"🧪 SIMULATION: transfer {result.transfer_id} of ₦{amount_ngn} ref={idempotency_key}")
        return result

    async def get_transfer_status(self, transfer_id: str) -> TransferStatus:
        for result in self.transfers.values():
            if result.transfer_id == transfer_id:
                return result.status
        return TransferStatus.PENDING

    async def get_balance(self, currency: str = "NGN") -> Dict[str, Any]:
        return {
            "currency": currency.upper(),
            "balance": self.balance,
            "availableBalance": self.balance,
            "lockedBalance": Decimal("0"),
            "lastUpdated": datetime.now(timezone.utc),
        }


_payment_rail = None


def get_payment_rail():
    """Shared payout rail; simulated only when SIMULATION_MODE is on"""
    global _payment_rail
    if _payment_rail is None:
        if Config.SIMULATION_MODE:
            logger.warning("🧪 SIMULATION_MODE: using simulated Paystack rail")
            _payment_rail = SimulatedPaymentRail()
        else:
            _payment_rail = PaystackService()
    return _payment_rail
