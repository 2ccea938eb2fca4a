"""
Swap and admin HTTP API

User-facing: quote checks, ON_RAMP registration, transaction and transfer status.
Admin-facing: transaction limits, transaction listing and stats, treasury
balances and the emergency pause switch.

OFF_RAMP execution needs the user's wallet approval mid-flight, so it is driven
in-process by the wallet session through SwapOrchestrator, not from here.
"""

import hmac
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Request, Depends, HTTPException, Query, Header
from fastapi.responses import JSONResponse

from config import Config
from models import SwapDirection, TokenType, TransactionStatus
from services.balance_guard import BalanceGuard
from services.paystack_service import PaymentRailError, get_payment_rail
from services.swap_orchestrator import SwapOrchestrator, SwapRequest
from services.system_control_service import get_system_control_service
from services.transaction_ledger import get_transaction_ledger
from services.transaction_limits_service import (
    LimitsConfigurationError, get_transaction_limits_service,
)
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_balance_guard() -> BalanceGuard:
    return BalanceGuard()


def get_swap_orchestrator() -> SwapOrchestrator:
    return SwapOrchestrator()


def require_admin(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> str:
    """Admin gate; open when ADMIN_API_TOKEN is not configured"""
    if not Config.ADMIN_API_TOKEN:
        return "admin"
    if not x_admin_token or not hmac.compare_digest(x_admin_token, Config.ADMIN_API_TOKEN):
        logger.warning("🚨 ADMIN_AUTH_FAILED: invalid or missing X-Admin-Token")
        raise HTTPException(status_code=401, detail="Admin authentication required")
    return "admin"


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _parse_enum(enum_cls, value, name: str):
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported {name}: {value}")


# ----------------------------------------------------------------------
# Swaps
# ----------------------------------------------------------------------

@router.post("/swaps/quote-check")
async def quote_check(request: Request, limits=Depends(get_transaction_limits_service)):
    """Validate amounts against the current limits without creating anything"""
    body = await _json_body(request)
    transaction_type = body.get("transactionType") or body.get("direction")
    token_type = body.get("tokenType")
    amount = body.get("amount")
    if not transaction_type or not token_type or amount is None:
        return JSONResponse(
            content={"success": False, "error": "Transaction type, token type, and amount are required"},
            status_code=400,
        )

    validation = limits.validate(transaction_type, token_type, amount, body.get("nairaAmount"),
                                  require_fiat=False)
    return {"success": True, "validation": validation.to_dict()}


@router.post("/swaps/on-ramp")
async def register_on_ramp(request: Request, orchestrator=Depends(get_swap_orchestrator)):
    """Register an ON_RAMP swap and return payment instructions"""
    body = await _json_body(request)

    token_amount = MonetaryDecimal.parse_positive(body.get("tokenAmount"), "tokenAmount")
    fiat_amount = MonetaryDecimal.parse_positive(body.get("nairaAmount"), "nairaAmount")
    if token_amount is None or fiat_amount is None:
        raise HTTPException(status_code=400, detail="tokenAmount and nairaAmount must be positive numbers")

    exchange_rate = body.get("exchangeRate")
    swap_request = SwapRequest(
        direction=SwapDirection.ON_RAMP,
        token_type=_parse_enum(TokenType, body.get("tokenType"), "token type"),
        token_amount=token_amount,
        fiat_amount=fiat_amount,
        counterparty_address=body.get("recipientAddress") or "",
        exchange_rate=Decimal(str(exchange_rate)) if exchange_rate is not None else None,
        payment_source={
            "account_number": body.get("paymentSourceAccount"),
            "account_name": body.get("paymentSourceName"),
        },
    )

    outcome = await orchestrator.submit(swap_request)
    if outcome.payment_instructions is None:
        status_code = 400 if outcome.transaction is None else 422
        return JSONResponse(content={"success": False, **outcome.to_dict()}, status_code=status_code)
    return {"success": True, **outcome.to_dict()}


@router.get("/swaps/{transaction_id}")
async def get_swap(transaction_id: str, ledger=Depends(get_transaction_ledger)):
    record = ledger.get(transaction_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"success": True, "transaction": record.to_dict()}


@router.get("/transfers/{transfer_id}/status")
async def get_transfer_status(transfer_id: str, payment_rail=Depends(get_payment_rail),
                              ledger=Depends(get_transaction_ledger)):
    """Live transfer status from the payment rail, with the matching transaction if any"""
    try:
        status = await payment_rail.get_transfer_status(transfer_id)
    except PaymentRailError as e:
        logger.error(f"❌ TRANSFER_STATUS_LOOKUP_FAILED: {transfer_id}: {e}")
        return JSONResponse(
            content={"success": False, "error": f"Unable to fetch transfer status: {e}"},
            status_code=502,
        )

    record = ledger.get_by_transfer_id(transfer_id)
    return {
        "success": True,
        "transferId": transfer_id,
        "status": status.value,
        "transactionId": record.id if record else None,
        "transactionStatus": record.status if record else None,
    }


# ----------------------------------------------------------------------
# Admin: transaction limits
# ----------------------------------------------------------------------

@router.get("/admin/transaction-limits")
async def get_transaction_limits(admin=Depends(require_admin), limits=Depends(get_transaction_limits_service)):
    return {"success": True, "limits": limits.get_limits().to_dict()}


@router.put("/admin/transaction-limits")
async def update_transaction_limits(request: Request, admin=Depends(require_admin),
                                    limits=Depends(get_transaction_limits_service)):
    """Replace the limits configuration, toggle it, or reset it to defaults"""
    body = await _json_body(request)
    updated_by = body.get("updatedBy") or admin

    try:
        if body.get("action") == "reset":
            stored = limits.reset_to_defaults(updated_by)
        elif body.get("limits") is None and "isActive" in body:
            stored = limits.set_active(bool(body["isActive"]), updated_by)
        elif body.get("limits") is None:
            return JSONResponse(content={"success": False, "error": "Limits data is required"}, status_code=400)
        else:
            stored = limits.update_limits(body["limits"], updated_by)
    except LimitsConfigurationError as e:
        return JSONResponse(
            content={"success": False, "error": "Invalid limits data", "details": e.errors},
            status_code=400,
        )

    return {"success": True, "limits": stored.to_dict()}


@router.post("/admin/transaction-limits/validate")
async def validate_against_limits(request: Request, admin=Depends(require_admin),
                                  limits=Depends(get_transaction_limits_service)):
    body = await _json_body(request)
    transaction_type = body.get("transactionType")
    token_type = body.get("tokenType")
    amount = body.get("amount")
    if not transaction_type or not token_type or amount is None:
        return JSONResponse(
            content={"success": False, "error": "Transaction type, token type, and amount are required"},
            status_code=400,
        )
    validation = limits.validate(transaction_type, token_type, amount, body.get("nairaAmount"),
                                  require_fiat=False)
    return {"success": True, "validation": validation.to_dict()}


# ----------------------------------------------------------------------
# Admin: transactions and treasury
# ----------------------------------------------------------------------

@router.get("/admin/transactions")
async def list_transactions(
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    admin=Depends(require_admin),
    ledger=Depends(get_transaction_ledger),
):
    status_filter = _parse_enum(TransactionStatus, status, "status") if status and status != "all" else None
    direction_filter = _parse_enum(SwapDirection, type, "type") if type and type != "all" else None

    records = ledger.list_transactions(status=status_filter, direction=direction_filter, limit=limit)
    return {
        "success": True,
        "count": len(records),
        "transactions": [record.to_dict() for record in records],
    }


@router.get("/admin/transactions/stats")
async def transaction_stats(admin=Depends(require_admin), ledger=Depends(get_transaction_ledger)):
    return {"success": True, "stats": ledger.get_stats()}


@router.get("/admin/treasury/balance")
async def treasury_balance(admin=Depends(require_admin), guard=Depends(get_balance_guard)):
    """Fresh payout and treasury balances, one entry per currency"""
    return {"success": True, "balances": await guard.get_overview()}


# ----------------------------------------------------------------------
# Admin: emergency pause
# ----------------------------------------------------------------------

@router.get("/admin/system/pause")
async def system_pause_status(admin=Depends(require_admin), control=Depends(get_system_control_service)):
    return control.get_status()


@router.post("/admin/system/pause")
async def system_pause(request: Request, admin=Depends(require_admin),
                       control=Depends(get_system_control_service)):
    body = await _json_body(request)
    action = body.get("action")
    admin_address = body.get("adminAddress")

    if not action or not admin_address:
        return JSONResponse(content={"error": "Action and admin address are required"}, status_code=400)

    if action == "pause":
        if not body.get("reason"):
            return JSONResponse(content={"error": "Reason is required for pausing system"}, status_code=400)
        status = control.pause(body["reason"], admin_address)
        return {"success": True, "message": "System paused successfully", **status}

    if action == "resume":
        status = control.resume(admin_address)
        return {"success": True, "message": "System resumed successfully", **status}

    return JSONResponse(content={"error": f"Unknown action: {action}"}, status_code=400)
