"""
Paystack Webhook Handler
Inbound payment-rail notifications for ON_RAMP charges and OFF_RAMP payouts.

Response contract the rail relies on for retries:
    200 {"success": true}                     handled, duplicate or ignored
    400 {"error": "Missing signature"}        permanent, never retried usefully
    400 {"error": "Invalid signature"}
    500 {"error": "Webhook processing failed"} transient, safe to retry
"""

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse

from services.reconciliation_service import ReconciliationService, get_reconciliation_service
from services.webhook_security_service import WebhookSecurityService, WebhookSignatureError

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADERS = ("x-signature", "x-paystack-signature")


def _signature_from(request: Request):
    for header in SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


@router.post("/webhook/paystack")
async def paystack_webhook(
    request: Request,
    reconciliation: ReconciliationService = Depends(get_reconciliation_service),
):
    """Authenticate on the raw body, then reconcile the event"""
    # Signature is computed over the exact bytes received
    raw_body = await request.body()
    client_ip = request.client.host if request.client else "unknown"

    try:
        WebhookSecurityService.verify_paystack_signature(raw_body, _signature_from(request))
    except WebhookSignatureError as e:
        logger.error(f"🚨 PAYSTACK_WEBHOOK_REJECTED from {client_ip}: {e}")
        return JSONResponse(content={"error": str(e)}, status_code=400)

    try:
        payload = json.loads(raw_body)
        result = await reconciliation.process_event(payload)
        logger.info(
            f"✅ PAYSTACK_WEBHOOK_DONE: {result.action} tx={result.transaction_id} "
            f"({result.detail or '-'})"
        )
        return JSONResponse(content={"success": True}, status_code=200)
    except Exception as e:
        logger.error(f"❌ PAYSTACK_WEBHOOK_FAILED: {e}", exc_info=True)
        return JSONResponse(content={"error": "Webhook processing failed"}, status_code=500)


@router.get("/webhook/paystack")
async def paystack_webhook_health():
    """Liveness probe for the Paystack webhook endpoint"""
    return {
        "status": "healthy",
        "service": "paystack-webhook",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
