"""
Webhook Security Service
Authenticates payment-rail notifications before any business data is read.
"""

import hashlib
import hmac
import logging
from typing import Optional

from config import Config

logger = logging.getLogger(__name__)

MISSING_SIGNATURE = "Missing signature"
INVALID_SIGNATURE = "Invalid signature"


class WebhookSignatureError(Exception):
    """Notification failed authentication; the message is safe to return to the caller"""
    pass


class WebhookSecurityService:
    """HMAC verification for inbound webhooks"""

    @staticmethod
    def compute_paystack_signature(raw_body: bytes, secret: str) -> str:
        """Hex HMAC-SHA512 of the raw request body"""
        return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()

    @classmethod
    def verify_paystack_signature(cls, raw_body: bytes, signature: Optional[str],
                                  secret: Optional[str] = None) -> None:
        """Raise WebhookSignatureError unless signature matches the raw body bytes"""
        if not signature or not signature.strip():
            logger.error("🚨 WEBHOOK_SIGNATURE_MISSING: Paystack notification without signature header")
            raise WebhookSignatureError(MISSING_SIGNATURE)

        secret = secret or Config.PAYSTACK_SECRET_KEY
        if not secret:
            logger.critical("🚨 WEBHOOK_SECRET_NOT_CONFIGURED: rejecting Paystack notification")
            raise WebhookSignatureError(INVALID_SIGNATURE)

        expected_signature = cls.compute_paystack_signature(raw_body, secret)
        if not hmac.compare_digest(signature.strip().lower(), expected_signature):
            logger.error("🚨 WEBHOOK_SIGNATURE_INVALID: Paystack signature mismatch")
            raise WebhookSignatureError(INVALID_SIGNATURE)
