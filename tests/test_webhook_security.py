"""
Tests for Paystack webhook signature verification
"""

import pytest
from unittest.mock import patch

from services.webhook_security_service import (
    INVALID_SIGNATURE,
    MISSING_SIGNATURE,
    WebhookSecurityService,
    WebhookSignatureError,
)

SECRET = "sk_test_signing"
BODY = b'{"event":"charge.success","data":{"reference":"SWF_ON_1","amount":30000000}}'


def test_valid_signature_passes():
    signature = WebhookSecurityService.compute_paystack_signature(BODY, SECRET)
    assert len(signature) == 128
    WebhookSecurityService.verify_paystack_signature(BODY, signature, SECRET)


def test_uppercase_signature_accepted():
    signature = WebhookSecurityService.compute_paystack_signature(BODY, SECRET).upper()
    WebhookSecurityService.verify_paystack_signature(BODY, f" {signature} ", SECRET)


@pytest.mark.parametrize("signature", [None, "", "   "])
def test_missing_signature(signature):
    with pytest.raises(WebhookSignatureError) as exc_info:
        WebhookSecurityService.verify_paystack_signature(BODY, signature, SECRET)
    assert str(exc_info.value) == MISSING_SIGNATURE


def test_tampered_body_rejected():
    signature = WebhookSecurityService.compute_paystack_signature(BODY, SECRET)
    with pytest.raises(WebhookSignatureError) as exc_info:
        WebhookSecurityService.verify_paystack_signature(BODY.replace(b"30000000", b"90000000"), signature, SECRET)
    assert str(exc_info.value) == INVALID_SIGNATURE


def test_wrong_secret_rejected():
    signature = WebhookSecurityService.compute_paystack_signature(BODY, "sk_test_other")
    with pytest.raises(WebhookSignatureError):
        WebhookSecurityService.verify_paystack_signature(BODY, signature, SECRET)


def test_configured_secret_used_by_default():
    signature = WebhookSecurityService.compute_paystack_signature(BODY, SECRET)
    with patch("config.Config.PAYSTACK_SECRET_KEY", SECRET):
        WebhookSecurityService.verify_paystack_signature(BODY, signature)


def test_unconfigured_secret_rejects_everything():
    signature = WebhookSecurityService.compute_paystack_signature(BODY, SECRET)
    with patch("config.Config.PAYSTACK_SECRET_KEY", None):
        with pytest.raises(WebhookSignatureError) as exc_info:
            WebhookSecurityService.verify_paystack_signature(BODY, signature)
    assert str(exc_info.value) == INVALID_SIGNATURE
