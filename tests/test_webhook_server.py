"""
Tests for the application entry point: health checks and crash recovery at startup
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient

from models import SwapDirection, TransactionStatus
from services.transaction_ledger import get_transaction_ledger
from webhook_server import app, recover_stranded_settlements


def test_root_and_health():
    with TestClient(app) as client:
        assert "running" in client.get("/").json()["message"]

        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "healthy"
        assert health.json()["activePollers"] == 0


def test_health_reports_degraded_database():
    with TestClient(app) as client:
        with patch("webhook_server.test_connection", return_value=False):
            response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["database"] == "unavailable"


def test_startup_flags_stranded_settlements(make_transaction):
    ledger = get_transaction_ledger()
    record = make_transaction(direction=SwapDirection.OFF_RAMP, token_amount=Decimal("10"),
                              fiat_amount=Decimal("600000"))
    ledger.record_ledger_settlement(record.id, "0xDIGEST",
                                    settled_at=datetime.now(timezone.utc) - timedelta(hours=2))

    with TestClient(app):
        pass

    recovered = ledger.get(record.id)
    assert recovered.status == TransactionStatus.FAILED.value
    assert recovered.requires_manual_reconciliation


def test_recovery_scan_failure_is_contained():
    with patch("webhook_server.get_transaction_ledger", side_effect=RuntimeError("db down")):
        assert recover_stranded_settlements() == []
