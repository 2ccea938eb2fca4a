"""
Tests for the emergency pause switch and the audit trail it writes
"""

import pytest

from database import managed_session
from models import AuditLog
from services.system_control_service import SystemControlService


@pytest.fixture
def control():
    return SystemControlService()


def test_not_paused_by_default(control):
    assert control.pause_state() == (False, None)
    assert control.get_status()["systemPaused"] is False


def test_pause_and_resume(control):
    status = control.pause("  Paystack outage  ", admin="0xadmin")

    assert status["systemPaused"] is True
    assert status["pauseReason"] == "Paystack outage"
    assert status["pausedBy"] == "0xadmin"
    assert control.pause_state() == (True, "Paystack outage")

    resumed = control.resume(admin="0xother")

    assert resumed["systemPaused"] is False
    assert resumed["pauseReason"] is None
    assert resumed["resumedBy"] == "0xother"
    assert control.pause_state() == (False, None)


@pytest.mark.parametrize("reason", ["", "   ", None])
def test_pause_requires_reason(control, reason):
    with pytest.raises(ValueError):
        control.pause(reason, admin="0xadmin")
    assert control.pause_state() == (False, None)


def test_pause_changes_are_audited(control):
    control.pause("maintenance", admin="0xadmin")
    control.resume(admin="0xadmin")

    with managed_session() as session:
        entries = [(row.action, row.actor, row.details) for row in session.query(AuditLog).order_by(AuditLog.id)]

    assert entries == [
        ("system_paused", "0xadmin", {"reason": "maintenance"}),
        ("system_resumed", "0xadmin", {"previous_reason": "maintenance"}),
    ]
