"""
Tests for the transaction ledger: monotonic status, compare-and-set writes,
settlement ordering and crash recovery
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from models import (
    SwapDirection, TransactionStatus, FailureCategory, SettlementCheckpoint, TransferStatus,
)
from services.transaction_ledger import (
    StateTransitionError,
    TransactionLedger,
    can_transition,
    generate_payment_reference,
)


@pytest.fixture
def ledger():
    return TransactionLedger()


@pytest.fixture
def off_ramp_tx(make_transaction):
    return make_transaction(direction=SwapDirection.OFF_RAMP, token_amount=Decimal("10"),
                            fiat_amount=Decimal("600000"))


class TestCreation:
    """New records get an id, a unique reference and a PENDING or FAILED status"""

    def test_create_assigns_reference(self, make_transaction, ledger):
        record = make_transaction()
        assert record.status == TransactionStatus.PENDING.value
        assert record.payment_reference.startswith("SWF_ON_")
        assert ledger.get_by_reference(record.payment_reference).id == record.id

    def test_references_are_unique(self):
        references = {generate_payment_reference(SwapDirection.OFF_RAMP) for _ in range(50)}
        assert len(references) == 50

    def test_cannot_create_as_completed(self, make_transaction):
        with pytest.raises(StateTransitionError):
            make_transaction(status=TransactionStatus.COMPLETED)


class TestMonotonicStatus:
    """Status never regresses, whatever the interleaving"""

    @pytest.mark.parametrize("current,new,allowed", [
        (TransactionStatus.PENDING, TransactionStatus.CONFIRMED, True),
        (TransactionStatus.CONFIRMED, TransactionStatus.COMPLETED, True),
        (TransactionStatus.PENDING, TransactionStatus.COMPLETED, True),
        (TransactionStatus.COMPLETED, TransactionStatus.PENDING, False),
        (TransactionStatus.COMPLETED, TransactionStatus.FAILED, False),
        (TransactionStatus.FAILED, TransactionStatus.COMPLETED, False),
        (TransactionStatus.CONFIRMED, TransactionStatus.CANCELLED, False),
    ])
    def test_transition_table(self, current, new, allowed):
        assert can_transition(current, new) is allowed

    def test_completed_is_never_downgraded(self, make_transaction, ledger):
        record = make_transaction()
        assert ledger.transition_status(record.id, TransactionStatus.CONFIRMED)
        assert ledger.transition_status(record.id, TransactionStatus.COMPLETED)

        assert not ledger.transition_status(record.id, TransactionStatus.FAILED)
        assert not ledger.transition_status(record.id, TransactionStatus.CONFIRMED)
        assert ledger.get(record.id).status == TransactionStatus.COMPLETED.value

    def test_late_write_is_dropped(self, make_transaction, ledger):
        """A stale writer loses to whoever advanced the record first"""
        record = make_transaction()
        stale_view = ledger.get(record.id)

        assert ledger.transition_status(record.id, TransactionStatus.COMPLETED)
        assert stale_view.status == TransactionStatus.PENDING.value
        assert not ledger.transition_status(
            stale_view.id, TransactionStatus.FAILED, failure_reason="late failure"
        )

        current = ledger.get(record.id)
        assert current.status == TransactionStatus.COMPLETED.value
        assert current.failure_reason is None

    def test_from_statuses_narrows(self, make_transaction, ledger):
        record = make_transaction()
        ledger.transition_status(record.id, TransactionStatus.CONFIRMED)

        applied = ledger.transition_status(
            record.id, TransactionStatus.FAILED, from_statuses={TransactionStatus.PENDING}
        )
        assert not applied
        assert ledger.get(record.id).status == TransactionStatus.CONFIRMED.value

    def test_version_increments(self, make_transaction, ledger):
        record = make_transaction()
        ledger.transition_status(record.id, TransactionStatus.CONFIRMED)
        assert ledger.get(record.id).version == record.version + 1

    def test_unknown_id(self, ledger):
        assert not ledger.transition_status("missing", TransactionStatus.CONFIRMED)

    def test_unsettable_field_rejected(self, make_transaction, ledger):
        record = make_transaction()
        with pytest.raises(ValueError):
            ledger.transition_status(record.id, TransactionStatus.CONFIRMED, payment_reference="X")


class TestSettlementOrdering:
    """A payout can only be recorded after the ledger settlement"""

    def test_payout_before_ledger_refused(self, off_ramp_tx, ledger):
        with pytest.raises(StateTransitionError):
            ledger.record_payout(off_ramp_tx.id, "RCP_1", "TRF_1", TransferStatus.PENDING)

        record = ledger.get(off_ramp_tx.id)
        assert record.payout_transfer_id is None
        assert record.checkpoint == SettlementCheckpoint.CREATED.value

    def test_settlement_then_payout(self, off_ramp_tx, ledger):
        assert ledger.record_ledger_settlement(off_ramp_tx.id, "0xDIGEST")
        assert ledger.record_payout(off_ramp_tx.id, "RCP_1", "TRF_1", TransferStatus.PENDING)

        record = ledger.get(off_ramp_tx.id)
        assert record.checkpoint == SettlementCheckpoint.PAYOUT_INITIATED.value
        assert record.ledger_settled_at <= record.payout_initiated_at
        assert ledger.get_by_transfer_id("TRF_1").id == off_ramp_tx.id

    def test_settlement_recorded_once(self, off_ramp_tx, ledger):
        assert ledger.record_ledger_settlement(off_ramp_tx.id, "0xFIRST")
        assert not ledger.record_ledger_settlement(off_ramp_tx.id, "0xSECOND")
        assert ledger.get(off_ramp_tx.id).ledger_settlement_ref == "0xFIRST"

    def test_second_payout_ignored(self, off_ramp_tx, ledger):
        ledger.record_ledger_settlement(off_ramp_tx.id, "0xDIGEST")
        ledger.record_payout(off_ramp_tx.id, "RCP_1", "TRF_1", TransferStatus.PENDING)
        assert not ledger.record_payout(off_ramp_tx.id, "RCP_1", "TRF_2", TransferStatus.PENDING)
        assert ledger.get(off_ramp_tx.id).payout_transfer_id == "TRF_1"


class TestStrandedSettlements:
    """Crash between ledger settlement and payout is flagged, never resumed"""

    def test_stranded_settlement_flagged(self, off_ramp_tx, ledger):
        settled_at = datetime.now(timezone.utc) - timedelta(hours=1)
        ledger.record_ledger_settlement(off_ramp_tx.id, "0xDIGEST", settled_at=settled_at)

        flagged = ledger.flag_stranded_settlements(older_than=timedelta(minutes=15))

        assert flagged == [off_ramp_tx.id]
        record = ledger.get(off_ramp_tx.id)
        assert record.status == TransactionStatus.FAILED.value
        assert record.failure_category == FailureCategory.PAYMENT_RAIL_AFTER_LEDGER.value
        assert record.requires_manual_reconciliation

    def test_recent_settlement_left_alone(self, off_ramp_tx, ledger):
        ledger.record_ledger_settlement(off_ramp_tx.id, "0xDIGEST")
        assert ledger.flag_stranded_settlements(older_than=timedelta(minutes=15)) == []
        assert ledger.get(off_ramp_tx.id).status == TransactionStatus.PENDING.value

    def test_paid_out_settlement_not_stranded(self, off_ramp_tx, ledger):
        settled_at = datetime.now(timezone.utc) - timedelta(hours=1)
        ledger.record_ledger_settlement(off_ramp_tx.id, "0xDIGEST", settled_at=settled_at)
        ledger.record_payout(off_ramp_tx.id, "RCP_1", "TRF_1", TransferStatus.PENDING)
        assert ledger.find_stranded_settlements(older_than=timedelta(minutes=15)) == []


class TestAdminQueries:
    """Listing and statistics"""

    def test_list_filters(self, make_transaction, ledger):
        on_ramp = make_transaction()
        off_ramp = make_transaction(direction=SwapDirection.OFF_RAMP)
        ledger.transition_status(off_ramp.id, TransactionStatus.COMPLETED)

        assert [r.id for r in ledger.list_transactions(direction=SwapDirection.ON_RAMP)] == [on_ramp.id]
        assert [r.id for r in ledger.list_transactions(status=TransactionStatus.COMPLETED)] == [off_ramp.id]
        assert len(ledger.list_transactions(limit=1)) == 1

    def test_stats(self, make_transaction, ledger):
        completed = make_transaction(fiat_amount=Decimal("250000"))
        ledger.transition_status(completed.id, TransactionStatus.COMPLETED)
        make_transaction()
        failed = make_transaction()
        ledger.transition_status(failed.id, TransactionStatus.FAILED, requires_manual_reconciliation=True)

        stats = ledger.get_stats()
        assert stats["total"] == 3
        assert stats["byStatus"]["COMPLETED"] == 1
        assert stats["byStatus"]["PENDING"] == 1
        assert Decimal(stats["dailyVolumeNgn"]) == Decimal("250000")
        assert stats["requiresManualReconciliation"] == 1
