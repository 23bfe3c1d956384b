"""Tests for the Celery activity wrappers.

The transaction helper is replaced so activities run against a mock session;
each test checks how results and errors are shaped for the workflow.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.models.clawback import Clawback, ClawbackRecovery, RecoveryStatus
from app.models.commission import BatchStatus, CommissionBatch
from app.models.disbursement import Disbursement, DisbursementMode, DisbursementStatus
from app.models.suspense import SuspenseAccount, SuspenseReason, SuspenseStatus
from app.services.commission.errors import DuplicateBatchError, TransientError
from app.services.integrations.accounting_client import VoucherResult
from app.tasks import commission_tasks

NOW = datetime(2025, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def db():
    session = MagicMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    return session


@pytest.fixture(autouse=True)
def error_log(db):
    async def run(work):
        return await work(db)

    with patch.object(commission_tasks, "_in_transaction", run), \
         patch.object(commission_tasks, "log_error_standalone", AsyncMock()) as log:
        yield log


def _batch(**overrides):
    data = dict(
        id=9, batch_number="BATCH_202501_001", month=1, year=2025, status=BatchStatus.INITIATED,
        total_policies=0, processed_records=0, failed_records=0, progress_percentage=0,
        triggered_by="SYSTEM_SCHEDULER", started_at=NOW, sla_deadline=NOW + timedelta(hours=6),
        sla_breached=False,
    )
    data.update(overrides)
    return CommissionBatch(**data)


# ── execute_activity ──────────────────────────────

class TestExecuteActivity:
    def test_success(self):
        with patch.object(commission_tasks.batch_service, "start_batch", AsyncMock(return_value=_batch())):
            result = commission_tasks.validate_input({"month": 1, "year": 2025, "workflow_id": "wf-1"})
        assert result == {
            "status": "ok", "batch_id": 9, "batch_number": "BATCH_202501_001", "batch_status": "INITIATED",
        }

    def test_invalid_payload_is_validation_failure(self, error_log):
        result = commission_tasks.validate_input({"month": 0, "year": 2025})
        assert result["status"] == "failed"
        assert result["error"]["category"] == "validation"
        error_log.assert_not_called()

    def test_business_error_returned_and_logged(self, error_log):
        error = DuplicateBatchError("an active batch already exists for 01/2025")
        with patch.object(commission_tasks.batch_service, "start_batch", AsyncMock(side_effect=error)):
            result = commission_tasks.validate_input({"month": 1, "year": 2025, "workflow_id": "wf-2"})
        assert result["status"] == "failed"
        assert result["error"]["error_type"] == "DuplicateBatchError"
        assert error_log.call_args.kwargs["workflow_id"] == "wf-2"

    def test_integrity_error_is_state_conflict(self):
        error = IntegrityError("INSERT", {}, Exception("duplicate key"))
        with patch.object(commission_tasks.batch_service, "start_batch", AsyncMock(side_effect=error)):
            result = commission_tasks.validate_input({"month": 1, "year": 2025})
        assert result["error"]["category"] == "state"
        assert result["error"]["reason"] == "concurrent write conflict"

    def test_transient_error_escapes_for_retry(self):
        with patch.object(commission_tasks.batch_service, "start_batch",
                          AsyncMock(side_effect=TransientError("timeout"))):
            with pytest.raises(TransientError):
                commission_tasks.execute_activity(
                    "validate_input", {"month": 1, "year": 2025},
                    commission_tasks.BatchStartRequest, commission_tasks._start_batch,
                )

    def test_database_outage_becomes_transient(self):
        error = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(commission_tasks.batch_service, "start_batch", AsyncMock(side_effect=error)):
            with pytest.raises(TransientError):
                commission_tasks.execute_activity(
                    "validate_input", {"month": 1, "year": 2025},
                    commission_tasks.BatchStartRequest, commission_tasks._start_batch,
                )


# ── Voucher posting ───────────────────────────────

def _completed(**overrides):
    data = dict(
        id=42, final_statement_id=5, agent_id="AG-1", mode=DisbursementMode.EFT,
        status=DisbursementStatus.COMPLETED, total_gross_commission=Decimal("5000.00"),
        total_tds=Decimal("250.00"), total_net_commission=Decimal("4750.00"),
        version=4, retry_count=0, posted_to_gl=False, voucher_number=None, completed_at=NOW,
    )
    data.update(overrides)
    return Disbursement(**data)


class TestPostDisbursementVoucher:
    def test_posts_once(self):
        accounting = MagicMock()
        accounting.post_voucher = AsyncMock(
            return_value=VoucherResult(voucher_id="V-1", voucher_number="JV-1001", status="POSTED")
        )
        mark = AsyncMock()
        with patch.object(commission_tasks.disbursement_service, "get_disbursement",
                          AsyncMock(return_value=_completed())), \
             patch.object(commission_tasks.disbursement_service, "mark_gl_posted", mark), \
             patch.object(commission_tasks, "AccountingClient", return_value=accounting):
            result = commission_tasks.post_disbursement_voucher({"disbursement_id": 42})

        assert result["voucher_number"] == "JV-1001"
        voucher = accounting.post_voucher.call_args.args[0]
        assert voucher.reference_type == "DISBURSEMENT"
        assert voucher.reference_number == "42"
        mark.assert_awaited_once()

    def test_already_posted(self):
        accounting_cls = MagicMock()
        with patch.object(commission_tasks.disbursement_service, "get_disbursement",
                          AsyncMock(return_value=_completed(posted_to_gl=True, voucher_number="JV-1"))), \
             patch.object(commission_tasks, "AccountingClient", accounting_cls):
            result = commission_tasks.post_disbursement_voucher({"disbursement_id": 42})
        assert result == {"status": "ok", "disbursement_id": 42, "voucher_number": "JV-1"}
        accounting_cls.assert_not_called()

    def test_not_completed(self):
        pending = _completed(status=DisbursementStatus.SENT_TO_BANK)
        with patch.object(commission_tasks.disbursement_service, "get_disbursement",
                          AsyncMock(return_value=pending)):
            result = commission_tasks.post_disbursement_voucher({"disbursement_id": 42})
        assert result["status"] == "failed"
        assert result["error"]["category"] == "state"


def _accounting(voucher_number):
    accounting = MagicMock()
    accounting.post_voucher = AsyncMock(
        return_value=VoucherResult(voucher_id="V-9", voucher_number=voucher_number, status="POSTED")
    )
    return accounting


def _recovery(**overrides):
    data = dict(
        id=11, clawback_id=3, installment_number=2, scheduled_amount=Decimal("250.00"),
        recovered_amount=Decimal("250.00"), recovery_date=NOW, status=RecoveryStatus.COMPLETED,
        retry_count=0, posted_to_gl=False, voucher_number=None,
    )
    data.update(overrides)
    return ClawbackRecovery(**data)


class TestPostClawbackRecoveryVoucher:
    def test_posts_installment_once(self):
        accounting = _accounting("JV-2001")
        mark = AsyncMock()
        clawback = Clawback(id=3, agent_id="AG-1", policy_number="PLI-0001")
        with patch.object(commission_tasks.clawback_service, "get_recovery",
                          AsyncMock(return_value=_recovery())), \
             patch.object(commission_tasks.clawback_service, "get_clawback",
                          AsyncMock(return_value=clawback)), \
             patch.object(commission_tasks.clawback_service, "mark_recovery_gl_posted", mark), \
             patch.object(commission_tasks, "AccountingClient", return_value=accounting):
            result = commission_tasks.post_clawback_recovery_voucher(
                {"clawback_id": 3, "installment_number": 2}
            )

        assert result["voucher_number"] == "JV-2001"
        voucher = accounting.post_voucher.call_args.args[0]
        assert voucher.reference_type == "CLAWBACK"
        assert voucher.reference_number == "3-2"
        assert voucher.total_debit == Decimal("250.00")
        assert mark.call_args.args[2] == "JV-2001"

    def test_already_posted(self):
        accounting_cls = MagicMock()
        posted = _recovery(posted_to_gl=True, voucher_number="JV-7")
        with patch.object(commission_tasks.clawback_service, "get_recovery", AsyncMock(return_value=posted)), \
             patch.object(commission_tasks, "AccountingClient", accounting_cls):
            result = commission_tasks.post_clawback_recovery_voucher(
                {"clawback_id": 3, "installment_number": 2}
            )
        assert result["voucher_number"] == "JV-7"
        accounting_cls.assert_not_called()

    def test_unrecovered_installment_refused(self):
        scheduled = _recovery(status=RecoveryStatus.SCHEDULED, recovered_amount=Decimal("0.00"))
        with patch.object(commission_tasks.clawback_service, "get_recovery", AsyncMock(return_value=scheduled)):
            result = commission_tasks.post_clawback_recovery_voucher(
                {"clawback_id": 3, "installment_number": 2}
            )
        assert result["status"] == "failed"
        assert result["error"]["category"] == "state"

    def test_missing_installment(self):
        with patch.object(commission_tasks.clawback_service, "get_recovery", AsyncMock(return_value=None)):
            result = commission_tasks.post_clawback_recovery_voucher(
                {"clawback_id": 3, "installment_number": 9}
            )
        assert result["status"] == "failed"
        assert result["error"]["error_type"] == "NotFoundError"


def _suspense(**overrides):
    data = dict(
        id=21, agent_id="AG-1", amount=Decimal("450.00"), reason=SuspenseReason.OTHER,
        status=SuspenseStatus.OPEN, suspense_date=NOW, resolution_deadline=NOW + timedelta(days=30),
        posted_to_gl=False, voucher_number=None,
        resolution_posted_to_gl=False, resolution_voucher_number=None,
    )
    data.update(overrides)
    return SuspenseAccount(**data)


class TestPostSuspenseVouchers:
    def test_parking_posted_once(self):
        accounting = _accounting("JV-3001")
        mark = AsyncMock()
        with patch.object(commission_tasks.suspense_service, "get_suspense", AsyncMock(return_value=_suspense())), \
             patch.object(commission_tasks.suspense_service, "mark_gl_posted", mark), \
             patch.object(commission_tasks, "AccountingClient", return_value=accounting):
            result = commission_tasks.post_suspense_voucher({"suspense_id": 21})

        assert result == {"status": "ok", "suspense_id": 21, "voucher_number": "JV-3001"}
        voucher = accounting.post_voucher.call_args.args[0]
        assert voucher.reference_type == "SUSPENSE"
        assert "OTHER" in voucher.narration
        mark.assert_awaited_once()

    def test_parking_replay_skips_accounting(self):
        accounting_cls = MagicMock()
        entry = _suspense(posted_to_gl=True, voucher_number="JV-5")
        with patch.object(commission_tasks.suspense_service, "get_suspense", AsyncMock(return_value=entry)), \
             patch.object(commission_tasks, "AccountingClient", accounting_cls):
            result = commission_tasks.post_suspense_voucher({"suspense_id": 21})
        assert result["voucher_number"] == "JV-5"
        accounting_cls.assert_not_called()

    def test_release_uses_resolved_amount(self):
        accounting = _accounting("JV-3002")
        mark = AsyncMock()
        entry = _suspense(
            status=SuspenseStatus.RESOLVED, resolved_amount=Decimal("400.00"), resolved_date=NOW,
            posted_to_gl=True, voucher_number="JV-3001",
        )
        with patch.object(commission_tasks.suspense_service, "get_suspense", AsyncMock(return_value=entry)), \
             patch.object(commission_tasks.suspense_service, "mark_resolution_gl_posted", mark), \
             patch.object(commission_tasks, "AccountingClient", return_value=accounting):
            result = commission_tasks.post_suspense_resolution_voucher({"suspense_id": 21})

        assert result["voucher_number"] == "JV-3002"
        voucher = accounting.post_voucher.call_args.args[0]
        assert voucher.reference_type == "SUSPENSE_RESOLUTION"
        assert voucher.total_credit == Decimal("400.00")
        mark.assert_awaited_once()

    def test_release_before_parking_refused(self):
        entry = _suspense(status=SuspenseStatus.RESOLVED, resolved_amount=Decimal("450.00"), resolved_date=NOW)
        accounting_cls = MagicMock()
        with patch.object(commission_tasks.suspense_service, "get_suspense", AsyncMock(return_value=entry)), \
             patch.object(commission_tasks, "AccountingClient", accounting_cls):
            result = commission_tasks.post_suspense_resolution_voucher({"suspense_id": 21})
        assert result["status"] == "failed"
        assert result["error"]["category"] == "state"
        accounting_cls.assert_not_called()

    def test_open_entry_has_no_release(self):
        with patch.object(commission_tasks.suspense_service, "get_suspense",
                          AsyncMock(return_value=_suspense(posted_to_gl=True))):
            result = commission_tasks.post_suspense_resolution_voucher({"suspense_id": 21})
        assert result["status"] == "failed"
        assert result["error"]["category"] == "state"


# ── Sweeps ────────────────────────────────────────

class TestSweeps:
    def test_escalate_reports_count(self):
        with patch.object(commission_tasks.suspense_service, "escalate_overdue", AsyncMock(return_value=3)):
            assert commission_tasks.escalate_suspense() == {"status": "ok", "flagged": 3}

    def test_database_outage_is_transient(self):
        error = OperationalError("UPDATE", {}, Exception("gone"))
        with patch.object(commission_tasks.batch_service, "sweep_batch_sla", AsyncMock(side_effect=error)):
            with pytest.raises(TransientError):
                commission_tasks.check_batch_sla.run()
