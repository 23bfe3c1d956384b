"""HTTP-level tests: error mapping, batch and history endpoints, inbound webhooks.

The database session and outbound clients are replaced, so no server or
Postgres is needed.
"""

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.database import get_db
from app.main import app
from app.api.webhooks import get_policy_source
from app.models.clawback import Clawback, ClawbackReason, ClawbackStatus, RecoverySchedule
from app.models.commission import (
    BatchStatus,
    CommissionBatch,
    CommissionStatus,
    CommissionTransaction,
    CommissionType,
    ProductType,
)
from app.models.disbursement import Disbursement, DisbursementMode, DisbursementStatus
from app.services.commission.errors import DuplicateBatchError, NotFoundError, TransientError
from app.services.commission.filters import CommissionTransactionFilter
from app.services.integrations.policy_client import PolicyData
from app.services.integrations.webhook_security import sign_payload

SECRET = "whsec_api_test"
NOW = datetime(2025, 2, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    session = MagicMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.get = AsyncMock()
    return session


@pytest.fixture
def client(db):
    async def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    with patch.object(settings, "webhook_secret", SECRET), \
         patch("app.middleware.error_capture.log_error_standalone", AsyncMock()):
        yield TestClient(app)
    app.dependency_overrides.clear()


def _batch(**overrides) -> CommissionBatch:
    data = dict(
        id=1, batch_number="BATCH_202501_001", month=1, year=2025, status=BatchStatus.INITIATED,
        total_policies=0, processed_records=0, failed_records=0, progress_percentage=0,
        triggered_by="SYSTEM_SCHEDULER", workflow_id=None, started_at=NOW,
        sla_deadline=NOW + timedelta(hours=6), sla_breached=False,
    )
    data.update(overrides)
    return CommissionBatch(**data)


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    return body, {"X-Signature": sign_payload(SECRET, body), "Content-Type": "application/json"}


# ── Health & error mapping ────────────────────────

class TestErrorMapping:
    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "healthy"

    def test_not_found_is_404(self, client):
        with patch("app.services.commission.batch.get_batch",
                   AsyncMock(side_effect=NotFoundError("commission batch not found", batch_id=99))):
            resp = client.get("/api/batches/99")
        assert resp.status_code == 404
        assert resp.json()["detail"]["reason"] == "commission batch not found"

    def test_duplicate_batch_is_409(self, client):
        with patch("app.services.commission.batch.start_batch",
                   AsyncMock(side_effect=DuplicateBatchError("an active batch already exists for 01/2025"))):
            resp = client.post("/api/batches", json={"month": 1, "year": 2025})
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["category"] == "state"
        assert detail["error_type"] == "DuplicateBatchError"

    def test_transient_is_503_with_retry_after(self, client):
        with patch("app.services.commission.batch.start_batch",
                   AsyncMock(side_effect=TransientError("database timeout"))):
            resp = client.post("/api/batches", json={"month": 1, "year": 2025})
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "30"

    def test_request_validation_is_422(self, client):
        resp = client.post("/api/batches", json={"month": 13, "year": 2025})
        assert resp.status_code == 422

    def test_start_batch(self, client):
        with patch("app.services.commission.batch.start_batch", AsyncMock(return_value=_batch())):
            resp = client.post("/api/batches", json={"month": 1, "year": 2025})
        assert resp.status_code == 201
        assert resp.json()["batch_number"] == "BATCH_202501_001"
        assert resp.json()["status"] == "INITIATED"


# ── Commission history ────────────────────────────

def _transaction(**overrides) -> CommissionTransaction:
    data = dict(
        id=9, batch_id=1, agent_id="AG-1", policy_number="PLI-0001",
        commission_type=CommissionType.FIRST_YEAR, product_type=ProductType.PLI,
        annualised_premium=Decimal("100000.00"), rate_percentage=Decimal("4.00"),
        gross_commission=Decimal("4000.00"), tds_amount=Decimal("400.00"),
        net_commission=Decimal("3600.00"), disbursed_amount=Decimal("0.00"),
        commission_date=date(2025, 1, 31), status=CommissionStatus.CALCULATED,
    )
    data.update(overrides)
    return CommissionTransaction(**data)


class TestCommissionHistory:
    def test_search_paginates(self, client):
        search = AsyncMock(return_value=([_transaction()], 51))
        with patch("app.services.commission.batch.search_commission_history", search):
            resp = client.get("/api/commissions/history", params={
                "agent_id": "AG-1", "commission_type": "FIRST_YEAR",
                "from_date": "2025-01-01", "page": 2, "limit": 25,
            })

        assert resp.status_code == 200
        body = resp.json()
        assert body["total_count"] == 51
        assert body["total_pages"] == 3
        assert body["page"] == 2
        assert body["transactions"][0]["policy_number"] == "PLI-0001"
        assert body["transactions"][0]["final_statement_id"] is None
        criteria = search.call_args.args[1]
        assert isinstance(criteria, CommissionTransactionFilter)
        assert criteria.agent_id == "AG-1"
        assert criteria.commission_type == CommissionType.FIRST_YEAR
        assert criteria.from_date == date(2025, 1, 1)

    def test_empty_result(self, client):
        with patch("app.services.commission.batch.search_commission_history", AsyncMock(return_value=([], 0))):
            resp = client.get("/api/commissions/history", params={"policy_number": "PLI-9999"})
        assert resp.json()["total_pages"] == 0
        assert resp.json()["transactions"] == []

    def test_bad_status_rejected(self, client):
        resp = client.get("/api/commissions/history", params={"status": "PAID"})
        assert resp.status_code == 422


# ── Clawbacks ─────────────────────────────────────

class TestClawbackEndpoints:
    def _clawback(self, recovered: str) -> Clawback:
        amount = Decimal("7500.00")
        return Clawback(
            id=77, policy_number="PLI-0001", agent_id="AG-1", original_commission=Decimal("10000.00"),
            clawback_percentage=Decimal("75.00"), clawback_amount=amount,
            recovered_amount=Decimal(recovered), pending_amount=amount - Decimal(recovered),
            reason=ClawbackReason.POLICY_SURRENDERED, status=ClawbackStatus.IN_PROGRESS,
            policy_age_months=8, policy_inception_date=date(2024, 6, 1),
            recovery_schedule=RecoverySchedule.INSTALLMENT, installment_months=3, version=2,
        )

    def test_response_carries_recovery_progress(self, client):
        with patch("app.services.commission.clawback.get_clawback",
                   AsyncMock(return_value=self._clawback("2500.00"))):
            resp = client.get("/api/clawbacks/77")
        assert resp.status_code == 200
        assert Decimal(resp.json()["recovery_progress"]) == Decimal("33.33")

    def test_untouched_clawback_at_zero(self, client):
        with patch("app.services.commission.clawback.get_clawback",
                   AsyncMock(return_value=self._clawback("0.00"))):
            resp = client.get("/api/clawbacks/77")
        assert Decimal(resp.json()["recovery_progress"]) == Decimal("0")


# ── PFMS webhook ──────────────────────────────────

def _disbursement(status=DisbursementStatus.SENT_TO_BANK) -> Disbursement:
    return Disbursement(
        id=42, final_statement_id=5, agent_id="AG-1", mode=DisbursementMode.EFT, status=status,
        total_net_commission=Decimal("4750.00"), version=3,
    )


class TestPFMSWebhook:
    def test_bad_signature_rejected(self, client):
        body, headers = _signed({"disbursement_id": 42, "status": "SUCCESS"})
        headers["X-Signature"] = "not-a-signature"
        resp = client.post("/api/webhooks/pfms/payment", content=body, headers=headers)
        assert resp.status_code == 401

    def test_success_applied(self, client):
        disbursement = _disbursement()

        async def confirm(db, disbursement_id, **kwargs):
            assert kwargs["expected_version"] == 3
            disbursement.status = DisbursementStatus.COMPLETED
            disbursement.version = 4
            return disbursement

        mark_disbursed = AsyncMock()
        body, headers = _signed({"disbursement_id": 42, "status": "SUCCESS", "utr_number": "UTR1"})
        with patch("app.services.commission.disbursement.get_disbursement", AsyncMock(return_value=disbursement)), \
             patch("app.services.commission.disbursement.confirm_payment", confirm), \
             patch("app.services.commission.statements.mark_final_statement_disbursed", mark_disbursed):
            resp = client.post("/api/webhooks/pfms/payment", content=body, headers=headers)

        assert resp.status_code == 200
        assert resp.json() == {
            "status": "processed", "disbursement_id": 42, "disbursement_status": "COMPLETED", "version": 4,
        }
        mark_disbursed.assert_awaited_once()

    def test_redelivery_acknowledged(self, client):
        confirm = AsyncMock()
        body, headers = _signed({"disbursement_id": 42, "status": "SUCCESS"})
        with patch("app.services.commission.disbursement.get_disbursement",
                   AsyncMock(return_value=_disbursement(DisbursementStatus.COMPLETED))), \
             patch("app.services.commission.disbursement.confirm_payment", confirm):
            resp = client.post("/api/webhooks/pfms/payment", content=body, headers=headers)
        assert resp.json()["status"] == "duplicate"
        confirm.assert_not_called()

    def test_cancelled_disbursement_conflicts(self, client):
        body, headers = _signed({"disbursement_id": 42, "status": "FAILED", "failure_code": "TIMEOUT"})
        with patch("app.services.commission.disbursement.get_disbursement",
                   AsyncMock(return_value=_disbursement(DisbursementStatus.CANCELLED))):
            resp = client.post("/api/webhooks/pfms/payment", content=body, headers=headers)
        assert resp.status_code == 409

    def test_malformed_payload(self, client):
        body, headers = _signed({"disbursement_id": "x", "status": "MAYBE"})
        resp = client.post("/api/webhooks/pfms/payment", content=body, headers=headers)
        assert resp.status_code == 422


# ── Policy status webhook ─────────────────────────

class TestPolicyStatusWebhook:
    def test_surrender_opens_clawback(self, client):
        policies = MagicMock()
        policies.get_policy = AsyncMock(return_value=PolicyData(
            policy_number="PLI-0001", agent_id="AG-1", product_type="PLI", plan_code="EA",
            policy_status="SURRENDERED", premium_amount=Decimal("12000"), inception_date=date(2024, 1, 10),
        ))
        app.dependency_overrides[get_policy_source] = lambda: policies
        create = AsyncMock(return_value=Clawback(id=77))
        body, headers = _signed({
            "policy_number": "PLI-0001", "old_status": "ACTIVE", "new_status": "SURRENDERED",
            "change_date": "2025-03-01",
        })
        with patch("app.services.commission.policy_events.create_clawback", create):
            resp = client.post("/api/webhooks/policy-status", content=body, headers=headers)

        assert resp.status_code == 200
        assert resp.json()["clawback_id"] == 77
        kwargs = create.call_args.kwargs
        assert kwargs["workflow_id"] == "clawback-PLI-0001"
        assert kwargs["policy_inception_date"] == date(2024, 1, 10)
        assert kwargs["policy_end_date"] == date(2025, 3, 1)

    def test_non_terminal_status_ignored(self, client):
        policies = MagicMock()
        policies.get_policy = AsyncMock()
        app.dependency_overrides[get_policy_source] = lambda: policies
        body, headers = _signed({"policy_number": "PLI-0001", "old_status": "ACTIVE", "new_status": "PAID_UP"})
        resp = client.post("/api/webhooks/policy-status", content=body, headers=headers)
        assert resp.json()["clawback_id"] is None
        policies.get_policy.assert_not_called()
