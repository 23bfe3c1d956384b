"""Tests for clawback calculation and recovery."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.models.clawback import (
    Clawback,
    ClawbackReason,
    ClawbackRecovery,
    ClawbackStatus,
    RecoverySchedule,
    RecoveryStatus,
)
from app.services.commission.clawback import (
    add_months,
    apply_recovery,
    approve_clawback,
    build_installment_schedule,
    calculate_clawback_amount,
    calculate_clawback_percentage,
    close_clawback_partial,
    create_clawback,
    next_retry_date,
    policy_age_months,
    record_recovery,
    record_recovery_failure,
    recovery_progress,
    waive_clawback,
)
from app.services.commission.errors import InvalidStateError, NotFoundError, ValidationError

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
MODULE = "app.services.commission.clawback"


def _mock_db():
    db = MagicMock()
    db.execute = AsyncMock()
    db.flush = AsyncMock()
    db.get = AsyncMock()
    return db


def _clawback(**overrides) -> Clawback:
    data = dict(
        id=3,
        policy_number="PLI-0001",
        agent_id="AG-1",
        original_commission=Decimal("10000.00"),
        clawback_percentage=Decimal("75"),
        clawback_amount=Decimal("7500.00"),
        recovered_amount=Decimal("0.00"),
        pending_amount=Decimal("7500.00"),
        reason=ClawbackReason.POLICY_SURRENDERED,
        status=ClawbackStatus.PENDING,
        policy_age_months=14,
        recovery_schedule=RecoverySchedule.IMMEDIATE,
        approved_by=None,
        version=1,
    )
    data.update(overrides)
    return Clawback(**data)


# ── Percentage schedule ───────────────────────────

class TestClawbackPercentage:
    @pytest.mark.parametrize("months, expected", [
        (0, "100"), (11, "100"),
        (12, "75"), (23, "75"),
        (24, "50"), (35, "50"),
        (36, "25"), (47, "25"),
        (48, "0"), (120, "0"),
    ])
    def test_boundaries(self, months, expected):
        assert calculate_clawback_percentage(months) == Decimal(expected)

    def test_amount(self):
        assert calculate_clawback_amount(Decimal("10000"), Decimal("75")) == Decimal("7500.00")
        assert calculate_clawback_amount(Decimal("333.33"), Decimal("25")) == Decimal("83.33")


class TestPolicyAge:
    def test_whole_months(self):
        assert policy_age_months(date(2024, 3, 15), date(2025, 3, 15)) == 12

    def test_day_not_reached(self):
        assert policy_age_months(date(2024, 3, 15), date(2025, 3, 14)) == 11

    def test_future_as_of_clamped(self):
        assert policy_age_months(date(2025, 3, 15), date(2025, 1, 1)) == 0

    def test_add_months_clamps_day(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2024, 12, 15), 2) == date(2025, 2, 15)


class TestInstallments:
    def test_last_installment_absorbs_rounding(self):
        schedule = build_installment_schedule(Decimal("100.00"), 3, date(2025, 4, 15))
        amounts = [amount for _, amount, _ in schedule]
        assert amounts == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert sum(amounts) == Decimal("100.00")
        assert [due for _, _, due in schedule] == [date(2025, 4, 15), date(2025, 5, 15), date(2025, 6, 15)]

    def test_zero_installments_rejected(self):
        with pytest.raises(ValidationError):
            build_installment_schedule(Decimal("100"), 0, date(2025, 4, 15))

    def test_retry_backoff_doubles(self):
        start = date(2025, 3, 1)
        assert next_retry_date(1, start, base_days=1) == date(2025, 3, 2)
        assert next_retry_date(2, start, base_days=1) == date(2025, 3, 3)
        assert next_retry_date(3, start, base_days=1) == date(2025, 3, 5)


# ── apply_recovery ────────────────────────────────

class TestApplyRecovery:
    def test_balance_identity(self):
        clawback = _clawback()
        apply_recovery(clawback, Decimal("2500.00"), NOW)
        assert clawback.recovered_amount + clawback.pending_amount == clawback.clawback_amount
        assert clawback.status == ClawbackStatus.IN_PROGRESS
        assert clawback.recovery_start_date == NOW
        assert recovery_progress(clawback) == Decimal("33.33")

    def test_full_recovery_completes(self):
        clawback = _clawback()
        apply_recovery(clawback, Decimal("7500.00"), NOW)
        assert clawback.status == ClawbackStatus.COMPLETED
        assert clawback.pending_amount == Decimal("0.00")
        assert clawback.recovery_end_date == NOW

    def test_over_recovery_rejected(self):
        clawback = _clawback()
        with pytest.raises(ValidationError):
            apply_recovery(clawback, Decimal("7500.01"), NOW)
        assert clawback.recovered_amount == Decimal("0.00")

    def test_closed_clawback_rejected(self):
        with pytest.raises(InvalidStateError):
            apply_recovery(_clawback(status=ClawbackStatus.WAIVED), Decimal("1"), NOW)

    def test_non_positive_rejected(self):
        with pytest.raises(ValidationError):
            apply_recovery(_clawback(), Decimal("0"), NOW)


# ── create_clawback ───────────────────────────────

class TestCreateClawback:
    @pytest.mark.asyncio
    async def test_fourteen_month_policy(self):
        db = _mock_db()
        with patch(f"{MODULE}.get_active_clawback", AsyncMock(return_value=None)):
            clawback = await create_clawback(
                db,
                policy_number="PLI-0001",
                agent_id="AG-1",
                reason=ClawbackReason.POLICY_SURRENDERED,
                policy_inception_date=date(2024, 1, 10),
                original_commission=Decimal("10000"),
                now=NOW,
            )
        assert clawback.policy_age_months == 14
        assert clawback.clawback_percentage == Decimal("75")
        assert clawback.clawback_amount == Decimal("7500.00")
        assert clawback.pending_amount == Decimal("7500.00")
        assert clawback.status == ClawbackStatus.PENDING

    @pytest.mark.asyncio
    async def test_aged_out_policy_has_no_clawback(self):
        db = _mock_db()
        with patch(f"{MODULE}.get_active_clawback", AsyncMock(return_value=None)):
            clawback = await create_clawback(
                db,
                policy_number="PLI-0002",
                agent_id="AG-1",
                reason=ClawbackReason.POLICY_LAPSED,
                policy_inception_date=date(2020, 1, 1),
                original_commission=Decimal("10000"),
                now=NOW,
            )
        assert clawback is None
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_existing_clawback_returned(self):
        existing = _clawback()
        with patch(f"{MODULE}.get_active_clawback", AsyncMock(return_value=existing)):
            clawback = await create_clawback(
                _mock_db(),
                policy_number="PLI-0001",
                agent_id="AG-1",
                reason=ClawbackReason.POLICY_SURRENDERED,
                policy_inception_date=date(2024, 1, 10),
                workflow_id="clawback-PLI-0001",
            )
        assert clawback is existing

    @pytest.mark.asyncio
    async def test_installment_schedule_created(self):
        db = _mock_db()
        with patch(f"{MODULE}.get_active_clawback", AsyncMock(return_value=None)):
            await create_clawback(
                db,
                policy_number="PLI-0001",
                agent_id="AG-1",
                reason=ClawbackReason.POLICY_SURRENDERED,
                policy_inception_date=date(2024, 9, 1),
                original_commission=Decimal("1000"),
                recovery_schedule=RecoverySchedule.INSTALLMENT,
                installment_months=3,
                now=NOW,
            )
        recoveries = [c.args[0] for c in db.add.call_args_list if isinstance(c.args[0], ClawbackRecovery)]
        assert [r.installment_number for r in recoveries] == [1, 2, 3]
        assert sum(r.scheduled_amount for r in recoveries) == Decimal("1000.00")
        assert recoveries[0].scheduled_date == date(2025, 4, 15)

    @pytest.mark.asyncio
    async def test_installments_require_months(self):
        with pytest.raises(ValidationError):
            await create_clawback(
                _mock_db(),
                policy_number="PLI-0001",
                agent_id="AG-1",
                reason=ClawbackReason.POLICY_SURRENDERED,
                policy_inception_date=date(2024, 9, 1),
                recovery_schedule=RecoverySchedule.INSTALLMENT,
            )

    @pytest.mark.asyncio
    async def test_original_commission_defaults_to_disbursed_total(self):
        db = _mock_db()
        with patch(f"{MODULE}.get_active_clawback", AsyncMock(return_value=None)), \
             patch(f"{MODULE}.sum_disbursed_commission", AsyncMock(return_value=Decimal("4000.00"))):
            clawback = await create_clawback(
                db,
                policy_number="PLI-0001",
                agent_id="AG-1",
                reason=ClawbackReason.FRAUD_DETECTED,
                policy_inception_date=date(2025, 1, 1),
                now=NOW,
            )
        assert clawback.original_commission == Decimal("4000.00")
        assert clawback.clawback_amount == Decimal("4000.00")


# ── Recovery recording ────────────────────────────

class TestRecordRecovery:
    @pytest.mark.asyncio
    async def test_repeat_installment_not_double_counted(self):
        db = _mock_db()
        clawback = _clawback()
        db.get.return_value = clawback
        completed = ClawbackRecovery(
            clawback_id=3, installment_number=1, status=RecoveryStatus.COMPLETED,
            recovered_amount=Decimal("2500.00"),
        )

        with patch(f"{MODULE}.get_recovery", AsyncMock(return_value=None)):
            await record_recovery(db, 3, installment_number=1, amount=Decimal("2500.00"), now=NOW)
        assert clawback.recovered_amount == Decimal("2500.00")

        with patch(f"{MODULE}.get_recovery", AsyncMock(return_value=completed)):
            await record_recovery(db, 3, installment_number=1, amount=Decimal("2500.00"), now=NOW)
        assert clawback.recovered_amount == Decimal("2500.00")
        assert clawback.pending_amount == Decimal("5000.00")

    @pytest.mark.asyncio
    async def test_scheduled_installment_completed(self):
        db = _mock_db()
        db.get.return_value = _clawback()
        scheduled = ClawbackRecovery(
            clawback_id=3, installment_number=2, status=RecoveryStatus.FAILED,
            scheduled_amount=Decimal("2500.00"), recovered_amount=Decimal("0.00"),
            retry_count=1, failure_reason="insufficient balance",
        )
        with patch(f"{MODULE}.get_recovery", AsyncMock(return_value=scheduled)):
            await record_recovery(db, 3, installment_number=2, amount=Decimal("2500.00"), now=NOW)
        assert scheduled.status == RecoveryStatus.COMPLETED
        assert scheduled.failure_reason is None
        assert scheduled.recovered_amount == Decimal("2500.00")

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self):
        db = _mock_db()
        recovery = ClawbackRecovery(
            clawback_id=3, installment_number=1, status=RecoveryStatus.SCHEDULED, retry_count=0,
        )
        with patch(f"{MODULE}.get_recovery", AsyncMock(return_value=recovery)):
            await record_recovery_failure(
                db, 3, installment_number=1, failure_reason="no statement", now=NOW,
            )
        assert recovery.status == RecoveryStatus.FAILED
        assert recovery.retry_count == 1
        assert recovery.next_retry_date > NOW.date()

    @pytest.mark.asyncio
    async def test_failure_on_unknown_installment(self):
        with patch(f"{MODULE}.get_recovery", AsyncMock(return_value=None)):
            with pytest.raises(NotFoundError):
                await record_recovery_failure(_mock_db(), 3, installment_number=9, failure_reason="x")


# ── Closing ───────────────────────────────────────

class TestClosing:
    @pytest.mark.asyncio
    async def test_waive_requires_reason(self):
        with pytest.raises(ValidationError):
            await waive_clawback(_mock_db(), 3, waived_by="cfo", reason="")

    @pytest.mark.asyncio
    async def test_waive(self):
        db = _mock_db()
        clawback = _clawback(status=ClawbackStatus.IN_PROGRESS)
        db.get.return_value = clawback
        await waive_clawback(db, 3, waived_by="cfo", reason="agent deceased", now=NOW)
        assert clawback.status == ClawbackStatus.WAIVED
        assert clawback.waived_by == "cfo"
        assert clawback.version == 2

    @pytest.mark.asyncio
    async def test_partial_close_keeps_amounts(self):
        db = _mock_db()
        clawback = _clawback(
            status=ClawbackStatus.IN_PROGRESS,
            recovered_amount=Decimal("2500.00"),
            pending_amount=Decimal("5000.00"),
        )
        db.get.return_value = clawback
        await close_clawback_partial(db, 3, policy_end_date=date(2025, 3, 1), now=NOW)
        assert clawback.status == ClawbackStatus.PARTIAL
        assert clawback.recovered_amount + clawback.pending_amount == clawback.clawback_amount

    @pytest.mark.asyncio
    async def test_completed_cannot_be_waived(self):
        db = _mock_db()
        db.get.return_value = _clawback(status=ClawbackStatus.COMPLETED)
        with pytest.raises(InvalidStateError):
            await waive_clawback(db, 3, waived_by="cfo", reason="late request")

    @pytest.mark.asyncio
    async def test_approve_once(self):
        db = _mock_db()
        clawback = _clawback()
        db.get.return_value = clawback
        await approve_clawback(db, 3, approved_by="finance", now=NOW)
        await approve_clawback(db, 3, approved_by="someone-else", now=NOW)
        assert clawback.approved_by == "finance"
        assert clawback.version == 2
