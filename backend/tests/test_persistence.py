"""Service flows against a real database: concurrent sessions and the payout ledger."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import Base
from app.models.clawback import Clawback, ClawbackReason, ClawbackRecovery, ClawbackStatus
from app.models.commission import (
    BatchStatus,
    CommissionBatch,
    CommissionStatus,
    CommissionTransaction,
    CommissionType,
    ProductType,
)
from app.models.statement import FinalStatementStatus
from app.services.commission import clawback as clawback_service
from app.services.commission.disbursement import (
    ChequeDetails,
    begin_processing,
    confirm_payment,
    create_disbursement,
)
from app.services.commission.errors import OptimisticLockError
from app.services.commission.statements import (
    approve_trial_statement,
    create_final_statement,
    generate_trial_statements,
    get_final_statement_transactions,
    mark_final_statement_disbursed,
    mark_ready_for_disbursement,
)
from app.services.commission.suspense import get_suspense_by_workflow

NOW = datetime(2025, 2, 3, 10, 0, tzinfo=timezone.utc)


async def _engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'commission.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


def _sessions(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def _open_clawback(sessions) -> int:
    async with sessions() as db:
        clawback = await clawback_service.create_clawback(
            db,
            policy_number="PLI-0001",
            agent_id="AG-1",
            reason=ClawbackReason.POLICY_SURRENDERED,
            policy_inception_date=date(2024, 12, 1),
            original_commission=Decimal("1000.00"),
            now=NOW,
        )
        await db.commit()
        return clawback.id


def _rival_commits_first(sessions, clawback_id, installment_number, amount):
    """Wrap get_recovery so another session records and commits before the first read returns."""
    real_get_recovery = clawback_service.get_recovery
    state = {"raced": False}

    async def racing_get_recovery(db, *args, **kwargs):
        if not state["raced"]:
            state["raced"] = True
            async with sessions() as rival:
                await clawback_service.record_recovery(
                    rival, clawback_id, installment_number=installment_number, amount=amount, now=NOW
                )
                await rival.commit()
        return await real_get_recovery(db, *args, **kwargs)

    return racing_get_recovery


async def _recovery_totals(sessions, clawback_id):
    async with sessions() as db:
        clawback = await db.get(Clawback, clawback_id)
        ledger = await db.execute(
            select(func.coalesce(func.sum(ClawbackRecovery.recovered_amount), 0)).where(
                ClawbackRecovery.clawback_id == clawback_id
            )
        )
        return clawback, Decimal(str(ledger.scalar())).quantize(Decimal("0.01"))


# ── Concurrent clawback recovery ──────────────────

class TestConcurrentRecovery:
    @pytest.mark.asyncio
    async def test_stale_writer_rejected_then_retry_applies(self, tmp_path):
        engine = await _engine(tmp_path)
        sessions = _sessions(engine)
        try:
            clawback_id = await _open_clawback(sessions)

            racing = _rival_commits_first(sessions, clawback_id, 1, Decimal("300.00"))
            async with sessions() as db:
                with patch.object(clawback_service, "get_recovery", racing):
                    with pytest.raises(OptimisticLockError):
                        await clawback_service.record_recovery(
                            db, clawback_id, installment_number=2, amount=Decimal("200.00"), now=NOW
                        )
                await db.rollback()

            async with sessions() as db:
                await clawback_service.record_recovery(
                    db, clawback_id, installment_number=2, amount=Decimal("200.00"), now=NOW
                )
                await db.commit()

            clawback, ledger = await _recovery_totals(sessions, clawback_id)
            assert clawback.recovered_amount == Decimal("500.00")
            assert clawback.pending_amount == Decimal("500.00")
            assert clawback.recovered_amount + clawback.pending_amount == clawback.clawback_amount
            assert ledger == Decimal("500.00")
            assert clawback.status == ClawbackStatus.IN_PROGRESS
            assert clawback.version == 3
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_same_installment_from_two_sessions_applies_once(self, tmp_path):
        engine = await _engine(tmp_path)
        sessions = _sessions(engine)
        try:
            clawback_id = await _open_clawback(sessions)

            racing = _rival_commits_first(sessions, clawback_id, 1, Decimal("300.00"))
            async with sessions() as db:
                with patch.object(clawback_service, "get_recovery", racing):
                    await clawback_service.record_recovery(
                        db, clawback_id, installment_number=1, amount=Decimal("300.00"), now=NOW
                    )
                await db.commit()

            clawback, ledger = await _recovery_totals(sessions, clawback_id)
            assert clawback.recovered_amount == Decimal("300.00")
            assert clawback.pending_amount == Decimal("700.00")
            assert ledger == Decimal("300.00")
            assert clawback.version == 2
        finally:
            await engine.dispose()


# ── Partial payout end to end ─────────────────────

def _transaction(batch_id, commission_type, gross, tds) -> CommissionTransaction:
    return CommissionTransaction(
        batch_id=batch_id,
        agent_id="AG-1",
        policy_number="PLI-0001",
        commission_type=commission_type,
        product_type=ProductType.PLI,
        annualised_premium=Decimal("20000.00"),
        rate_percentage=Decimal("5.00"),
        gross_commission=gross,
        tds_rate=Decimal("10.00"),
        tds_amount=tds,
        net_commission=gross - tds,
        disbursed_amount=Decimal("0.00"),
        commission_date=date(2025, 1, 31),
        status=CommissionStatus.CALCULATED,
    )


class TestPartialPayoutLedger:
    @pytest.mark.asyncio
    async def test_partial_payout_feeds_clawback_base(self, tmp_path):
        engine = await _engine(tmp_path)
        sessions = _sessions(engine)
        try:
            async with sessions() as db:
                batch = CommissionBatch(
                    batch_number="BATCH_202501_001",
                    month=1,
                    year=2025,
                    status=BatchStatus.CALCULATING,
                    total_policies=1,
                    processed_records=1,
                    failed_records=0,
                    progress_percentage=100,
                    triggered_by="SYSTEM_SCHEDULER",
                    started_at=NOW,
                    sla_deadline=NOW + timedelta(hours=6),
                    sla_breached=False,
                )
                db.add(batch)
                await db.flush()
                db.add_all([
                    _transaction(batch.id, CommissionType.FIRST_YEAR, Decimal("600.00"), Decimal("60.00")),
                    _transaction(batch.id, CommissionType.RENEWAL, Decimal("400.00"), Decimal("40.00")),
                ])
                await db.flush()

                [trial] = await generate_trial_statements(db, batch.id, now=NOW)
                await approve_trial_statement(db, trial.id, approved_by="finance.officer", now=NOW)
                final = await create_final_statement(
                    db, trial.id, created_by="finance.officer",
                    disbursement_amount=Decimal("450.00"), now=NOW,
                )
                await mark_ready_for_disbursement(db, final.id)
                disbursement = await create_disbursement(
                    db, final.id, ChequeDetails(cheque_number="CHQ-000123", cheque_date=date(2025, 2, 3)),
                    now=NOW,
                )
                await begin_processing(db, disbursement.id, expected_version=1, now=NOW)
                await confirm_payment(db, disbursement.id, expected_version=2, success=True, now=NOW)
                await mark_final_statement_disbursed(db, final.id)
                await db.commit()

                assert final.is_partial
                assert final.status == FinalStatementStatus.DISBURSED
                assert final.total_net_commission == Decimal("450.00")
                assert trial.undisbursed_net_amount == Decimal("450.00")

                transactions = await get_final_statement_transactions(db, final.id)
                assert [t.status for t in transactions] == [CommissionStatus.DISBURSED] * 2
                assert [t.disbursed_amount for t in transactions] == [Decimal("300.00"), Decimal("200.00")]
                assert {t.disbursement_id for t in transactions} == {disbursement.id}

                remainder = await get_suspense_by_workflow(db, f"undisbursed-{trial.statement_number}")
                assert remainder is not None
                assert remainder.amount == Decimal("450.00")
                assert remainder.agent_id == "AG-1"

                assert await clawback_service.sum_disbursed_commission(db, "PLI-0001") == Decimal("500.00")

                clawback = await clawback_service.create_clawback(
                    db,
                    policy_number="PLI-0001",
                    agent_id="AG-1",
                    reason=ClawbackReason.POLICY_LAPSED,
                    policy_inception_date=date(2024, 12, 1),
                    now=NOW,
                )
                assert clawback.original_commission == Decimal("500.00")
                assert clawback.clawback_amount == Decimal("500.00")
        finally:
            await engine.dispose()
