"""Monthly commission batch lifecycle.

INITIATED -> CALCULATING -> TRIAL_GENERATED -> COMPLETED, with FAILED and
CANCELLED reachable from any non-terminal state.  Only one non-terminal
batch may exist per (month, year); the partial unique index on
``commission_batches`` backs the check made here.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.commission import (
    ACTIVE_BATCH_STATUSES,
    BatchStatus,
    CommissionBatch,
    CommissionStatus,
    CommissionTransaction,
    CommissionType,
    ProductType,
)
from app.models.suspense import SuspenseReason
from app.services.commission.calculator import calculate_commission
from app.services.commission.errors import (
    DuplicateBatchError,
    InvalidStateError,
    NotFoundError,
    RateNotFoundError,
    ValidationError,
)
from app.services.commission.filters import CommissionTransactionFilter
from app.services.commission.rate_resolver import resolve_rate
from app.services.commission.sla import batch_sla_deadline, is_deadline_passed, utcnow
from app.services.commission.suspense import create_suspense, get_suspense_by_workflow
from app.services.commission.transitions import (
    BATCH_TRANSITIONS,
    check_transition,
    is_terminal,
)

logger = logging.getLogger(__name__)


def generate_batch_number(month: int, year: int, sequence: int) -> str:
    return f"BATCH_{year:04d}{month:02d}_{sequence:03d}"


def validate_period(month: int, year: int) -> None:
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12", month=month)
    if not 2000 <= year <= 2100:
        raise ValidationError("year out of range", year=year)


# ─────────────────────────────────────────────────────────────────────
# Loaders
# ─────────────────────────────────────────────────────────────────────

async def get_batch(db: AsyncSession, batch_id: int) -> CommissionBatch:
    batch = await db.get(CommissionBatch, batch_id)
    if batch is None:
        raise NotFoundError("commission batch not found", batch_id=batch_id)
    return batch


async def get_active_batch(db: AsyncSession, month: int, year: int) -> Optional[CommissionBatch]:
    result = await db.execute(
        select(CommissionBatch).where(
            CommissionBatch.month == month,
            CommissionBatch.year == year,
            CommissionBatch.status.in_(ACTIVE_BATCH_STATUSES),
        )
    )
    return result.scalar_one_or_none()


async def count_batches_for_period(db: AsyncSession, month: int, year: int) -> int:
    result = await db.execute(
        select(func.count(CommissionBatch.id)).where(
            CommissionBatch.month == month,
            CommissionBatch.year == year,
        )
    )
    return result.scalar() or 0


async def get_existing_transaction(
    db: AsyncSession, batch_id: int, policy_number: str, commission_type: CommissionType
) -> Optional[CommissionTransaction]:
    result = await db.execute(
        select(CommissionTransaction).where(
            CommissionTransaction.batch_id == batch_id,
            CommissionTransaction.policy_number == policy_number,
            CommissionTransaction.commission_type == commission_type,
        )
    )
    return result.scalar_one_or_none()


# ─────────────────────────────────────────────────────────────────────
# State transitions
# ─────────────────────────────────────────────────────────────────────

async def start_batch(
    db: AsyncSession,
    *,
    month: int,
    year: int,
    triggered_by: str = "SYSTEM_SCHEDULER",
    workflow_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CommissionBatch:
    """Create the batch for a period.

    A second start for a period that already has a non-terminal batch is a
    DuplicateBatchError, unless it carries that batch's workflow id, in
    which case it is a retry and gets the existing batch back.
    """
    validate_period(month, year)

    active = await get_active_batch(db, month, year)
    if active is not None:
        if workflow_id and active.workflow_id == workflow_id:
            logger.info("Batch %s already started by workflow %s", active.batch_number, workflow_id)
            return active
        logger.warning(
            "Duplicate batch for %02d/%d rejected; %s is %s",
            month, year, active.batch_number, active.status.value,
        )
        raise DuplicateBatchError(
            f"an active batch already exists for {month:02d}/{year}",
            batch_number=active.batch_number,
            status=active.status.value,
        )

    now = now or utcnow()
    sequence = await count_batches_for_period(db, month, year) + 1
    batch = CommissionBatch(
        batch_number=generate_batch_number(month, year, sequence),
        month=month,
        year=year,
        status=BatchStatus.INITIATED,
        total_policies=0,
        processed_records=0,
        failed_records=0,
        progress_percentage=0,
        triggered_by=triggered_by,
        workflow_id=workflow_id,
        started_at=now,
        sla_deadline=batch_sla_deadline(now),
        sla_breached=False,
    )
    db.add(batch)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Lost the race against a concurrent start for the same period
        raise DuplicateBatchError(
            f"an active batch already exists for {month:02d}/{year}"
        ) from exc

    logger.info("Started commission batch %s (deadline %s)", batch.batch_number, batch.sla_deadline)
    return batch


def apply_batch_transition(
    batch: CommissionBatch,
    target: BatchStatus,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    if not check_transition(BATCH_TRANSITIONS, "batch", batch.status, target):
        return False
    now = now or utcnow()
    previous = batch.status
    batch.status = target
    batch.workflow_state = target.value
    if is_terminal(BATCH_TRANSITIONS, target):
        batch.completed_at = now
    if target == BatchStatus.COMPLETED:
        batch.progress_percentage = 100
    if reason:
        batch.failure_reason = reason
    check_batch_sla(batch, now)
    logger.info("Batch %s: %s -> %s", batch.batch_number, previous.value, target.value)
    return True


async def begin_calculation(
    db: AsyncSession, batch_id: int, *, total_policies: int, now: Optional[datetime] = None
) -> CommissionBatch:
    if total_policies < 0:
        raise ValidationError("total policies must not be negative", total_policies=total_policies)
    batch = await get_batch(db, batch_id)
    if apply_batch_transition(batch, BatchStatus.CALCULATING, now=now):
        batch.total_policies = total_policies
        await db.flush()
    return batch


async def fail_batch(
    db: AsyncSession, batch_id: int, *, reason: str, now: Optional[datetime] = None
) -> CommissionBatch:
    batch = await get_batch(db, batch_id)
    if apply_batch_transition(batch, BatchStatus.FAILED, reason=reason, now=now):
        await db.flush()
    return batch


async def cancel_batch(
    db: AsyncSession, batch_id: int, *, reason: str, now: Optional[datetime] = None
) -> CommissionBatch:
    batch = await get_batch(db, batch_id)
    if apply_batch_transition(batch, BatchStatus.CANCELLED, reason=reason, now=now):
        await db.flush()
    return batch


# ─────────────────────────────────────────────────────────────────────
# Progress & SLA
# ─────────────────────────────────────────────────────────────────────

def record_progress(
    batch: CommissionBatch,
    *,
    processed: int,
    failed: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """Update counters, percentage and ETA; counters never move backwards."""
    now = now or utcnow()
    batch.processed_records = max(batch.processed_records or 0, processed)
    if failed is not None:
        batch.failed_records = max(batch.failed_records or 0, failed)

    total = batch.total_policies or 0
    if total > 0:
        pct = min(int(batch.processed_records * 100 / total), 100)
        batch.progress_percentage = max(batch.progress_percentage or 0, pct)

        if 0 < batch.processed_records < total and batch.started_at is not None:
            per_record = (now - batch.started_at) / batch.processed_records
            batch.estimated_completion = now + per_record * (total - batch.processed_records)
        elif batch.processed_records >= total:
            batch.estimated_completion = now


def check_batch_sla(batch: CommissionBatch, now: Optional[datetime] = None) -> bool:
    """Flag a breach once the deadline has passed; the flag is sticky and never aborts work."""
    if not batch.sla_breached and batch.completed_at is None and is_deadline_passed(batch.sla_deadline, now):
        batch.sla_breached = True
        logger.warning("Batch %s breached its SLA (deadline %s)", batch.batch_number, batch.sla_deadline)
    elif (
        not batch.sla_breached
        and batch.completed_at is not None
        and batch.sla_deadline is not None
        and batch.completed_at > batch.sla_deadline
    ):
        batch.sla_breached = True
    return batch.sla_breached


async def sweep_batch_sla(db: AsyncSession, now: Optional[datetime] = None) -> int:
    result = await db.execute(
        select(CommissionBatch).where(
            CommissionBatch.status.in_(ACTIVE_BATCH_STATUSES),
            CommissionBatch.sla_breached.is_(False),
        )
    )
    breached = 0
    for batch in result.scalars().all():
        if check_batch_sla(batch, now):
            breached += 1
    if breached:
        await db.flush()
    return breached


# ─────────────────────────────────────────────────────────────────────
# Per-policy calculation
# ─────────────────────────────────────────────────────────────────────

@dataclass
class PolicyCommissionInput:
    policy_number: str
    agent_id: str
    agent_type: str
    product_type: ProductType
    plan_code: str
    policy_term_years: int
    annualised_premium: Decimal
    commission_date: date
    commission_type: CommissionType = CommissionType.FIRST_YEAR
    has_verified_pan: bool = False


async def calculate_policy_commission(
    db: AsyncSession,
    batch_id: int,
    policy: PolicyCommissionInput,
    *,
    now: Optional[datetime] = None,
) -> Optional[CommissionTransaction]:
    """Calculate and store the commission for one policy in a CALCULATING batch.

    Returns the existing row when the policy was already processed.  A missing
    rate routes the premium to suspense and returns None so the rest of the
    batch carries on.
    """
    batch = await get_batch(db, batch_id)
    if batch.status != BatchStatus.CALCULATING:
        raise InvalidStateError(
            f"batch {batch.batch_number} is {batch.status.value}, not CALCULATING",
            batch_id=batch_id,
        )

    existing = await get_existing_transaction(
        db, batch.id, policy.policy_number, policy.commission_type
    )
    if existing is not None:
        return existing

    suspense_key = f"rate-missing-{batch.id}-{policy.policy_number}-{policy.commission_type.value}"
    if await get_suspense_by_workflow(db, suspense_key) is not None:
        # Already counted as failed on the first attempt
        logger.info("Policy %s already parked in suspense for batch %s",
                    policy.policy_number, batch.batch_number)
        return None

    now = now or utcnow()
    try:
        rate = await resolve_rate(
            db,
            product_type=policy.product_type,
            agent_type=policy.agent_type,
            plan_code=policy.plan_code,
            policy_term_years=policy.policy_term_years,
            as_of=policy.commission_date,
        )
    except RateNotFoundError:
        await create_suspense(
            db,
            amount=policy.annualised_premium,
            reason=SuspenseReason.OTHER,
            agent_id=policy.agent_id,
            policy_number=policy.policy_number,
            notes="rate not found",
            workflow_id=suspense_key,
            now=now,
        )
        record_progress(
            batch,
            processed=batch.processed_records + 1,
            failed=batch.failed_records + 1,
            now=now,
        )
        await db.flush()
        return None

    breakdown = calculate_commission(
        policy.annualised_premium,
        rate.rate_percentage,
        commission_type=policy.commission_type,
        has_verified_pan=policy.has_verified_pan,
    )
    txn = CommissionTransaction(
        batch_id=batch.id,
        agent_id=policy.agent_id,
        policy_number=policy.policy_number,
        commission_type=policy.commission_type,
        product_type=policy.product_type,
        annualised_premium=breakdown.annualised_premium,
        rate_percentage=breakdown.effective_rate,
        gross_commission=breakdown.gross_commission,
        tds_rate=breakdown.tds_rate,
        tds_amount=breakdown.tds_amount,
        net_commission=breakdown.net_commission,
        disbursed_amount=Decimal("0.00"),
        commission_date=policy.commission_date,
        status=CommissionStatus.CALCULATED,
    )
    db.add(txn)
    record_progress(batch, processed=batch.processed_records + 1, now=now)
    await db.flush()
    return txn


async def search_commission_history(
    db: AsyncSession, criteria: CommissionTransactionFilter
) -> tuple[list[CommissionTransaction], int]:
    """One page of matching transactions plus the total match count."""
    result = await db.execute(criteria.to_select())
    transactions = list(result.scalars().all())
    total = await db.execute(criteria.count_select())
    return transactions, total.scalar() or 0
