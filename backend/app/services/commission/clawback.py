"""Clawback of commission on early policy termination.

The share of paid commission to recover falls with policy age:

    < 12 months  100%
    12 - 23       75%
    24 - 35       50%
    36 - 47       25%
    48+            0%

Recovery happens in one go or in monthly installments.  Each installment
is a ``ClawbackRecovery`` row keyed by (clawback, installment number), so
recording the same installment twice never double-counts.
"""

import calendar
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.models.clawback import (
    Clawback,
    ClawbackReason,
    ClawbackRecovery,
    ClawbackStatus,
    RecoverySchedule,
    RecoveryStatus,
    RECOVERABLE_CLAWBACK_STATUSES,
    CLOSED_CLAWBACK_STATUSES,
)
from app.models.commission import CommissionStatus, CommissionTransaction
from app.services.commission.calculator import HUNDRED, to_money
from app.services.commission.errors import (
    InvalidStateError,
    NotFoundError,
    OptimisticLockError,
    ValidationError,
)
from app.services.commission.filters import ClawbackFilter
from app.services.commission.sla import utcnow
from app.services.commission.transitions import CLAWBACK_TRANSITIONS, check_transition

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
RECOVERY_EPSILON = Decimal("0.01")

_SCHEDULE = [
    (12, Decimal("100")),
    (24, Decimal("75")),
    (36, Decimal("50")),
    (48, Decimal("25")),
]


# ─────────────────────────────────────────────────────────────────────
# Pure rules
# ─────────────────────────────────────────────────────────────────────

def calculate_clawback_percentage(policy_age_months: int) -> Decimal:
    for upper, pct in _SCHEDULE:
        if policy_age_months < upper:
            return pct
    return Decimal("0")


def policy_age_months(inception: date, as_of: date) -> int:
    """Whole calendar months elapsed; the month only counts once its day is reached."""
    if isinstance(inception, datetime):
        inception = inception.date()
    if isinstance(as_of, datetime):
        as_of = as_of.date()
    months = (as_of.year - inception.year) * 12 + (as_of.month - inception.month)
    if as_of.day < inception.day:
        months -= 1
    return max(months, 0)


def calculate_clawback_amount(original_commission, percentage) -> Decimal:
    return to_money(Decimal(str(original_commission)) * Decimal(str(percentage)) / HUNDRED)


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def build_installment_schedule(
    total, installments: int, first_date: date
) -> list[tuple[int, Decimal, date]]:
    """Split ``total`` into equal monthly installments; the last one absorbs rounding."""
    if installments < 1:
        raise ValidationError("installment count must be at least 1", installments=installments)
    total = to_money(total)
    regular = to_money(total / installments)
    schedule = []
    allocated = ZERO
    for n in range(1, installments + 1):
        amount = regular if n < installments else total - allocated
        allocated += amount
        schedule.append((n, amount, add_months(first_date, n - 1)))
    return schedule


def next_retry_date(retry_count: int, from_date: date, base_days: Optional[int] = None) -> date:
    """Exponential backoff: base x 2^(retry-1) days."""
    base = settings.clawback_retry_base_days if base_days is None else base_days
    return from_date + timedelta(days=base * 2 ** max(retry_count - 1, 0))


def recovery_progress(clawback: Clawback) -> Decimal:
    if not clawback.clawback_amount:
        return ZERO
    return to_money(clawback.recovered_amount / clawback.clawback_amount * HUNDRED)


def apply_recovery(clawback: Clawback, amount, now: Optional[datetime] = None) -> Clawback:
    """Move ``amount`` from pending to recovered and advance the status."""
    if clawback.status not in RECOVERABLE_CLAWBACK_STATUSES:
        logger.warning("Recovery against clawback %s in status %s rejected", clawback.id, clawback.status.value)
        raise InvalidStateError(
            f"cannot record recovery on clawback in status {clawback.status.value}",
            clawback_id=clawback.id,
        )
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("recovery amount must be positive", amount=amount)
    if amount > clawback.pending_amount:
        raise ValidationError(
            "recovery amount exceeds pending clawback balance",
            amount=amount,
            pending=clawback.pending_amount,
        )

    now = now or utcnow()
    clawback.recovered_amount = clawback.recovered_amount + amount
    clawback.pending_amount = clawback.clawback_amount - clawback.recovered_amount

    if clawback.status == ClawbackStatus.PENDING:
        clawback.status = ClawbackStatus.IN_PROGRESS
        clawback.recovery_start_date = now
    if clawback.pending_amount <= RECOVERY_EPSILON:
        clawback.status = ClawbackStatus.COMPLETED
        clawback.recovery_end_date = now
    clawback.version += 1
    return clawback


# ─────────────────────────────────────────────────────────────────────
# Loaders
# ─────────────────────────────────────────────────────────────────────

async def get_clawback(db: AsyncSession, clawback_id: int, *, for_update: bool = False) -> Clawback:
    if for_update:
        clawback = await db.get(Clawback, clawback_id, with_for_update=True, populate_existing=True)
    else:
        clawback = await db.get(Clawback, clawback_id)
    if clawback is None:
        raise NotFoundError("clawback not found", clawback_id=clawback_id)
    return clawback


async def get_active_clawback(
    db: AsyncSession, policy_number: str, workflow_id: Optional[str] = None
) -> Optional[Clawback]:
    """Open clawback for the policy, or any clawback already made by ``workflow_id``."""
    open_for_policy = (Clawback.policy_number == policy_number) & Clawback.status.notin_(
        CLOSED_CLAWBACK_STATUSES
    )
    if workflow_id:
        condition = open_for_policy | (Clawback.workflow_id == workflow_id)
    else:
        condition = open_for_policy
    result = await db.execute(select(Clawback).where(condition).order_by(Clawback.id.desc()))
    return result.scalars().first()


async def get_recovery(
    db: AsyncSession, clawback_id: int, installment_number: int, *, for_update: bool = False
) -> Optional[ClawbackRecovery]:
    stmt = select(ClawbackRecovery).where(
        ClawbackRecovery.clawback_id == clawback_id,
        ClawbackRecovery.installment_number == installment_number,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _flush_guarded(db: AsyncSession, clawback: Clawback) -> None:
    """Flush, turning a write against a stale clawback version into a lock error."""
    try:
        await db.flush()
    except StaleDataError as exc:
        logger.warning("Clawback %s changed concurrently; update rejected", clawback.id)
        raise OptimisticLockError(
            "clawback was modified concurrently; reload and retry", clawback_id=clawback.id
        ) from exc


async def sum_disbursed_commission(db: AsyncSession, policy_number: str) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(CommissionTransaction.disbursed_amount), 0)).where(
            CommissionTransaction.policy_number == policy_number,
            CommissionTransaction.status == CommissionStatus.DISBURSED,
        )
    )
    return to_money(result.scalar() or 0)


# ─────────────────────────────────────────────────────────────────────
# Operations
# ─────────────────────────────────────────────────────────────────────

async def create_clawback(
    db: AsyncSession,
    *,
    policy_number: str,
    agent_id: str,
    reason: ClawbackReason,
    policy_inception_date: date,
    original_commission: Optional[Decimal] = None,
    policy_end_date: Optional[date] = None,
    recovery_schedule: RecoverySchedule = RecoverySchedule.IMMEDIATE,
    installment_months: Optional[int] = None,
    workflow_id: Optional[str] = None,
    created_by: str = "SYSTEM",
    now: Optional[datetime] = None,
) -> Optional[Clawback]:
    """Open a clawback for a terminated policy.

    Returns the active clawback when one already exists for the policy (or
    workflow), and None when nothing is recoverable (policy aged out of the
    schedule or no commission was paid).
    """
    if recovery_schedule == RecoverySchedule.INSTALLMENT and not installment_months:
        raise ValidationError("installment months are required for installment recovery")
    if installment_months is not None and installment_months < 1:
        raise ValidationError("installment months must be at least 1", installment_months=installment_months)

    existing = await get_active_clawback(db, policy_number, workflow_id)
    if existing is not None:
        logger.info("Clawback %s already open for policy %s", existing.id, policy_number)
        return existing

    now = now or utcnow()
    if policy_inception_date > now.date():
        raise ValidationError("policy inception date is in the future", inception=policy_inception_date)

    if original_commission is None:
        original_commission = await sum_disbursed_commission(db, policy_number)
    original_commission = to_money(original_commission)
    if original_commission < 0:
        raise ValidationError("original commission must not be negative")

    age = policy_age_months(policy_inception_date, now.date())
    percentage = calculate_clawback_percentage(age)
    amount = calculate_clawback_amount(original_commission, percentage)
    if amount <= 0:
        logger.info(
            "No clawback for policy %s (age %s months, original commission %s)",
            policy_number, age, original_commission,
        )
        return None

    clawback = Clawback(
        policy_number=policy_number,
        agent_id=agent_id,
        original_commission=original_commission,
        clawback_percentage=percentage,
        clawback_amount=amount,
        recovered_amount=ZERO,
        pending_amount=amount,
        reason=reason,
        status=ClawbackStatus.PENDING,
        policy_age_months=age,
        trigger_date=now,
        policy_inception_date=policy_inception_date,
        policy_end_date=policy_end_date,
        recovery_schedule=recovery_schedule,
        installment_months=installment_months,
        workflow_id=workflow_id,
        version=1,
        created_by=created_by,
    )
    db.add(clawback)
    await db.flush()

    if recovery_schedule == RecoverySchedule.INSTALLMENT:
        for number, scheduled, due in build_installment_schedule(
            amount, installment_months, add_months(now.date(), 1)
        ):
            db.add(ClawbackRecovery(
                clawback_id=clawback.id,
                installment_number=number,
                scheduled_amount=scheduled,
                recovered_amount=ZERO,
                scheduled_date=due,
                status=RecoveryStatus.SCHEDULED,
                retry_count=0,
                posted_to_gl=False,
            ))
        await db.flush()

    logger.info(
        "Created clawback %s for policy %s: %s%% of %s = %s (age %s months)",
        clawback.id, policy_number, percentage, original_commission, amount, age,
    )
    return clawback


async def record_recovery(
    db: AsyncSession,
    clawback_id: int,
    *,
    installment_number: int,
    amount,
    recovery_method: str = "DEDUCTION",
    statement_id: Optional[int] = None,
    disbursement_id: Optional[int] = None,
    transaction_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Clawback:
    """Record one installment; repeating a completed installment is a no-op."""
    if installment_number < 1:
        raise ValidationError("installment number must be at least 1", installment_number=installment_number)

    clawback = await get_clawback(db, clawback_id, for_update=True)
    recovery = await get_recovery(db, clawback_id, installment_number, for_update=True)
    if recovery is not None and recovery.status == RecoveryStatus.COMPLETED:
        logger.info("Installment %s of clawback %s already recovered", installment_number, clawback_id)
        return clawback

    now = now or utcnow()
    amount = to_money(amount)
    apply_recovery(clawback, amount, now)

    if recovery is None:
        recovery = ClawbackRecovery(
            clawback_id=clawback.id,
            installment_number=installment_number,
            scheduled_amount=amount,
            retry_count=0,
            posted_to_gl=False,
        )
        db.add(recovery)
    recovery.recovered_amount = amount
    recovery.recovery_date = now
    recovery.recovery_method = recovery_method
    recovery.statement_id = statement_id
    recovery.disbursement_id = disbursement_id
    recovery.transaction_ref = transaction_ref
    recovery.status = RecoveryStatus.COMPLETED
    recovery.failure_reason = None
    recovery.next_retry_date = None
    await _flush_guarded(db, clawback)

    logger.info(
        "Recovered %s on clawback %s installment %s; pending %s (%s)",
        amount, clawback.id, installment_number, clawback.pending_amount, clawback.status.value,
    )
    return clawback


async def record_recovery_failure(
    db: AsyncSession,
    clawback_id: int,
    *,
    installment_number: int,
    failure_reason: str,
    now: Optional[datetime] = None,
) -> ClawbackRecovery:
    recovery = await get_recovery(db, clawback_id, installment_number, for_update=True)
    if recovery is None:
        raise NotFoundError(
            "installment not found", clawback_id=clawback_id, installment_number=installment_number
        )
    if recovery.status == RecoveryStatus.COMPLETED:
        raise InvalidStateError(
            "installment already recovered", clawback_id=clawback_id, installment_number=installment_number
        )
    now = now or utcnow()
    recovery.status = RecoveryStatus.FAILED
    recovery.failure_reason = failure_reason
    recovery.retry_count += 1
    recovery.next_retry_date = next_retry_date(recovery.retry_count, now.date())
    await db.flush()
    logger.warning(
        "Clawback %s installment %s failed (%s); retry %s on %s",
        clawback_id, installment_number, failure_reason, recovery.retry_count, recovery.next_retry_date,
    )
    return recovery


async def mark_recovery_gl_posted(
    db: AsyncSession, recovery: ClawbackRecovery, voucher_number: str
) -> ClawbackRecovery:
    recovery.voucher_number = voucher_number
    recovery.posted_to_gl = True
    recovery.gl_posted_at = utcnow()
    await db.flush()
    return recovery


async def approve_clawback(
    db: AsyncSession, clawback_id: int, *, approved_by: str, now: Optional[datetime] = None
) -> Clawback:
    clawback = await get_clawback(db, clawback_id, for_update=True)
    if clawback.approved_by:
        return clawback
    if not clawback.is_active:
        raise InvalidStateError(
            f"cannot approve clawback in status {clawback.status.value}", clawback_id=clawback_id
        )
    clawback.approved_by = approved_by
    clawback.approved_at = now or utcnow()
    clawback.version += 1
    await _flush_guarded(db, clawback)
    logger.info("Approved clawback %s by %s", clawback.id, approved_by)
    return clawback


def _close(clawback: Clawback, target: ClawbackStatus, now: datetime) -> bool:
    if not check_transition(CLAWBACK_TRANSITIONS, "clawback", clawback.status, target):
        return False
    clawback.status = target
    clawback.recovery_end_date = now
    clawback.version += 1
    return True


async def waive_clawback(
    db: AsyncSession,
    clawback_id: int,
    *,
    waived_by: str,
    reason: str,
    now: Optional[datetime] = None,
) -> Clawback:
    if not reason:
        raise ValidationError("waiver reason is required")
    clawback = await get_clawback(db, clawback_id, for_update=True)
    now = now or utcnow()
    if _close(clawback, ClawbackStatus.WAIVED, now):
        clawback.waived_by = waived_by
        clawback.waived_at = now
        clawback.waiver_reason = reason
        await _flush_guarded(db, clawback)
        logger.info("Waived clawback %s (pending %s) by %s", clawback.id, clawback.pending_amount, waived_by)
    return clawback


async def write_off_clawback(
    db: AsyncSession,
    clawback_id: int,
    *,
    written_off_by: str,
    reason: str,
    now: Optional[datetime] = None,
) -> Clawback:
    if not reason:
        raise ValidationError("write-off reason is required")
    clawback = await get_clawback(db, clawback_id, for_update=True)
    if _close(clawback, ClawbackStatus.WRITE_OFF, now or utcnow()):
        clawback.notes = reason
        await _flush_guarded(db, clawback)
        logger.info("Wrote off clawback %s (pending %s) by %s", clawback.id, clawback.pending_amount, written_off_by)
    return clawback


async def close_clawback_partial(
    db: AsyncSession,
    clawback_id: int,
    *,
    policy_end_date: date,
    now: Optional[datetime] = None,
) -> Clawback:
    """Close as PARTIAL when the policy term ended before full recovery."""
    clawback = await get_clawback(db, clawback_id, for_update=True)
    if _close(clawback, ClawbackStatus.PARTIAL, now or utcnow()):
        clawback.policy_end_date = policy_end_date
        await _flush_guarded(db, clawback)
        logger.info(
            "Closed clawback %s as partial: recovered %s of %s",
            clawback.id, clawback.recovered_amount, clawback.clawback_amount,
        )
    return clawback


async def search_clawbacks(db: AsyncSession, criteria: ClawbackFilter) -> list[Clawback]:
    result = await db.execute(criteria.to_select())
    return list(result.scalars().all())


async def list_recoveries(db: AsyncSession, clawback_id: int) -> list[ClawbackRecovery]:
    result = await db.execute(
        select(ClawbackRecovery)
        .where(ClawbackRecovery.clawback_id == clawback_id)
        .order_by(ClawbackRecovery.installment_number)
    )
    return list(result.scalars().all())
