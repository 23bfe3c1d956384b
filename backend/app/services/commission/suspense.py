"""Suspense account management.

Commission that cannot be paid (unknown agent, bad bank details, rate
missing, payment failed) is parked here.  Priority and resolution deadline
are derived from amount and reason; aging is measured in whole days since
the entry was opened.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.suspense import (
    SuspenseAccount,
    SuspensePriority,
    SuspenseReason,
    SuspenseStatus,
    SuspenseTransaction,
    SuspenseTransactionType,
)
from app.services.commission.calculator import to_money
from app.services.commission.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.services.commission.filters import SuspenseFilter
from app.services.commission.sla import utcnow

logger = logging.getLogger(__name__)

HIGH_PRIORITY_AMOUNT = Decimal("50000")
MEDIUM_PRIORITY_AMOUNT = Decimal("10000")

HIGH_PRIORITY_REASONS = {
    SuspenseReason.DUPLICATE_PAYMENT,
    SuspenseReason.DISPUTE_UNDER_REVIEW,
}

RESOLUTION_DAYS = {
    SuspensePriority.HIGH: 7,
    SuspensePriority.MEDIUM: 15,
    SuspensePriority.LOW: 30,
}

# (label, min days, max days inclusive); last bucket is open-ended
AGING_BUCKETS = [
    ("0-30 days", 0, 30),
    ("31-60 days", 31, 60),
    ("61-90 days", 61, 90),
    ("91-180 days", 91, 180),
    ("180+ days", 181, None),
]

_ESCALATION = {
    SuspensePriority.LOW: SuspensePriority.MEDIUM,
    SuspensePriority.MEDIUM: SuspensePriority.HIGH,
    SuspensePriority.HIGH: SuspensePriority.HIGH,
}


# ─────────────────────────────────────────────────────────────────────
# Pure rules
# ─────────────────────────────────────────────────────────────────────

def determine_priority(amount, reason: SuspenseReason) -> SuspensePriority:
    amount = Decimal(str(amount))
    if amount >= HIGH_PRIORITY_AMOUNT or reason in HIGH_PRIORITY_REASONS:
        return SuspensePriority.HIGH
    if amount >= MEDIUM_PRIORITY_AMOUNT:
        return SuspensePriority.MEDIUM
    return SuspensePriority.LOW


def calculate_resolution_deadline(suspense_date: datetime, priority: SuspensePriority) -> datetime:
    return suspense_date + timedelta(days=RESOLUTION_DAYS.get(priority, 30))


def aging_days(suspense_date: datetime, now: Optional[datetime] = None) -> int:
    elapsed = (now or utcnow()) - suspense_date
    return max(int(elapsed.total_seconds() // 86400), 0)


def aging_bucket(days: int) -> str:
    for label, _low, high in AGING_BUCKETS:
        if high is None or days <= high:
            return label
    return AGING_BUCKETS[-1][0]


def is_overdue(entry: SuspenseAccount, now: Optional[datetime] = None) -> bool:
    if entry.status != SuspenseStatus.OPEN or entry.resolution_deadline is None:
        return False
    return (now or utcnow()) > entry.resolution_deadline


def escalated_priority(priority: SuspensePriority) -> SuspensePriority:
    return _ESCALATION[priority]


# ─────────────────────────────────────────────────────────────────────
# Aging report
# ─────────────────────────────────────────────────────────────────────

@dataclass
class AgingBucket:
    label: str
    count: int = 0
    total_amount: Decimal = Decimal("0.00")
    min_aging_days: Optional[int] = None
    max_aging_days: Optional[int] = None


@dataclass
class AgingStats:
    count: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_days: int = 0

    @property
    def avg_age_days(self) -> float:
        return round(self.total_days / self.count, 1) if self.count else 0.0


@dataclass
class AgingReport:
    report_date: datetime
    total_entries: int = 0
    total_amount: Decimal = Decimal("0.00")
    buckets: list[AgingBucket] = field(default_factory=list)
    by_reason: dict[str, AgingStats] = field(default_factory=dict)
    by_priority: dict[str, AgingStats] = field(default_factory=dict)
    overdue_count: int = 0
    overdue_amount: Decimal = Decimal("0.00")


def build_aging_report(
    entries: Iterable[SuspenseAccount], now: Optional[datetime] = None
) -> AgingReport:
    """Reduce OPEN suspense entries into per-bucket, per-reason and per-priority totals."""
    now = now or utcnow()
    report = AgingReport(report_date=now)
    buckets = {label: AgingBucket(label=label) for label, _, _ in AGING_BUCKETS}

    for entry in entries:
        if entry.status != SuspenseStatus.OPEN:
            continue
        days = aging_days(entry.suspense_date, now)
        amount = Decimal(str(entry.amount))

        report.total_entries += 1
        report.total_amount += amount

        bucket = buckets[aging_bucket(days)]
        bucket.count += 1
        bucket.total_amount += amount
        bucket.min_aging_days = days if bucket.min_aging_days is None else min(bucket.min_aging_days, days)
        bucket.max_aging_days = days if bucket.max_aging_days is None else max(bucket.max_aging_days, days)

        for key, group in (
            (entry.reason.value, report.by_reason),
            (entry.priority.value, report.by_priority),
        ):
            stats = group.setdefault(key, AgingStats())
            stats.count += 1
            stats.total_amount += amount
            stats.total_days += days

        if is_overdue(entry, now):
            report.overdue_count += 1
            report.overdue_amount += amount

    report.buckets = [buckets[label] for label, _, _ in AGING_BUCKETS]
    return report


# ─────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────

async def get_suspense(db: AsyncSession, suspense_id: int) -> SuspenseAccount:
    entry = await db.get(SuspenseAccount, suspense_id)
    if entry is None:
        raise NotFoundError("suspense entry not found", suspense_id=suspense_id)
    return entry


async def get_suspense_by_workflow(db: AsyncSession, workflow_id: str) -> Optional[SuspenseAccount]:
    result = await db.execute(
        select(SuspenseAccount).where(SuspenseAccount.workflow_id == workflow_id)
    )
    return result.scalars().first()


def _audit(
    db: AsyncSession,
    entry: SuspenseAccount,
    transaction_type: SuspenseTransactionType,
    *,
    old_status: Optional[SuspenseStatus],
    performed_by: str,
    amount: Optional[Decimal] = None,
    remarks: Optional[str] = None,
) -> SuspenseTransaction:
    row = SuspenseTransaction(
        suspense_id=entry.id,
        transaction_type=transaction_type,
        old_status=old_status.value if old_status else None,
        new_status=entry.status.value,
        amount=amount,
        remarks=remarks,
        performed_by=performed_by,
    )
    db.add(row)
    return row


async def create_suspense(
    db: AsyncSession,
    *,
    amount,
    reason: SuspenseReason,
    agent_id: Optional[str] = None,
    policy_number: Optional[str] = None,
    commission_id: Optional[int] = None,
    disbursement_id: Optional[int] = None,
    notes: Optional[str] = None,
    workflow_id: Optional[str] = None,
    created_by: str = "SYSTEM",
    now: Optional[datetime] = None,
) -> SuspenseAccount:
    """Open a suspense entry; a repeated call with the same workflow id returns the first entry."""
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("suspense amount must be positive", amount=amount)

    if workflow_id:
        existing = await get_suspense_by_workflow(db, workflow_id)
        if existing is not None:
            logger.info("Suspense for workflow %s already exists (id=%s)", workflow_id, existing.id)
            return existing

    now = now or utcnow()
    priority = determine_priority(amount, reason)
    entry = SuspenseAccount(
        agent_id=agent_id,
        policy_number=policy_number,
        commission_id=commission_id,
        disbursement_id=disbursement_id,
        amount=amount,
        reason=reason,
        status=SuspenseStatus.OPEN,
        priority=priority,
        suspense_date=now,
        aging_days=0,
        resolution_deadline=calculate_resolution_deadline(now, priority),
        is_escalated=False,
        posted_to_gl=False,
        resolution_posted_to_gl=False,
        notes=notes,
        workflow_id=workflow_id,
        version=1,
        created_by=created_by,
    )
    db.add(entry)
    await db.flush()
    _audit(
        db, entry, SuspenseTransactionType.CREATED,
        old_status=None, performed_by=created_by, amount=amount, remarks=notes,
    )
    await db.flush()

    logger.info(
        "Opened suspense %s: %s %s priority=%s agent=%s",
        entry.id, amount, reason.value, priority.value, agent_id,
    )
    return entry


def _require_open(entry: SuspenseAccount, action: str) -> None:
    if entry.status != SuspenseStatus.OPEN:
        logger.warning("Cannot %s suspense %s in status %s", action, entry.id, entry.status.value)
        raise InvalidStateError(
            f"cannot {action} suspense entry in status {entry.status.value}",
            suspense_id=entry.id,
        )


async def resolve_suspense(
    db: AsyncSession,
    suspense_id: int,
    *,
    resolved_amount,
    resolution_method: str,
    resolved_by: str,
    remarks: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SuspenseAccount:
    entry = await get_suspense(db, suspense_id)
    if entry.status == SuspenseStatus.RESOLVED:
        return entry
    _require_open(entry, "resolve")

    resolved_amount = to_money(resolved_amount)
    if resolved_amount <= 0 or resolved_amount > entry.amount:
        raise ValidationError(
            "resolved amount must be positive and not exceed the suspense amount",
            resolved_amount=resolved_amount,
            suspense_amount=entry.amount,
        )
    if not resolution_method:
        raise ValidationError("resolution method is required")

    now = now or utcnow()
    entry.status = SuspenseStatus.RESOLVED
    entry.resolved_amount = resolved_amount
    entry.resolution_method = resolution_method
    entry.resolved_date = now
    entry.aging_days = aging_days(entry.suspense_date, now)
    entry.version += 1
    _audit(
        db, entry, SuspenseTransactionType.RESOLVED,
        old_status=SuspenseStatus.OPEN, performed_by=resolved_by,
        amount=resolved_amount, remarks=remarks,
    )
    await db.flush()
    logger.info("Resolved suspense %s for %s via %s by %s", entry.id, resolved_amount, resolution_method, resolved_by)
    return entry


async def write_off_suspense(
    db: AsyncSession,
    suspense_id: int,
    *,
    reason: str,
    written_off_by: str,
    now: Optional[datetime] = None,
) -> SuspenseAccount:
    entry = await get_suspense(db, suspense_id)
    if entry.status == SuspenseStatus.WRITE_OFF:
        return entry
    _require_open(entry, "write off")
    if not reason:
        raise ValidationError("write-off reason is required")

    now = now or utcnow()
    entry.status = SuspenseStatus.WRITE_OFF
    entry.write_off_date = now
    entry.write_off_reason = reason
    entry.aging_days = aging_days(entry.suspense_date, now)
    entry.version += 1
    _audit(
        db, entry, SuspenseTransactionType.WRITE_OFF,
        old_status=SuspenseStatus.OPEN, performed_by=written_off_by,
        amount=entry.amount, remarks=reason,
    )
    await db.flush()
    logger.info("Wrote off suspense %s (%s) by %s", entry.id, entry.amount, written_off_by)
    return entry


async def assign_suspense(
    db: AsyncSession,
    suspense_id: int,
    *,
    assigned_to: str,
    assigned_by: str,
) -> SuspenseAccount:
    entry = await get_suspense(db, suspense_id)
    _require_open(entry, "assign")
    if entry.assigned_to == assigned_to:
        return entry
    entry.assigned_to = assigned_to
    entry.version += 1
    _audit(
        db, entry, SuspenseTransactionType.ASSIGNED,
        old_status=entry.status, performed_by=assigned_by,
        remarks=f"assigned to {assigned_to}",
    )
    await db.flush()
    logger.info("Assigned suspense %s to %s", entry.id, assigned_to)
    return entry


async def mark_gl_posted(db: AsyncSession, entry: SuspenseAccount, voucher_number: str) -> SuspenseAccount:
    entry.voucher_number = voucher_number
    entry.posted_to_gl = True
    await db.flush()
    return entry


async def mark_resolution_gl_posted(
    db: AsyncSession, entry: SuspenseAccount, voucher_number: str
) -> SuspenseAccount:
    entry.resolution_voucher_number = voucher_number
    entry.resolution_posted_to_gl = True
    await db.flush()
    return entry


async def list_open_suspense(db: AsyncSession) -> list[SuspenseAccount]:
    result = await db.execute(
        select(SuspenseAccount).where(SuspenseAccount.status == SuspenseStatus.OPEN)
    )
    return list(result.scalars().all())


async def escalate_overdue(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Flag overdue OPEN entries and raise their priority one level."""
    now = now or utcnow()
    escalated = 0
    for entry in await list_open_suspense(db):
        if entry.is_escalated or not is_overdue(entry, now):
            continue
        old_priority = entry.priority
        entry.is_escalated = True
        entry.escalated_at = now
        entry.priority = escalated_priority(old_priority)
        entry.version += 1
        _audit(
            db, entry, SuspenseTransactionType.ESCALATED,
            old_status=entry.status, performed_by="SYSTEM",
            remarks=f"priority {old_priority.value} -> {entry.priority.value}",
        )
        escalated += 1
        logger.warning(
            "Escalated overdue suspense %s (deadline %s) to %s",
            entry.id, entry.resolution_deadline, entry.priority.value,
        )
    if escalated:
        await db.flush()
    return escalated


async def refresh_aging(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    updated = 0
    for entry in await list_open_suspense(db):
        days = aging_days(entry.suspense_date, now)
        if entry.aging_days != days:
            entry.aging_days = days
            updated += 1
    if updated:
        await db.flush()
    return updated


async def aging_report(db: AsyncSession, now: Optional[datetime] = None) -> AgingReport:
    return build_aging_report(await list_open_suspense(db), now)


async def search_suspense(db: AsyncSession, criteria: SuspenseFilter) -> list[SuspenseAccount]:
    result = await db.execute(criteria.to_select())
    return list(result.scalars().all())
