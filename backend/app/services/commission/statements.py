"""Trial and final statement lifecycle.

Trial statements are generated per agent from a batch's calculated
transactions and wait for finance approval.  An approved trial statement
yields exactly one final statement, which gates the disbursement.
"""

import calendar
import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.commission import (
    BatchStatus,
    CommissionStatus,
    CommissionTransaction,
)
from app.models.disbursement import Disbursement, DisbursementStatus
from app.models.statement import (
    FinalStatement,
    FinalStatementStatus,
    TrialStatement,
    TrialStatementStatus,
)
from app.models.suspense import SuspenseReason
from app.services.commission.batch import apply_batch_transition, get_batch
from app.services.commission.calculator import to_money
from app.services.commission.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.services.commission.filters import FinalStatementFilter, TrialStatementFilter
from app.services.commission.sla import utcnow
from app.services.commission.suspense import create_suspense
from app.services.commission.transitions import (
    FINAL_STATEMENT_TRANSITIONS,
    TRIAL_STATEMENT_TRANSITIONS,
    check_transition,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

_OPEN_TRIAL_STATUSES = (
    TrialStatementStatus.PENDING_APPROVAL,
    TrialStatementStatus.CORRECTION_NEEDED,
)


def format_statement_number(prefix: str, on: date, sequence: int) -> str:
    return f"{prefix}_{on:%Y%m%d}_{sequence:07d}"


def statement_totals(transactions: Iterable[CommissionTransaction]) -> tuple[int, Decimal, Decimal, Decimal]:
    """(distinct policies, gross, tds, net) over the given transactions."""
    policies = set()
    gross = tds = net = ZERO
    for txn in transactions:
        policies.add(txn.policy_number)
        gross += txn.gross_commission
        tds += txn.tds_amount
        net += txn.net_commission
    return len(policies), gross, tds, net


def split_partial_amount(
    gross: Decimal, tds: Decimal, net: Decimal, requested_net: Decimal
) -> tuple[Decimal, Decimal, Decimal]:
    """Scale gross and TDS to a requested net amount; net == gross - tds still holds."""
    if net <= 0:
        raise ValidationError("statement has no net amount to disburse")
    ratio = requested_net / net
    part_gross = to_money(gross * ratio)
    part_tds = part_gross - requested_net
    if part_tds < 0:
        part_tds = ZERO
        part_gross = requested_net
    return part_gross, part_tds, requested_net


def allocate_paid_gross(
    transactions: list[CommissionTransaction], paid_gross: Decimal
) -> list[Decimal]:
    """Spread ``paid_gross`` over transactions pro rata to their gross; the last absorbs rounding."""
    total = sum((txn.gross_commission for txn in transactions), ZERO)
    if total <= 0:
        return [ZERO for _ in transactions]
    shares = []
    allocated = ZERO
    for index, txn in enumerate(transactions):
        if index == len(transactions) - 1:
            share = paid_gross - allocated
        else:
            share = to_money(txn.gross_commission * paid_gross / total)
        allocated += share
        shares.append(share)
    return shares


# ─────────────────────────────────────────────────────────────────────
# Loaders
# ─────────────────────────────────────────────────────────────────────

async def get_trial_statement(db: AsyncSession, statement_id: int) -> TrialStatement:
    statement = await db.get(TrialStatement, statement_id)
    if statement is None:
        raise NotFoundError("trial statement not found", trial_statement_id=statement_id)
    return statement


async def get_final_statement(db: AsyncSession, statement_id: int) -> FinalStatement:
    statement = await db.get(FinalStatement, statement_id)
    if statement is None:
        raise NotFoundError("final statement not found", final_statement_id=statement_id)
    return statement


async def get_final_statement_for_trial(
    db: AsyncSession, trial_statement_id: int
) -> Optional[FinalStatement]:
    result = await db.execute(
        select(FinalStatement).where(FinalStatement.trial_statement_id == trial_statement_id)
    )
    return result.scalar_one_or_none()


async def get_batch_transactions(
    db: AsyncSession, batch_id: int, status: CommissionStatus
) -> list[CommissionTransaction]:
    result = await db.execute(
        select(CommissionTransaction)
        .where(
            CommissionTransaction.batch_id == batch_id,
            CommissionTransaction.status == status,
        )
        .order_by(CommissionTransaction.agent_id, CommissionTransaction.id)
    )
    return list(result.scalars().all())


async def get_statement_transactions(
    db: AsyncSession, trial_statement_id: int
) -> list[CommissionTransaction]:
    result = await db.execute(
        select(CommissionTransaction).where(
            CommissionTransaction.trial_statement_id == trial_statement_id
        )
    )
    return list(result.scalars().all())


async def get_final_statement_transactions(
    db: AsyncSession, final_statement_id: int
) -> list[CommissionTransaction]:
    result = await db.execute(
        select(CommissionTransaction)
        .where(CommissionTransaction.final_statement_id == final_statement_id)
        .order_by(CommissionTransaction.id)
    )
    return list(result.scalars().all())


async def get_batch_trial_statements(db: AsyncSession, batch_id: int) -> list[TrialStatement]:
    result = await db.execute(
        select(TrialStatement).where(TrialStatement.batch_id == batch_id)
    )
    return list(result.scalars().all())


async def _next_statement_sequence(db: AsyncSession, model, prefix: str, on: date) -> int:
    pattern = f"{prefix}_{on:%Y%m%d}_%"
    result = await db.execute(
        select(func.count(model.id)).where(model.statement_number.like(pattern))
    )
    return (result.scalar() or 0) + 1


# ─────────────────────────────────────────────────────────────────────
# Trial statements
# ─────────────────────────────────────────────────────────────────────

async def generate_trial_statements(
    db: AsyncSession, batch_id: int, *, now: Optional[datetime] = None
) -> list[TrialStatement]:
    """Create one trial statement per agent and move the batch to TRIAL_GENERATED.

    Safe to re-run: once the batch has left CALCULATING the existing
    statements are returned.
    """
    batch = await get_batch(db, batch_id)
    if batch.status == BatchStatus.TRIAL_GENERATED:
        return await get_batch_trial_statements(db, batch.id)
    if batch.status != BatchStatus.CALCULATING:
        raise InvalidStateError(
            f"cannot generate trial statements for batch in status {batch.status.value}",
            batch_id=batch_id,
        )

    now = now or utcnow()
    today = now.date()
    first_day = date(batch.year, batch.month, 1)
    last_day = date(batch.year, batch.month, calendar.monthrange(batch.year, batch.month)[1])

    by_agent: dict[str, list[CommissionTransaction]] = defaultdict(list)
    for txn in await get_batch_transactions(db, batch.id, CommissionStatus.CALCULATED):
        by_agent[txn.agent_id].append(txn)

    sequence = await _next_statement_sequence(db, TrialStatement, "TS", today)
    statements = []
    for agent_id in sorted(by_agent):
        txns = by_agent[agent_id]
        policies, gross, tds, net = statement_totals(txns)
        statement = TrialStatement(
            statement_number=format_statement_number("TS", today, sequence),
            batch_id=batch.id,
            agent_id=agent_id,
            statement_date=today,
            from_date=first_day,
            to_date=last_day,
            total_policies=policies,
            total_gross_commission=gross,
            total_tds=tds,
            total_net_commission=net,
            undisbursed_net_amount=ZERO,
            status=TrialStatementStatus.PENDING_APPROVAL,
        )
        db.add(statement)
        await db.flush()
        for txn in txns:
            txn.trial_statement_id = statement.id
            txn.status = CommissionStatus.TRIAL_GENERATED
        statements.append(statement)
        sequence += 1

    apply_batch_transition(batch, BatchStatus.TRIAL_GENERATED, now=now)
    await db.flush()
    logger.info(
        "Generated %d trial statements for batch %s", len(statements), batch.batch_number
    )
    return statements


async def _complete_batch_if_settled(db: AsyncSession, batch_id: int, now: datetime) -> None:
    batch = await get_batch(db, batch_id)
    if batch.status != BatchStatus.TRIAL_GENERATED:
        return
    statements = await get_batch_trial_statements(db, batch_id)
    if any(s.status in _OPEN_TRIAL_STATUSES for s in statements):
        return
    apply_batch_transition(batch, BatchStatus.COMPLETED, now=now)


async def approve_trial_statement(
    db: AsyncSession,
    statement_id: int,
    *,
    approved_by: str,
    remarks: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrialStatement:
    if not approved_by:
        raise ValidationError("approver is required")
    statement = await get_trial_statement(db, statement_id)
    if not check_transition(
        TRIAL_STATEMENT_TRANSITIONS, "trial statement", statement.status, TrialStatementStatus.APPROVED
    ):
        return statement

    now = now or utcnow()
    statement.status = TrialStatementStatus.APPROVED
    statement.approved_by = approved_by
    statement.approved_at = now
    statement.approval_remarks = remarks
    await _complete_batch_if_settled(db, statement.batch_id, now)
    await db.flush()
    logger.info("Approved trial statement %s by %s", statement.statement_number, approved_by)
    return statement


async def reject_trial_statement(
    db: AsyncSession,
    statement_id: int,
    *,
    rejected_by: str,
    remarks: str,
    now: Optional[datetime] = None,
) -> TrialStatement:
    if not remarks:
        raise ValidationError("rejection remarks are required")
    statement = await get_trial_statement(db, statement_id)
    if not check_transition(
        TRIAL_STATEMENT_TRANSITIONS, "trial statement", statement.status, TrialStatementStatus.REJECTED
    ):
        return statement

    now = now or utcnow()
    statement.status = TrialStatementStatus.REJECTED
    statement.approved_by = rejected_by
    statement.approved_at = now
    statement.approval_remarks = remarks
    await _complete_batch_if_settled(db, statement.batch_id, now)
    await db.flush()
    logger.info("Rejected trial statement %s by %s", statement.statement_number, rejected_by)
    return statement


async def request_correction(
    db: AsyncSession,
    statement_id: int,
    *,
    requested_by: str,
    remarks: str,
) -> TrialStatement:
    if not remarks:
        raise ValidationError("correction remarks are required")
    statement = await get_trial_statement(db, statement_id)
    if check_transition(
        TRIAL_STATEMENT_TRANSITIONS,
        "trial statement",
        statement.status,
        TrialStatementStatus.CORRECTION_NEEDED,
    ):
        statement.status = TrialStatementStatus.CORRECTION_NEEDED
        statement.approval_remarks = remarks
        await db.flush()
        logger.info("Correction requested on %s by %s", statement.statement_number, requested_by)
    return statement


async def resubmit_trial_statement(
    db: AsyncSession, statement_id: int, *, resubmitted_by: str
) -> TrialStatement:
    """Recompute totals from the linked transactions and return to PENDING_APPROVAL."""
    statement = await get_trial_statement(db, statement_id)
    if not check_transition(
        TRIAL_STATEMENT_TRANSITIONS,
        "trial statement",
        statement.status,
        TrialStatementStatus.PENDING_APPROVAL,
    ):
        return statement

    policies, gross, tds, net = statement_totals(
        await get_statement_transactions(db, statement.id)
    )
    statement.total_policies = policies
    statement.total_gross_commission = gross
    statement.total_tds = tds
    statement.total_net_commission = net
    statement.status = TrialStatementStatus.PENDING_APPROVAL
    await db.flush()
    logger.info("Resubmitted trial statement %s by %s", statement.statement_number, resubmitted_by)
    return statement


# ─────────────────────────────────────────────────────────────────────
# Final statements
# ─────────────────────────────────────────────────────────────────────

async def create_final_statement(
    db: AsyncSession,
    trial_statement_id: int,
    *,
    created_by: str,
    disbursement_amount: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> FinalStatement:
    """Create the single final statement for an APPROVED trial statement.

    With ``disbursement_amount`` below the approved net, the final statement
    is partial: it carries that net amount with gross and TDS scaled to
    match, and the remainder stays on the trial statement as
    ``undisbursed_net_amount`` and is parked in suspense until it is paid.
    All of the trial statement's transactions are linked to the final statement.
    """
    existing = await get_final_statement_for_trial(db, trial_statement_id)
    if existing is not None:
        return existing

    trial = await get_trial_statement(db, trial_statement_id)
    if trial.status != TrialStatementStatus.APPROVED:
        raise InvalidStateError(
            f"trial statement {trial.statement_number} is {trial.status.value}, not APPROVED",
            trial_statement_id=trial_statement_id,
        )

    gross = trial.total_gross_commission
    tds = trial.total_tds
    net = trial.total_net_commission
    is_partial = False
    if disbursement_amount is not None:
        requested = to_money(disbursement_amount)
        if requested <= 0 or requested > net:
            raise ValidationError(
                "disbursement amount must be positive and not exceed the approved net amount",
                requested=requested,
                approved=net,
            )
        if requested < net:
            is_partial = True
            gross, tds, net = split_partial_amount(gross, tds, net, requested)

    now = now or utcnow()
    today = now.date()
    sequence = await _next_statement_sequence(db, FinalStatement, "FS", today)
    final = FinalStatement(
        statement_number=format_statement_number("FS", today, sequence),
        trial_statement_id=trial.id,
        batch_id=trial.batch_id,
        agent_id=trial.agent_id,
        statement_date=today,
        total_gross_commission=gross,
        total_tds=tds,
        total_net_commission=net,
        is_partial=is_partial,
        status=FinalStatementStatus.FINALIZED,
        created_by=created_by,
    )
    db.add(final)
    await db.flush()

    await db.execute(
        update(CommissionTransaction)
        .where(CommissionTransaction.trial_statement_id == trial.id)
        .values(final_statement_id=final.id, status=CommissionStatus.FINALIZED)
    )
    if is_partial:
        remainder = trial.total_net_commission - net
        trial.undisbursed_net_amount = remainder
        await create_suspense(
            db,
            amount=remainder,
            reason=SuspenseReason.OTHER,
            agent_id=trial.agent_id,
            notes=f"undisbursed remainder of {trial.statement_number} after {final.statement_number}",
            workflow_id=f"undisbursed-{trial.statement_number}",
            created_by=created_by,
            now=now,
        )
    await db.flush()
    logger.info(
        "Created final statement %s from %s (net %s%s)",
        final.statement_number, trial.statement_number, net, ", partial" if is_partial else "",
    )
    return final


async def mark_ready_for_disbursement(db: AsyncSession, final_statement_id: int) -> FinalStatement:
    final = await get_final_statement(db, final_statement_id)
    if check_transition(
        FINAL_STATEMENT_TRANSITIONS,
        "final statement",
        final.status,
        FinalStatementStatus.READY_FOR_DISBURSEMENT,
    ):
        final.status = FinalStatementStatus.READY_FOR_DISBURSEMENT
        await db.execute(
            update(CommissionTransaction)
            .where(CommissionTransaction.final_statement_id == final.id)
            .values(status=CommissionStatus.READY_FOR_DISBURSEMENT)
        )
        await db.flush()
        logger.info("Final statement %s ready for disbursement", final.statement_number)
    return final


async def get_completed_disbursement(
    db: AsyncSession, final_statement_id: int
) -> Optional[Disbursement]:
    result = await db.execute(
        select(Disbursement).where(
            Disbursement.final_statement_id == final_statement_id,
            Disbursement.status == DisbursementStatus.COMPLETED,
        )
    )
    return result.scalars().first()


async def mark_final_statement_disbursed(db: AsyncSession, final_statement_id: int) -> FinalStatement:
    """READY_FOR_DISBURSEMENT -> DISBURSED, only once the payment has COMPLETED."""
    final = await get_final_statement(db, final_statement_id)
    if final.status == FinalStatementStatus.DISBURSED:
        return final

    disbursement = await get_completed_disbursement(db, final.id)
    if disbursement is None:
        raise InvalidStateError(
            f"final statement {final.statement_number} has no completed disbursement",
            final_statement_id=final_statement_id,
        )
    check_transition(
        FINAL_STATEMENT_TRANSITIONS, "final statement", final.status, FinalStatementStatus.DISBURSED
    )
    final.status = FinalStatementStatus.DISBURSED
    transactions = await get_final_statement_transactions(db, final.id)
    if final.is_partial:
        paid = allocate_paid_gross(transactions, final.total_gross_commission)
    else:
        paid = [txn.gross_commission for txn in transactions]
    for txn, amount in zip(transactions, paid):
        txn.status = CommissionStatus.DISBURSED
        txn.disbursement_id = disbursement.id
        txn.disbursed_amount = amount
    await db.flush()
    logger.info("Final statement %s disbursed via %s", final.statement_number, disbursement.id)
    return final


async def search_trial_statements(
    db: AsyncSession, criteria: TrialStatementFilter
) -> list[TrialStatement]:
    result = await db.execute(criteria.to_select())
    return list(result.scalars().all())


async def search_final_statements(
    db: AsyncSession, criteria: FinalStatementFilter
) -> list[FinalStatement]:
    result = await db.execute(criteria.to_select())
    return list(result.scalars().all())
