"""Typed search filters.

Each filter holds optional criteria only; ``to_select()`` turns the ones
that are set into a SQLAlchemy ``select`` with pagination applied.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Select, func, select

from app.models.clawback import Clawback, ClawbackReason, ClawbackStatus
from app.models.commission import CommissionStatus, CommissionTransaction, CommissionType
from app.models.disbursement import Disbursement, DisbursementMode, DisbursementStatus
from app.models.statement import (
    FinalStatement,
    FinalStatementStatus,
    TrialStatement,
    TrialStatementStatus,
)
from app.models.suspense import (
    SuspenseAccount,
    SuspensePriority,
    SuspenseReason,
    SuspenseStatus,
)

MAX_PAGE_SIZE = 200


def _paginate(stmt: Select, page: int, limit: int) -> Select:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return stmt.offset((page - 1) * limit).limit(limit)


@dataclass
class TrialStatementFilter:
    batch_id: Optional[int] = None
    agent_id: Optional[str] = None
    status: Optional[TrialStatementStatus] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    page: int = 1
    limit: int = 50

    def to_select(self) -> Select:
        stmt = select(TrialStatement)
        if self.batch_id is not None:
            stmt = stmt.where(TrialStatement.batch_id == self.batch_id)
        if self.agent_id:
            stmt = stmt.where(TrialStatement.agent_id == self.agent_id)
        if self.status is not None:
            stmt = stmt.where(TrialStatement.status == self.status)
        if self.from_date is not None:
            stmt = stmt.where(TrialStatement.statement_date >= self.from_date)
        if self.to_date is not None:
            stmt = stmt.where(TrialStatement.statement_date <= self.to_date)
        stmt = stmt.order_by(TrialStatement.id.desc())
        return _paginate(stmt, self.page, self.limit)


@dataclass
class FinalStatementFilter:
    batch_id: Optional[int] = None
    agent_id: Optional[str] = None
    status: Optional[FinalStatementStatus] = None
    page: int = 1
    limit: int = 50

    def to_select(self) -> Select:
        stmt = select(FinalStatement)
        if self.batch_id is not None:
            stmt = stmt.where(FinalStatement.batch_id == self.batch_id)
        if self.agent_id:
            stmt = stmt.where(FinalStatement.agent_id == self.agent_id)
        if self.status is not None:
            stmt = stmt.where(FinalStatement.status == self.status)
        stmt = stmt.order_by(FinalStatement.id.desc())
        return _paginate(stmt, self.page, self.limit)


@dataclass
class DisbursementFilter:
    agent_id: Optional[str] = None
    final_statement_id: Optional[int] = None
    status: Optional[DisbursementStatus] = None
    mode: Optional[DisbursementMode] = None
    sla_breached: Optional[bool] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    page: int = 1
    limit: int = 50

    def to_select(self) -> Select:
        stmt = select(Disbursement)
        if self.agent_id:
            stmt = stmt.where(Disbursement.agent_id == self.agent_id)
        if self.final_statement_id is not None:
            stmt = stmt.where(Disbursement.final_statement_id == self.final_statement_id)
        if self.status is not None:
            stmt = stmt.where(Disbursement.status == self.status)
        if self.mode is not None:
            stmt = stmt.where(Disbursement.mode == self.mode)
        if self.sla_breached is not None:
            stmt = stmt.where(Disbursement.sla_breached.is_(self.sla_breached))
        if self.from_date is not None:
            stmt = stmt.where(Disbursement.initiated_at >= self.from_date)
        if self.to_date is not None:
            stmt = stmt.where(Disbursement.initiated_at <= self.to_date)
        stmt = stmt.order_by(Disbursement.id.desc())
        return _paginate(stmt, self.page, self.limit)


@dataclass
class ClawbackFilter:
    agent_id: Optional[str] = None
    policy_number: Optional[str] = None
    status: Optional[ClawbackStatus] = None
    reason: Optional[ClawbackReason] = None
    min_pending: Optional[Decimal] = None
    page: int = 1
    limit: int = 50

    def to_select(self) -> Select:
        stmt = select(Clawback)
        if self.agent_id:
            stmt = stmt.where(Clawback.agent_id == self.agent_id)
        if self.policy_number:
            stmt = stmt.where(Clawback.policy_number == self.policy_number)
        if self.status is not None:
            stmt = stmt.where(Clawback.status == self.status)
        if self.reason is not None:
            stmt = stmt.where(Clawback.reason == self.reason)
        if self.min_pending is not None:
            stmt = stmt.where(Clawback.pending_amount >= self.min_pending)
        stmt = stmt.order_by(Clawback.id.desc())
        return _paginate(stmt, self.page, self.limit)


@dataclass
class SuspenseFilter:
    agent_id: Optional[str] = None
    policy_number: Optional[str] = None
    status: Optional[SuspenseStatus] = None
    reason: Optional[SuspenseReason] = None
    priority: Optional[SuspensePriority] = None
    assigned_to: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    min_aging_days: Optional[int] = None
    max_aging_days: Optional[int] = None
    page: int = 1
    limit: int = 50

    def to_select(self) -> Select:
        stmt = select(SuspenseAccount)
        if self.agent_id:
            stmt = stmt.where(SuspenseAccount.agent_id == self.agent_id)
        if self.policy_number:
            stmt = stmt.where(SuspenseAccount.policy_number == self.policy_number)
        if self.status is not None:
            stmt = stmt.where(SuspenseAccount.status == self.status)
        if self.reason is not None:
            stmt = stmt.where(SuspenseAccount.reason == self.reason)
        if self.priority is not None:
            stmt = stmt.where(SuspenseAccount.priority == self.priority)
        if self.assigned_to:
            stmt = stmt.where(SuspenseAccount.assigned_to == self.assigned_to)
        if self.min_amount is not None:
            stmt = stmt.where(SuspenseAccount.amount >= self.min_amount)
        if self.max_amount is not None:
            stmt = stmt.where(SuspenseAccount.amount <= self.max_amount)
        if self.min_aging_days is not None:
            stmt = stmt.where(SuspenseAccount.aging_days >= self.min_aging_days)
        if self.max_aging_days is not None:
            stmt = stmt.where(SuspenseAccount.aging_days <= self.max_aging_days)
        stmt = stmt.order_by(SuspenseAccount.suspense_date.asc())
        return _paginate(stmt, self.page, self.limit)


@dataclass
class CommissionTransactionFilter:
    agent_id: Optional[str] = None
    policy_number: Optional[str] = None
    batch_id: Optional[int] = None
    commission_type: Optional[CommissionType] = None
    status: Optional[CommissionStatus] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    page: int = 1
    limit: int = 50

    def _filtered(self, stmt: Select) -> Select:
        if self.agent_id:
            stmt = stmt.where(CommissionTransaction.agent_id == self.agent_id)
        if self.policy_number:
            stmt = stmt.where(CommissionTransaction.policy_number == self.policy_number)
        if self.batch_id is not None:
            stmt = stmt.where(CommissionTransaction.batch_id == self.batch_id)
        if self.commission_type is not None:
            stmt = stmt.where(CommissionTransaction.commission_type == self.commission_type)
        if self.status is not None:
            stmt = stmt.where(CommissionTransaction.status == self.status)
        if self.from_date is not None:
            stmt = stmt.where(CommissionTransaction.commission_date >= self.from_date)
        if self.to_date is not None:
            stmt = stmt.where(CommissionTransaction.commission_date <= self.to_date)
        return stmt

    def to_select(self) -> Select:
        stmt = self._filtered(select(CommissionTransaction))
        stmt = stmt.order_by(
            CommissionTransaction.commission_date.desc(), CommissionTransaction.id.desc()
        )
        return _paginate(stmt, self.page, self.limit)

    def count_select(self) -> Select:
        """Total matching rows, ignoring pagination."""
        return self._filtered(select(func.count(CommissionTransaction.id)))
