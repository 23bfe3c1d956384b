"""Commission rate, batch and transaction models.

A batch is the monthly calculation run; it owns one transaction per
(policy, commission type).  Transactions are later linked to the trial
statement, final statement and disbursement that carry them.
"""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Boolean,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class ProductType(str, enum.Enum):
    PLI = "PLI"
    RPLI = "RPLI"


class CommissionType(str, enum.Enum):
    FIRST_YEAR = "FIRST_YEAR"
    RENEWAL = "RENEWAL"
    BONUS = "BONUS"


class CommissionStatus(str, enum.Enum):
    CALCULATED = "CALCULATED"
    TRIAL_GENERATED = "TRIAL_GENERATED"
    FINALIZED = "FINALIZED"
    READY_FOR_DISBURSEMENT = "READY_FOR_DISBURSEMENT"
    DISBURSED = "DISBURSED"
    CANCELLED = "CANCELLED"


class BatchStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    CALCULATING = "CALCULATING"
    TRIAL_GENERATED = "TRIAL_GENERATED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_BATCH_STATUSES = (
    BatchStatus.INITIATED,
    BatchStatus.CALCULATING,
    BatchStatus.TRIAL_GENERATED,
)


class CommissionRate(Base):
    """Rate table row, effective over ``[effective_from, effective_to)``."""

    __tablename__ = "commission_rates"
    __table_args__ = (
        Index(
            "ix_commission_rates_lookup",
            "product_type", "agent_type", "plan_code", "policy_term_years",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    rate_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    product_type: Mapped[ProductType] = mapped_column(Enum(ProductType), nullable=False)
    agent_type: Mapped[str] = mapped_column(String(30), nullable=False)
    plan_code: Mapped[str] = mapped_column(String(30), nullable=False)
    policy_term_years: Mapped[int] = mapped_column(Integer, nullable=False)
    policy_duration_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def is_effective_on(self, as_of: date) -> bool:
        if not self.is_active:
            return False
        if as_of < self.effective_from:
            return False
        if self.effective_to is not None and as_of >= self.effective_to:
            return False
        return True


class CommissionBatch(Base):
    """Monthly commission calculation run with a 6-hour SLA."""

    __tablename__ = "commission_batches"
    __table_args__ = (
        # At most one non-terminal batch per period
        Index(
            "uq_commission_batches_active_period",
            "month", "year",
            unique=True,
            postgresql_where=text(
                "status IN ('INITIATED', 'CALCULATING', 'TRIAL_GENERATED')"
            ),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus), default=BatchStatus.INITIATED, nullable=False
    )

    total_policies: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    triggered_by: Mapped[str] = mapped_column(String(50), default="SYSTEM_SCHEDULER")
    workflow_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    workflow_state: Mapped[str | None] = mapped_column(String(50), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    estimated_completion: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    transactions = relationship("CommissionTransaction", back_populates="batch")


class CommissionTransaction(Base):
    """Commission calculated for one policy and commission type."""

    __tablename__ = "commission_transactions"
    __table_args__ = (
        UniqueConstraint(
            "batch_id", "policy_number", "commission_type",
            name="uq_commission_txn_batch_policy_type",
        ),
        Index("ix_commission_txn_agent", "agent_id"),
        Index("ix_commission_txn_policy", "policy_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("commission_batches.id"), nullable=False, index=True
    )
    agent_id: Mapped[str] = mapped_column(String(30), nullable=False)
    policy_number: Mapped[str] = mapped_column(String(30), nullable=False)
    commission_type: Mapped[CommissionType] = mapped_column(
        Enum(CommissionType), nullable=False
    )
    product_type: Mapped[ProductType] = mapped_column(Enum(ProductType), nullable=False)

    annualised_premium: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rate_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    gross_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    tds_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    tds_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    net_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    # Gross actually paid out; below gross_commission after a partial payout
    disbursed_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0.00"), nullable=False
    )

    commission_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[CommissionStatus] = mapped_column(
        Enum(CommissionStatus), default=CommissionStatus.CALCULATED, nullable=False
    )

    trial_statement_id: Mapped[int | None] = mapped_column(
        ForeignKey("trial_statements.id"), nullable=True, index=True
    )
    final_statement_id: Mapped[int | None] = mapped_column(
        ForeignKey("final_statements.id"), nullable=True, index=True
    )
    disbursement_id: Mapped[int | None] = mapped_column(
        ForeignKey("disbursements.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    batch = relationship("CommissionBatch", back_populates="transactions")
