"""Trial and final commission statements."""

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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class TrialStatementStatus(str, enum.Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CORRECTION_NEEDED = "CORRECTION_NEEDED"


class FinalStatementStatus(str, enum.Enum):
    FINALIZED = "FINALIZED"
    READY_FOR_DISBURSEMENT = "READY_FOR_DISBURSEMENT"
    DISBURSED = "DISBURSED"


class TrialStatement(Base):
    """Draft statement for one agent within a batch, pending finance approval.

    Totals are always the sum of the linked transactions.
    """

    __tablename__ = "trial_statements"
    __table_args__ = (
        UniqueConstraint("batch_id", "agent_id", name="uq_trial_statement_batch_agent"),
        Index("ix_trial_statements_status", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    statement_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("commission_batches.id"), nullable=False, index=True
    )
    agent_id: Mapped[str] = mapped_column(String(30), nullable=False)
    statement_date: Mapped[date] = mapped_column(Date, nullable=False)
    from_date: Mapped[date] = mapped_column(Date, nullable=False)
    to_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_policies: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_gross_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_tds: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_net_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    # Net amount approved but not carried to the final statement (partial disbursement)
    undisbursed_net_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0.00"), nullable=False
    )

    status: Mapped[TrialStatementStatus] = mapped_column(
        Enum(TrialStatementStatus),
        default=TrialStatementStatus.PENDING_APPROVAL,
        nullable=False,
    )
    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    approval_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_unit: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    final_statement = relationship(
        "FinalStatement", back_populates="trial_statement", uselist=False
    )


class FinalStatement(Base):
    """Approved statement that triggers an actual payment."""

    __tablename__ = "final_statements"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    statement_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    trial_statement_id: Mapped[int] = mapped_column(
        ForeignKey("trial_statements.id"), unique=True, nullable=False
    )
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("commission_batches.id"), nullable=False, index=True
    )
    agent_id: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    statement_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_gross_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_tds: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_net_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    is_partial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    status: Mapped[FinalStatementStatus] = mapped_column(
        Enum(FinalStatementStatus),
        default=FinalStatementStatus.FINALIZED,
        nullable=False,
    )
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    trial_statement = relationship("TrialStatement", back_populates="final_statement")
