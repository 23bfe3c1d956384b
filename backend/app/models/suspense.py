"""Suspense holding account for commission that could not be paid out."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Boolean,
    Enum,
    DateTime,
    ForeignKey,
    Text,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class SuspenseStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    WRITE_OFF = "WRITE_OFF"


class SuspenseReason(str, enum.Enum):
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    INVALID_BANK_DETAILS = "INVALID_BANK_DETAILS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    DOCUMENTATION_INCOMPLETE = "DOCUMENTATION_INCOMPLETE"
    LICENSE_EXPIRED = "LICENSE_EXPIRED"
    LICENSE_SUSPENDED = "LICENSE_SUSPENDED"
    KYC_INCOMPLETE = "KYC_INCOMPLETE"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    DISPUTE_UNDER_REVIEW = "DISPUTE_UNDER_REVIEW"
    OTHER = "OTHER"


class SuspensePriority(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class SuspenseTransactionType(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ASSIGNED = "ASSIGNED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    WRITE_OFF = "WRITE_OFF"


class SuspenseAccount(Base):
    __tablename__ = "suspense_accounts"
    __table_args__ = (
        Index("ix_suspense_status_priority", "status", "priority"),
        Index("ix_suspense_agent", "agent_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    agent_id: Mapped[str | None] = mapped_column(String(30), nullable=True)
    policy_number: Mapped[str | None] = mapped_column(String(30), nullable=True)
    commission_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    disbursement_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reason: Mapped[SuspenseReason] = mapped_column(Enum(SuspenseReason), nullable=False)
    status: Mapped[SuspenseStatus] = mapped_column(
        Enum(SuspenseStatus), default=SuspenseStatus.OPEN, nullable=False
    )
    priority: Mapped[SuspensePriority] = mapped_column(
        Enum(SuspensePriority), default=SuspensePriority.LOW, nullable=False
    )

    suspense_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    aging_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resolution_deadline: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    is_escalated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    resolved_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resolved_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    write_off_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    write_off_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Parking and release are posted as separate vouchers
    voucher_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    posted_to_gl: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolution_voucher_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    resolution_posted_to_gl: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    workflow_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    transactions = relationship(
        "SuspenseTransaction", back_populates="suspense", order_by="SuspenseTransaction.id"
    )


class SuspenseTransaction(Base):
    """Append-only audit row for every suspense mutation."""

    __tablename__ = "suspense_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    suspense_id: Mapped[int] = mapped_column(
        ForeignKey("suspense_accounts.id"), nullable=False, index=True
    )
    transaction_type: Mapped[SuspenseTransactionType] = mapped_column(
        Enum(SuspenseTransactionType), nullable=False
    )
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    suspense = relationship("SuspenseAccount", back_populates="transactions")
