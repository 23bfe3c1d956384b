"""Clawback of paid commission and its installment recovery ledger."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Boolean,
    Numeric,
    Integer,
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


class ClawbackStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"          # policy term ended before full recovery
    WAIVED = "WAIVED"
    WRITE_OFF = "WRITE_OFF"


class ClawbackReason(str, enum.Enum):
    POLICY_SURRENDERED = "POLICY_SURRENDERED"
    POLICY_LAPSED = "POLICY_LAPSED"
    POLICY_CANCELLED = "POLICY_CANCELLED"
    FRAUD_DETECTED = "FRAUD_DETECTED"
    CHARGEBACK_REQUEST = "CHARGEBACK_REQUEST"


class RecoverySchedule(str, enum.Enum):
    IMMEDIATE = "IMMEDIATE"
    INSTALLMENT = "INSTALLMENT"


class RecoveryStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


RECOVERABLE_CLAWBACK_STATUSES = (ClawbackStatus.PENDING, ClawbackStatus.IN_PROGRESS)
CLOSED_CLAWBACK_STATUSES = (
    ClawbackStatus.COMPLETED,
    ClawbackStatus.PARTIAL,
    ClawbackStatus.WAIVED,
    ClawbackStatus.WRITE_OFF,
)


class Clawback(Base):
    """Amount to recover from an agent after a policy terminates early.

    ``recovered_amount + pending_amount == clawback_amount`` holds after
    every recovery.
    """

    __tablename__ = "clawbacks"
    __table_args__ = (
        Index("ix_clawbacks_policy", "policy_number"),
        Index("ix_clawbacks_agent_status", "agent_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    policy_number: Mapped[str] = mapped_column(String(30), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(30), nullable=False)

    original_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    clawback_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    clawback_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    recovered_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0.00"), nullable=False
    )
    pending_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    reason: Mapped[ClawbackReason] = mapped_column(Enum(ClawbackReason), nullable=False)
    status: Mapped[ClawbackStatus] = mapped_column(
        Enum(ClawbackStatus), default=ClawbackStatus.PENDING, nullable=False
    )
    policy_age_months: Mapped[int] = mapped_column(Integer, nullable=False)

    trigger_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    policy_inception_date: Mapped[date] = mapped_column(Date, nullable=False)
    policy_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    recovery_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recovery_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    recovery_schedule: Mapped[RecoverySchedule] = mapped_column(
        Enum(RecoverySchedule), default=RecoverySchedule.IMMEDIATE, nullable=False
    )
    installment_months: Mapped[int | None] = mapped_column(Integer, nullable=True)

    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    waived_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    waived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    waiver_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    workflow_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    recoveries = relationship(
        "ClawbackRecovery", back_populates="clawback", order_by="ClawbackRecovery.installment_number"
    )

    # Every UPDATE is guarded by the version it was read at; services bump it
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def is_active(self) -> bool:
        return self.status not in CLOSED_CLAWBACK_STATUSES

    @property
    def can_recover(self) -> bool:
        return self.status in RECOVERABLE_CLAWBACK_STATUSES


class ClawbackRecovery(Base):
    """One installment of a clawback; retried independently until recovered."""

    __tablename__ = "clawback_recoveries"
    __table_args__ = (
        UniqueConstraint(
            "clawback_id", "installment_number", name="uq_clawback_recovery_installment"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    clawback_id: Mapped[int] = mapped_column(
        ForeignKey("clawbacks.id"), nullable=False, index=True
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    recovered_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0.00"), nullable=False
    )
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    recovery_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recovery_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    statement_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    disbursement_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transaction_ref: Mapped[str | None] = mapped_column(String(60), nullable=True)

    status: Mapped[RecoveryStatus] = mapped_column(
        Enum(RecoveryStatus), default=RecoveryStatus.SCHEDULED, nullable=False
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    voucher_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    posted_to_gl: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    gl_posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    clawback = relationship("Clawback", back_populates="recoveries")
