"""Commission disbursement (cheque or EFT) with optimistic locking."""

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
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class DisbursementMode(str, enum.Enum):
    CHEQUE = "CHEQUE"
    EFT = "EFT"


class DisbursementStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT_TO_BANK = "SENT_TO_BANK"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentFailureReason(str, enum.Enum):
    INVALID_ACCOUNT = "INVALID_ACCOUNT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    BANK_REJECTION = "BANK_REJECTION"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class Disbursement(Base):
    """Payment of one final statement to an agent.

    Every status mutation bumps ``version``; writers must present the
    version they last read.
    """

    __tablename__ = "disbursements"
    __table_args__ = (
        Index("ix_disbursements_status", "status"),
        Index("ix_disbursements_agent", "agent_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    final_statement_id: Mapped[int] = mapped_column(
        ForeignKey("final_statements.id"), nullable=False, index=True
    )
    agent_id: Mapped[str] = mapped_column(String(30), nullable=False)

    mode: Mapped[DisbursementMode] = mapped_column(Enum(DisbursementMode), nullable=False)
    status: Mapped[DisbursementStatus] = mapped_column(
        Enum(DisbursementStatus), default=DisbursementStatus.PENDING, nullable=False
    )

    total_gross_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_tds: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_net_commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # Cheque details
    cheque_number: Mapped[str | None] = mapped_column(String(30), nullable=True)
    cheque_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # EFT details
    bank_account_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_branch: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ifsc_code: Mapped[str | None] = mapped_column(String(11), nullable=True)
    account_holder_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Payment rail references
    payment_request_id: Mapped[str | None] = mapped_column(String(60), nullable=True, unique=True)
    pfms_payment_id: Mapped[str | None] = mapped_column(String(60), nullable=True)
    utr_number: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # SLA: 10 working days from initiation
    initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_to_bank_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    failure_reason: Mapped[PaymentFailureReason | None] = mapped_column(
        Enum(PaymentFailureReason), nullable=True
    )
    failure_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    workflow_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Accounting integration
    voucher_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    posted_to_gl: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    gl_posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
