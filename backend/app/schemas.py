"""Pydantic schemas for request/response validation and activity payloads."""

from datetime import datetime, date
from decimal import Decimal
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field

from app.models.clawback import ClawbackReason, ClawbackStatus, RecoverySchedule, RecoveryStatus
from app.models.commission import BatchStatus, CommissionStatus, CommissionType, ProductType
from app.models.disbursement import DisbursementMode, DisbursementStatus, PaymentFailureReason
from app.models.statement import FinalStatementStatus, TrialStatementStatus
from app.models.suspense import SuspensePriority, SuspenseReason, SuspenseStatus
from app.services.commission.batch import PolicyCommissionInput
from app.services.commission import clawback as clawback_service
from app.services.commission.disbursement import ChequeDetails, EFTDetails


# ── Errors ────────────────────────────────────────────

class ErrorDetail(BaseModel):
    category: str
    reason: str
    error_type: Optional[str] = None
    context: Optional[dict] = None


# ── Batches ───────────────────────────────────────────

class BatchStartRequest(BaseModel):
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)
    triggered_by: str = "SYSTEM_SCHEDULER"
    workflow_id: Optional[str] = Field(None, max_length=100)


class PolicyCommissionItem(BaseModel):
    policy_number: str = Field(min_length=1, max_length=30)
    agent_id: str = Field(min_length=1, max_length=30)
    agent_type: str
    product_type: ProductType
    plan_code: str
    policy_term_years: int = Field(ge=1)
    annualised_premium: Decimal = Field(ge=0)
    commission_date: date
    commission_type: CommissionType = CommissionType.FIRST_YEAR
    has_verified_pan: bool = False

    def to_input(self) -> PolicyCommissionInput:
        return PolicyCommissionInput(**self.model_dump())


class BatchCalculateRequest(BaseModel):
    batch_id: int
    total_policies: Optional[int] = Field(None, ge=0)
    policies: list[PolicyCommissionItem] = []


class BatchResponse(BaseModel):
    id: int
    batch_number: str
    month: int
    year: int
    status: BatchStatus
    total_policies: int
    processed_records: int
    failed_records: int
    progress_percentage: int
    triggered_by: str
    workflow_id: Optional[str] = None
    started_at: datetime
    sla_deadline: datetime
    sla_breached: bool
    estimated_completion: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class BatchCancelRequest(BaseModel):
    reason: str = Field(min_length=1)


# ── Commission history ────────────────────────────────

class CommissionTransactionResponse(BaseModel):
    id: int
    batch_id: int
    agent_id: str
    policy_number: str
    commission_type: CommissionType
    product_type: ProductType
    annualised_premium: Decimal
    rate_percentage: Decimal
    gross_commission: Decimal
    tds_amount: Decimal
    net_commission: Decimal
    disbursed_amount: Decimal
    commission_date: date
    status: CommissionStatus
    trial_statement_id: Optional[int] = None
    final_statement_id: Optional[int] = None
    disbursement_id: Optional[int] = None

    model_config = {"from_attributes": True}


class CommissionHistoryResponse(BaseModel):
    transactions: list[CommissionTransactionResponse]
    page: int
    limit: int
    total_count: int
    total_pages: int


# ── Statements ────────────────────────────────────────

class TrialStatementResponse(BaseModel):
    id: int
    statement_number: str
    batch_id: int
    agent_id: str
    statement_date: date
    from_date: date
    to_date: date
    total_policies: int
    total_gross_commission: Decimal
    total_tds: Decimal
    total_net_commission: Decimal
    undisbursed_net_amount: Decimal
    status: TrialStatementStatus
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_remarks: Optional[str] = None

    model_config = {"from_attributes": True}


class FinalStatementResponse(BaseModel):
    id: int
    statement_number: str
    trial_statement_id: int
    batch_id: int
    agent_id: str
    statement_date: date
    total_gross_commission: Decimal
    total_tds: Decimal
    total_net_commission: Decimal
    is_partial: bool
    status: FinalStatementStatus
    created_by: Optional[str] = None

    model_config = {"from_attributes": True}


class ApproveStatementRequest(BaseModel):
    approved_by: str = Field(min_length=1, max_length=100)
    remarks: Optional[str] = None


class RejectStatementRequest(BaseModel):
    rejected_by: str = Field(min_length=1, max_length=100)
    remarks: str = Field(min_length=1)


class CorrectionRequest(BaseModel):
    requested_by: str = Field(min_length=1, max_length=100)
    remarks: str = Field(min_length=1)


class ResubmitRequest(BaseModel):
    resubmitted_by: str = Field(min_length=1, max_length=100)


class FinalStatementCreate(BaseModel):
    trial_statement_id: int
    created_by: str = "SYSTEM"
    disbursement_amount: Optional[Decimal] = Field(None, gt=0)


# ── Disbursements ─────────────────────────────────────

class ChequeDetailsIn(BaseModel):
    mode: Literal["CHEQUE"] = "CHEQUE"
    cheque_number: str = Field(min_length=1, max_length=30)
    cheque_date: date

    def to_details(self) -> ChequeDetails:
        return ChequeDetails(cheque_number=self.cheque_number, cheque_date=self.cheque_date)


class EFTDetailsIn(BaseModel):
    mode: Literal["EFT"] = "EFT"
    bank_account_number: str = Field(min_length=1, max_length=40)
    ifsc_code: str = Field(min_length=11, max_length=11)
    bank_name: str = Field(min_length=1, max_length=100)
    account_holder_name: str = Field(min_length=1, max_length=200)
    bank_branch: Optional[str] = None

    def to_details(self) -> EFTDetails:
        return EFTDetails(
            bank_account_number=self.bank_account_number,
            ifsc_code=self.ifsc_code,
            bank_name=self.bank_name,
            account_holder_name=self.account_holder_name,
            bank_branch=self.bank_branch,
        )


class DisbursementCreate(BaseModel):
    final_statement_id: int
    details: Union[ChequeDetailsIn, EFTDetailsIn] = Field(discriminator="mode")
    created_by: str = "SYSTEM"
    workflow_id: Optional[str] = Field(None, max_length=100)


class VersionedRequest(BaseModel):
    expected_version: int = Field(ge=1)


class DisbursementCancel(VersionedRequest):
    reason: str = Field(min_length=1)


class PaymentOutcome(VersionedRequest):
    success: bool
    utr_number: Optional[str] = None
    failure_code: Optional[str] = None
    failure_details: Optional[str] = None


class PaymentConfirmation(PaymentOutcome):
    disbursement_id: int


class DisbursementResponse(BaseModel):
    id: int
    final_statement_id: int
    agent_id: str
    mode: DisbursementMode
    status: DisbursementStatus
    total_gross_commission: Decimal
    total_tds: Decimal
    total_net_commission: Decimal
    cheque_number: Optional[str] = None
    cheque_date: Optional[date] = None
    bank_name: Optional[str] = None
    ifsc_code: Optional[str] = None
    payment_request_id: Optional[str] = None
    pfms_payment_id: Optional[str] = None
    utr_number: Optional[str] = None
    initiated_at: datetime
    sla_deadline: datetime
    sla_breached: bool
    completed_at: Optional[datetime] = None
    failure_reason: Optional[PaymentFailureReason] = None
    failure_details: Optional[str] = None
    retry_count: int
    voucher_number: Optional[str] = None
    posted_to_gl: bool
    version: int

    model_config = {"from_attributes": True}


# ── Clawbacks ─────────────────────────────────────────

class ClawbackCreate(BaseModel):
    policy_number: str = Field(min_length=1, max_length=30)
    agent_id: str = Field(min_length=1, max_length=30)
    reason: ClawbackReason
    policy_inception_date: date
    original_commission: Optional[Decimal] = Field(None, ge=0)
    policy_end_date: Optional[date] = None
    recovery_schedule: RecoverySchedule = RecoverySchedule.IMMEDIATE
    installment_months: Optional[int] = Field(None, ge=1, le=60)
    workflow_id: Optional[str] = Field(None, max_length=100)
    created_by: str = "SYSTEM"


class RecoveryCreate(BaseModel):
    installment_number: int = Field(ge=1)
    amount: Decimal = Field(gt=0)
    recovery_method: str = "DEDUCTION"
    statement_id: Optional[int] = None
    disbursement_id: Optional[int] = None
    transaction_ref: Optional[str] = None


class RecoveryFailure(BaseModel):
    installment_number: int = Field(ge=1)
    failure_reason: str = Field(min_length=1)


class ClawbackApprove(BaseModel):
    approved_by: str = Field(min_length=1, max_length=100)


class ClawbackClose(BaseModel):
    performed_by: str = Field(min_length=1, max_length=100)
    reason: str = Field(min_length=1)


class ClawbackPartialClose(BaseModel):
    policy_end_date: date


class RecoveryResponse(BaseModel):
    id: int
    installment_number: int
    scheduled_amount: Decimal
    recovered_amount: Decimal
    scheduled_date: Optional[date] = None
    recovery_date: Optional[datetime] = None
    status: RecoveryStatus
    retry_count: int
    next_retry_date: Optional[date] = None

    model_config = {"from_attributes": True}


class ClawbackResponse(BaseModel):
    id: int
    policy_number: str
    agent_id: str
    original_commission: Decimal
    clawback_percentage: Decimal
    clawback_amount: Decimal
    recovered_amount: Decimal
    pending_amount: Decimal
    reason: ClawbackReason
    status: ClawbackStatus
    policy_age_months: int
    policy_inception_date: date
    policy_end_date: Optional[date] = None
    recovery_schedule: RecoverySchedule
    installment_months: Optional[int] = None
    waiver_reason: Optional[str] = None
    version: int

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def recovery_progress(self) -> Decimal:
        """Recovered share of the clawback amount, in percent."""
        return clawback_service.recovery_progress(self)


# ── Suspense ──────────────────────────────────────────

class SuspenseCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: SuspenseReason
    agent_id: Optional[str] = None
    policy_number: Optional[str] = None
    commission_id: Optional[int] = None
    disbursement_id: Optional[int] = None
    notes: Optional[str] = None
    workflow_id: Optional[str] = Field(None, max_length=100)
    created_by: str = "SYSTEM"


class SuspenseResolve(BaseModel):
    resolved_amount: Decimal = Field(gt=0)
    resolution_method: str = Field(min_length=1)
    resolved_by: str = Field(min_length=1)
    remarks: Optional[str] = None


class SuspenseWriteOff(BaseModel):
    reason: str = Field(min_length=1)
    written_off_by: str = Field(min_length=1)


class SuspenseAssign(BaseModel):
    assigned_to: str = Field(min_length=1)
    assigned_by: str = Field(min_length=1)


class SuspenseResponse(BaseModel):
    id: int
    agent_id: Optional[str] = None
    policy_number: Optional[str] = None
    disbursement_id: Optional[int] = None
    amount: Decimal
    reason: SuspenseReason
    status: SuspenseStatus
    priority: SuspensePriority
    suspense_date: datetime
    aging_days: int
    resolution_deadline: datetime
    is_escalated: bool
    resolved_amount: Optional[Decimal] = None
    assigned_to: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class AgingBucketResponse(BaseModel):
    label: str
    count: int
    total_amount: Decimal
    min_aging_days: Optional[int] = None
    max_aging_days: Optional[int] = None

    model_config = {"from_attributes": True}


class AgingStatsResponse(BaseModel):
    count: int
    total_amount: Decimal
    avg_age_days: float

    model_config = {"from_attributes": True}


class AgingReportResponse(BaseModel):
    report_date: datetime
    total_entries: int
    total_amount: Decimal
    overdue_count: int
    overdue_amount: Decimal
    buckets: list[AgingBucketResponse]
    by_reason: dict[str, AgingStatsResponse]
    by_priority: dict[str, AgingStatsResponse]

    model_config = {"from_attributes": True}


# ── Webhooks ──────────────────────────────────────────

class PFMSPaymentWebhook(BaseModel):
    disbursement_id: int
    utr_number: Optional[str] = None
    status: Literal["SUCCESS", "FAILED"]
    failure_code: Optional[str] = None
    failure_details: Optional[str] = None
    payment_id: Optional[str] = None


class PolicyStatusWebhook(BaseModel):
    policy_number: str = Field(min_length=1)
    old_status: str
    new_status: str
    reason: Optional[str] = None
    change_date: Optional[date] = None
