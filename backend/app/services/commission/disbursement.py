"""Disbursement lifecycle with optimistic locking.

PENDING -> PROCESSING -> SENT_TO_BANK -> COMPLETED | FAILED for EFT;
cheques go PROCESSING -> COMPLETED.  A FAILED payment may be retried up
to ``max_disbursement_retries`` times, each attempt with a fresh rail
idempotency key.  Every status write is conditional on the caller's
``expected_version``.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Protocol, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.disbursement import (
    Disbursement,
    DisbursementMode,
    DisbursementStatus,
    PaymentFailureReason,
)
from app.models.statement import FinalStatementStatus
from app.models.suspense import SuspenseReason
from app.services.commission.errors import (
    InvalidStateError,
    NotFoundError,
    OptimisticLockError,
    ValidationError,
)
from app.services.commission.filters import DisbursementFilter
from app.services.commission.sla import disbursement_sla_deadline, is_deadline_passed, utcnow
from app.services.commission.statements import get_final_statement
from app.services.commission.suspense import create_suspense
from app.services.commission.transitions import DISBURSEMENT_TRANSITIONS, check_transition
from app.services.integrations.pfms_client import EFTPaymentRequest, EFTPaymentResponse

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# Payment details
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ChequeDetails:
    cheque_number: str
    cheque_date: date

    mode = DisbursementMode.CHEQUE

    def validate(self) -> None:
        if not self.cheque_number or not self.cheque_number.strip():
            raise ValidationError("cheque number is required for cheque disbursement")
        if self.cheque_date is None:
            raise ValidationError("cheque date is required for cheque disbursement")

    def columns(self) -> dict:
        return {"cheque_number": self.cheque_number.strip(), "cheque_date": self.cheque_date}


@dataclass(frozen=True)
class EFTDetails:
    bank_account_number: str
    ifsc_code: str
    bank_name: str
    account_holder_name: str
    bank_branch: Optional[str] = None

    mode = DisbursementMode.EFT

    def validate(self) -> None:
        missing = [
            name for name in ("bank_account_number", "ifsc_code", "bank_name", "account_holder_name")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ValidationError(
                f"missing EFT fields: {', '.join(missing)}", missing=",".join(missing)
            )
        if len(self.ifsc_code.strip()) != 11:
            raise ValidationError("IFSC code must be 11 characters", ifsc_code=self.ifsc_code)

    def columns(self) -> dict:
        return {
            "bank_account_number": self.bank_account_number.strip(),
            "ifsc_code": self.ifsc_code.strip().upper(),
            "bank_name": self.bank_name.strip(),
            "account_holder_name": self.account_holder_name.strip(),
            "bank_branch": self.bank_branch,
        }


DisbursementDetails = Union[ChequeDetails, EFTDetails]


class PaymentRail(Protocol):
    async def initiate_eft_payment(self, request: EFTPaymentRequest) -> EFTPaymentResponse: ...


# ─────────────────────────────────────────────────────────────────────
# Pure rules
# ─────────────────────────────────────────────────────────────────────

_PFMS_FAILURE_CODES = {
    "INVALID_ACCOUNT": PaymentFailureReason.INVALID_ACCOUNT,
    "ACC_NOT_FOUND": PaymentFailureReason.INVALID_ACCOUNT,
    "INSUFFICIENT_FUNDS": PaymentFailureReason.INSUFFICIENT_FUNDS,
    "BANK_REJECTED": PaymentFailureReason.BANK_REJECTION,
    "BENEFICIARY_REJECTED": PaymentFailureReason.BANK_REJECTION,
    "NETWORK_ERROR": PaymentFailureReason.NETWORK_ERROR,
    "TIMEOUT": PaymentFailureReason.NETWORK_ERROR,
}


def map_failure_code(code: Optional[str]) -> PaymentFailureReason:
    return _PFMS_FAILURE_CODES.get((code or "").strip().upper(), PaymentFailureReason.VALIDATION_ERROR)


def payment_idempotency_key(disbursement: Disbursement) -> str:
    """Stable within one attempt, new for every retry."""
    return f"DISB-{disbursement.id}-A{disbursement.retry_count}"


def can_retry(disbursement: Disbursement, max_retries: Optional[int] = None) -> bool:
    limit = settings.max_disbursement_retries if max_retries is None else max_retries
    return disbursement.status == DisbursementStatus.FAILED and disbursement.retry_count < limit


def is_sla_breached(disbursement: Disbursement, now: Optional[datetime] = None) -> bool:
    if disbursement.status == DisbursementStatus.COMPLETED:
        return False
    return is_deadline_passed(disbursement.sla_deadline, now)


# ─────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────

async def get_disbursement(db: AsyncSession, disbursement_id: int) -> Disbursement:
    disbursement = await db.get(Disbursement, disbursement_id)
    if disbursement is None:
        raise NotFoundError("disbursement not found", disbursement_id=disbursement_id)
    return disbursement


async def get_disbursement_for_statement(
    db: AsyncSession, final_statement_id: int
) -> Optional[Disbursement]:
    result = await db.execute(
        select(Disbursement)
        .where(
            Disbursement.final_statement_id == final_statement_id,
            Disbursement.status != DisbursementStatus.CANCELLED,
        )
        .order_by(Disbursement.id.desc())
    )
    return result.scalars().first()


def check_version(disbursement: Disbursement, expected_version: int) -> None:
    if disbursement.version != expected_version:
        logger.warning(
            "Stale write on disbursement %s: expected v%s, current v%s",
            disbursement.id, expected_version, disbursement.version,
        )
        raise OptimisticLockError(
            "disbursement was modified concurrently; re-read and retry",
            disbursement_id=disbursement.id,
            expected_version=expected_version,
            current_version=disbursement.version,
        )


async def versioned_update(
    db: AsyncSession, disbursement: Disbursement, expected_version: int, **values
) -> Disbursement:
    """Write ``values`` only if the row is still at ``expected_version``; bumps the version."""
    check_version(disbursement, expected_version)
    result = await db.execute(
        update(Disbursement)
        .where(Disbursement.id == disbursement.id, Disbursement.version == expected_version)
        .values(**values, version=expected_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Lost update race on disbursement %s at v%s", disbursement.id, expected_version)
        raise OptimisticLockError(
            "disbursement was modified concurrently; re-read and retry",
            disbursement_id=disbursement.id,
            expected_version=expected_version,
        )
    for key, value in values.items():
        setattr(disbursement, key, value)
    disbursement.version = expected_version + 1
    return disbursement


async def _transition(
    db: AsyncSession,
    disbursement: Disbursement,
    target: DisbursementStatus,
    expected_version: int,
    **values,
) -> bool:
    check_version(disbursement, expected_version)
    if not check_transition(DISBURSEMENT_TRANSITIONS, "disbursement", disbursement.status, target):
        return False
    previous = disbursement.status
    await versioned_update(db, disbursement, expected_version, status=target, **values)
    logger.info(
        "Disbursement %s: %s -> %s (v%s)",
        disbursement.id, previous.value, target.value, disbursement.version,
    )
    return True


async def create_disbursement(
    db: AsyncSession,
    final_statement_id: int,
    details: DisbursementDetails,
    *,
    created_by: str = "SYSTEM",
    workflow_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Disbursement:
    """Create the PENDING disbursement for a READY_FOR_DISBURSEMENT final statement.

    A repeated call for the same statement returns the existing disbursement.
    """
    details.validate()

    existing = await get_disbursement_for_statement(db, final_statement_id)
    if existing is not None:
        return existing

    final = await get_final_statement(db, final_statement_id)
    if final.status != FinalStatementStatus.READY_FOR_DISBURSEMENT:
        raise InvalidStateError(
            f"final statement {final.statement_number} is {final.status.value}, "
            "not READY_FOR_DISBURSEMENT",
            final_statement_id=final_statement_id,
        )

    now = now or utcnow()
    disbursement = Disbursement(
        final_statement_id=final.id,
        agent_id=final.agent_id,
        mode=details.mode,
        status=DisbursementStatus.PENDING,
        total_gross_commission=final.total_gross_commission,
        total_tds=final.total_tds,
        total_net_commission=final.total_net_commission,
        initiated_at=now,
        sla_deadline=disbursement_sla_deadline(now),
        sla_breached=False,
        retry_count=0,
        workflow_id=workflow_id,
        posted_to_gl=False,
        version=1,
        created_by=created_by,
        **details.columns(),
    )
    db.add(disbursement)
    await db.flush()
    logger.info(
        "Created %s disbursement %s for %s (net %s, SLA %s)",
        details.mode.value, disbursement.id, final.statement_number,
        disbursement.total_net_commission, disbursement.sla_deadline,
    )
    return disbursement


async def begin_processing(
    db: AsyncSession, disbursement_id: int, *, expected_version: int, now: Optional[datetime] = None
) -> Disbursement:
    disbursement = await get_disbursement(db, disbursement_id)
    await _transition(
        db, disbursement, DisbursementStatus.PROCESSING, expected_version,
        processed_at=now or utcnow(),
    )
    return disbursement


async def mark_sent_to_bank(
    db: AsyncSession,
    disbursement_id: int,
    *,
    expected_version: int,
    payment_request_id: str,
    pfms_payment_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Disbursement:
    disbursement = await get_disbursement(db, disbursement_id)
    if disbursement.mode != DisbursementMode.EFT:
        raise InvalidStateError(
            "cheque disbursements are not sent to the bank", disbursement_id=disbursement_id
        )
    await _transition(
        db, disbursement, DisbursementStatus.SENT_TO_BANK, expected_version,
        payment_request_id=payment_request_id,
        pfms_payment_id=pfms_payment_id,
        sent_to_bank_at=now or utcnow(),
    )
    return disbursement


async def _route_failure_to_suspense(db: AsyncSession, disbursement: Disbursement) -> None:
    if disbursement.failure_reason == PaymentFailureReason.INVALID_ACCOUNT:
        reason = SuspenseReason.INVALID_BANK_DETAILS
    elif not can_retry(disbursement):
        reason = SuspenseReason.PAYMENT_FAILED
    else:
        return
    await create_suspense(
        db,
        amount=disbursement.total_net_commission,
        reason=reason,
        agent_id=disbursement.agent_id,
        disbursement_id=disbursement.id,
        notes=disbursement.failure_details,
        workflow_id=f"disbursement-{disbursement.id}-A{disbursement.retry_count}",
    )


async def confirm_payment(
    db: AsyncSession,
    disbursement_id: int,
    *,
    expected_version: int,
    success: bool,
    utr_number: Optional[str] = None,
    failure_code: Optional[str] = None,
    failure_details: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Disbursement:
    """Apply the bank's confirmation.

    A successful EFT must be SENT_TO_BANK; a cheque completes straight from
    PROCESSING.  A failure may arrive while still PROCESSING.  Failures
    that cannot be retried, or that point at bad account details, are
    parked in suspense.
    """
    disbursement = await get_disbursement(db, disbursement_id)
    now = now or utcnow()

    if success:
        if (
            disbursement.mode == DisbursementMode.EFT
            and disbursement.status not in (DisbursementStatus.SENT_TO_BANK, DisbursementStatus.COMPLETED)
        ):
            check_version(disbursement, expected_version)
            raise InvalidStateError(
                "EFT disbursement was never sent to the bank", disbursement_id=disbursement_id
            )
        await _transition(
            db, disbursement, DisbursementStatus.COMPLETED, expected_version,
            utr_number=utr_number or disbursement.utr_number,
            completed_at=now,
            sla_breached=disbursement.sla_breached or now > disbursement.sla_deadline,
        )
        return disbursement

    reason = map_failure_code(failure_code)
    applied = await _transition(
        db, disbursement, DisbursementStatus.FAILED, expected_version,
        failure_reason=reason,
        failure_details=failure_details or failure_code,
    )
    if applied:
        logger.warning(
            "Disbursement %s failed: %s (attempt %s)",
            disbursement.id, reason.value, disbursement.retry_count + 1,
        )
        await _route_failure_to_suspense(db, disbursement)
        await db.flush()
    return disbursement


async def retry_disbursement(
    db: AsyncSession, disbursement_id: int, *, expected_version: int, now: Optional[datetime] = None
) -> Disbursement:
    disbursement = await get_disbursement(db, disbursement_id)
    check_version(disbursement, expected_version)
    if not can_retry(disbursement):
        raise InvalidStateError(
            f"disbursement {disbursement.id} cannot be retried "
            f"(status {disbursement.status.value}, retries {disbursement.retry_count})",
            disbursement_id=disbursement_id,
        )
    if disbursement.failure_reason == PaymentFailureReason.INVALID_ACCOUNT:
        raise InvalidStateError(
            "bank details are invalid; resolve the suspense entry instead of retrying",
            disbursement_id=disbursement_id,
        )
    await _transition(
        db, disbursement, DisbursementStatus.PROCESSING, expected_version,
        retry_count=disbursement.retry_count + 1,
        failure_reason=None,
        failure_details=None,
        payment_request_id=None,
        pfms_payment_id=None,
        processed_at=now or utcnow(),
    )
    return disbursement


async def cancel_disbursement(
    db: AsyncSession, disbursement_id: int, *, expected_version: int, reason: str
) -> Disbursement:
    """Payments already with the bank cannot be cancelled; they settle through the webhook."""
    disbursement = await get_disbursement(db, disbursement_id)
    await _transition(
        db, disbursement, DisbursementStatus.CANCELLED, expected_version,
        failure_details=reason,
    )
    return disbursement


async def initiate_eft_payment(
    db: AsyncSession,
    disbursement_id: int,
    rail: PaymentRail,
    *,
    now: Optional[datetime] = None,
) -> Disbursement:
    """Send a PENDING/PROCESSING EFT to the rail and record the outcome.

    The rail request id is derived from the attempt number, so a retried
    activity re-sends the same request rather than paying twice.
    """
    disbursement = await get_disbursement(db, disbursement_id)
    if disbursement.mode != DisbursementMode.EFT:
        raise InvalidStateError("only EFT disbursements go to the rail", disbursement_id=disbursement_id)
    if disbursement.status in (DisbursementStatus.SENT_TO_BANK, DisbursementStatus.COMPLETED):
        return disbursement
    if disbursement.status not in (DisbursementStatus.PENDING, DisbursementStatus.PROCESSING):
        logger.warning(
            "EFT for disbursement %s refused in status %s", disbursement.id, disbursement.status.value
        )
        raise InvalidStateError(
            f"disbursement {disbursement.id} is {disbursement.status.value}; "
            "only PENDING or PROCESSING can be sent to the bank",
            disbursement_id=disbursement.id,
        )

    now = now or utcnow()
    if disbursement.status == DisbursementStatus.PENDING:
        await begin_processing(db, disbursement.id, expected_version=disbursement.version, now=now)

    request = EFTPaymentRequest(
        request_id=payment_idempotency_key(disbursement),
        amount=disbursement.total_net_commission,
        beneficiary_name=disbursement.account_holder_name,
        beneficiary_account=disbursement.bank_account_number,
        beneficiary_ifsc=disbursement.ifsc_code,
        beneficiary_bank=disbursement.bank_name,
        reference_number=str(disbursement.id),
        transaction_date=now,
        remarks=f"Commission for agent {disbursement.agent_id}",
    )
    response = await rail.initiate_eft_payment(request)

    if response.failed:
        return await confirm_payment(
            db, disbursement.id,
            expected_version=disbursement.version,
            success=False,
            failure_code=response.error_code,
            failure_details=response.error_message,
            now=now,
        )
    await mark_sent_to_bank(
        db, disbursement.id,
        expected_version=disbursement.version,
        payment_request_id=request.request_id,
        pfms_payment_id=response.payment_id,
        now=now,
    )
    return disbursement


async def mark_gl_posted(db: AsyncSession, disbursement: Disbursement, voucher_number: str) -> Disbursement:
    disbursement.voucher_number = voucher_number
    disbursement.posted_to_gl = True
    disbursement.gl_posted_at = utcnow()
    await db.flush()
    return disbursement


async def sweep_disbursement_sla(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Flag open disbursements past their deadline; work continues regardless."""
    now = now or utcnow()
    result = await db.execute(
        select(Disbursement).where(
            Disbursement.status.notin_((DisbursementStatus.COMPLETED, DisbursementStatus.CANCELLED)),
            Disbursement.sla_breached.is_(False),
            Disbursement.sla_deadline < now,
        )
    )
    flagged = 0
    for disbursement in result.scalars().all():
        if is_sla_breached(disbursement, now):
            disbursement.sla_breached = True
            flagged += 1
            logger.warning(
                "Disbursement %s breached SLA (deadline %s, status %s)",
                disbursement.id, disbursement.sla_deadline, disbursement.status.value,
            )
    if flagged:
        await db.flush()
    return flagged


async def search_disbursements(db: AsyncSession, criteria: DisbursementFilter) -> list[Disbursement]:
    result = await db.execute(criteria.to_select())
    return list(result.scalars().all())
