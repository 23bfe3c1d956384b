"""Celery activities for the commission lifecycle.

Every activity takes one JSON payload, runs a single core operation inside
its own database transaction and returns either ``{"status": "ok", ...}`` or
``{"status": "failed", "error": {...}}``.  Business failures are returned,
never retried; ``TransientError`` escapes so Celery retries with backoff.
All activities are safe to re-run after a crash.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Optional, Type

from pydantic import BaseModel, ValidationError as PayloadError
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.models.clawback import RecoveryStatus
from app.models.disbursement import DisbursementStatus
from app.models.suspense import SuspenseStatus
from app.schemas import (
    ApproveStatementRequest,
    BatchCalculateRequest,
    BatchStartRequest,
    ClawbackCreate,
    DisbursementCreate,
    FinalStatementCreate,
    PaymentConfirmation,
    RecoveryCreate,
    SuspenseCreate,
)
from app.services.commission import batch as batch_service
from app.services.commission import clawback as clawback_service
from app.services.commission import disbursement as disbursement_service
from app.services.commission import statements as statement_service
from app.services.commission import suspense as suspense_service
from app.services.commission.errors import (
    CommissionError,
    InvalidStateError,
    NotFoundError,
    TransientError,
)
from app.services.commission.ledger import (
    clawback_recovery_voucher,
    commission_payment_voucher,
    suspense_resolution_voucher,
    suspense_voucher,
)
from app.services.error_logger import log_error_standalone
from app.services.integrations.accounting_client import AccountingClient
from app.services.integrations.pfms_client import PFMSClient
from app.tasks import celery_app

logger = logging.getLogger(__name__)

__all__ = [
    "validate_input",
    "calculate_commission",
    "generate_trial_statement",
    "approve_statement",
    "create_final_statement",
    "create_disbursement",
    "initiate_eft_payment",
    "confirm_payment",
    "mark_final_statement_disbursed",
    "post_disbursement_voucher",
    "post_clawback_recovery_voucher",
    "post_suspense_voucher",
    "post_suspense_resolution_voucher",
    "create_clawback",
    "record_recovery",
    "create_suspense",
    "check_batch_sla",
    "check_disbursement_sla",
    "escalate_suspense",
    "refresh_suspense_aging",
]

_RETRY_POLICY = dict(
    autoretry_for=(TransientError,),
    retry_backoff=True,
    retry_backoff_max=settings.celery_retry_backoff_max_seconds,
    retry_jitter=True,
    max_retries=settings.celery_task_max_retries,
)


# ── Activity inputs ───────────────────────────────────────────────

class BatchRef(BaseModel):
    batch_id: int


class StatementApproval(ApproveStatementRequest):
    trial_statement_id: int


class FinalStatementInput(FinalStatementCreate):
    ready_for_disbursement: bool = True


class DisbursementRef(BaseModel):
    disbursement_id: int


class FinalStatementRef(BaseModel):
    final_statement_id: int


class RecoveryInput(RecoveryCreate):
    clawback_id: int


class RecoveryRef(BaseModel):
    clawback_id: int
    installment_number: int


class SuspenseRef(BaseModel):
    suspense_id: int


# ── Execution helpers ─────────────────────────────────────────────

def _get_session() -> tuple:
    engine = create_async_engine(settings.database_url)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _run(coro_factory: Callable[[], Awaitable[Any]]) -> Any:
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro_factory())
    finally:
        loop.close()


def _failed(error: dict) -> dict:
    return {"status": "failed", "error": error}


async def _in_transaction(work: Callable[[AsyncSession], Awaitable[dict]]) -> dict:
    engine, session_factory = _get_session()
    try:
        async with session_factory() as db:
            try:
                result = await work(db)
                await db.commit()
                return result
            except Exception:
                await db.rollback()
                raise
    finally:
        await engine.dispose()


def execute_activity(
    task_name: str,
    payload: Optional[dict],
    model: Type[BaseModel],
    work: Callable[[AsyncSession, Any], Awaitable[dict]],
) -> dict:
    """Validate ``payload``, run ``work`` in a transaction and shape the result."""
    try:
        data = model.model_validate(payload or {})
    except PayloadError as exc:
        logger.warning("%s rejected invalid input: %s", task_name, exc.errors())
        return _failed({
            "category": "validation",
            "reason": f"invalid input: {exc.error_count()} error(s)",
            "error_type": "ValidationError",
            "context": {"errors": exc.errors(include_url=False, include_input=False, include_context=False)},
        })
    workflow_id = getattr(data, "workflow_id", None)

    async def _go() -> dict:
        try:
            return await _in_transaction(lambda db: work(db, data))
        except TransientError:
            raise
        except CommissionError as exc:
            await log_error_standalone(exc, task_name=task_name, workflow_id=workflow_id)
            return _failed(exc.to_dict())
        except IntegrityError as exc:
            # A concurrent attempt committed the same row first
            conflict = InvalidStateError("concurrent write conflict", constraint=str(exc.orig)[:200])
            await log_error_standalone(conflict, task_name=task_name, workflow_id=workflow_id)
            return _failed(conflict.to_dict())
        except DBAPIError as exc:
            raise TransientError(f"database unavailable: {exc.__class__.__name__}") from exc

    return _run(_go)


def _sweep(task_name: str, sweep: Callable[[AsyncSession], Awaitable[int]]) -> dict:
    async def _go() -> dict:
        try:
            flagged = await _in_transaction(sweep)
        except DBAPIError as exc:
            raise TransientError(f"database unavailable: {exc.__class__.__name__}") from exc
        if flagged:
            logger.info("%s flagged %d record(s)", task_name, flagged)
        return {"status": "ok", "flagged": flagged}

    return _run(_go)


# ── Batch activities ──────────────────────────────────────────────

async def _start_batch(db: AsyncSession, data: BatchStartRequest) -> dict:
    batch = await batch_service.start_batch(
        db,
        month=data.month,
        year=data.year,
        triggered_by=data.triggered_by,
        workflow_id=data.workflow_id,
    )
    return {
        "status": "ok",
        "batch_id": batch.id,
        "batch_number": batch.batch_number,
        "batch_status": batch.status.value,
    }


@celery_app.task(name="app.tasks.commission_tasks.validate_input", **_RETRY_POLICY)
def validate_input(payload: dict) -> dict:
    """Validate the period and open its batch."""
    return execute_activity("validate_input", payload, BatchStartRequest, _start_batch)


async def _calculate(db: AsyncSession, data: BatchCalculateRequest) -> dict:
    total = data.total_policies if data.total_policies is not None else len(data.policies)
    batch = await batch_service.begin_calculation(db, data.batch_id, total_policies=total)
    calculated = 0
    suspended = 0
    for item in data.policies:
        txn = await batch_service.calculate_policy_commission(db, batch.id, item.to_input())
        if txn is None:
            suspended += 1
        else:
            calculated += 1
    return {
        "status": "ok",
        "batch_id": batch.id,
        "calculated": calculated,
        "suspended": suspended,
        "processed_records": batch.processed_records,
        "progress_percentage": batch.progress_percentage,
    }


@celery_app.task(name="app.tasks.commission_tasks.calculate_commission", **_RETRY_POLICY)
def calculate_commission(payload: dict) -> dict:
    return execute_activity("calculate_commission", payload, BatchCalculateRequest, _calculate)


async def _generate_trial(db: AsyncSession, data: BatchRef) -> dict:
    statements = await statement_service.generate_trial_statements(db, data.batch_id)
    return {
        "status": "ok",
        "batch_id": data.batch_id,
        "trial_statement_ids": [s.id for s in statements],
    }


@celery_app.task(name="app.tasks.commission_tasks.generate_trial_statement", **_RETRY_POLICY)
def generate_trial_statement(payload: dict) -> dict:
    return execute_activity("generate_trial_statement", payload, BatchRef, _generate_trial)


# ── Statement activities ──────────────────────────────────────────

async def _approve(db: AsyncSession, data: StatementApproval) -> dict:
    statement = await statement_service.approve_trial_statement(
        db, data.trial_statement_id, approved_by=data.approved_by, remarks=data.remarks,
    )
    return {
        "status": "ok",
        "trial_statement_id": statement.id,
        "statement_status": statement.status.value,
    }


@celery_app.task(name="app.tasks.commission_tasks.approve_statement", **_RETRY_POLICY)
def approve_statement(payload: dict) -> dict:
    return execute_activity("approve_statement", payload, StatementApproval, _approve)


async def _create_final(db: AsyncSession, data: FinalStatementInput) -> dict:
    final = await statement_service.create_final_statement(
        db,
        data.trial_statement_id,
        created_by=data.created_by,
        disbursement_amount=data.disbursement_amount,
    )
    if data.ready_for_disbursement:
        final = await statement_service.mark_ready_for_disbursement(db, final.id)
    return {
        "status": "ok",
        "final_statement_id": final.id,
        "statement_number": final.statement_number,
        "statement_status": final.status.value,
        "net_amount": str(final.total_net_commission),
        "is_partial": final.is_partial,
    }


@celery_app.task(name="app.tasks.commission_tasks.create_final_statement", **_RETRY_POLICY)
def create_final_statement(payload: dict) -> dict:
    return execute_activity("create_final_statement", payload, FinalStatementInput, _create_final)


async def _mark_disbursed(db: AsyncSession, data: FinalStatementRef) -> dict:
    final = await statement_service.mark_final_statement_disbursed(db, data.final_statement_id)
    return {"status": "ok", "final_statement_id": final.id, "statement_status": final.status.value}


@celery_app.task(name="app.tasks.commission_tasks.mark_final_statement_disbursed", **_RETRY_POLICY)
def mark_final_statement_disbursed(payload: dict) -> dict:
    return execute_activity(
        "mark_final_statement_disbursed", payload, FinalStatementRef, _mark_disbursed
    )


# ── Disbursement activities ───────────────────────────────────────

def _disbursement_result(disbursement) -> dict:
    return {
        "status": "ok",
        "disbursement_id": disbursement.id,
        "disbursement_status": disbursement.status.value,
        "version": disbursement.version,
        "retry_count": disbursement.retry_count,
    }


async def _create_disbursement(db: AsyncSession, data: DisbursementCreate) -> dict:
    disbursement = await disbursement_service.create_disbursement(
        db,
        data.final_statement_id,
        data.details.to_details(),
        created_by=data.created_by,
        workflow_id=data.workflow_id,
    )
    return _disbursement_result(disbursement)


@celery_app.task(name="app.tasks.commission_tasks.create_disbursement", **_RETRY_POLICY)
def create_disbursement(payload: dict) -> dict:
    return execute_activity("create_disbursement", payload, DisbursementCreate, _create_disbursement)


async def _initiate_eft(db: AsyncSession, data: DisbursementRef) -> dict:
    disbursement = await disbursement_service.initiate_eft_payment(
        db, data.disbursement_id, PFMSClient()
    )
    return _disbursement_result(disbursement)


@celery_app.task(name="app.tasks.commission_tasks.initiate_eft_payment", **_RETRY_POLICY)
def initiate_eft_payment(payload: dict) -> dict:
    return execute_activity("initiate_eft_payment", payload, DisbursementRef, _initiate_eft)


async def _confirm(db: AsyncSession, data: PaymentConfirmation) -> dict:
    disbursement = await disbursement_service.confirm_payment(
        db,
        data.disbursement_id,
        expected_version=data.expected_version,
        success=data.success,
        utr_number=data.utr_number,
        failure_code=data.failure_code,
        failure_details=data.failure_details,
    )
    if disbursement.status == DisbursementStatus.COMPLETED:
        await statement_service.mark_final_statement_disbursed(db, disbursement.final_statement_id)
    return _disbursement_result(disbursement)


@celery_app.task(name="app.tasks.commission_tasks.confirm_payment", **_RETRY_POLICY)
def confirm_payment(payload: dict) -> dict:
    return execute_activity("confirm_payment", payload, PaymentConfirmation, _confirm)


async def _post_voucher(db: AsyncSession, data: DisbursementRef) -> dict:
    disbursement = await disbursement_service.get_disbursement(db, data.disbursement_id)
    if disbursement.posted_to_gl:
        return {"status": "ok", "disbursement_id": disbursement.id,
                "voucher_number": disbursement.voucher_number}
    if disbursement.status != DisbursementStatus.COMPLETED:
        raise InvalidStateError(
            f"disbursement {disbursement.id} is {disbursement.status.value}, not COMPLETED",
            disbursement_id=disbursement.id,
        )
    voucher = commission_payment_voucher(
        disbursement_id=disbursement.id,
        agent_id=disbursement.agent_id,
        gross=disbursement.total_gross_commission,
        tds=disbursement.total_tds,
        net=disbursement.total_net_commission,
        on=(disbursement.completed_at.date() if disbursement.completed_at else date.today()),
    )
    posted = await AccountingClient().post_voucher(voucher)
    await disbursement_service.mark_gl_posted(db, disbursement, posted.voucher_number)
    return {"status": "ok", "disbursement_id": disbursement.id, "voucher_number": posted.voucher_number}


@celery_app.task(name="app.tasks.commission_tasks.post_disbursement_voucher", **_RETRY_POLICY)
def post_disbursement_voucher(payload: dict) -> dict:
    """Post the commission payment voucher once; later runs return the posted number."""
    return execute_activity("post_disbursement_voucher", payload, DisbursementRef, _post_voucher)


# ── Clawback activities ───────────────────────────────────────────

async def _create_clawback(db: AsyncSession, data: ClawbackCreate) -> dict:
    clawback = await clawback_service.create_clawback(
        db,
        policy_number=data.policy_number,
        agent_id=data.agent_id,
        reason=data.reason,
        policy_inception_date=data.policy_inception_date,
        original_commission=data.original_commission,
        policy_end_date=data.policy_end_date,
        recovery_schedule=data.recovery_schedule,
        installment_months=data.installment_months,
        workflow_id=data.workflow_id,
        created_by=data.created_by,
    )
    if clawback is None:
        return {"status": "ok", "clawback_id": None, "clawback_required": False}
    return {
        "status": "ok",
        "clawback_id": clawback.id,
        "clawback_required": True,
        "clawback_amount": str(clawback.clawback_amount),
        "clawback_status": clawback.status.value,
    }


@celery_app.task(name="app.tasks.commission_tasks.create_clawback", **_RETRY_POLICY)
def create_clawback(payload: dict) -> dict:
    return execute_activity("create_clawback", payload, ClawbackCreate, _create_clawback)


async def _record_recovery(db: AsyncSession, data: RecoveryInput) -> dict:
    clawback = await clawback_service.record_recovery(
        db,
        data.clawback_id,
        installment_number=data.installment_number,
        amount=data.amount,
        recovery_method=data.recovery_method,
        statement_id=data.statement_id,
        disbursement_id=data.disbursement_id,
        transaction_ref=data.transaction_ref,
    )
    return {
        "status": "ok",
        "clawback_id": clawback.id,
        "recovered_amount": str(clawback.recovered_amount),
        "pending_amount": str(clawback.pending_amount),
        "clawback_status": clawback.status.value,
    }


@celery_app.task(name="app.tasks.commission_tasks.record_recovery", **_RETRY_POLICY)
def record_recovery(payload: dict) -> dict:
    return execute_activity("record_recovery", payload, RecoveryInput, _record_recovery)


async def _post_recovery_voucher(db: AsyncSession, data: RecoveryRef) -> dict:
    recovery = await clawback_service.get_recovery(
        db, data.clawback_id, data.installment_number, for_update=True
    )
    if recovery is None:
        raise NotFoundError(
            "installment not found",
            clawback_id=data.clawback_id,
            installment_number=data.installment_number,
        )
    if recovery.posted_to_gl:
        return {"status": "ok", "clawback_id": data.clawback_id,
                "installment_number": data.installment_number,
                "voucher_number": recovery.voucher_number}
    if recovery.status != RecoveryStatus.COMPLETED:
        raise InvalidStateError(
            f"installment {data.installment_number} is {recovery.status.value}, not COMPLETED",
            clawback_id=data.clawback_id,
        )
    clawback = await clawback_service.get_clawback(db, data.clawback_id)
    voucher = clawback_recovery_voucher(
        clawback_id=clawback.id,
        agent_id=clawback.agent_id,
        amount=recovery.recovered_amount,
        on=(recovery.recovery_date.date() if recovery.recovery_date else date.today()),
        installment_number=recovery.installment_number,
    )
    posted = await AccountingClient().post_voucher(voucher)
    await clawback_service.mark_recovery_gl_posted(db, recovery, posted.voucher_number)
    return {"status": "ok", "clawback_id": clawback.id,
            "installment_number": recovery.installment_number,
            "voucher_number": posted.voucher_number}


@celery_app.task(name="app.tasks.commission_tasks.post_clawback_recovery_voucher", **_RETRY_POLICY)
def post_clawback_recovery_voucher(payload: dict) -> dict:
    """Post one recovered installment to the GL once."""
    return execute_activity(
        "post_clawback_recovery_voucher", payload, RecoveryRef, _post_recovery_voucher
    )


# ── Suspense activities ───────────────────────────────────────────

async def _create_suspense(db: AsyncSession, data: SuspenseCreate) -> dict:
    entry = await suspense_service.create_suspense(
        db,
        amount=data.amount,
        reason=data.reason,
        agent_id=data.agent_id,
        policy_number=data.policy_number,
        commission_id=data.commission_id,
        disbursement_id=data.disbursement_id,
        notes=data.notes,
        workflow_id=data.workflow_id,
        created_by=data.created_by,
    )
    return {
        "status": "ok",
        "suspense_id": entry.id,
        "priority": entry.priority.value,
        "resolution_deadline": entry.resolution_deadline.isoformat(),
    }


@celery_app.task(name="app.tasks.commission_tasks.create_suspense", **_RETRY_POLICY)
def create_suspense(payload: dict) -> dict:
    return execute_activity("create_suspense", payload, SuspenseCreate, _create_suspense)


async def _post_suspense_voucher(db: AsyncSession, data: SuspenseRef) -> dict:
    entry = await suspense_service.get_suspense(db, data.suspense_id)
    if entry.posted_to_gl:
        return {"status": "ok", "suspense_id": entry.id, "voucher_number": entry.voucher_number}
    voucher = suspense_voucher(
        suspense_id=entry.id,
        agent_id=entry.agent_id,
        amount=entry.amount,
        reason=entry.reason.value,
        on=entry.suspense_date.date(),
    )
    posted = await AccountingClient().post_voucher(voucher)
    await suspense_service.mark_gl_posted(db, entry, posted.voucher_number)
    return {"status": "ok", "suspense_id": entry.id, "voucher_number": posted.voucher_number}


@celery_app.task(name="app.tasks.commission_tasks.post_suspense_voucher", **_RETRY_POLICY)
def post_suspense_voucher(payload: dict) -> dict:
    """Post the parking of a suspense entry once."""
    return execute_activity("post_suspense_voucher", payload, SuspenseRef, _post_suspense_voucher)


async def _post_resolution_voucher(db: AsyncSession, data: SuspenseRef) -> dict:
    entry = await suspense_service.get_suspense(db, data.suspense_id)
    if entry.resolution_posted_to_gl:
        return {"status": "ok", "suspense_id": entry.id,
                "voucher_number": entry.resolution_voucher_number}
    if entry.status != SuspenseStatus.RESOLVED:
        raise InvalidStateError(
            f"suspense entry {entry.id} is {entry.status.value}, not RESOLVED",
            suspense_id=entry.id,
        )
    if not entry.posted_to_gl:
        raise InvalidStateError(
            "suspense voucher must be posted before its release", suspense_id=entry.id
        )
    voucher = suspense_resolution_voucher(
        suspense_id=entry.id,
        agent_id=entry.agent_id,
        amount=entry.resolved_amount if entry.resolved_amount is not None else entry.amount,
        on=(entry.resolved_date.date() if entry.resolved_date else date.today()),
    )
    posted = await AccountingClient().post_voucher(voucher)
    await suspense_service.mark_resolution_gl_posted(db, entry, posted.voucher_number)
    return {"status": "ok", "suspense_id": entry.id, "voucher_number": posted.voucher_number}


@celery_app.task(name="app.tasks.commission_tasks.post_suspense_resolution_voucher", **_RETRY_POLICY)
def post_suspense_resolution_voucher(payload: dict) -> dict:
    """Post the release of a resolved suspense entry once."""
    return execute_activity(
        "post_suspense_resolution_voucher", payload, SuspenseRef, _post_resolution_voucher
    )


# ── Periodic sweeps ───────────────────────────────────────────────

@celery_app.task(name="app.tasks.commission_tasks.check_batch_sla", **_RETRY_POLICY)
def check_batch_sla() -> dict:
    return _sweep("check_batch_sla", batch_service.sweep_batch_sla)


@celery_app.task(name="app.tasks.commission_tasks.check_disbursement_sla", **_RETRY_POLICY)
def check_disbursement_sla() -> dict:
    return _sweep("check_disbursement_sla", disbursement_service.sweep_disbursement_sla)


@celery_app.task(name="app.tasks.commission_tasks.escalate_suspense", **_RETRY_POLICY)
def escalate_suspense() -> dict:
    """Bump the priority of OPEN entries past their resolution deadline."""
    return _sweep("escalate_suspense", suspense_service.escalate_overdue)


@celery_app.task(name="app.tasks.commission_tasks.refresh_suspense_aging", **_RETRY_POLICY)
def refresh_suspense_aging() -> dict:
    return _sweep("refresh_suspense_aging", suspense_service.refresh_aging)
