"""Clawback endpoints: creation, installment recovery and closure."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas import (
    ClawbackApprove,
    ClawbackClose,
    ClawbackCreate,
    ClawbackPartialClose,
    ClawbackResponse,
    RecoveryCreate,
    RecoveryFailure,
    RecoveryResponse,
)
from app.services.commission import clawback as clawback_service
from app.services.commission.filters import ClawbackFilter

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=Optional[ClawbackResponse])
async def create_clawback(data: ClawbackCreate, db: AsyncSession = Depends(get_db)):
    """Returns null when nothing is recoverable for the policy."""
    return await clawback_service.create_clawback(db, **data.model_dump())


@router.get("", response_model=list[ClawbackResponse])
async def list_clawbacks(
    criteria: ClawbackFilter = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await clawback_service.search_clawbacks(db, criteria)


@router.get("/{clawback_id}", response_model=ClawbackResponse)
async def get_clawback(clawback_id: int, db: AsyncSession = Depends(get_db)):
    return await clawback_service.get_clawback(db, clawback_id)


@router.get("/{clawback_id}/recoveries", response_model=list[RecoveryResponse])
async def list_recoveries(clawback_id: int, db: AsyncSession = Depends(get_db)):
    await clawback_service.get_clawback(db, clawback_id)
    return await clawback_service.list_recoveries(db, clawback_id)


@router.post("/{clawback_id}/recoveries", response_model=ClawbackResponse)
async def record_recovery(
    clawback_id: int, data: RecoveryCreate, db: AsyncSession = Depends(get_db)
):
    return await clawback_service.record_recovery(db, clawback_id, **data.model_dump())


@router.post("/{clawback_id}/recoveries/failed", response_model=RecoveryResponse)
async def record_recovery_failure(
    clawback_id: int, data: RecoveryFailure, db: AsyncSession = Depends(get_db)
):
    return await clawback_service.record_recovery_failure(
        db, clawback_id,
        installment_number=data.installment_number,
        failure_reason=data.failure_reason,
    )


@router.post("/{clawback_id}/approve", response_model=ClawbackResponse)
async def approve_clawback(
    clawback_id: int, data: ClawbackApprove, db: AsyncSession = Depends(get_db)
):
    return await clawback_service.approve_clawback(db, clawback_id, approved_by=data.approved_by)


@router.post("/{clawback_id}/waive", response_model=ClawbackResponse)
async def waive_clawback(clawback_id: int, data: ClawbackClose, db: AsyncSession = Depends(get_db)):
    return await clawback_service.waive_clawback(
        db, clawback_id, waived_by=data.performed_by, reason=data.reason
    )


@router.post("/{clawback_id}/write-off", response_model=ClawbackResponse)
async def write_off_clawback(
    clawback_id: int, data: ClawbackClose, db: AsyncSession = Depends(get_db)
):
    return await clawback_service.write_off_clawback(
        db, clawback_id, written_off_by=data.performed_by, reason=data.reason
    )


@router.post("/{clawback_id}/close-partial", response_model=ClawbackResponse)
async def close_clawback_partial(
    clawback_id: int, data: ClawbackPartialClose, db: AsyncSession = Depends(get_db)
):
    return await clawback_service.close_clawback_partial(
        db, clawback_id, policy_end_date=data.policy_end_date
    )
