"""Trial and final statement endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas import (
    ApproveStatementRequest,
    CorrectionRequest,
    FinalStatementCreate,
    FinalStatementResponse,
    RejectStatementRequest,
    ResubmitRequest,
    TrialStatementResponse,
)
from app.services.commission import statements as statement_service
from app.services.commission.filters import FinalStatementFilter, TrialStatementFilter

logger = logging.getLogger(__name__)
router = APIRouter()


# ── Trial statements ────────────────────────────────────────

@router.get("/trial", response_model=list[TrialStatementResponse])
async def list_trial_statements(
    criteria: TrialStatementFilter = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await statement_service.search_trial_statements(db, criteria)


@router.get("/trial/{statement_id}", response_model=TrialStatementResponse)
async def get_trial_statement(statement_id: int, db: AsyncSession = Depends(get_db)):
    return await statement_service.get_trial_statement(db, statement_id)


@router.post("/trial/{statement_id}/approve", response_model=TrialStatementResponse)
async def approve_trial_statement(
    statement_id: int, data: ApproveStatementRequest, db: AsyncSession = Depends(get_db)
):
    return await statement_service.approve_trial_statement(
        db, statement_id, approved_by=data.approved_by, remarks=data.remarks
    )


@router.post("/trial/{statement_id}/reject", response_model=TrialStatementResponse)
async def reject_trial_statement(
    statement_id: int, data: RejectStatementRequest, db: AsyncSession = Depends(get_db)
):
    return await statement_service.reject_trial_statement(
        db, statement_id, rejected_by=data.rejected_by, remarks=data.remarks
    )


@router.post("/trial/{statement_id}/correction", response_model=TrialStatementResponse)
async def request_correction(
    statement_id: int, data: CorrectionRequest, db: AsyncSession = Depends(get_db)
):
    return await statement_service.request_correction(
        db, statement_id, requested_by=data.requested_by, remarks=data.remarks
    )


@router.post("/trial/{statement_id}/resubmit", response_model=TrialStatementResponse)
async def resubmit_trial_statement(
    statement_id: int, data: ResubmitRequest, db: AsyncSession = Depends(get_db)
):
    return await statement_service.resubmit_trial_statement(
        db, statement_id, resubmitted_by=data.resubmitted_by
    )


# ── Final statements ────────────────────────────────────────

@router.get("/final", response_model=list[FinalStatementResponse])
async def list_final_statements(
    criteria: FinalStatementFilter = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await statement_service.search_final_statements(db, criteria)


@router.post("/final", response_model=FinalStatementResponse, status_code=201)
async def create_final_statement(data: FinalStatementCreate, db: AsyncSession = Depends(get_db)):
    return await statement_service.create_final_statement(
        db,
        data.trial_statement_id,
        created_by=data.created_by,
        disbursement_amount=data.disbursement_amount,
    )


@router.get("/final/{statement_id}", response_model=FinalStatementResponse)
async def get_final_statement(statement_id: int, db: AsyncSession = Depends(get_db)):
    return await statement_service.get_final_statement(db, statement_id)


@router.post("/final/{statement_id}/ready", response_model=FinalStatementResponse)
async def mark_ready_for_disbursement(statement_id: int, db: AsyncSession = Depends(get_db)):
    return await statement_service.mark_ready_for_disbursement(db, statement_id)
