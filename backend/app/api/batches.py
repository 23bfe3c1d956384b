"""Commission batch endpoints: start, status, cancel and trial statement generation."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas import BatchCancelRequest, BatchResponse, BatchStartRequest, TrialStatementResponse
from app.services.commission import batch as batch_service
from app.services.commission import statements as statement_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=BatchResponse, status_code=201)
async def start_batch(data: BatchStartRequest, db: AsyncSession = Depends(get_db)):
    """Open the monthly batch; a second active batch for the period is a 409."""
    return await batch_service.start_batch(
        db,
        month=data.month,
        year=data.year,
        triggered_by=data.triggered_by,
        workflow_id=data.workflow_id,
    )


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: int, db: AsyncSession = Depends(get_db)):
    batch = await batch_service.get_batch(db, batch_id)
    batch_service.check_batch_sla(batch)
    return batch


@router.post("/{batch_id}/cancel", response_model=BatchResponse)
async def cancel_batch(batch_id: int, data: BatchCancelRequest, db: AsyncSession = Depends(get_db)):
    return await batch_service.cancel_batch(db, batch_id, reason=data.reason)


@router.post("/{batch_id}/trial-statements", response_model=list[TrialStatementResponse])
async def generate_trial_statements(batch_id: int, db: AsyncSession = Depends(get_db)):
    return await statement_service.generate_trial_statements(db, batch_id)
