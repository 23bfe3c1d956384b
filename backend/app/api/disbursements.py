"""Disbursement endpoints.

Every mutation carries ``expected_version``; a stale version is a 409 and the
caller must re-read the disbursement before trying again.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.disbursement import DisbursementStatus
from app.schemas import (
    DisbursementCancel,
    DisbursementCreate,
    DisbursementResponse,
    PaymentOutcome,
    VersionedRequest,
)
from app.services.commission import disbursement as disbursement_service
from app.services.commission import statements as statement_service
from app.services.commission.disbursement import PaymentRail
from app.services.commission.filters import DisbursementFilter
from app.services.integrations.pfms_client import PFMSClient

logger = logging.getLogger(__name__)
router = APIRouter()


def get_payment_rail() -> PaymentRail:
    return PFMSClient()


@router.post("", response_model=DisbursementResponse, status_code=201)
async def create_disbursement(data: DisbursementCreate, db: AsyncSession = Depends(get_db)):
    return await disbursement_service.create_disbursement(
        db,
        data.final_statement_id,
        data.details.to_details(),
        created_by=data.created_by,
        workflow_id=data.workflow_id,
    )


@router.get("", response_model=list[DisbursementResponse])
async def list_disbursements(
    criteria: DisbursementFilter = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await disbursement_service.search_disbursements(db, criteria)


@router.get("/{disbursement_id}", response_model=DisbursementResponse)
async def get_disbursement(disbursement_id: int, db: AsyncSession = Depends(get_db)):
    return await disbursement_service.get_disbursement(db, disbursement_id)


@router.post("/{disbursement_id}/initiate", response_model=DisbursementResponse)
async def initiate_payment(
    disbursement_id: int,
    db: AsyncSession = Depends(get_db),
    rail: PaymentRail = Depends(get_payment_rail),
):
    return await disbursement_service.initiate_eft_payment(db, disbursement_id, rail)


@router.post("/{disbursement_id}/process", response_model=DisbursementResponse)
async def begin_processing(
    disbursement_id: int, data: VersionedRequest, db: AsyncSession = Depends(get_db)
):
    return await disbursement_service.begin_processing(
        db, disbursement_id, expected_version=data.expected_version
    )


@router.post("/{disbursement_id}/confirm", response_model=DisbursementResponse)
async def confirm_payment(
    disbursement_id: int, data: PaymentOutcome, db: AsyncSession = Depends(get_db)
):
    """Manual confirmation, used for cheques and for reconciling bank reports."""
    disbursement = await disbursement_service.confirm_payment(
        db,
        disbursement_id,
        expected_version=data.expected_version,
        success=data.success,
        utr_number=data.utr_number,
        failure_code=data.failure_code,
        failure_details=data.failure_details,
    )
    if disbursement.status == DisbursementStatus.COMPLETED:
        await statement_service.mark_final_statement_disbursed(db, disbursement.final_statement_id)
    return disbursement


@router.post("/{disbursement_id}/retry", response_model=DisbursementResponse)
async def retry_disbursement(
    disbursement_id: int, data: VersionedRequest, db: AsyncSession = Depends(get_db)
):
    return await disbursement_service.retry_disbursement(
        db, disbursement_id, expected_version=data.expected_version
    )


@router.post("/{disbursement_id}/cancel", response_model=DisbursementResponse)
async def cancel_disbursement(
    disbursement_id: int, data: DisbursementCancel, db: AsyncSession = Depends(get_db)
):
    return await disbursement_service.cancel_disbursement(
        db, disbursement_id, expected_version=data.expected_version, reason=data.reason
    )
