"""Suspense account endpoints and the aging report."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas import (
    AgingReportResponse,
    SuspenseAssign,
    SuspenseCreate,
    SuspenseResolve,
    SuspenseResponse,
    SuspenseWriteOff,
)
from app.services.commission import suspense as suspense_service
from app.services.commission.filters import SuspenseFilter

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=SuspenseResponse, status_code=201)
async def create_suspense(data: SuspenseCreate, db: AsyncSession = Depends(get_db)):
    return await suspense_service.create_suspense(db, **data.model_dump())


@router.get("", response_model=list[SuspenseResponse])
async def list_suspense(
    criteria: SuspenseFilter = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await suspense_service.search_suspense(db, criteria)


@router.get("/aging-report", response_model=AgingReportResponse)
async def aging_report(db: AsyncSession = Depends(get_db)):
    report = await suspense_service.aging_report(db)
    return AgingReportResponse.model_validate(report, from_attributes=True)


@router.get("/{suspense_id}", response_model=SuspenseResponse)
async def get_suspense(suspense_id: int, db: AsyncSession = Depends(get_db)):
    return await suspense_service.get_suspense(db, suspense_id)


@router.post("/{suspense_id}/resolve", response_model=SuspenseResponse)
async def resolve_suspense(
    suspense_id: int, data: SuspenseResolve, db: AsyncSession = Depends(get_db)
):
    return await suspense_service.resolve_suspense(db, suspense_id, **data.model_dump())


@router.post("/{suspense_id}/write-off", response_model=SuspenseResponse)
async def write_off_suspense(
    suspense_id: int, data: SuspenseWriteOff, db: AsyncSession = Depends(get_db)
):
    return await suspense_service.write_off_suspense(db, suspense_id, **data.model_dump())


@router.post("/{suspense_id}/assign", response_model=SuspenseResponse)
async def assign_suspense(
    suspense_id: int, data: SuspenseAssign, db: AsyncSession = Depends(get_db)
):
    return await suspense_service.assign_suspense(db, suspense_id, **data.model_dump())
