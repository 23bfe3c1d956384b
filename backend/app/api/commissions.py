"""Commission transaction history."""

import math

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas import CommissionHistoryResponse
from app.services.commission import batch as batch_service
from app.services.commission.filters import MAX_PAGE_SIZE, CommissionTransactionFilter

router = APIRouter()


@router.get("/history", response_model=CommissionHistoryResponse)
async def commission_history(
    criteria: CommissionTransactionFilter = Depends(),
    db: AsyncSession = Depends(get_db),
):
    """Search an agent's or policy's commission transactions, newest first."""
    transactions, total = await batch_service.search_commission_history(db, criteria)
    page = max(criteria.page, 1)
    limit = min(max(criteria.limit, 1), MAX_PAGE_SIZE)
    return CommissionHistoryResponse(
        transactions=transactions,
        page=page,
        limit=limit,
        total_count=total,
        total_pages=math.ceil(total / limit),
    )
