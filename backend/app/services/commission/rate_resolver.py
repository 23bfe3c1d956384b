"""Commission rate lookup by product, agent type, plan and term."""

import logging
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.commission import CommissionRate, ProductType
from app.services.commission.errors import RateNotFoundError

logger = logging.getLogger(__name__)


def select_rate(
    candidates: Iterable[CommissionRate],
    *,
    product_type: ProductType,
    agent_type: str,
    plan_code: str,
    policy_term_years: int,
    as_of: date,
) -> Optional[CommissionRate]:
    """Pick the matching rate effective on ``as_of``; latest effective_from wins."""
    matching = [
        r for r in candidates
        if r.product_type == product_type
        and r.agent_type == agent_type
        and r.plan_code == plan_code
        and r.policy_term_years == policy_term_years
        and r.is_effective_on(as_of)
    ]
    if not matching:
        return None
    return max(matching, key=lambda r: r.effective_from)


async def resolve_rate(
    db: AsyncSession,
    *,
    product_type: ProductType,
    agent_type: str,
    plan_code: str,
    policy_term_years: int,
    as_of: date,
) -> CommissionRate:
    """Return the active rate for the key on ``as_of`` or raise RateNotFoundError.

    There is no default rate; callers route the policy to suspense instead.
    """
    stmt = select(CommissionRate).where(
        CommissionRate.product_type == product_type,
        CommissionRate.agent_type == agent_type,
        CommissionRate.plan_code == plan_code,
        CommissionRate.policy_term_years == policy_term_years,
        CommissionRate.is_active.is_(True),
        CommissionRate.effective_from <= as_of,
    )
    result = await db.execute(stmt)
    rate = select_rate(
        result.scalars().all(),
        product_type=product_type,
        agent_type=agent_type,
        plan_code=plan_code,
        policy_term_years=policy_term_years,
        as_of=as_of,
    )
    if rate is None:
        logger.warning(
            "No commission rate for %s/%s/%s term=%s on %s",
            product_type.value if hasattr(product_type, "value") else product_type,
            agent_type, plan_code, policy_term_years, as_of,
        )
        raise RateNotFoundError(
            "commission rate not found",
            product_type=product_type,
            agent_type=agent_type,
            plan_code=plan_code,
            policy_term_years=policy_term_years,
            as_of=as_of,
        )
    return rate
