"""Policy status changes that trigger commission clawback."""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.clawback import Clawback, ClawbackReason
from app.services.commission.clawback import create_clawback
from app.services.commission.errors import ValidationError
from app.services.integrations.policy_client import PolicyData

logger = logging.getLogger(__name__)

CLAWBACK_TRIGGERS = {
    "SURRENDERED": ClawbackReason.POLICY_SURRENDERED,
    "LAPSED": ClawbackReason.POLICY_LAPSED,
    "CANCELLED": ClawbackReason.POLICY_CANCELLED,
}


class PolicySource(Protocol):
    async def get_policy(self, policy_number: str) -> PolicyData: ...


@dataclass
class PolicyStatusChange:
    policy_number: str
    old_status: str
    new_status: str
    reason: Optional[str] = None
    change_date: Optional[date] = None


def clawback_reason_for(new_status: str) -> Optional[ClawbackReason]:
    return CLAWBACK_TRIGGERS.get((new_status or "").strip().upper())


def clawback_workflow_id(policy_number: str) -> str:
    return f"clawback-{policy_number}"


async def handle_policy_status_change(
    db: AsyncSession,
    event: PolicyStatusChange,
    policies: PolicySource,
    *,
    now: Optional[datetime] = None,
) -> Optional[Clawback]:
    """Open a clawback when a policy is surrendered, lapsed or cancelled."""
    if not event.policy_number:
        raise ValidationError("policy number is required")
    reason = clawback_reason_for(event.new_status)
    if reason is None:
        logger.info(
            "Policy %s moved %s -> %s; no clawback",
            event.policy_number, event.old_status, event.new_status,
        )
        return None

    policy = await policies.get_policy(event.policy_number)
    clawback = await create_clawback(
        db,
        policy_number=policy.policy_number,
        agent_id=policy.agent_id,
        reason=reason,
        policy_inception_date=policy.inception_date,
        policy_end_date=event.change_date,
        workflow_id=clawback_workflow_id(policy.policy_number),
        now=now,
    )
    logger.info(
        "Policy %s %s: clawback %s",
        event.policy_number, event.new_status, clawback.id if clawback else "not required",
    )
    return clawback
