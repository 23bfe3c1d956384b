"""Inbound webhooks from the payment rail and the policy service.

Both are authenticated with an HMAC-SHA256 signature over the raw body.  A
request carrying ``X-Timestamp`` must use the timestamped signature format.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError as PayloadError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.models.disbursement import DisbursementStatus
from app.schemas import PFMSPaymentWebhook, PolicyStatusWebhook
from app.services.commission import disbursement as disbursement_service
from app.services.commission import statements as statement_service
from app.services.commission.errors import InvalidStateError
from app.services.commission.policy_events import (
    PolicySource,
    PolicyStatusChange,
    handle_policy_status_change,
)
from app.services.integrations.policy_client import PolicyClient
from app.services.integrations.webhook_security import (
    verify_signature,
    verify_timestamped_signature,
)

logger = logging.getLogger(__name__)
router = APIRouter()

_CONFIRMABLE = (DisbursementStatus.SENT_TO_BANK, DisbursementStatus.PROCESSING)


def get_policy_source() -> PolicySource:
    return PolicyClient()


def _verify(body: bytes, signature: Optional[str], timestamp: Optional[str], source: str) -> None:
    if timestamp is not None:
        valid = verify_timestamped_signature(
            settings.webhook_secret, body, signature, timestamp,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )
    else:
        valid = verify_signature(settings.webhook_secret, body, signature)
    if not valid:
        logger.warning("Rejected %s webhook with invalid signature", source)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _parse(model, body: bytes):
    try:
        return model.model_validate_json(body)
    except PayloadError as exc:
        raise HTTPException(
            status_code=422,
            detail={"category": "validation", "reason": "malformed webhook payload",
                    "errors": exc.errors(include_url=False, include_input=False, include_context=False)},
        ) from exc


@router.post("/pfms/payment")
async def pfms_payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None),
    x_timestamp: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    """Bank confirmation for an EFT.  Redeliveries of an applied outcome are acknowledged."""
    body = await request.body()
    _verify(body, x_signature, x_timestamp, "PFMS")
    event = _parse(PFMSPaymentWebhook, body)
    success = event.status == "SUCCESS"

    disbursement = await disbursement_service.get_disbursement(db, event.disbursement_id)
    already = DisbursementStatus.COMPLETED if success else DisbursementStatus.FAILED
    if disbursement.status == already:
        logger.info("Duplicate PFMS %s webhook for disbursement %s", event.status, disbursement.id)
        return {"status": "duplicate", "disbursement_id": disbursement.id,
                "disbursement_status": disbursement.status.value}
    if disbursement.status not in _CONFIRMABLE:
        raise InvalidStateError(
            f"disbursement {disbursement.id} is {disbursement.status.value}; "
            "only SENT_TO_BANK or PROCESSING can be confirmed",
            disbursement_id=disbursement.id,
        )

    await disbursement_service.confirm_payment(
        db,
        disbursement.id,
        expected_version=disbursement.version,
        success=success,
        utr_number=event.utr_number,
        failure_code=event.failure_code,
        failure_details=event.failure_details,
    )
    if disbursement.status == DisbursementStatus.COMPLETED:
        await statement_service.mark_final_statement_disbursed(db, disbursement.final_statement_id)

    logger.info("PFMS webhook applied: disbursement %s -> %s", disbursement.id, disbursement.status.value)
    return {
        "status": "processed",
        "disbursement_id": disbursement.id,
        "disbursement_status": disbursement.status.value,
        "version": disbursement.version,
    }


@router.post("/policy-status")
async def policy_status_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None),
    x_timestamp: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    policies: PolicySource = Depends(get_policy_source),
):
    body = await request.body()
    _verify(body, x_signature, x_timestamp, "policy")
    event = _parse(PolicyStatusWebhook, body)

    clawback = await handle_policy_status_change(
        db,
        PolicyStatusChange(
            policy_number=event.policy_number,
            old_status=event.old_status,
            new_status=event.new_status,
            reason=event.reason,
            change_date=event.change_date,
        ),
        policies,
    )
    return {
        "status": "processed",
        "policy_number": event.policy_number,
        "clawback_id": clawback.id if clawback else None,
    }
