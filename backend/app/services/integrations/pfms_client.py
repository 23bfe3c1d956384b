"""PFMS payment-rail client (EFT initiation and status)."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.config import settings
from app.services.integrations.http import encode_json, send_json
from app.services.integrations.webhook_security import sign_payload, verify_signature

logger = logging.getLogger(__name__)


@dataclass
class EFTPaymentRequest:
    request_id: str
    amount: Decimal
    beneficiary_name: str
    beneficiary_account: str
    beneficiary_ifsc: str
    beneficiary_bank: str
    reference_number: str
    transaction_date: datetime
    payment_type: str = "EFT"
    currency: str = "INR"
    purpose: str = "Commission Payment"
    remarks: str = ""
    reference_type: str = "DISBURSEMENT"


@dataclass
class EFTPaymentResponse:
    payment_id: str
    request_id: str
    status: str
    transaction_id: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status.upper() == "FAILED"


class PFMSClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        org_code: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.pfms_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.pfms_api_key
        self.secret_key = secret_key if secret_key is not None else settings.pfms_secret_key
        self.org_code = org_code if org_code is not None else settings.pfms_org_code
        self.timeout = timeout or settings.pfms_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self, body: Optional[bytes] = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Org-Code": self.org_code,
        }
        if body is not None:
            headers["X-Signature"] = sign_payload(self.secret_key, body)
        return headers

    async def initiate_eft_payment(self, request: EFTPaymentRequest) -> EFTPaymentResponse:
        """Submit an EFT; ``request_id`` is the rail-side idempotency key."""
        body = encode_json({
            "org_code": self.org_code,
            "request_id": request.request_id,
            "payment_type": request.payment_type,
            "amount": str(request.amount),
            "currency": request.currency,
            "beneficiary_name": request.beneficiary_name,
            "beneficiary_account": request.beneficiary_account,
            "beneficiary_ifsc": request.beneficiary_ifsc,
            "beneficiary_bank": request.beneficiary_bank,
            "payer_account": settings.pfms_payer_account,
            "payer_ifsc": settings.pfms_payer_ifsc,
            "purpose": request.purpose,
            "remarks": request.remarks,
            "transaction_date": request.transaction_date.isoformat(),
            "reference_type": request.reference_type,
            "reference_number": request.reference_number,
        })
        async with self._client() as client:
            data = await send_json(
                client, "POST", f"{self.base_url}/api/v1/payments/eft/initiate",
                system="PFMS", content=body, headers=self._headers(body),
            )

        result = EFTPaymentResponse(
            payment_id=data.get("payment_id", ""),
            request_id=data.get("request_id", request.request_id),
            status=data.get("status", ""),
            transaction_id=data.get("transaction_id") or None,
            message=data.get("message"),
            error_code=data.get("error_code") or None,
            error_message=data.get("error_message") or None,
        )
        logger.info(
            "EFT payment initiated: payment_id=%s request_id=%s status=%s",
            result.payment_id, result.request_id, result.status,
        )
        return result

    async def get_payment_status(self, payment_id: str) -> dict[str, Any]:
        async with self._client() as client:
            return await send_json(
                client, "GET", f"{self.base_url}/api/v1/payments/{payment_id}/status",
                system="PFMS", headers=self._headers(),
            )

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return verify_signature(self.secret_key, payload, signature)
