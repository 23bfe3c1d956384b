"""Accounting / GL client for posting commission vouchers."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.config import settings
from app.services.commission.ledger import Voucher, validate_balance
from app.services.integrations.http import encode_json, send_json

logger = logging.getLogger(__name__)


@dataclass
class VoucherResult:
    voucher_id: str
    voucher_number: str
    status: str
    message: Optional[str] = None


def voucher_payload(voucher: Voucher, company_code: str) -> dict[str, Any]:
    return {
        "voucher_type": voucher.voucher_type,
        "voucher_date": voucher.voucher_date.isoformat(),
        "reference_type": voucher.reference_type,
        "reference_number": voucher.reference_number,
        "narration": voucher.narration,
        "entries": [
            {
                "account_code": e.account_code,
                "account_name": e.account_name,
                "debit_amount": str(e.debit_amount),
                "credit_amount": str(e.credit_amount),
                "cost_center": e.cost_center,
                "description": e.description,
            }
            for e in voucher.entries
        ],
        "total_debit": str(voucher.total_debit),
        "total_credit": str(voucher.total_credit),
        "company_code": company_code,
    }


class AccountingClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        company_code: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.accounting_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.accounting_api_key
        self.company_code = company_code if company_code is not None else settings.accounting_company_code
        self.timeout = timeout or settings.accounting_timeout_seconds
        self._transport = transport

    async def post_voucher(self, voucher: Voucher) -> VoucherResult:
        validate_balance(voucher)
        body = encode_json(voucher_payload(voucher, self.company_code))
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            data = await send_json(
                client, "POST", f"{self.base_url}/api/v1/vouchers/post",
                system="Accounting",
                content=body,
                headers={"Content-Type": "application/json", "X-API-Key": self.api_key},
            )
        result = VoucherResult(
            voucher_id=data.get("voucher_id", ""),
            voucher_number=data.get("voucher_number", ""),
            status=data.get("status", ""),
            message=data.get("message"),
        )
        logger.info(
            "Posted %s voucher %s for %s %s (status %s)",
            voucher.voucher_type, result.voucher_number,
            voucher.reference_type, voucher.reference_number, result.status,
        )
        return result
