"""Policy administration service client."""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import BaseModel

from app.config import settings
from app.services.integrations.http import encode_json, send_json

logger = logging.getLogger(__name__)


class PolicyData(BaseModel):
    policy_number: str
    agent_id: str
    product_type: str
    plan_code: str
    policy_status: str
    premium_amount: Decimal
    sum_assured: Decimal = Decimal("0")
    inception_date: date
    maturity_date: Optional[date] = None
    payment_mode: Optional[str] = None
    policy_type: Optional[str] = None        # FIRST_YEAR / RENEWAL
    commissionable_yn: bool = True


class PolicyPage(BaseModel):
    policies: list[PolicyData] = []
    total_count: int = 0
    page: int = 1
    limit: int = 100


class PolicyClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.policy_service_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.policy_service_api_key
        self.timeout = timeout or settings.policy_service_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"Content-Type": "application/json", "X-API-Key": self.api_key},
        )

    async def get_policy(self, policy_number: str) -> PolicyData:
        async with self._client() as client:
            data = await send_json(
                client, "GET", f"{self.base_url}/api/v1/policies/{policy_number}",
                system="PolicyService",
            )
        return PolicyData.model_validate(data)

    async def list_commissionable_policies(
        self, batch_month: str, *, page: int = 1, limit: int = 100
    ) -> PolicyPage:
        async with self._client() as client:
            data = await send_json(
                client, "GET",
                f"{self.base_url}/api/v1/policies/commissionable"
                f"?batch_month={batch_month}&page={page}&limit={limit}",
                system="PolicyService",
            )
        return PolicyPage.model_validate(data)

    async def mark_commission_processed(self, policy_number: str, batch_id: int) -> None:
        async with self._client() as client:
            await send_json(
                client, "POST",
                f"{self.base_url}/api/v1/policies/{policy_number}/commission-processed",
                system="PolicyService",
                content=encode_json({"batch_id": batch_id}),
            )
        logger.info("Marked policy %s processed in batch %s", policy_number, batch_id)
