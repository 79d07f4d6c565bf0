"""
Sales service collaborators.

A negotiation is marked won only after the sales service confirms the sale
record; commissions are computed downstream from that sale.
"""

import logging
from typing import Dict, Optional, Protocol, runtime_checkable

import httpx

from .errors import SaleRejectedError
from .models import SaleDraft

logger = logging.getLogger(__name__)


@runtime_checkable
class SaleCreator(Protocol):
    async def create_sale(self, draft: SaleDraft) -> str:
        """Create the sale record and return its reference."""
        ...


@runtime_checkable
class CommissionTrigger(Protocol):
    async def trigger_commission(self, sale_ref: str, agent_id: Optional[str]) -> None:
        ...


class HttpSalesClient:
    """Sales + commission endpoints of the dealership back office."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)

    async def create_sale(self, draft: SaleDraft) -> str:
        response = await self._post("/sales", draft.to_dict())
        if response.status_code in (400, 409, 422):
            raise SaleRejectedError(f"HTTP {response.status_code}: {response.text}")
        response.raise_for_status()
        sale_ref = response.json().get("id")
        if not sale_ref:
            raise SaleRejectedError("sales service returned no sale id")
        logger.info(f"Sale {sale_ref} created for negotiation {draft.negotiation_id}")
        return str(sale_ref)

    async def trigger_commission(self, sale_ref: str, agent_id: Optional[str]) -> None:
        response = await self._post("/commissions", {"sale_id": sale_ref, "agent_id": agent_id})
        response.raise_for_status()

