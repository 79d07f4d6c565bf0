"""
External messaging channels for salesperson notifications.

WhatsApp through the Meta Cloud API. Delivery problems come back as a
failed ChannelResponse; they never raise into the caller.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class ChannelMessage:
    """Message to send via a channel."""
    to: str  # E.164 phone number
    content: str


@dataclass
class ChannelResponse:
    """Response from channel send operation."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ChannelProvider(ABC):
    """Abstract base class for messaging channels."""

    name = "channel"

    @abstractmethod
    async def send_message(self, message: ChannelMessage) -> ChannelResponse:
        """Send a text message."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if channel is operational."""
        ...


class MetaCloudWhatsApp(ChannelProvider):
    """WhatsApp via Meta Cloud API."""

    name = "whatsapp"
    BASE_URL = "https://graph.facebook.com/v18.0"

    def __init__(
        self,
        api_token: str,
        phone_number_id: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_token = api_token
        self.phone_number_id = phone_number_id
        self.timeout = timeout
        self._client = client

    @property
    def _headers(self):
        return {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"}

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=self._headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, json=payload, headers=self._headers, timeout=self.timeout)

    async def send_message(self, message: ChannelMessage) -> ChannelResponse:
        url = f"{self.BASE_URL}/{self.phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": message.to.lstrip("+"),
            "type": "text",
            "text": {"body": message.content},
        }
        try:
            resp = await self._post(url, payload)
            resp.raise_for_status()
            data = resp.json()
            msg_id = (data.get("messages") or [{}])[0].get("id")
            return ChannelResponse(success=True, message_id=msg_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Meta WhatsApp send failed: {e}")
            return ChannelResponse(success=False, error=str(e))

    async def health_check(self) -> bool:
        url = f"{self.BASE_URL}/{self.phone_number_id}"
        try:
            if self._client is not None:
                resp = await self._client.get(url, headers=self._headers, timeout=5)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(url, headers=self._headers, timeout=5)
            return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Meta WhatsApp health check failed: {e}")
            return False
