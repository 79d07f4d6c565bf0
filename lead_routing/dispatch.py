"""
Assignment notifications.

Tells a salesperson a lead was routed to them: an in-app notification and,
when a phone number and a channel are available, a WhatsApp message.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable

from .channels import ChannelMessage, ChannelProvider
from .errors import StorageUnavailable
from .models import Notification
from .stores import AgentDirectory, NotificationStore
from .timeouts import call_collaborator

logger = logging.getLogger(__name__)

NEW_LEAD_TITLE = "New lead assigned"


@dataclass
class DispatchResult:
    """Outcome of one notify call."""
    ok: bool
    in_app: bool = False
    external: Optional[bool] = None   # None when no external send was attempted
    errors: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None


@runtime_checkable
class DispatchAdapter(Protocol):
    """Delivers the "assigned to you" signal."""

    async def notify(self, agent_id: str, lead_id: str, lead_name: Optional[str]) -> DispatchResult:
        ...


def format_whatsapp_text(agent_name: Optional[str], lead_name: Optional[str]) -> str:
    return (
        "*New lead assigned!*\n\n"
        f"Hi {agent_name or 'there'}!\n\n"
        f"You received a new lead: *{lead_name or 'Customer'}*\n\n"
        "Open the CRM to see the details and start the conversation."
    )


class NotificationDispatcher:
    """In-app notification plus optional WhatsApp message."""

    def __init__(
        self,
        notifications: NotificationStore,
        directory: Optional[AgentDirectory] = None,
        channel: Optional[ChannelProvider] = None,
        timeout: float = 5.0,
        link: str = "/crm",
    ):
        self.notifications = notifications
        self.directory = directory
        self.channel = channel
        self.timeout = timeout
        self.link = link

    async def notify(self, agent_id: str, lead_id: str, lead_name: Optional[str]) -> DispatchResult:
        result = DispatchResult(ok=False)

        notification = Notification(
            agent_id=agent_id,
            type="new_lead",
            title=NEW_LEAD_TITLE,
            message=f"You received a new lead: {lead_name or 'Customer'}. Open the CRM for details.",
            link=f"{self.link}?lead={lead_id}",
        )
        try:
            await call_collaborator(self.notifications.add(notification), "notifications.add", self.timeout)
            result.in_app = True
        except StorageUnavailable as e:
            result.errors.append(f"in-app: {e}")

        if self.channel is not None and self.directory is not None:
            await self._send_external(agent_id, lead_name, result)

        result.ok = result.in_app and result.external is not False
        return result

    async def _send_external(self, agent_id: str, lead_name: Optional[str], result: DispatchResult):
        try:
            contact = await call_collaborator(
                self.directory.get_contact(agent_id), "agents.get_contact", self.timeout
            )
        except StorageUnavailable as e:
            result.external = False
            result.errors.append(f"{self.channel.name}: {e}")
            return

        if contact is None or not contact.phone:
            logger.debug(f"Agent {agent_id} has no phone; skipping {self.channel.name}")
            return

        response = await self.channel.send_message(ChannelMessage(
            to=contact.phone,
            content=format_whatsapp_text(contact.name, lead_name),
        ))
        result.external = response.success
        if not response.success:
            result.errors.append(f"{self.channel.name}: {response.error}")
