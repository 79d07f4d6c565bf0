"""Builders shared by the test modules."""

from datetime import datetime, timedelta

from lead_routing.dispatch import NotificationDispatcher
from lead_routing.memory_stores import (
    InMemoryAgentDirectory,
    InMemoryAgentRoster,
    InMemoryConversationSource,
    InMemoryFollowUpSink,
    InMemoryLeadEventLog,
    InMemoryLeadStore,
    InMemoryNegotiationStore,
    InMemoryNotificationStore,
    InMemoryQualificationStore,
    InMemoryVehicleAlertSink,
)
from lead_routing.models import ConversationMessage, Lead, MessageDirection, new_id
from lead_routing.pipeline import PipelineStateMachine
from lead_routing.round_robin import RoundRobinScheduler

T0 = datetime(2025, 3, 10, 12, 0, 0)


class StubSalesClient:
    """Sales back office double that keeps every sale and commission it sees."""

    def __init__(self):
        self.sales = {}
        self.commissions = []

    async def create_sale(self, draft):
        sale_ref = new_id()
        self.sales[sale_ref] = draft
        return sale_ref

    async def trigger_commission(self, sale_ref, agent_id):
        self.commissions.append({"sale_ref": sale_ref, "agent_id": agent_id})


def conversation(*pairs, start: datetime = T0):
    """
    Build a conversation from (direction, minutes_after_start, text) tuples.

    direction is "in" or "out".
    """
    messages = []
    for direction, minutes, text in pairs:
        messages.append(ConversationMessage(
            direction=MessageDirection.INBOUND if direction == "in" else MessageDirection.OUTBOUND,
            timestamp=start + timedelta(minutes=minutes),
            text=text,
        ))
    return messages


class Env:
    """Pipeline wired to in-memory collaborators, with handles on each store."""

    def __init__(self, slots=None, dispatcher=True, max_retries=3, recovery_rules=None):
        self._phones = 0
        self.leads = InMemoryLeadStore()
        self.negotiations = InMemoryNegotiationStore()
        self.qualifications = InMemoryQualificationStore()
        self.conversations = InMemoryConversationSource()
        self.roster = InMemoryAgentRoster(slots or [])
        self.notifications = InMemoryNotificationStore()
        self.directory = InMemoryAgentDirectory()
        self.vehicle_alerts = InMemoryVehicleAlertSink()
        self.follow_ups = InMemoryFollowUpSink()
        self.events = InMemoryLeadEventLog()
        self.sales = StubSalesClient()
        self.scheduler = RoundRobinScheduler(self.roster, auto_reset=False)
        self.dispatcher = NotificationDispatcher(self.notifications, directory=self.directory) if dispatcher else None
        self.pipeline = PipelineStateMachine(
            negotiations=self.negotiations,
            leads=self.leads,
            qualifications=self.qualifications,
            conversations=self.conversations,
            scheduler=self.scheduler,
            dispatcher=self.dispatcher,
            sales=self.sales,
            commissions=self.sales,
            vehicle_alerts=self.vehicle_alerts,
            follow_ups=self.follow_ups,
            recovery_rules=recovery_rules,
            events=self.events,
            max_retries=max_retries,
        )

    async def lead(self, name="Maria Souza", phone=None, **kwargs) -> Lead:
        if phone is None:
            # leads are unique by phone
            self._phones += 1
            phone = f"+5511999{self._phones:06d}"
        return await self.leads.create(Lead(name=name, phone=phone, **kwargs))

    async def negotiation(self, **kwargs):
        lead = await self.lead(**kwargs)
        return await self.pipeline.open_negotiation(lead.id)
