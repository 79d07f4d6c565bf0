"""
In-memory collaborators.

Used when no database is configured and throughout the test-suite. Each
store hands out copies so callers never mutate stored state by accident.
"""

import copy
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .errors import ConcurrentModificationError, DuplicateLeadError, NotFoundError
from .models import (
    AgentContact,
    AgentSlot,
    ConversationMessage,
    CustomerRef,
    Lead,
    Negotiation,
    Notification,
    QualificationRecord,
    VehicleAlert,
    normalize_email,
    normalize_phone,
)

logger = logging.getLogger(__name__)


def _apply(obj: Any, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        if not hasattr(obj, key):
            raise ValueError(f"{type(obj).__name__} has no field '{key}'")
        setattr(obj, key, value)


class InMemoryLeadStore:
    def __init__(self):
        self._leads: Dict[str, Lead] = {}

    async def get(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return copy.deepcopy(lead) if lead else None

    async def find_by_phone(self, phone: str) -> Optional[Lead]:
        phone = normalize_phone(phone)
        for lead in self._leads.values():
            if normalize_phone(lead.phone) == phone:
                return copy.deepcopy(lead)
        return None

    async def find_by_email(self, email: str) -> Optional[Lead]:
        email = normalize_email(email)
        if not email:
            return None
        for lead in self._leads.values():
            if normalize_email(lead.email) == email:
                return copy.deepcopy(lead)
        return None

    async def create(self, lead: Lead) -> Lead:
        # same unique phone and email as the leads table
        phone = normalize_phone(lead.phone)
        email = normalize_email(lead.email)
        for existing in self._leads.values():
            if normalize_phone(existing.phone) == phone:
                raise DuplicateLeadError("phone", existing.phone, "lead", existing.id, existing.name)
            if email and normalize_email(existing.email) == email:
                raise DuplicateLeadError("email", existing.email, "lead", existing.id, existing.name)
        self._leads[lead.id] = copy.deepcopy(lead)
        return copy.deepcopy(lead)

    async def update(self, lead_id: str, fields: Dict[str, Any]) -> Lead:
        lead = self._leads.get(lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        _apply(lead, fields)
        lead.updated_at = datetime.utcnow()
        return copy.deepcopy(lead)


class InMemoryCustomerStore:
    def __init__(self, customers: Optional[List[CustomerRef]] = None):
        self._customers: List[CustomerRef] = list(customers or [])

    def add(self, customer: CustomerRef) -> None:
        self._customers.append(customer)

    async def find_by_phone(self, phone: str) -> Optional[CustomerRef]:
        phone = normalize_phone(phone)
        return next((c for c in self._customers if normalize_phone(c.phone) == phone), None)

    async def find_by_email(self, email: str) -> Optional[CustomerRef]:
        email = normalize_email(email)
        if not email:
            return None
        return next((c for c in self._customers if normalize_email(c.email) == email), None)


class InMemoryNegotiationStore:
    def __init__(self):
        self._negotiations: Dict[str, Negotiation] = {}

    async def get(self, negotiation_id: str) -> Optional[Negotiation]:
        negotiation = self._negotiations.get(negotiation_id)
        return copy.deepcopy(negotiation) if negotiation else None

    async def create(self, negotiation: Negotiation) -> Negotiation:
        self._negotiations[negotiation.id] = copy.deepcopy(negotiation)
        return copy.deepcopy(negotiation)

    async def update(
        self,
        negotiation_id: str,
        fields: Dict[str, Any],
        expected_version: int,
    ) -> Negotiation:
        current = self._negotiations.get(negotiation_id)
        if current is None:
            raise NotFoundError("negotiation", negotiation_id)
        if current.version != expected_version:
            raise ConcurrentModificationError("negotiation", negotiation_id, expected_version)
        fields = {k: v for k, v in fields.items() if k != "version"}
        updated = current.with_updates({**fields, "updated_at": datetime.utcnow()})
        self._negotiations[negotiation_id] = updated
        return copy.deepcopy(updated)

    async def list_by_lead(self, lead_id: str) -> List[Negotiation]:
        found = [n for n in self._negotiations.values() if n.lead_id == lead_id]
        return [copy.deepcopy(n) for n in sorted(found, key=lambda n: n.created_at)]


class InMemoryQualificationStore:
    def __init__(self):
        self._records: List[QualificationRecord] = []

    async def append(self, record: QualificationRecord) -> QualificationRecord:
        self._records.append(record)
        return record

    async def list_by_negotiation(self, negotiation_id: str) -> List[QualificationRecord]:
        return [r for r in self._records if r.negotiation_id == negotiation_id]

    async def list_by_lead(self, lead_id: str) -> List[QualificationRecord]:
        return [r for r in self._records if r.lead_id == lead_id]


class InMemoryAgentRoster:
    """Slots keyed by agent id. Increments are checked and applied in one step."""

    def __init__(self, slots: Optional[List[AgentSlot]] = None):
        self._slots: Dict[str, AgentSlot] = {s.agent_id: copy.deepcopy(s) for s in (slots or [])}

    async def list_slots(self) -> List[AgentSlot]:
        return [copy.deepcopy(s) for s in sorted(self._slots.values(), key=lambda s: s.agent_id)]

    async def list_eligible(self) -> List[AgentSlot]:
        return [s for s in await self.list_slots() if s.is_eligible]

    async def get_slot(self, agent_id: str) -> Optional[AgentSlot]:
        slot = self._slots.get(agent_id)
        return copy.deepcopy(slot) if slot else None

    async def upsert_slot(
        self,
        agent_id: str,
        active: Optional[bool] = None,
        priority: Optional[int] = None,
        daily_cap: Optional[int] = None,
        clear_cap: bool = False,
    ) -> AgentSlot:
        slot = self._slots.setdefault(agent_id, AgentSlot(agent_id=agent_id))
        if active is not None:
            slot.active = active
        if priority is not None:
            slot.priority = priority
        if clear_cap:
            slot.daily_cap = None
        elif daily_cap is not None:
            slot.daily_cap = daily_cap
        return copy.deepcopy(slot)

    async def remove_slot(self, agent_id: str) -> bool:
        return self._slots.pop(agent_id, None) is not None

    async def record_assignment(
        self, agent_id: str, at: datetime, today: Optional[date] = None
    ) -> AgentSlot:
        slot = self._slots.get(agent_id)
        if slot is None:
            raise NotFoundError("agent_slot", agent_id)
        if not slot.is_eligible:
            raise ConcurrentModificationError("agent_slot", agent_id)
        slot.record_assignment(at)
        if slot.last_reset_date is None:
            slot.last_reset_date = today
        return copy.deepcopy(slot)

    async def reset_daily_counts(self, today: date) -> int:
        return sum(1 for slot in self._slots.values() if slot.reset(today))


class InMemoryConversationSource:
    def __init__(self):
        self._messages: Dict[str, List[ConversationMessage]] = {}

    def add(self, lead_id: str, message: ConversationMessage) -> None:
        self._messages.setdefault(lead_id, []).append(message)

    async def messages_for_lead(self, lead_id: str) -> List[ConversationMessage]:
        return sorted(self._messages.get(lead_id, []), key=lambda m: m.timestamp)


class InMemoryNotificationStore:
    def __init__(self):
        self._notifications: List[Notification] = []

    async def add(self, notification: Notification) -> Notification:
        self._notifications.append(notification)
        return notification

    async def list_for_agent(self, agent_id: str, unread_only: bool = False) -> List[Notification]:
        return [
            n for n in self._notifications
            if n.agent_id == agent_id and not (unread_only and n.read)
        ]


class InMemoryAgentDirectory:
    def __init__(self, contacts: Optional[List[AgentContact]] = None):
        self._contacts = {c.agent_id: c for c in (contacts or [])}

    def add(self, contact: AgentContact) -> None:
        self._contacts[contact.agent_id] = contact

    async def get_contact(self, agent_id: str) -> Optional[AgentContact]:
        return self._contacts.get(agent_id)


class InMemoryVehicleAlertSink:
    def __init__(self):
        self.alerts: List[VehicleAlert] = []

    async def add(self, alert: VehicleAlert) -> VehicleAlert:
        self.alerts.append(alert)
        return alert


class InMemoryFollowUpSink:
    def __init__(self):
        self.actions: List[Any] = []

    async def schedule(self, actions: List[Any]) -> None:
        self.actions.extend(actions)


class InMemoryLeadEventLog:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def record(
        self,
        lead_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        self.events.append({
            "lead_id": lead_id,
            "event_type": event_type,
            "data": dict(data or {}),
            "actor": actor,
            "created_at": datetime.utcnow(),
        })

    def for_lead(self, lead_id: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["lead_id"] == lead_id]
