"""
Collaborator protocols for the lead routing core.

The core talks to storage, the conversation log and the notification inbox
only through these protocols, so the same pipeline runs on the in-memory
stores (tests, local runs) and on the SQLAlchemy repositories.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

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
)


@runtime_checkable
class LeadStore(Protocol):
    """Protocol for lead persistence."""

    async def get(self, lead_id: str) -> Optional[Lead]:
        ...

    async def find_by_phone(self, phone: str) -> Optional[Lead]:
        """Look up by normalised phone."""
        ...

    async def find_by_email(self, email: str) -> Optional[Lead]:
        """Look up by lower-cased email."""
        ...

    async def create(self, lead: Lead) -> Lead:
        ...

    async def update(self, lead_id: str, fields: Dict[str, Any]) -> Lead:
        """Apply `fields`; raises NotFoundError for an unknown id."""
        ...


@runtime_checkable
class CustomerStore(Protocol):
    """Read-only view of converted customers."""

    async def find_by_phone(self, phone: str) -> Optional[CustomerRef]:
        ...

    async def find_by_email(self, email: str) -> Optional[CustomerRef]:
        ...


@runtime_checkable
class NegotiationStore(Protocol):
    """Protocol for negotiation persistence with optimistic versioning."""

    async def get(self, negotiation_id: str) -> Optional[Negotiation]:
        ...

    async def create(self, negotiation: Negotiation) -> Negotiation:
        ...

    async def update(
        self,
        negotiation_id: str,
        fields: Dict[str, Any],
        expected_version: int,
    ) -> Negotiation:
        """
        Apply `fields` only if the stored version equals `expected_version`.

        Bumps the version by one. Raises ConcurrentModificationError on a
        mismatch and NotFoundError for an unknown id.
        """
        ...

    async def list_by_lead(self, lead_id: str) -> List[Negotiation]:
        ...


@runtime_checkable
class QualificationStore(Protocol):
    """Append-only qualification history."""

    async def append(self, record: QualificationRecord) -> QualificationRecord:
        ...

    async def list_by_negotiation(self, negotiation_id: str) -> List[QualificationRecord]:
        ...

    async def list_by_lead(self, lead_id: str) -> List[QualificationRecord]:
        ...


@runtime_checkable
class AgentRoster(Protocol):
    """Round-robin slots and their counters."""

    async def list_slots(self) -> List[AgentSlot]:
        ...

    async def list_eligible(self) -> List[AgentSlot]:
        """Active slots under their daily cap."""
        ...

    async def get_slot(self, agent_id: str) -> Optional[AgentSlot]:
        ...

    async def upsert_slot(
        self,
        agent_id: str,
        active: Optional[bool] = None,
        priority: Optional[int] = None,
        daily_cap: Optional[int] = None,
        clear_cap: bool = False,
    ) -> AgentSlot:
        ...

    async def remove_slot(self, agent_id: str) -> bool:
        ...

    async def record_assignment(
        self, agent_id: str, at: datetime, today: Optional[date] = None
    ) -> AgentSlot:
        """
        Atomic compare-and-increment: count the assignment only if the slot
        is still active and under its cap, else raise
        ConcurrentModificationError.

        A slot never reset before is stamped with `today`, so a later first
        reset of the same day does not wipe counts already taken.
        """
        ...

    async def reset_daily_counts(self, today: date) -> int:
        """Zero every slot not yet reset for `today`; returns how many changed."""
        ...


@runtime_checkable
class ConversationSource(Protocol):
    """Message history used by the scoring engine."""

    async def messages_for_lead(self, lead_id: str) -> List[ConversationMessage]:
        """Messages ordered oldest first."""
        ...


@runtime_checkable
class NotificationStore(Protocol):
    """In-app notification inbox."""

    async def add(self, notification: Notification) -> Notification:
        ...

    async def list_for_agent(self, agent_id: str, unread_only: bool = False) -> List[Notification]:
        ...


@runtime_checkable
class AgentDirectory(Protocol):
    """Contact details of salespeople."""

    async def get_contact(self, agent_id: str) -> Optional[AgentContact]:
        ...


@runtime_checkable
class VehicleAlertSink(Protocol):
    async def add(self, alert: VehicleAlert) -> VehicleAlert:
        ...


@runtime_checkable
class FollowUpSink(Protocol):
    """Receives recovery actions planned after a loss."""

    async def schedule(self, actions: List[Any]) -> None:
        ...


@runtime_checkable
class LeadEventLog(Protocol):
    """Audit trail of lead changes."""

    async def record(
        self,
        lead_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        ...
