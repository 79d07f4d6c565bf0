"""
Repository classes for the lead routing data access layer.

Each repository implements one collaborator protocol from
lead_routing.stores and runs every call in its own short transaction.
Rows are converted to domain dataclasses before leaving the session.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lead_routing.errors import ConcurrentModificationError, DuplicateLeadError, NotFoundError
from lead_routing import models as domain
from lead_routing.loss_recovery import LossRecoveryRule, RecoveryAction, RecoveryActionType
from lead_routing.models import normalize_email, normalize_phone

from .models import (
    AgentSlot, ConversationMessage, Customer, Lead, LeadEvent, LossRecoveryRule as LossRecoveryRuleRow,
    Negotiation, Notification, QualificationRecord, ScheduledFollowUp, User, VehicleAlert,
)

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


class _Repository:
    def __init__(self, session_factory: SessionFactory):
        self._sessions = session_factory


# ── Leads & customers ───────────────────────────────────────────────────

_LEAD_COLUMNS = {"assigned_agent_id": "assigned_to", "attribution": "attribution_json"}


def _lead_to_domain(row: Lead) -> domain.Lead:
    return domain.Lead(
        id=row.id,
        name=row.name,
        phone=row.phone,
        email=row.email,
        source=domain.LeadSource(row.source),
        status=domain.LeadStatus(row.status),
        assigned_agent_id=row.assigned_to,
        vehicle_interest=row.vehicle_interest,
        attribution=dict(row.attribution_json or {}),
        notes=row.notes,
        archived=bool(row.archived),
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _lead_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in fields.items():
        if key in ("id", "created_at"):
            continue
        if key in ("status", "source") and value is not None:
            value = domain.LeadStatus(value).value if key == "status" else domain.LeadSource(value).value
        if key == "phone":
            value = normalize_phone(value)
        if key == "email":
            value = normalize_email(value)
        values[_LEAD_COLUMNS.get(key, key)] = value
    return values


class LeadRepository(_Repository):
    """Data access for leads."""

    async def get(self, lead_id: str) -> Optional[domain.Lead]:
        async with self._sessions() as session:
            row = await session.get(Lead, lead_id)
            return _lead_to_domain(row) if row else None

    async def find_by_phone(self, phone: str) -> Optional[domain.Lead]:
        async with self._sessions() as session:
            result = await session.execute(select(Lead).where(Lead.phone == normalize_phone(phone)))
            row = result.scalar_one_or_none()
            return _lead_to_domain(row) if row else None

    async def find_by_email(self, email: str) -> Optional[domain.Lead]:
        email = normalize_email(email)
        if not email:
            return None
        async with self._sessions() as session:
            result = await session.execute(select(Lead).where(func.lower(Lead.email) == email))
            row = result.scalar_one_or_none()
            return _lead_to_domain(row) if row else None

    async def create(self, lead: domain.Lead) -> domain.Lead:
        row = Lead(
            id=lead.id,
            name=lead.name,
            phone=normalize_phone(lead.phone),
            email=normalize_email(lead.email),
            source=lead.source.value,
            status=lead.status.value,
            assigned_to=lead.assigned_agent_id,
            vehicle_interest=lead.vehicle_interest,
            attribution_json=dict(lead.attribution),
            notes=lead.notes,
            archived=lead.archived,
            created_by=lead.created_by,
            created_at=lead.created_at,
            updated_at=lead.updated_at,
        )
        try:
            async with self._sessions.begin() as session:
                session.add(row)
        except IntegrityError as e:
            # lost a race with a concurrent intake of the same contact
            raise await self._duplicate_error(lead) from e
        return _lead_to_domain(row)

    async def _duplicate_error(self, lead: domain.Lead) -> DuplicateLeadError:
        existing = await self.find_by_phone(lead.phone)
        if existing:
            return DuplicateLeadError("phone", existing.phone, "lead", existing.id, existing.name)
        existing = await self.find_by_email(lead.email) if lead.email else None
        if existing:
            return DuplicateLeadError("email", existing.email, "lead", existing.id, existing.name)
        return DuplicateLeadError("phone", lead.phone, "lead", "unknown")

    async def update(self, lead_id: str, fields: Dict[str, Any]) -> domain.Lead:
        values = _lead_values(fields)
        values["updated_at"] = datetime.utcnow()
        async with self._sessions.begin() as session:
            result = await session.execute(update(Lead).where(Lead.id == lead_id).values(**values))
            if result.rowcount == 0:
                raise NotFoundError("lead", lead_id)
            row = await session.get(Lead, lead_id, populate_existing=True)
            return _lead_to_domain(row)


class CustomerRepository(_Repository):
    """Converted customers (read side used by lead intake)."""

    async def find_by_phone(self, phone: str) -> Optional[domain.CustomerRef]:
        return await self._find(Customer.phone == normalize_phone(phone))

    async def find_by_email(self, email: str) -> Optional[domain.CustomerRef]:
        email = normalize_email(email)
        if not email:
            return None
        return await self._find(func.lower(Customer.email) == email)

    async def _find(self, condition) -> Optional[domain.CustomerRef]:
        async with self._sessions() as session:
            result = await session.execute(select(Customer).where(condition).limit(1))
            row = result.scalar_one_or_none()
            if not row:
                return None
            return domain.CustomerRef(id=row.id, name=row.name, phone=row.phone, email=row.email)


class LeadEventRepository(_Repository):
    """Audit trail of lead changes."""

    async def record(
        self,
        lead_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        async with self._sessions.begin() as session:
            session.add(LeadEvent(lead_id=lead_id, event_type=event_type, details_json=dict(data or {}), actor=actor))


# ── Negotiations & qualification ────────────────────────────────────────

_NEGOTIATION_COLUMNS = {"assigned_agent_id": "salesperson_id", "objections": "objections_json"}


def _negotiation_to_domain(row: Negotiation) -> domain.Negotiation:
    return domain.Negotiation(
        id=row.id,
        lead_id=row.lead_id,
        stage=domain.NegotiationStage(row.stage),
        version=row.version,
        assigned_agent_id=row.salesperson_id,
        customer_id=row.customer_id,
        vehicle_id=row.vehicle_id,
        estimated_value=row.estimated_value,
        probability=row.probability,
        expected_close_date=row.expected_close_date,
        actual_close_date=row.actual_close_date,
        appointment_at=row.appointment_at,
        proposal_description=row.proposal_description,
        objections=list(row.objections_json or []),
        structured_loss_reason=domain.LossReason(row.structured_loss_reason) if row.structured_loss_reason else None,
        loss_reason=row.loss_reason,
        sale_ref=row.sale_ref,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _negotiation_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in fields.items():
        if key in ("id", "version", "lead_id", "created_at"):
            continue
        if key == "stage":
            value = domain.NegotiationStage(value).value
        elif key == "structured_loss_reason" and value is not None:
            value = domain.LossReason(value).value
        elif key == "objections":
            value = list(value or [])
        values[_NEGOTIATION_COLUMNS.get(key, key)] = value
    return values


class NegotiationRepository(_Repository):
    """Negotiations with optimistic versioning."""

    async def get(self, negotiation_id: str) -> Optional[domain.Negotiation]:
        async with self._sessions() as session:
            row = await session.get(Negotiation, negotiation_id)
            return _negotiation_to_domain(row) if row else None

    async def create(self, negotiation: domain.Negotiation) -> domain.Negotiation:
        row = Negotiation(
            id=negotiation.id,
            lead_id=negotiation.lead_id,
            version=negotiation.version,
            created_at=negotiation.created_at,
            updated_at=negotiation.updated_at,
            **_negotiation_values({
                "stage": negotiation.stage,
                "assigned_agent_id": negotiation.assigned_agent_id,
                "customer_id": negotiation.customer_id,
                "vehicle_id": negotiation.vehicle_id,
                "estimated_value": negotiation.estimated_value,
                "probability": negotiation.probability,
                "expected_close_date": negotiation.expected_close_date,
                "appointment_at": negotiation.appointment_at,
                "objections": negotiation.objections,
                "notes": negotiation.notes,
            }),
        )
        async with self._sessions.begin() as session:
            session.add(row)
        return _negotiation_to_domain(row)

    async def update(
        self,
        negotiation_id: str,
        fields: Dict[str, Any],
        expected_version: int,
    ) -> domain.Negotiation:
        values = _negotiation_values(fields)
        values["updated_at"] = datetime.utcnow()
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(Negotiation)
                .where(Negotiation.id == negotiation_id, Negotiation.version == expected_version)
                .values(version=Negotiation.version + 1, **values)
            )
            if result.rowcount == 0:
                exists = await session.scalar(select(Negotiation.id).where(Negotiation.id == negotiation_id))
                if exists is None:
                    raise NotFoundError("negotiation", negotiation_id)
                raise ConcurrentModificationError("negotiation", negotiation_id, expected_version)
            row = await session.get(Negotiation, negotiation_id, populate_existing=True)
            return _negotiation_to_domain(row)

    async def list_by_lead(self, lead_id: str) -> List[domain.Negotiation]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Negotiation).where(Negotiation.lead_id == lead_id).order_by(Negotiation.created_at.asc())
            )
            return [_negotiation_to_domain(r) for r in result.scalars().all()]


def _record_to_domain(row: QualificationRecord) -> domain.QualificationRecord:
    return domain.QualificationRecord(
        id=row.id,
        negotiation_id=row.negotiation_id,
        lead_id=row.lead_id,
        engagement=row.engagement_score,
        intent=row.intent_score,
        completeness=row.completeness_score,
        classification=domain.Classification(row.classification),
        answers=dict(row.answers_json or {}),
        matched_intents=list(row.matched_intents_json or []),
        created_by=row.created_by,
        created_at=row.created_at,
    )


class QualificationRepository(_Repository):
    """Append-only qualification history."""

    async def append(self, record: domain.QualificationRecord) -> domain.QualificationRecord:
        async with self._sessions.begin() as session:
            session.add(QualificationRecord(
                id=record.id,
                negotiation_id=record.negotiation_id,
                lead_id=record.lead_id,
                engagement_score=record.engagement,
                intent_score=record.intent,
                completeness_score=record.completeness,
                classification=record.classification.value,
                answers_json=dict(record.answers),
                matched_intents_json=list(record.matched_intents),
                created_by=record.created_by,
                created_at=record.created_at,
            ))
        return record

    async def list_by_negotiation(self, negotiation_id: str) -> List[domain.QualificationRecord]:
        return await self._list(QualificationRecord.negotiation_id == negotiation_id)

    async def list_by_lead(self, lead_id: str) -> List[domain.QualificationRecord]:
        return await self._list(QualificationRecord.lead_id == lead_id)

    async def _list(self, condition) -> List[domain.QualificationRecord]:
        async with self._sessions() as session:
            result = await session.execute(
                select(QualificationRecord).where(condition).order_by(QualificationRecord.created_at.asc())
            )
            return [_record_to_domain(r) for r in result.scalars().all()]


class ConversationRepository(_Repository):
    """Conversation log, read by the scoring engine."""

    async def messages_for_lead(self, lead_id: str) -> List[domain.ConversationMessage]:
        async with self._sessions() as session:
            result = await session.execute(
                select(ConversationMessage)
                .where(ConversationMessage.lead_id == lead_id)
                .order_by(ConversationMessage.created_at.asc())
            )
            return [
                domain.ConversationMessage(
                    direction=domain.MessageDirection(m.direction),
                    timestamp=m.created_at,
                    text=m.content or "",
                )
                for m in result.scalars().all()
            ]


# ── Round robin ─────────────────────────────────────────────────────────

def _slot_to_domain(row: AgentSlot) -> domain.AgentSlot:
    return domain.AgentSlot(
        agent_id=row.agent_id,
        active=bool(row.is_active),
        priority=row.priority or 0,
        daily_cap=row.daily_limit,
        current_day_count=row.current_count or 0,
        last_assigned_at=row.last_assigned_at,
        lifetime_assigned_count=row.total_leads_assigned or 0,
        last_reset_date=row.last_reset_date,
    )


_UNDER_CAP = or_(AgentSlot.daily_limit.is_(None), AgentSlot.current_count < AgentSlot.daily_limit)


class AgentSlotRepository(_Repository):
    """Round-robin roster; counters change only through conditional UPDATEs."""

    async def list_slots(self) -> List[domain.AgentSlot]:
        async with self._sessions() as session:
            result = await session.execute(select(AgentSlot).order_by(AgentSlot.agent_id))
            return [_slot_to_domain(r) for r in result.scalars().all()]

    async def list_eligible(self) -> List[domain.AgentSlot]:
        async with self._sessions() as session:
            result = await session.execute(
                select(AgentSlot).where(AgentSlot.is_active.is_(True), _UNDER_CAP).order_by(AgentSlot.agent_id)
            )
            return [_slot_to_domain(r) for r in result.scalars().all()]

    async def get_slot(self, agent_id: str) -> Optional[domain.AgentSlot]:
        async with self._sessions() as session:
            row = await session.get(AgentSlot, agent_id)
            return _slot_to_domain(row) if row else None

    async def upsert_slot(
        self,
        agent_id: str,
        active: Optional[bool] = None,
        priority: Optional[int] = None,
        daily_cap: Optional[int] = None,
        clear_cap: bool = False,
    ) -> domain.AgentSlot:
        async with self._sessions.begin() as session:
            row = await session.get(AgentSlot, agent_id)
            if row is None:
                row = AgentSlot(agent_id=agent_id, is_active=True, priority=0, current_count=0,
                                total_leads_assigned=0)
                session.add(row)
            if active is not None:
                row.is_active = active
            if priority is not None:
                row.priority = priority
            if clear_cap:
                row.daily_limit = None
            elif daily_cap is not None:
                row.daily_limit = daily_cap
            await session.flush()
            return _slot_to_domain(row)

    async def remove_slot(self, agent_id: str) -> bool:
        async with self._sessions.begin() as session:
            row = await session.get(AgentSlot, agent_id)
            if row is None:
                return False
            await session.delete(row)
            return True

    async def record_assignment(
        self, agent_id: str, at: datetime, today: Optional[date] = None
    ) -> domain.AgentSlot:
        values: Dict[str, Any] = {
            "current_count": AgentSlot.current_count + 1,
            "total_leads_assigned": AgentSlot.total_leads_assigned + 1,
            "last_assigned_at": at,
        }
        if today is not None:
            values["last_reset_date"] = func.coalesce(AgentSlot.last_reset_date, today)

        async with self._sessions.begin() as session:
            result = await session.execute(
                update(AgentSlot)
                .where(AgentSlot.agent_id == agent_id, AgentSlot.is_active.is_(True), _UNDER_CAP)
                .values(**values)
            )
            if result.rowcount == 0:
                exists = await session.scalar(select(AgentSlot.agent_id).where(AgentSlot.agent_id == agent_id))
                if exists is None:
                    raise NotFoundError("agent_slot", agent_id)
                raise ConcurrentModificationError("agent_slot", agent_id)
            row = await session.get(AgentSlot, agent_id, populate_existing=True)
            return _slot_to_domain(row)

    async def reset_daily_counts(self, today: date) -> int:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(AgentSlot)
                .where(or_(AgentSlot.last_reset_date.is_(None), AgentSlot.last_reset_date != today))
                .values(current_count=0, last_reset_date=today)
            )
            return result.rowcount


# ── Notifications & side tables ─────────────────────────────────────────

class UserRepository(_Repository):
    """Salesperson contact details."""

    async def get_contact(self, agent_id: str) -> Optional[domain.AgentContact]:
        async with self._sessions() as session:
            row = await session.get(User, agent_id)
            if row is None or not row.is_active:
                return None
            return domain.AgentContact(agent_id=row.id, name=row.full_name, phone=row.phone)


class NotificationRepository(_Repository):
    """In-app notification inbox."""

    async def add(self, notification: domain.Notification) -> domain.Notification:
        async with self._sessions.begin() as session:
            session.add(Notification(
                id=notification.id,
                user_id=notification.agent_id,
                notification_type=notification.type,
                title=notification.title,
                content=notification.message,
                link=notification.link,
                read=notification.read,
                created_at=notification.created_at,
            ))
        return notification

    async def list_for_agent(self, agent_id: str, unread_only: bool = False) -> List[domain.Notification]:
        q = select(Notification).where(Notification.user_id == agent_id)
        if unread_only:
            q = q.where(Notification.read.is_(False))
        async with self._sessions() as session:
            result = await session.execute(q.order_by(Notification.created_at.desc()))
            return [
                domain.Notification(
                    id=n.id, agent_id=n.user_id, type=n.notification_type, title=n.title,
                    message=n.content, link=n.link, read=bool(n.read), created_at=n.created_at,
                )
                for n in result.scalars().all()
            ]


class VehicleAlertRepository(_Repository):
    async def add(self, alert: domain.VehicleAlert) -> domain.VehicleAlert:
        async with self._sessions.begin() as session:
            session.add(VehicleAlert(
                id=alert.id,
                lead_id=alert.lead_id,
                negotiation_id=alert.negotiation_id,
                vehicle_id=alert.vehicle_id,
                vehicle_interest=alert.vehicle_interest,
                created_at=alert.created_at,
            ))
        return alert


class FollowUpRepository(_Repository):
    """Stores planned loss recovery actions."""

    async def schedule(self, actions: List[RecoveryAction]) -> None:
        async with self._sessions.begin() as session:
            for action in actions:
                session.add(ScheduledFollowUp(
                    negotiation_id=action.negotiation_id,
                    lead_id=action.lead_id,
                    rule_id=action.rule_id,
                    action_type=action.action_type.value,
                    content=action.message,
                    priority=action.priority,
                    scheduled_at=action.due_at,
                ))


class LossRecoveryRuleRepository(_Repository):
    """Loss recovery rules, maintained by dealership managers."""

    async def list_active(self) -> List[LossRecoveryRule]:
        async with self._sessions() as session:
            result = await session.execute(
                select(LossRecoveryRuleRow)
                .where(LossRecoveryRuleRow.is_active.is_(True))
                .order_by(LossRecoveryRuleRow.priority.desc())
            )
            return [
                LossRecoveryRule(
                    id=r.id,
                    name=r.name,
                    trigger_loss_reasons=[domain.LossReason(v) for v in (r.trigger_loss_reasons or [])],
                    action_type=RecoveryActionType(r.action_type),
                    delay_days=r.delay_days or 0,
                    delay_hours=r.delay_hours or 0,
                    priority=r.priority or 0,
                    is_active=bool(r.is_active),
                    message_template=r.message_template,
                )
                for r in result.scalars().all()
            ]
