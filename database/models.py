"""
SQLAlchemy ORM models for the lead routing service.

Leads, customers, negotiations, qualification history, round-robin slots
and the side tables the pipeline writes to (events, notifications,
follow-ups, vehicle alerts).
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Date, DateTime, Text, ForeignKey,
    JSON, Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    """Dealership staff; salespeople receive leads."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=True)
    full_name = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    role = Column(String(20), default="salesperson")  # admin, manager, salesperson, marketing
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False, index=True)
    email = Column(String(255), nullable=True, index=True)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False, unique=True)
    email = Column(String(255), nullable=True, unique=True)
    source = Column(String(20), default="manual")  # manual, whatsapp, paid_social, paid_search, referral, other
    status = Column(String(20), default="new")  # new, contacted, qualified, negotiating, converted, lost
    assigned_to = Column(String(36), nullable=True, index=True)
    vehicle_interest = Column(String(255), nullable=True)
    attribution_json = Column(JSON, default=dict)  # utm_source, campaign_id, ...
    notes = Column(Text, nullable=True)
    archived = Column(Boolean, default=False)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    events = relationship("LeadEvent", back_populates="lead", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_lead_status_archived", "status", "archived"),
    )


class LeadEvent(Base):
    __tablename__ = "lead_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(30), nullable=False)  # created, stage_changed, assigned, reassigned
    details_json = Column(JSON, default=dict)
    actor = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    lead = relationship("Lead", back_populates="events")


class ConversationMessage(Base):
    """WhatsApp / chat messages exchanged with a lead."""
    __tablename__ = "conversation_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    direction = Column(String(10), nullable=False)  # inbound, outbound
    content = Column(Text, default="")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_msg_lead_time", "lead_id", "created_at"),
    )


class Negotiation(Base):
    __tablename__ = "negotiations"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True)
    vehicle_id = Column(String(36), nullable=True)
    salesperson_id = Column(String(36), nullable=True, index=True)
    stage = Column(String(20), default="initial_contact", nullable=False)
    version = Column(Integer, default=1, nullable=False)
    estimated_value = Column(Float, nullable=True)
    probability = Column(Integer, nullable=True)
    expected_close_date = Column(Date, nullable=True)
    actual_close_date = Column(Date, nullable=True)
    appointment_at = Column(DateTime, nullable=True)
    proposal_description = Column(Text, nullable=True)
    objections_json = Column(JSON, default=list)
    structured_loss_reason = Column(String(30), nullable=True)
    loss_reason = Column(Text, nullable=True)
    sale_ref = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_neg_stage", "stage"),
    )


class QualificationRecord(Base):
    """Append-only; rows are never updated."""
    __tablename__ = "qualification_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    negotiation_id = Column(String(36), ForeignKey("negotiations.id", ondelete="CASCADE"), nullable=False, index=True)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False, index=True)
    engagement_score = Column(Integer, nullable=False)
    intent_score = Column(Integer, nullable=False)
    completeness_score = Column(Integer, nullable=False)
    classification = Column(String(10), nullable=False)  # hot, warm, cold
    answers_json = Column(JSON, default=dict)
    matched_intents_json = Column(JSON, default=list)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class AgentSlot(Base):
    """Round-robin configuration and counters, one row per salesperson."""
    __tablename__ = "round_robin_slots"

    agent_id = Column(String(36), primary_key=True)
    is_active = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    daily_limit = Column(Integer, nullable=True)
    current_count = Column(Integer, default=0, nullable=False)
    last_assigned_at = Column(DateTime, nullable=True)
    total_leads_assigned = Column(Integer, default=0, nullable=False)
    last_reset_date = Column(Date, nullable=True)


class Notification(Base):
    """In-app notifications for salespeople."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    notification_type = Column(String(30), nullable=False)  # new_lead, ...
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    link = Column(String(255), nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class ScheduledFollowUp(Base):
    """Loss recovery actions waiting to run."""
    __tablename__ = "scheduled_follow_ups"

    id = Column(String(36), primary_key=True, default=_uuid)
    negotiation_id = Column(String(36), ForeignKey("negotiations.id"), nullable=False)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False)
    rule_id = Column(String(36), nullable=True)
    action_type = Column(String(30), nullable=False)
    content = Column(Text, nullable=True)
    priority = Column(Integer, default=0)
    scheduled_at = Column(DateTime, nullable=False)
    status = Column(String(15), default="pending")  # pending, done, cancelled
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_followup_status_time", "status", "scheduled_at"),
    )


class VehicleAlert(Base):
    __tablename__ = "vehicle_alerts"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False, index=True)
    negotiation_id = Column(String(36), ForeignKey("negotiations.id"), nullable=True)
    vehicle_id = Column(String(36), nullable=True)
    vehicle_interest = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class LossRecoveryRule(Base):
    __tablename__ = "loss_recovery_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    trigger_loss_reasons = Column(JSON, default=list)
    action_type = Column(String(30), nullable=False)
    delay_days = Column(Integer, default=0)
    delay_hours = Column(Integer, default=0)
    priority = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    message_template = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
