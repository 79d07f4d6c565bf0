"""
Domain models for lead routing.

Leads, negotiations, qualification records and round-robin agent slots,
plus the enums that drive the pipeline.
"""

import re
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return str(uuid.uuid4())


class LeadSource(Enum):
    """Channel a lead arrived through."""
    MANUAL = "manual"
    WHATSAPP = "whatsapp"
    PAID_SOCIAL = "paid_social"      # Meta ads
    PAID_SEARCH = "paid_search"      # Google ads
    REFERRAL = "referral"
    OTHER = "other"


class LeadStatus(Enum):
    """Lead lifecycle status."""
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    NEGOTIATING = "negotiating"
    CONVERTED = "converted"
    LOST = "lost"


class NegotiationStage(Enum):
    """Stages of the negotiation pipeline."""
    INITIAL_CONTACT = "initial_contact"
    VISIT_SCHEDULED = "visit_scheduled"
    PROPOSAL_SENT = "proposal_sent"
    NEGOTIATING = "negotiating"      # qualification gate
    CLOSING = "closing"
    WON = "won"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in (NegotiationStage.WON, NegotiationStage.LOST)


class LossReason(Enum):
    """Structured reason a negotiation was lost."""
    NO_DOWN_PAYMENT = "no_down_payment"
    CREDIT_DENIED = "credit_denied"
    JUST_BROWSING = "just_browsing"
    PRICE_TOO_HIGH = "price_too_high"
    BOUGHT_ELSEWHERE = "bought_elsewhere"
    GAVE_UP = "gave_up"
    UNREACHABLE = "unreachable"
    VEHICLE_SOLD = "vehicle_already_sold"
    OTHER = "other"


class Classification(Enum):
    """Lead temperature derived from the total score."""
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class MessageDirection(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class PaymentMethod(Enum):
    CASH = "cash"
    FINANCING = "financing"
    CONSORTIUM = "consortium"
    TRADE_PLUS_DIFFERENCE = "trade_plus_difference"


class PurchaseTimeline(Enum):
    IMMEDIATE = "immediate"          # this week
    DAYS_15 = "15_days"
    DAYS_30 = "30_days"
    DAYS_60_PLUS = "60_days_plus"


_PHONE_STRIP = re.compile(r"[^\d+]")


def normalize_phone(phone: str) -> str:
    """Keep digits and a single leading '+' so formatting never hides a duplicate."""
    cleaned = _PHONE_STRIP.sub("", phone or "")
    if cleaned.startswith("+"):
        return "+" + cleaned[1:].replace("+", "")
    return cleaned.replace("+", "")


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email or not email.strip():
        return None
    return email.strip().lower()


def naive_utc(value: datetime) -> datetime:
    """Timestamps are stored and compared as naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ConversationMessage:
    """One message of a lead's conversation, as seen by the scoring engine."""
    direction: MessageDirection
    timestamp: datetime
    text: str = ""

    def as_naive_utc(self) -> "ConversationMessage":
        if self.timestamp.tzinfo is None:
            return self
        return replace(self, timestamp=naive_utc(self.timestamp))


@dataclass(frozen=True)
class QualificationInput:
    """Answers captured in the qualification form. Every field is optional."""
    vehicle_interest: Optional[str] = None
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    down_payment: Optional[float] = None
    max_installment: Optional[float] = None
    payment_method: Optional[str] = None
    purchase_timeline: Optional[str] = None
    has_trade_in: Optional[bool] = None
    trade_in_vehicle: Optional[str] = None
    trade_in_value: Optional[float] = None
    decision_maker: Optional[bool] = None
    notes: Optional[str] = None

    @property
    def has_budget(self) -> bool:
        return bool((self.budget_min or 0) > 0 or (self.budget_max or 0) > 0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QualificationInput":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Lead:
    """A prospective customer contact."""
    name: str
    phone: str
    id: str = field(default_factory=new_id)
    email: Optional[str] = None
    source: LeadSource = LeadSource.MANUAL
    status: LeadStatus = LeadStatus.NEW
    assigned_agent_id: Optional[str] = None
    vehicle_interest: Optional[str] = None
    attribution: Dict[str, str] = field(default_factory=dict)  # utm_*, campaign ids
    notes: Optional[str] = None
    archived: bool = False
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass(frozen=True)
class CustomerRef:
    """Minimal view of a converted customer, used for duplicate checks."""
    id: str
    name: str
    phone: str
    email: Optional[str] = None


@dataclass
class Negotiation:
    """One sales attempt tied to exactly one lead."""
    lead_id: str
    id: str = field(default_factory=new_id)
    stage: NegotiationStage = NegotiationStage.INITIAL_CONTACT
    version: int = 1
    assigned_agent_id: Optional[str] = None
    customer_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    estimated_value: Optional[float] = None
    probability: Optional[int] = None
    expected_close_date: Optional[date] = None
    actual_close_date: Optional[date] = None
    appointment_at: Optional[datetime] = None
    proposal_description: Optional[str] = None
    objections: List[str] = field(default_factory=list)
    structured_loss_reason: Optional[LossReason] = None
    loss_reason: Optional[str] = None
    sale_ref: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def with_updates(self, fields: Dict[str, Any]) -> "Negotiation":
        """Copy with `fields` applied and the version bumped."""
        return replace(self, **fields, version=self.version + 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        data["structured_loss_reason"] = (
            self.structured_loss_reason.value if self.structured_loss_reason else None
        )
        for key in ("expected_close_date", "actual_close_date", "appointment_at", "created_at", "updated_at"):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        return data


@dataclass(frozen=True)
class QualificationRecord:
    """
    Immutable snapshot of one qualification event.

    The total is always derived from the three parts; it cannot be set.
    """
    negotiation_id: str
    lead_id: str
    engagement: int
    intent: int
    completeness: int
    classification: Classification
    answers: Dict[str, Any] = field(default_factory=dict)
    matched_intents: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)
    created_by: Optional[str] = None

    @property
    def total(self) -> int:
        return self.engagement + self.intent + self.completeness

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "negotiation_id": self.negotiation_id,
            "lead_id": self.lead_id,
            "engagement": self.engagement,
            "intent": self.intent,
            "completeness": self.completeness,
            "total": self.total,
            "classification": self.classification.value,
            "answers": dict(self.answers),
            "matched_intents": list(self.matched_intents),
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
        }


@dataclass
class AgentSlot:
    """Round-robin eligibility and daily capacity of one salesperson."""
    agent_id: str
    active: bool = True
    priority: int = 0
    daily_cap: Optional[int] = None
    current_day_count: int = 0
    last_assigned_at: Optional[datetime] = None
    lifetime_assigned_count: int = 0
    last_reset_date: Optional[date] = None

    @property
    def at_cap(self) -> bool:
        return self.daily_cap is not None and self.current_day_count >= self.daily_cap

    @property
    def is_eligible(self) -> bool:
        return self.active and not self.at_cap

    def record_assignment(self, at: datetime) -> None:
        self.current_day_count += 1
        self.lifetime_assigned_count += 1
        self.last_assigned_at = at

    def reset(self, today: date) -> bool:
        """Zero the daily counter unless already reset for `today`."""
        if self.last_reset_date == today:
            return False
        self.current_day_count = 0
        self.last_reset_date = today
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "active": self.active,
            "priority": self.priority,
            "daily_cap": self.daily_cap,
            "current_day_count": self.current_day_count,
            "last_assigned_at": self.last_assigned_at.isoformat() if self.last_assigned_at else None,
            "lifetime_assigned_count": self.lifetime_assigned_count,
            "last_reset_date": self.last_reset_date.isoformat() if self.last_reset_date else None,
        }


@dataclass(frozen=True)
class AgentContact:
    """How to reach a salesperson."""
    agent_id: str
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class Notification:
    """In-app notification for a salesperson."""
    agent_id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None
    read: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class SaleDraft:
    """Sale data captured in the won flow, forwarded to the sales service."""
    negotiation_id: str
    lead_id: str
    sale_price: float
    agent_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method: Optional[str] = None
    sold_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["sold_at"] = self.sold_at.isoformat() if self.sold_at else None
        return data


@dataclass(frozen=True)
class VehicleAlert:
    """Ask to notify the lead when a similar vehicle becomes available."""
    lead_id: str
    negotiation_id: str
    vehicle_id: Optional[str] = None
    vehicle_interest: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)
