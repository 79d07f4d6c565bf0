"""
Loss recovery planning.

When a negotiation is lost, configured rules decide what should happen
next for that lead: a WhatsApp message after a few days, a follow-up task,
a manager alert or a vehicle availability alert.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import Lead, LossReason, Negotiation, new_id

logger = logging.getLogger(__name__)


class RecoveryActionType(Enum):
    WHATSAPP_MESSAGE = "whatsapp_message"
    CREATE_VEHICLE_ALERT = "create_vehicle_alert"
    SCHEDULE_FOLLOW_UP = "schedule_follow_up"
    NOTIFY_MANAGER = "notify_manager"


@dataclass
class LossRecoveryRule:
    """Reaction to one or more loss reasons."""
    name: str
    trigger_loss_reasons: List[LossReason]
    action_type: RecoveryActionType
    delay_days: int = 0
    delay_hours: int = 0
    priority: int = 0
    is_active: bool = True
    message_template: Optional[str] = None
    id: str = field(default_factory=new_id)

    @property
    def delay(self) -> timedelta:
        return timedelta(days=self.delay_days, hours=self.delay_hours)

    def applies_to(self, reason: LossReason) -> bool:
        return self.is_active and reason in self.trigger_loss_reasons


@dataclass(frozen=True)
class RecoveryAction:
    """A planned step produced by a rule."""
    rule_id: str
    rule_name: str
    action_type: RecoveryActionType
    negotiation_id: str
    lead_id: str
    due_at: datetime
    priority: int = 0
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "action_type": self.action_type.value,
            "negotiation_id": self.negotiation_id,
            "lead_id": self.lead_id,
            "due_at": self.due_at.isoformat(),
            "priority": self.priority,
            "message": self.message,
        }


class _KeepMissing(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_template(template: str, values: Dict[str, Any]) -> str:
    """Fill {name}, {vehicle}, {agent}, {company}; unknown placeholders stay as typed."""
    return template.format_map(_KeepMissing({k: v if v is not None else "" for k, v in values.items()}))


def plan_recovery_actions(
    rules: List[LossRecoveryRule],
    reason: LossReason,
    negotiation: Negotiation,
    lead: Optional[Lead],
    lost_at: datetime,
    agent_name: Optional[str] = None,
    company_name: Optional[str] = None,
) -> List[RecoveryAction]:
    """
    Build the recovery actions triggered by a loss.

    Args:
        rules: Configured rules (inactive ones are ignored)
        reason: Structured loss reason of the negotiation
        negotiation: The negotiation that was lost
        lead: Its lead, used to fill message templates
        lost_at: When the loss was recorded; delays count from here
        agent_name: Salesperson name for templates
        company_name: Dealership name for templates

    Returns:
        Actions ordered by rule priority (highest first), then due time
    """
    values = {
        "name": lead.name if lead else "",
        "vehicle": (lead.vehicle_interest if lead else None) or negotiation.vehicle_id or "",
        "agent": agent_name or "",
        "company": company_name or "",
    }

    actions = []
    for rule in rules:
        if not rule.applies_to(reason):
            continue
        message = None
        if rule.message_template:
            message = render_template(rule.message_template, values)
        actions.append(RecoveryAction(
            rule_id=rule.id,
            rule_name=rule.name,
            action_type=rule.action_type,
            negotiation_id=negotiation.id,
            lead_id=negotiation.lead_id,
            due_at=lost_at + rule.delay,
            priority=rule.priority,
            message=message,
        ))

    actions.sort(key=lambda a: (-a.priority, a.due_at, a.rule_name))
    if actions:
        logger.info(
            f"Planned {len(actions)} recovery action(s) for negotiation {negotiation.id} "
            f"({reason.value})"
        )
    return actions
