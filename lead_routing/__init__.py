"""
Lead routing for the dealership CRM.

This package qualifies leads and moves them through the sales pipeline:
- Scoring (engagement, intent, completeness -> hot/warm/cold)
- Round-robin assignment with priorities and daily caps
- Negotiation pipeline state machine with optimistic versioning
- New-lead notifications for the assigned salesperson
"""

from .errors import (
    LeadRoutingError,
    ValidationError,
    TransitionValidationError,
    InvalidTransitionError,
    DuplicateLeadError,
    NoAgentAvailableError,
    ConcurrentModificationError,
    DispatchFailure,
    StorageUnavailable,
    NotFoundError,
    SaleRejectedError,
)
from .models import (
    Lead,
    LeadSource,
    LeadStatus,
    Negotiation,
    NegotiationStage,
    LossReason,
    Classification,
    ConversationMessage,
    MessageDirection,
    QualificationInput,
    QualificationRecord,
    AgentSlot,
)
from .scoring_model import ScoringConfig, ScoringEngine, ScoreBreakdown, compute_score
from .round_robin import RoundRobinScheduler, select_next_agent
from .pipeline import (
    PipelineStateMachine,
    TransitionPayload,
    TransitionResult,
    TRANSITIONS,
)
from .intake import LeadIntakeService
from .dispatch import DispatchAdapter, DispatchResult, NotificationDispatcher

__all__ = [
    "LeadRoutingError",
    "ValidationError",
    "TransitionValidationError",
    "InvalidTransitionError",
    "DuplicateLeadError",
    "NoAgentAvailableError",
    "ConcurrentModificationError",
    "DispatchFailure",
    "StorageUnavailable",
    "NotFoundError",
    "SaleRejectedError",
    "Lead",
    "LeadSource",
    "LeadStatus",
    "Negotiation",
    "NegotiationStage",
    "LossReason",
    "Classification",
    "ConversationMessage",
    "MessageDirection",
    "QualificationInput",
    "QualificationRecord",
    "AgentSlot",
    "ScoringConfig",
    "ScoringEngine",
    "ScoreBreakdown",
    "compute_score",
    "RoundRobinScheduler",
    "select_next_agent",
    "PipelineStateMachine",
    "TransitionPayload",
    "TransitionResult",
    "TRANSITIONS",
    "LeadIntakeService",
    "DispatchAdapter",
    "DispatchResult",
    "NotificationDispatcher",
]
