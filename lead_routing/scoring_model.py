"""
Lead Scoring Model for dealership qualification.

Scores a lead from its conversation and the qualification form:

- Engagement (0-40): message volume and how quickly the dealership answers
- Intent (0-30): buying-intent phrases found in inbound messages
- Completeness (0-30): how much of the qualification form is filled

The engine is a pure function of its inputs. Identical inputs always give
an identical breakdown, which is what makes stored records auditable.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .intent_classifier import DEFAULT_INTENT_WEIGHTS, IntentCategory, IntentClassifier
from .models import (
    Classification,
    ConversationMessage,
    MessageDirection,
    QualificationInput,
    QualificationRecord,
)

logger = logging.getLogger(__name__)

# Points per populated form field when the completeness budget is 30
DEFAULT_COMPLETENESS_WEIGHTS: Dict[str, int] = {
    "budget": 6,
    "payment_method": 5,
    "purchase_timeline": 6,
    "trade_in": 4,
    "vehicle_interest": 5,
    "decision_maker": 4,
}

_BASE_INTENT_MAX = 30
_BASE_COMPLETENESS_MAX = 30


def _scale(weights: Dict[Any, int], base: int, target: int) -> Dict[Any, int]:
    if target == base:
        return dict(weights)
    return {k: int(round(v * target / base)) for k, v in weights.items()}


@dataclass(frozen=True)
class ScoringConfig:
    """
    Weights and thresholds for the scoring engine.

    The defaults are the dealership's business configuration; override them
    through settings rather than editing the engine.
    """
    engagement_max: int = 40
    intent_max: int = 30
    completeness_max: int = 30
    hot_threshold: int = 70
    warm_threshold: int = 40
    # Engagement curve
    volume_share: float = 0.6
    volume_scale: float = 5.0               # inbound messages for ~63% of the volume part
    latency_half_life_minutes: float = 30.0
    intent_weights: Dict[IntentCategory, int] = field(default_factory=dict)
    completeness_weights: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        for name in ("engagement_max", "intent_max", "completeness_max"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.engagement_max + self.intent_max + self.completeness_max > 100:
            raise ValueError("scoring maxima must sum to at most 100")
        if not 0 <= self.warm_threshold <= self.hot_threshold <= 100:
            raise ValueError("thresholds must satisfy 0 <= warm <= hot <= 100")
        if not 0.0 <= self.volume_share <= 1.0:
            raise ValueError("volume_share must be within [0, 1]")
        if self.volume_scale <= 0 or self.latency_half_life_minutes <= 0:
            raise ValueError("volume_scale and latency_half_life_minutes must be positive")

        # frozen dataclass: fill derived tables through object.__setattr__
        if not self.intent_weights:
            object.__setattr__(
                self, "intent_weights",
                _scale(DEFAULT_INTENT_WEIGHTS, _BASE_INTENT_MAX, self.intent_max),
            )
        if not self.completeness_weights:
            object.__setattr__(
                self, "completeness_weights",
                _scale(DEFAULT_COMPLETENESS_WEIGHTS, _BASE_COMPLETENESS_MAX, self.completeness_max),
            )

    @classmethod
    def from_settings(cls, settings: Any) -> "ScoringConfig":
        """Build from config.settings.Settings."""
        return cls(
            engagement_max=settings.score_engagement_max,
            intent_max=settings.score_intent_max,
            completeness_max=settings.score_completeness_max,
            hot_threshold=settings.lead_score_threshold_hot,
            warm_threshold=settings.lead_score_threshold_warm,
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    """Result of one scoring pass."""
    engagement: int
    intent: int
    completeness: int
    classification: Classification
    matched_intents: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.engagement + self.intent + self.completeness

    def to_record(
        self,
        negotiation_id: str,
        lead_id: str,
        answers: QualificationInput,
        created_by: Optional[str] = None,
    ) -> QualificationRecord:
        """Freeze this breakdown into an append-only qualification record."""
        return QualificationRecord(
            negotiation_id=negotiation_id,
            lead_id=lead_id,
            engagement=self.engagement,
            intent=self.intent,
            completeness=self.completeness,
            classification=self.classification,
            answers=answers.to_dict(),
            matched_intents=list(self.matched_intents),
            created_by=created_by,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engagement": self.engagement,
            "intent": self.intent,
            "completeness": self.completeness,
            "total": self.total,
            "classification": self.classification.value,
            "matched_intents": list(self.matched_intents),
        }


class ScoringEngine:
    """Computes engagement, intent and completeness scores."""

    def __init__(
        self,
        config: Optional[ScoringConfig] = None,
        classifier: Optional[IntentClassifier] = None,
    ):
        self.config = config or ScoringConfig()
        self.classifier = classifier or IntentClassifier()

    def compute_score(
        self,
        history: Sequence[ConversationMessage],
        form: Optional[QualificationInput] = None,
    ) -> ScoreBreakdown:
        """
        Score a lead.

        Args:
            history: Conversation messages in any order; aware timestamps
                are read as UTC
            form: Qualification answers (may be partial or absent)

        Returns:
            ScoreBreakdown whose parts never exceed their configured maxima
        """
        form = form or QualificationInput()
        # all timestamps compared as naive UTC
        messages = sorted((m.as_naive_utc() for m in history), key=lambda m: m.timestamp)

        engagement = self.engagement_score(messages)
        intent, matched = self.intent_score(messages)
        completeness = self.completeness_score(form)

        # each part is capped at its maximum and the maxima sum to <= 100
        return ScoreBreakdown(
            engagement=engagement,
            intent=intent,
            completeness=completeness,
            classification=self.classify(engagement + intent + completeness),
            matched_intents=matched,
        )

    def engagement_score(self, messages: Sequence[ConversationMessage]) -> int:
        """Saturating score from inbound volume and average answer latency."""
        cfg = self.config
        inbound = sum(1 for m in messages if m.direction == MessageDirection.INBOUND)
        if inbound == 0 or cfg.engagement_max == 0:
            return 0

        volume = cfg.volume_share * cfg.engagement_max * (1.0 - math.exp(-inbound / cfg.volume_scale))

        responsiveness = 0.0
        latency = self.average_latency_minutes(messages)
        if latency is not None:
            half_life = cfg.latency_half_life_minutes
            responsiveness = (1.0 - cfg.volume_share) * cfg.engagement_max * half_life / (half_life + latency)

        return min(cfg.engagement_max, int(volume + responsiveness))

    @staticmethod
    def average_latency_minutes(messages: Sequence[ConversationMessage]) -> Optional[float]:
        """
        Average minutes from the first unanswered inbound message to the
        next outbound one. None when no inbound message was ever answered.
        """
        waiting_since = None
        latencies: List[float] = []
        for message in messages:
            if message.direction == MessageDirection.INBOUND:
                if waiting_since is None:
                    waiting_since = message.timestamp
            elif waiting_since is not None:
                delta = (message.timestamp - waiting_since).total_seconds() / 60.0
                latencies.append(max(0.0, delta))
                waiting_since = None
        if not latencies:
            return None
        return sum(latencies) / len(latencies)

    def intent_score(self, messages: Sequence[ConversationMessage]) -> Tuple[int, List[str]]:
        """Fixed increment per matched category, capped at intent_max."""
        texts = [m.text for m in messages if m.direction == MessageDirection.INBOUND and m.text]
        match = self.classifier.match(texts)
        score = sum(self.config.intent_weights.get(c, 0) for c in match.categories)
        return min(self.config.intent_max, score), match.category_names

    def completeness_score(self, form: QualificationInput) -> int:
        """Fixed increment per populated qualification field, capped."""
        weights = self.config.completeness_weights
        populated = {
            "budget": form.has_budget,
            "payment_method": bool(form.payment_method and form.payment_method.strip()),
            "purchase_timeline": bool(form.purchase_timeline and form.purchase_timeline.strip()),
            "trade_in": form.has_trade_in is not None,
            "vehicle_interest": bool(form.vehicle_interest and form.vehicle_interest.strip()),
            "decision_maker": form.decision_maker is not None,
        }
        score = sum(weights.get(name, 0) for name, present in populated.items() if present)
        return min(self.config.completeness_max, score)

    def classify(self, total: int) -> Classification:
        if total >= self.config.hot_threshold:
            return Classification.HOT
        if total >= self.config.warm_threshold:
            return Classification.WARM
        return Classification.COLD


_default_engine: Optional[ScoringEngine] = None


def compute_score(
    history: Sequence[ConversationMessage],
    form: Optional[QualificationInput] = None,
) -> ScoreBreakdown:
    """Score with the default configuration."""
    global _default_engine
    if _default_engine is None:
        _default_engine = ScoringEngine()
    return _default_engine.compute_score(history, form)
