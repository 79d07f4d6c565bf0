"""
Negotiation pipeline state machine.

Every stage change goes through PipelineStateMachine.transition(), which
enforces the transition graph and the data each stage needs, then applies
the stage's side effects:

- negotiating: score the lead, store a qualification record and, if nobody
  owns the negotiation yet, assign an agent by round robin and notify them
- lost: vehicle availability alert and loss recovery actions
- won: close date and commission trigger. Only close_won() enters won,
  after the sales service has created the sale; transition() refuses it

Validation runs before anything is written. Transitions on one negotiation
are serialised by a per-negotiation lock in this process and by the
store's versioned update across processes.
"""

import asyncio
import logging
import weakref
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Set, Union

from . import metrics
from .dispatch import DispatchAdapter, DispatchResult
from .errors import (
    ConcurrentModificationError,
    DispatchFailure,
    InvalidTransitionError,
    LeadRoutingError,
    NoAgentAvailableError,
    NotFoundError,
    TransitionValidationError,
    ValidationError,
)
from .loss_recovery import LossRecoveryRule, RecoveryAction, RecoveryActionType, plan_recovery_actions
from .models import (
    Lead,
    LeadStatus,
    LossReason,
    Negotiation,
    NegotiationStage,
    QualificationInput,
    QualificationRecord,
    SaleDraft,
    VehicleAlert,
)
from .round_robin import RoundRobinScheduler
from .sales_client import CommissionTrigger, SaleCreator
from .scoring_model import ScoreBreakdown, ScoringEngine
from .stores import (
    ConversationSource,
    FollowUpSink,
    LeadEventLog,
    LeadStore,
    NegotiationStore,
    QualificationStore,
    VehicleAlertSink,
)
from .timeouts import call_collaborator

logger = logging.getLogger(__name__)

Stage = NegotiationStage

TRANSITIONS: Dict[NegotiationStage, FrozenSet[NegotiationStage]] = {
    Stage.INITIAL_CONTACT: frozenset({Stage.VISIT_SCHEDULED, Stage.PROPOSAL_SENT, Stage.NEGOTIATING, Stage.LOST}),
    Stage.VISIT_SCHEDULED: frozenset({Stage.INITIAL_CONTACT, Stage.PROPOSAL_SENT, Stage.NEGOTIATING, Stage.LOST}),
    Stage.PROPOSAL_SENT: frozenset({Stage.VISIT_SCHEDULED, Stage.NEGOTIATING, Stage.LOST}),
    Stage.NEGOTIATING: frozenset({Stage.PROPOSAL_SENT, Stage.CLOSING, Stage.WON, Stage.LOST}),
    Stage.CLOSING: frozenset({Stage.NEGOTIATING, Stage.WON, Stage.LOST}),
    Stage.WON: frozenset(),
    Stage.LOST: frozenset(),
}

# Warning codes returned with a successful transition
WARN_NO_AGENT = "no_agent_available"
WARN_ASSIGNMENT_CONFLICT = "assignment_conflict"
WARN_QUALIFICATION_NOT_STORED = "qualification_not_stored"
WARN_LEAD_SYNC_FAILED = "lead_sync_failed"
WARN_VEHICLE_ALERT_FAILED = "vehicle_alert_failed"
WARN_RECOVERY_FAILED = "loss_recovery_failed"
WARN_COMMISSION_FAILED = "commission_trigger_failed"

DISPATCH_FAILURES_KEPT = 100


def can_transition(current: NegotiationStage, target: NegotiationStage) -> bool:
    return target in TRANSITIONS[current]


def allowed_targets(current: NegotiationStage) -> List[NegotiationStage]:
    return sorted(TRANSITIONS[current], key=lambda s: list(NegotiationStage).index(s))


def parse_stage(value: Union[str, NegotiationStage]) -> NegotiationStage:
    if isinstance(value, NegotiationStage):
        return value
    try:
        return NegotiationStage(value)
    except ValueError:
        raise ValidationError(invalid_fields={"target_stage": f"unknown stage '{value}'"}) from None


@dataclass
class TransitionPayload:
    """Data captured alongside a stage change. Which fields matter depends on the target."""
    estimated_value: Optional[float] = None
    probability: Optional[int] = None
    expected_close_date: Optional[date] = None
    appointment_at: Optional[datetime] = None
    proposal_description: Optional[str] = None
    objections: Optional[List[str]] = None
    notes: Optional[str] = None
    qualification: Optional[QualificationInput] = None
    structured_loss_reason: Optional[Union[str, LossReason]] = None
    loss_reason: Optional[str] = None
    create_vehicle_alert: bool = False
    sale_ref: Optional[str] = None


@dataclass
class TransitionResult:
    """What a successful transition did."""
    negotiation: Negotiation
    previous_stage: NegotiationStage
    qualification: Optional[QualificationRecord] = None
    assigned_agent_id: Optional[str] = None
    auto_assigned: bool = False
    dispatch_scheduled: bool = False
    warnings: List[str] = field(default_factory=list)
    recovery_actions: List[RecoveryAction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "negotiation": self.negotiation.to_dict(),
            "previous_stage": self.previous_stage.value,
            "qualification": self.qualification.to_dict() if self.qualification else None,
            "assigned_agent_id": self.assigned_agent_id,
            "auto_assigned": self.auto_assigned,
            "dispatch_scheduled": self.dispatch_scheduled,
            "warnings": list(self.warnings),
            "recovery_actions": [a.to_dict() for a in self.recovery_actions],
        }


@dataclass
class _Attempt:
    """State carried across optimistic retries of one transition."""
    auto_agent_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class PipelineStateMachine:
    """Single entry point for negotiation stage changes."""

    def __init__(
        self,
        negotiations: NegotiationStore,
        leads: LeadStore,
        qualifications: QualificationStore,
        conversations: ConversationSource,
        scheduler: RoundRobinScheduler,
        scoring: Optional[ScoringEngine] = None,
        dispatcher: Optional[DispatchAdapter] = None,
        sales: Optional[SaleCreator] = None,
        commissions: Optional[CommissionTrigger] = None,
        vehicle_alerts: Optional[VehicleAlertSink] = None,
        follow_ups: Optional[FollowUpSink] = None,
        recovery_rules: Optional[List[LossRecoveryRule]] = None,
        events: Optional[LeadEventLog] = None,
        max_retries: int = 3,
        timeout: float = 5.0,
        dispatch_timeout: float = 10.0,
    ):
        self.negotiations = negotiations
        self.leads = leads
        self.qualifications = qualifications
        self.conversations = conversations
        self.scheduler = scheduler
        self.scoring = scoring or ScoringEngine()
        self.dispatcher = dispatcher
        self.sales = sales
        self.commissions = commissions
        self.vehicle_alerts = vehicle_alerts
        self.follow_ups = follow_ups
        self.recovery_rules: List[LossRecoveryRule] = list(recovery_rules or [])
        self.events = events
        self.max_retries = max_retries
        self.timeout = timeout
        self.dispatch_timeout = dispatch_timeout

        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._pending: Set[asyncio.Task] = set()
        # recent failures only; the dispatch metric keeps the totals
        self.dispatch_failures: Deque[DispatchFailure] = deque(maxlen=DISPATCH_FAILURES_KEPT)

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_negotiation(self, negotiation_id: str) -> Negotiation:
        negotiation = await self._call(self.negotiations.get(negotiation_id), "negotiations.get")
        if negotiation is None:
            raise NotFoundError("negotiation", negotiation_id)
        return negotiation

    async def list_qualifications(self, negotiation_id: str) -> List[QualificationRecord]:
        await self.get_negotiation(negotiation_id)
        return await self._call(
            self.qualifications.list_by_negotiation(negotiation_id), "qualifications.list_by_negotiation"
        )

    # ── Commands ────────────────────────────────────────────────────────

    async def open_negotiation(
        self,
        lead_id: str,
        vehicle_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        estimated_value: Optional[float] = None,
        assigned_agent_id: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Negotiation:
        """
        Start a negotiation for a lead at initial_contact.

        A pre-assigned lead hands its agent to the negotiation.
        """
        lead = await self._call(self.leads.get(lead_id), "leads.get")
        if lead is None:
            raise NotFoundError("lead", lead_id)
        if lead.archived:
            raise ValidationError(invalid_fields={"lead_id": "lead is archived"})
        if estimated_value is not None and estimated_value < 0:
            raise ValidationError(invalid_fields={"estimated_value": "must not be negative"})

        negotiation = Negotiation(
            lead_id=lead_id,
            vehicle_id=vehicle_id,
            customer_id=customer_id,
            estimated_value=estimated_value,
            assigned_agent_id=assigned_agent_id or lead.assigned_agent_id,
            notes=notes,
        )
        negotiation = await self._call(self.negotiations.create(negotiation), "negotiations.create")
        logger.info(f"Negotiation {negotiation.id} opened for lead {lead_id}")
        await self._record_event(lead_id, "negotiation_opened", {"negotiation_id": negotiation.id}, actor)
        return negotiation

    async def transition(
        self,
        negotiation_id: str,
        target_stage: Union[str, NegotiationStage],
        payload: Optional[TransitionPayload] = None,
        expected_version: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move a negotiation to `target_stage`.

        Args:
            negotiation_id: Negotiation to move
            target_stage: Stage to enter
            payload: Data the target stage needs
            expected_version: Version the caller read; a mismatch fails at once
            actor: User performing the change, for the audit trail

        Returns:
            TransitionResult with the updated negotiation and any warnings

        Raises:
            InvalidTransitionError: not an edge of the graph
            TransitionValidationError: required data missing or invalid, or
                the target is won, which only close_won enters
            ConcurrentModificationError: version mismatch, or retries exhausted
            NotFoundError: unknown negotiation
            StorageUnavailable: a collaborator timed out or failed
        """
        target = parse_stage(target_stage)
        payload = payload or TransitionPayload()
        async with self._lock_for(negotiation_id):
            if target == Stage.WON:
                await self._refuse_direct_win(negotiation_id, expected_version)
            return await self._transition_locked(negotiation_id, target, payload, expected_version, actor)

    async def close_won(
        self,
        negotiation_id: str,
        sale_price: float,
        payment_method: Optional[str] = None,
        sold_at: Optional[datetime] = None,
        expected_version: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> TransitionResult:
        """
        Two-phase win: create the sale first, then move to won with its reference.

        If the sales service rejects the sale, the negotiation is untouched.
        """
        if self.sales is None:
            raise ValidationError(invalid_fields={"sale": "no sales service configured"})
        if sale_price is None or sale_price <= 0:
            raise TransitionValidationError(invalid_fields={"sale_price": "must be greater than 0"})

        async with self._lock_for(negotiation_id):
            negotiation = await self.get_negotiation(negotiation_id)
            self._check_version(negotiation, expected_version)
            if not can_transition(negotiation.stage, Stage.WON):
                metrics.record_transition(Stage.WON.value, "rejected")
                raise InvalidTransitionError(negotiation.stage.value, Stage.WON.value)

            draft = SaleDraft(
                negotiation_id=negotiation.id,
                lead_id=negotiation.lead_id,
                sale_price=sale_price,
                agent_id=negotiation.assigned_agent_id,
                vehicle_id=negotiation.vehicle_id,
                customer_id=negotiation.customer_id,
                payment_method=payment_method,
                sold_at=sold_at or datetime.utcnow(),
            )
            sale_ref = await self._call(self.sales.create_sale(draft), "sales.create_sale")
            logger.info(f"Sale {sale_ref} confirmed for negotiation {negotiation_id}")

            try:
                return await self._transition_locked(
                    negotiation_id,
                    Stage.WON,
                    TransitionPayload(sale_ref=sale_ref, estimated_value=negotiation.estimated_value or sale_price),
                    negotiation.version,
                    actor,
                )
            except LeadRoutingError:
                logger.error(f"Sale {sale_ref} created but negotiation {negotiation_id} was not marked won")
                raise

    async def reassign(
        self,
        negotiation_id: str,
        agent_id: str,
        expected_version: Optional[int] = None,
        actor: Optional[str] = None,
        notify: bool = True,
    ) -> Negotiation:
        """
        Manual override of the negotiation's agent.

        Round-robin counters are assignment-event counters; an override
        neither decrements the previous agent nor counts for the new one.
        """
        if not agent_id:
            raise ValidationError(missing_fields=["agent_id"])

        async with self._lock_for(negotiation_id):
            negotiation = await self.get_negotiation(negotiation_id)
            self._check_version(negotiation, expected_version)
            if negotiation.stage.is_terminal:
                raise TransitionValidationError(invalid_fields={"stage": f"negotiation is {negotiation.stage.value}"})

            previous = negotiation.assigned_agent_id
            updated = await self._call(
                self.negotiations.update(negotiation_id, {"assigned_agent_id": agent_id}, negotiation.version),
                "negotiations.update",
            )

        logger.info(f"Negotiation {negotiation_id} reassigned {previous} -> {agent_id}")
        lead = await self._sync_lead(updated.lead_id, {"assigned_agent_id": agent_id}, [])
        await self._record_event(
            updated.lead_id, "reassigned", {"from": previous, "to": agent_id, "negotiation_id": negotiation_id}, actor
        )
        if notify and agent_id != previous:
            self._schedule_dispatch(agent_id, updated.lead_id, lead.name if lead else None)
        return updated

    async def drain(self) -> None:
        """Wait for pending notifications (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # ── Transition internals ────────────────────────────────────────────

    async def _refuse_direct_win(self, negotiation_id: str, expected_version: Optional[int]) -> None:
        negotiation = await self.get_negotiation(negotiation_id)
        self._check_version(negotiation, expected_version)
        metrics.record_transition(Stage.WON.value, "rejected")
        if not can_transition(negotiation.stage, Stage.WON):
            raise InvalidTransitionError(negotiation.stage.value, Stage.WON.value)
        raise TransitionValidationError(
            invalid_fields={"target_stage": "won is entered through close-won once the sale is created"}
        )

    async def _transition_locked(
        self,
        negotiation_id: str,
        target: NegotiationStage,
        payload: TransitionPayload,
        expected_version: Optional[int],
        actor: Optional[str],
    ) -> TransitionResult:
        attempt = _Attempt()
        for number in range(1, self.max_retries + 1):
            negotiation = await self.get_negotiation(negotiation_id)
            self._check_version(negotiation, expected_version)
            try:
                return await self._apply(negotiation, target, payload, actor, attempt)
            except ConcurrentModificationError as e:
                if e.entity != "negotiation" or expected_version is not None or number == self.max_retries:
                    metrics.record_transition(target.value, "conflict")
                    raise
                logger.warning(
                    f"Negotiation {negotiation_id} changed during transition "
                    f"(attempt {number}/{self.max_retries}), refetching"
                )
        # unreachable: the last attempt either returns or raises
        raise ConcurrentModificationError("negotiation", negotiation_id)

    async def _apply(
        self,
        negotiation: Negotiation,
        target: NegotiationStage,
        payload: TransitionPayload,
        actor: Optional[str],
        attempt: _Attempt,
    ) -> TransitionResult:
        if not can_transition(negotiation.stage, target):
            metrics.record_transition(target.value, "rejected")
            raise InvalidTransitionError(negotiation.stage.value, target.value)

        try:
            fields = self._validate(negotiation, target, payload)
        except TransitionValidationError:
            metrics.record_transition(target.value, "rejected")
            raise

        warnings: List[str] = list(attempt.warnings)
        breakdown: Optional[ScoreBreakdown] = None
        auto_agent: Optional[str] = None
        form = payload.qualification or QualificationInput()

        if target == Stage.NEGOTIATING:
            messages = await self._call(
                self.conversations.messages_for_lead(negotiation.lead_id), "conversations.messages_for_lead"
            )
            breakdown = self.scoring.compute_score(messages, form)
            if negotiation.assigned_agent_id is None:
                auto_agent = await self._auto_assign(negotiation, attempt, warnings)
                if auto_agent:
                    fields["assigned_agent_id"] = auto_agent
            elif attempt.auto_agent_id and attempt.auto_agent_id != negotiation.assigned_agent_id:
                logger.warning(
                    f"Negotiation {negotiation.id} was assigned concurrently; "
                    f"round-robin pick {attempt.auto_agent_id} stays counted"
                )

        fields["stage"] = target
        updated = await self._call(
            self.negotiations.update(negotiation.id, fields, negotiation.version), "negotiations.update"
        )

        # committed; everything below is best effort and reported as warnings
        result = TransitionResult(
            negotiation=updated,
            previous_stage=negotiation.stage,
            assigned_agent_id=updated.assigned_agent_id,
            auto_assigned=auto_agent is not None,
            warnings=warnings,
        )
        metrics.record_transition(target.value, "ok")
        logger.info(f"Negotiation {updated.id}: {negotiation.stage.value} -> {target.value} (v{updated.version})")

        if breakdown is not None:
            result.qualification = await self._store_qualification(updated, breakdown, form, actor, warnings)

        lead = await self._sync_lead(updated.lead_id, self._lead_fields(target, auto_agent), warnings)
        await self._record_event(
            updated.lead_id,
            "stage_changed",
            {"negotiation_id": updated.id, "from": negotiation.stage.value, "to": target.value},
            actor,
        )

        if auto_agent:
            await self._record_event(
                updated.lead_id, "assigned", {"agent_id": auto_agent, "via": "round_robin"}, actor
            )
            if self.dispatcher is not None:
                self._schedule_dispatch(auto_agent, updated.lead_id, lead.name if lead else None)
                result.dispatch_scheduled = True

        if target == Stage.LOST:
            result.recovery_actions = await self._after_lost(updated, lead, payload, warnings)
        elif target == Stage.WON:
            await self._after_won(updated, warnings)

        return result

    def _validate(
        self,
        negotiation: Negotiation,
        target: NegotiationStage,
        payload: TransitionPayload,
    ) -> Dict[str, Any]:
        """Collect the field updates for `target`, or raise naming every problem."""
        missing: List[str] = []
        invalid: Dict[str, str] = {}
        fields: Dict[str, Any] = {}

        if payload.estimated_value is not None:
            if payload.estimated_value < 0:
                invalid["estimated_value"] = "must not be negative"
            else:
                fields["estimated_value"] = payload.estimated_value
        if payload.probability is not None:
            if not 0 <= payload.probability <= 100:
                invalid["probability"] = "must be between 0 and 100"
            else:
                fields["probability"] = payload.probability
        for name in ("expected_close_date", "appointment_at", "proposal_description", "notes"):
            value = getattr(payload, name)
            if value is not None:
                fields[name] = value
        if payload.objections is not None:
            fields["objections"] = list(payload.objections)

        if target == Stage.PROPOSAL_SENT:
            value = payload.estimated_value if payload.estimated_value is not None else negotiation.estimated_value
            if value is None:
                missing.append("estimated_value")
            elif value <= 0 and "estimated_value" not in invalid:
                invalid["estimated_value"] = "must be greater than 0"

        elif target == Stage.LOST:
            reason = payload.structured_loss_reason
            if reason is None or reason == "":
                missing.append("structured_loss_reason")
            else:
                try:
                    fields["structured_loss_reason"] = LossReason(reason)
                except ValueError:
                    invalid["structured_loss_reason"] = f"unknown loss reason '{reason}'"
            if payload.loss_reason:
                fields["loss_reason"] = payload.loss_reason

        elif target == Stage.WON:
            if not payload.sale_ref:
                missing.append("sale_ref")
            else:
                fields["sale_ref"] = payload.sale_ref
                fields["actual_close_date"] = datetime.utcnow().date()

        if missing or invalid:
            raise TransitionValidationError(missing_fields=missing, invalid_fields=invalid)
        return fields

    async def _auto_assign(self, negotiation: Negotiation, attempt: _Attempt, warnings: List[str]) -> Optional[str]:
        """Round-robin pick, reused across retries so one transition counts once."""
        if attempt.auto_agent_id:
            return attempt.auto_agent_id
        try:
            agent_id = await self.scheduler.assign_next()
        except NoAgentAvailableError:
            logger.warning(f"Negotiation {negotiation.id} qualified without an agent: none available")
            attempt.warnings.append(WARN_NO_AGENT)
            warnings.append(WARN_NO_AGENT)
            return None
        except ConcurrentModificationError:
            logger.warning(f"Negotiation {negotiation.id} qualified without an agent: slot contention")
            attempt.warnings.append(WARN_ASSIGNMENT_CONFLICT)
            warnings.append(WARN_ASSIGNMENT_CONFLICT)
            return None
        attempt.auto_agent_id = agent_id
        return agent_id

    @staticmethod
    def _lead_fields(target: NegotiationStage, auto_agent: Optional[str]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if target == Stage.NEGOTIATING:
            fields["status"] = LeadStatus.NEGOTIATING
        elif target == Stage.WON:
            fields.update(status=LeadStatus.CONVERTED, archived=True)
        elif target == Stage.LOST:
            fields.update(status=LeadStatus.LOST, archived=True)
        if auto_agent:
            fields["assigned_agent_id"] = auto_agent
        return fields

    async def _store_qualification(
        self,
        negotiation: Negotiation,
        breakdown: ScoreBreakdown,
        form: QualificationInput,
        actor: Optional[str],
        warnings: List[str],
    ) -> Optional[QualificationRecord]:
        record = breakdown.to_record(negotiation.id, negotiation.lead_id, form, created_by=actor)
        try:
            record = await self._call(self.qualifications.append(record), "qualifications.append")
        except LeadRoutingError as e:
            logger.error(f"Qualification for negotiation {negotiation.id} not stored: {e}")
            warnings.append(WARN_QUALIFICATION_NOT_STORED)
            return None
        metrics.record_qualification(record.total, record.classification.value)
        logger.info(
            f"Lead {negotiation.lead_id} qualified: {record.total} ({record.classification.value})"
        )
        return record

    async def _sync_lead(self, lead_id: str, fields: Dict[str, Any], warnings: List[str]) -> Optional[Lead]:
        try:
            if fields:
                return await self._call(self.leads.update(lead_id, fields), "leads.update")
            return await self._call(self.leads.get(lead_id), "leads.get")
        except LeadRoutingError as e:
            logger.error(f"Lead {lead_id} not synchronised with its negotiation: {e}")
            warnings.append(WARN_LEAD_SYNC_FAILED)
            return None

    async def _after_lost(
        self,
        negotiation: Negotiation,
        lead: Optional[Lead],
        payload: TransitionPayload,
        warnings: List[str],
    ) -> List[RecoveryAction]:
        reason = negotiation.structured_loss_reason
        if reason is None:
            return []

        alert_requested = reason == LossReason.VEHICLE_SOLD and payload.create_vehicle_alert
        if alert_requested and self.vehicle_alerts is not None:
            alert = VehicleAlert(
                lead_id=negotiation.lead_id,
                negotiation_id=negotiation.id,
                vehicle_id=negotiation.vehicle_id,
                vehicle_interest=lead.vehicle_interest if lead else None,
            )
            try:
                await self._call(self.vehicle_alerts.add(alert), "vehicle_alerts.add")
                logger.info(f"Vehicle alert created for lead {negotiation.lead_id}")
            except LeadRoutingError as e:
                logger.warning(f"Vehicle alert for negotiation {negotiation.id} failed: {e}")
                warnings.append(WARN_VEHICLE_ALERT_FAILED)

        actions = plan_recovery_actions(self.recovery_rules, reason, negotiation, lead, datetime.utcnow())
        if alert_requested:
            # the explicit alert above already covers this rule type
            actions = [a for a in actions if a.action_type != RecoveryActionType.CREATE_VEHICLE_ALERT]
        if actions and self.follow_ups is not None:
            try:
                await self._call(self.follow_ups.schedule(actions), "follow_ups.schedule")
            except LeadRoutingError as e:
                logger.warning(f"Loss recovery for negotiation {negotiation.id} failed: {e}")
                warnings.append(WARN_RECOVERY_FAILED)
        return actions

    async def _after_won(self, negotiation: Negotiation, warnings: List[str]) -> None:
        if self.commissions is None or not negotiation.sale_ref:
            return
        try:
            await self._call(
                self.commissions.trigger_commission(negotiation.sale_ref, negotiation.assigned_agent_id),
                "commissions.trigger",
            )
        except LeadRoutingError as e:
            logger.warning(f"Commission trigger for sale {negotiation.sale_ref} failed: {e}")
            warnings.append(WARN_COMMISSION_FAILED)

    # ── Dispatch ────────────────────────────────────────────────────────

    def _schedule_dispatch(self, agent_id: str, lead_id: str, lead_name: Optional[str]) -> None:
        if self.dispatcher is None:
            return
        task = asyncio.create_task(self._dispatch(agent_id, lead_id, lead_name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _dispatch(self, agent_id: str, lead_id: str, lead_name: Optional[str]) -> DispatchResult:
        try:
            result = await asyncio.wait_for(
                self.dispatcher.notify(agent_id, lead_id, lead_name), timeout=self.dispatch_timeout
            )
        except asyncio.TimeoutError:
            result = DispatchResult(ok=False, errors=[f"timed out after {self.dispatch_timeout}s"])
        except Exception as e:
            # background task: nobody awaits it, so the failure is recorded here
            logger.exception(f"Dispatch to {agent_id} crashed")
            result = DispatchResult(ok=False, errors=[str(e)])

        if result.ok:
            metrics.record_dispatch("delivered")
        else:
            failure = DispatchFailure(agent_id, lead_id, result.error or "unknown error")
            self.dispatch_failures.append(failure)
            metrics.record_dispatch("failed")
            logger.warning(str(failure))
        return result

    # ── Helpers ─────────────────────────────────────────────────────────

    def _lock_for(self, negotiation_id: str) -> asyncio.Lock:
        lock = self._locks.get(negotiation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[negotiation_id] = lock
        return lock

    @staticmethod
    def _check_version(negotiation: Negotiation, expected_version: Optional[int]) -> None:
        if expected_version is not None and negotiation.version != expected_version:
            raise ConcurrentModificationError("negotiation", negotiation.id, expected_version)

    async def _record_event(self, lead_id: str, event_type: str, data: Dict[str, Any], actor: Optional[str]):
        if self.events is None:
            return
        try:
            await self._call(self.events.record(lead_id, event_type, data, actor), "lead_events.record")
        except LeadRoutingError as e:
            logger.warning(f"Lead event {event_type} for {lead_id} not recorded: {e}")

    async def _call(self, coro, operation: str):
        return await call_collaborator(coro, operation, self.timeout)
