"""Tests for the negotiation pipeline state machine."""

import asyncio

import pytest

from helpers import Env, conversation
from lead_routing.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    SaleRejectedError,
    StorageUnavailable,
    TransitionValidationError,
    ValidationError,
)
from lead_routing.dispatch import DispatchResult
from lead_routing.loss_recovery import LossRecoveryRule, RecoveryActionType
from lead_routing.memory_stores import InMemoryNegotiationStore, InMemoryQualificationStore
from lead_routing.models import (
    AgentSlot,
    Classification,
    LeadStatus,
    LossReason,
    Negotiation,
    NegotiationStage,
    QualificationInput,
)
from lead_routing.pipeline import (
    DISPATCH_FAILURES_KEPT,
    TRANSITIONS,
    TransitionPayload,
    WARN_NO_AGENT,
    WARN_QUALIFICATION_NOT_STORED,
    allowed_targets,
    can_transition,
)

Stage = NegotiationStage


async def lifetime_assignments(env):
    return sum(s.lifetime_assigned_count for s in await env.roster.list_slots())


async def to_negotiating(env, negotiation, form=None):
    return await env.pipeline.transition(
        negotiation.id, Stage.NEGOTIATING, TransitionPayload(qualification=form)
    )


# ── Fakes ─────────────────────────────────────────────

class ConflictingNegotiationStore(InMemoryNegotiationStore):
    """Another writer sneaks in before each of the next `conflicts` updates."""

    def __init__(self, conflicts=1):
        super().__init__()
        self.conflicts = conflicts

    async def update(self, negotiation_id, fields, expected_version):
        if self.conflicts > 0:
            self.conflicts -= 1
            await super().update(negotiation_id, {"notes": "edited elsewhere"}, expected_version)
        return await super().update(negotiation_id, fields, expected_version)


class SlowNegotiationStore(InMemoryNegotiationStore):
    async def get(self, negotiation_id):
        await asyncio.sleep(1)
        return await super().get(negotiation_id)


class BrokenQualificationStore(InMemoryQualificationStore):
    async def append(self, record):
        raise RuntimeError("disk full")


class ExplodingDispatcher:
    async def notify(self, agent_id, lead_id, lead_name):
        raise RuntimeError("smtp down")


class SleepyDispatcher:
    async def notify(self, agent_id, lead_id, lead_name):
        await asyncio.sleep(1)
        return DispatchResult(ok=True, in_app=True)


class RejectingSales:
    def __init__(self):
        self.calls = 0

    async def create_sale(self, draft):
        self.calls += 1
        raise SaleRejectedError("price below floor")


# ── Transition graph ──────────────────────────────────

class TestTransitionGraph:
    def test_terminal_stages_have_no_exits(self):
        assert TRANSITIONS[Stage.WON] == frozenset()
        assert TRANSITIONS[Stage.LOST] == frozenset()

    def test_lost_reachable_from_every_open_stage(self):
        for stage in Stage:
            if not stage.is_terminal:
                assert can_transition(stage, Stage.LOST)

    def test_won_only_from_late_stages(self):
        assert [s for s in Stage if can_transition(s, Stage.WON)] == [Stage.NEGOTIATING, Stage.CLOSING]

    def test_allowed_targets_in_pipeline_order(self):
        assert allowed_targets(Stage.INITIAL_CONTACT) == [
            Stage.VISIT_SCHEDULED, Stage.PROPOSAL_SENT, Stage.NEGOTIATING, Stage.LOST,
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("current,target", [
        (current, target)
        for current in Stage
        for target in Stage
        if target not in TRANSITIONS[current]
    ])
    async def test_edges_outside_graph_rejected(self, env, current, target):
        lead = await env.lead()
        negotiation = await env.negotiations.create(Negotiation(lead_id=lead.id, stage=current))
        payload = TransitionPayload(
            estimated_value=45000, structured_loss_reason="other", sale_ref="sale-1",
        )

        with pytest.raises(InvalidTransitionError):
            await env.pipeline.transition(negotiation.id, target, payload)

        unchanged = await env.negotiations.get(negotiation.id)
        assert unchanged.stage == current
        assert unchanged.version == 1
        assert await lifetime_assignments(env) == 0


# ── Concrete scenario ─────────────────────────────────

class TestLeadScenario:
    @pytest.mark.asyncio
    async def test_contact_to_proposal_to_qualification(self, env):
        lead = await env.lead(phone="+551199999999")
        negotiation = await env.pipeline.open_negotiation(lead.id)
        assert negotiation.stage == Stage.INITIAL_CONTACT
        assert negotiation.version == 1

        result = await env.pipeline.transition(
            negotiation.id, "proposal_sent", TransitionPayload(estimated_value=45000)
        )
        assert result.negotiation.stage == Stage.PROPOSAL_SENT
        assert result.negotiation.estimated_value == 45000
        assert result.negotiation.version == 2

        result = await to_negotiating(env, negotiation, QualificationInput())
        assert result.negotiation.stage == Stage.NEGOTIATING
        assert result.qualification.total == 0
        assert result.qualification.classification == Classification.COLD
        assert result.assigned_agent_id == "agent-a"
        assert result.auto_assigned is True
        assert result.warnings == []

        with pytest.raises(TransitionValidationError) as exc:
            await env.pipeline.transition(negotiation.id, Stage.LOST, TransitionPayload())
        assert exc.value.missing_fields == ["structured_loss_reason"]

        await env.pipeline.drain()
        stored_lead = await env.leads.get(lead.id)
        assert stored_lead.status == LeadStatus.NEGOTIATING
        assert stored_lead.assigned_agent_id == "agent-a"

    @pytest.mark.asyncio
    async def test_qualification_uses_conversation(self, env):
        negotiation = await env.negotiation()
        for message in conversation(("in", 0, "Quero comprar, qual o valor?"), ("out", 2, "Olá!")):
            env.conversations.add(negotiation.lead_id, message)

        result = await to_negotiating(env, negotiation, QualificationInput(budget_max=70000))

        assert result.qualification.intent == 15
        assert result.qualification.completeness == 6
        assert result.qualification.engagement > 0
        assert result.qualification.answers["budget_max"] == 70000
        await env.pipeline.drain()


# ── Validation ────────────────────────────────────────

class TestValidation:
    @pytest.mark.asyncio
    async def test_proposal_requires_estimated_value(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(TransitionValidationError) as exc:
            await env.pipeline.transition(negotiation.id, Stage.PROPOSAL_SENT)
        assert exc.value.missing_fields == ["estimated_value"]
        assert (await env.negotiations.get(negotiation.id)).version == 1

    @pytest.mark.asyncio
    async def test_proposal_rejects_zero_value(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(TransitionValidationError) as exc:
            await env.pipeline.transition(negotiation.id, Stage.PROPOSAL_SENT, TransitionPayload(estimated_value=0))
        assert "estimated_value" in exc.value.invalid_fields

    @pytest.mark.asyncio
    async def test_proposal_uses_stored_value(self, env):
        lead = await env.lead()
        negotiation = await env.pipeline.open_negotiation(lead.id, estimated_value=52000)
        result = await env.pipeline.transition(negotiation.id, Stage.PROPOSAL_SENT)
        assert result.negotiation.estimated_value == 52000

    @pytest.mark.asyncio
    async def test_probability_range(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(TransitionValidationError) as exc:
            await env.pipeline.transition(
                negotiation.id, Stage.VISIT_SCHEDULED, TransitionPayload(probability=150)
            )
        assert "probability" in exc.value.invalid_fields

    @pytest.mark.asyncio
    async def test_unknown_loss_reason(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(TransitionValidationError) as exc:
            await env.pipeline.transition(
                negotiation.id, Stage.LOST, TransitionPayload(structured_loss_reason="bored")
            )
        assert "structured_loss_reason" in exc.value.invalid_fields

    @pytest.mark.asyncio
    async def test_unknown_stage(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(ValidationError) as exc:
            await env.pipeline.transition(negotiation.id, "paused")
        assert "target_stage" in exc.value.invalid_fields

    @pytest.mark.asyncio
    async def test_won_only_through_close_won(self, env):
        negotiation = await env.negotiation()
        await to_negotiating(env, negotiation)

        with pytest.raises(TransitionValidationError) as exc:
            await env.pipeline.transition(negotiation.id, Stage.WON, TransitionPayload(sale_ref="made-up"))
        await env.pipeline.drain()

        assert "target_stage" in exc.value.invalid_fields
        current = await env.negotiations.get(negotiation.id)
        assert current.stage == Stage.NEGOTIATING
        assert current.sale_ref is None
        assert env.sales.sales == {}
        assert env.sales.commissions == []
        lead = await env.leads.get(negotiation.lead_id)
        assert lead.status == LeadStatus.NEGOTIATING
        assert lead.archived is False

    @pytest.mark.asyncio
    async def test_unknown_negotiation(self, env):
        with pytest.raises(NotFoundError):
            await env.pipeline.transition("missing", Stage.LOST, TransitionPayload(structured_loss_reason="other"))


# ── Qualification & assignment ────────────────────────

class TestQualificationGate:
    @pytest.mark.asyncio
    async def test_second_qualification_does_not_reassign(self, env):
        negotiation = await env.negotiation()
        await to_negotiating(env, negotiation)
        await env.pipeline.transition(
            negotiation.id, Stage.PROPOSAL_SENT, TransitionPayload(estimated_value=40000)
        )
        result = await to_negotiating(env, negotiation)

        assert result.auto_assigned is False
        assert result.assigned_agent_id == "agent-a"
        assert await lifetime_assignments(env) == 1
        assert len(await env.pipeline.list_qualifications(negotiation.id)) == 2
        await env.pipeline.drain()

    @pytest.mark.asyncio
    async def test_pre_assigned_lead_skips_scheduler(self, env):
        lead = await env.lead(assigned_agent_id="agent-z")
        negotiation = await env.pipeline.open_negotiation(lead.id)
        assert negotiation.assigned_agent_id == "agent-z"

        result = await to_negotiating(env, negotiation)

        assert result.assigned_agent_id == "agent-z"
        assert result.dispatch_scheduled is False
        assert await lifetime_assignments(env) == 0
        assert len(await env.qualifications.list_by_negotiation(negotiation.id)) == 1

    @pytest.mark.asyncio
    async def test_no_agent_available_is_a_warning(self, empty_env):
        negotiation = await empty_env.negotiation()

        result = await to_negotiating(empty_env, negotiation)

        assert result.negotiation.stage == Stage.NEGOTIATING
        assert result.assigned_agent_id is None
        assert result.warnings == [WARN_NO_AGENT]
        assert result.qualification is not None
        assert (await empty_env.leads.get(negotiation.lead_id)).status == LeadStatus.NEGOTIATING

    @pytest.mark.asyncio
    async def test_qualification_store_failure_is_a_warning(self, env):
        env.pipeline.qualifications = BrokenQualificationStore()
        negotiation = await env.negotiation()

        result = await to_negotiating(env, negotiation)

        assert result.negotiation.stage == Stage.NEGOTIATING
        assert result.qualification is None
        assert WARN_QUALIFICATION_NOT_STORED in result.warnings
        await env.pipeline.drain()

    @pytest.mark.asyncio
    async def test_events_recorded(self, env):
        negotiation = await env.negotiation()
        await to_negotiating(env, negotiation)
        await env.pipeline.drain()

        types = [e["event_type"] for e in env.events.for_lead(negotiation.lead_id)]
        assert types == ["negotiation_opened", "stage_changed", "assigned"]


# ── Dispatch ──────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_assigned_agent_notified(self, env):
        negotiation = await env.negotiation()
        result = await to_negotiating(env, negotiation)
        assert result.dispatch_scheduled is True

        await env.pipeline.drain()

        inbox = await env.notifications.list_for_agent("agent-a")
        assert len(inbox) == 1
        assert inbox[0].type == "new_lead"
        assert negotiation.lead_id in inbox[0].link
        assert "Maria Souza" in inbox[0].message
        assert not env.pipeline.dispatch_failures

    @pytest.mark.asyncio
    async def test_dispatch_failure_keeps_assignment(self, env):
        env.pipeline.dispatcher = ExplodingDispatcher()
        negotiation = await env.negotiation()

        result = await to_negotiating(env, negotiation)
        await env.pipeline.drain()

        assert result.assigned_agent_id == "agent-a"
        assert len(env.pipeline.dispatch_failures) == 1
        assert env.pipeline.dispatch_failures[0].agent_id == "agent-a"
        assert (await env.roster.get_slot("agent-a")).current_day_count == 1
        assert (await env.negotiations.get(negotiation.id)).assigned_agent_id == "agent-a"

    @pytest.mark.asyncio
    async def test_dispatch_timeout(self, env):
        env.pipeline.dispatcher = SleepyDispatcher()
        env.pipeline.dispatch_timeout = 0.01
        negotiation = await env.negotiation()

        await to_negotiating(env, negotiation)
        await env.pipeline.drain()

        assert len(env.pipeline.dispatch_failures) == 1
        assert "timed out" in env.pipeline.dispatch_failures[0].reason

    @pytest.mark.asyncio
    async def test_failure_history_is_bounded(self, env):
        env.pipeline.dispatcher = ExplodingDispatcher()

        for n in range(DISPATCH_FAILURES_KEPT + 5):
            await env.pipeline._dispatch("agent-a", f"lead-{n}", None)

        failures = env.pipeline.dispatch_failures
        assert len(failures) == DISPATCH_FAILURES_KEPT
        assert failures[0].lead_id == "lead-5"
        assert failures[-1].lead_id == f"lead-{DISPATCH_FAILURES_KEPT + 4}"


# ── Concurrency ───────────────────────────────────────

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_qualification_runs_scheduler_once(self, env):
        negotiation = await env.negotiation()

        results = await asyncio.gather(
            to_negotiating(env, negotiation),
            to_negotiating(env, negotiation),
            return_exceptions=True,
        )
        await env.pipeline.drain()

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1 and isinstance(failed[0], InvalidTransitionError)
        assert await lifetime_assignments(env) == 1
        assert len(await env.qualifications.list_by_negotiation(negotiation.id)) == 1

    @pytest.mark.asyncio
    async def test_stale_expected_version_rejected(self, env):
        negotiation = await env.negotiation()
        await env.pipeline.transition(negotiation.id, Stage.VISIT_SCHEDULED)

        with pytest.raises(ConcurrentModificationError):
            await env.pipeline.transition(
                negotiation.id,
                Stage.PROPOSAL_SENT,
                TransitionPayload(estimated_value=45000),
                expected_version=1,
            )
        assert (await env.negotiations.get(negotiation.id)).stage == Stage.VISIT_SCHEDULED

    @pytest.mark.asyncio
    async def test_conflict_is_retried_with_refetch(self, env):
        store = ConflictingNegotiationStore(conflicts=1)
        env.pipeline.negotiations = store
        lead = await env.lead()
        negotiation = await env.pipeline.open_negotiation(lead.id)

        result = await to_negotiating(env, negotiation)
        await env.pipeline.drain()

        assert result.negotiation.stage == Stage.NEGOTIATING
        assert result.negotiation.notes == "edited elsewhere"
        assert result.negotiation.version == 3
        assert await lifetime_assignments(env) == 1

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        env = Env(slots=[AgentSlot(agent_id="agent-a")], max_retries=3)
        env.pipeline.negotiations = ConflictingNegotiationStore(conflicts=10)
        lead = await env.lead()
        negotiation = await env.pipeline.open_negotiation(lead.id)

        with pytest.raises(ConcurrentModificationError):
            await env.pipeline.transition(negotiation.id, Stage.VISIT_SCHEDULED)
        assert env.pipeline.negotiations.conflicts == 7

    @pytest.mark.asyncio
    async def test_explicit_version_is_not_retried(self, env):
        store = ConflictingNegotiationStore(conflicts=1)
        env.pipeline.negotiations = store
        lead = await env.lead()
        negotiation = await env.pipeline.open_negotiation(lead.id)

        with pytest.raises(ConcurrentModificationError):
            await env.pipeline.transition(negotiation.id, Stage.VISIT_SCHEDULED, expected_version=1)
        assert store.conflicts == 0
        assert (await store.get(negotiation.id)).stage == Stage.INITIAL_CONTACT

    @pytest.mark.asyncio
    async def test_storage_timeout(self, env):
        env.pipeline.negotiations = SlowNegotiationStore()
        env.pipeline.timeout = 0.01

        with pytest.raises(StorageUnavailable) as exc:
            await env.pipeline.transition("neg-1", Stage.VISIT_SCHEDULED)
        assert exc.value.operation == "negotiations.get"


# ── Lost ──────────────────────────────────────────────

class TestLost:
    @pytest.mark.asyncio
    async def test_lost_archives_lead(self, env):
        negotiation = await env.negotiation()
        result = await env.pipeline.transition(
            negotiation.id,
            Stage.LOST,
            TransitionPayload(structured_loss_reason="credit_denied", loss_reason="bank refused"),
        )

        assert result.negotiation.structured_loss_reason == LossReason.CREDIT_DENIED
        assert result.negotiation.loss_reason == "bank refused"
        lead = await env.leads.get(negotiation.lead_id)
        assert lead.status == LeadStatus.LOST
        assert lead.archived is True

    @pytest.mark.asyncio
    async def test_lost_is_terminal(self, env):
        negotiation = await env.negotiation()
        await env.pipeline.transition(negotiation.id, Stage.LOST, TransitionPayload(structured_loss_reason="other"))
        with pytest.raises(InvalidTransitionError):
            await env.pipeline.transition(negotiation.id, Stage.NEGOTIATING)

    @pytest.mark.asyncio
    async def test_vehicle_sold_creates_alert_when_requested(self, env):
        negotiation = await env.negotiation(vehicle_interest="Onix LT")
        await env.pipeline.transition(
            negotiation.id,
            Stage.LOST,
            TransitionPayload(structured_loss_reason="vehicle_already_sold", create_vehicle_alert=True),
        )
        assert len(env.vehicle_alerts.alerts) == 1
        assert env.vehicle_alerts.alerts[0].vehicle_interest == "Onix LT"

    @pytest.mark.asyncio
    async def test_vehicle_sold_without_request_has_no_alert(self, env):
        negotiation = await env.negotiation()
        await env.pipeline.transition(
            negotiation.id, Stage.LOST, TransitionPayload(structured_loss_reason="vehicle_already_sold")
        )
        assert env.vehicle_alerts.alerts == []

    @pytest.mark.asyncio
    async def test_recovery_actions_planned(self):
        rule = LossRecoveryRule(
            name="price follow-up",
            trigger_loss_reasons=[LossReason.PRICE_TOO_HIGH],
            action_type=RecoveryActionType.WHATSAPP_MESSAGE,
            delay_days=7,
            message_template="Oi {name}, temos novidades sobre o {vehicle}!",
        )
        env = Env(slots=[AgentSlot(agent_id="agent-a")], recovery_rules=[rule])
        negotiation = await env.negotiation(vehicle_interest="Onix")

        result = await env.pipeline.transition(
            negotiation.id, Stage.LOST, TransitionPayload(structured_loss_reason="price_too_high")
        )

        assert len(result.recovery_actions) == 1
        assert result.recovery_actions[0].message == "Oi Maria Souza, temos novidades sobre o Onix!"
        assert env.follow_ups.actions == result.recovery_actions


# ── Won ───────────────────────────────────────────────

class TestWon:
    @pytest.mark.asyncio
    async def test_close_won_creates_sale_first(self, env):
        negotiation = await env.negotiation()
        await to_negotiating(env, negotiation)

        result = await env.pipeline.close_won(negotiation.id, sale_price=80000, payment_method="cash")
        await env.pipeline.drain()

        won = result.negotiation
        assert won.stage == Stage.WON
        assert won.sale_ref in env.sales.sales
        assert won.actual_close_date is not None
        assert env.sales.sales[won.sale_ref].sale_price == 80000
        assert env.sales.commissions == [{"sale_ref": won.sale_ref, "agent_id": "agent-a"}]
        lead = await env.leads.get(negotiation.lead_id)
        assert lead.status == LeadStatus.CONVERTED
        assert lead.archived is True

    @pytest.mark.asyncio
    async def test_close_won_outside_graph_creates_no_sale(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(InvalidTransitionError):
            await env.pipeline.close_won(negotiation.id, sale_price=80000)
        assert env.sales.sales == {}

    @pytest.mark.asyncio
    async def test_rejected_sale_leaves_stage_unchanged(self, env):
        env.pipeline.sales = RejectingSales()
        negotiation = await env.negotiation()
        await to_negotiating(env, negotiation)

        with pytest.raises(SaleRejectedError):
            await env.pipeline.close_won(negotiation.id, sale_price=80000)
        await env.pipeline.drain()

        assert (await env.negotiations.get(negotiation.id)).stage == Stage.NEGOTIATING

    @pytest.mark.asyncio
    async def test_sale_price_must_be_positive(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(TransitionValidationError):
            await env.pipeline.close_won(negotiation.id, sale_price=0)

    @pytest.mark.asyncio
    async def test_won_is_terminal(self, env):
        negotiation = await env.negotiation()
        await to_negotiating(env, negotiation)
        await env.pipeline.close_won(negotiation.id, sale_price=80000)
        await env.pipeline.drain()

        with pytest.raises(InvalidTransitionError):
            await env.pipeline.transition(negotiation.id, Stage.LOST, TransitionPayload(structured_loss_reason="other"))


# ── Reassign & open ───────────────────────────────────

class TestReassign:
    @pytest.mark.asyncio
    async def test_manual_override_keeps_counters(self, env):
        negotiation = await env.negotiation()
        await to_negotiating(env, negotiation)

        updated = await env.pipeline.reassign(negotiation.id, "agent-b")
        await env.pipeline.drain()

        assert updated.assigned_agent_id == "agent-b"
        assert (await env.leads.get(negotiation.lead_id)).assigned_agent_id == "agent-b"
        assert (await env.roster.get_slot("agent-a")).current_day_count == 1
        assert (await env.roster.get_slot("agent-b")).current_day_count == 0
        assert len(await env.notifications.list_for_agent("agent-b")) == 1

    @pytest.mark.asyncio
    async def test_requires_agent(self, env):
        negotiation = await env.negotiation()
        with pytest.raises(ValidationError) as exc:
            await env.pipeline.reassign(negotiation.id, "")
        assert exc.value.missing_fields == ["agent_id"]

    @pytest.mark.asyncio
    async def test_terminal_negotiation_rejected(self, env):
        negotiation = await env.negotiation()
        await env.pipeline.transition(negotiation.id, Stage.LOST, TransitionPayload(structured_loss_reason="other"))
        with pytest.raises(TransitionValidationError):
            await env.pipeline.reassign(negotiation.id, "agent-b")


class TestOpenNegotiation:
    @pytest.mark.asyncio
    async def test_unknown_lead(self, env):
        with pytest.raises(NotFoundError):
            await env.pipeline.open_negotiation("missing")

    @pytest.mark.asyncio
    async def test_archived_lead_rejected(self, env):
        lead = await env.lead(archived=True)
        with pytest.raises(ValidationError) as exc:
            await env.pipeline.open_negotiation(lead.id)
        assert "lead_id" in exc.value.invalid_fields
