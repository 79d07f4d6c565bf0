"""Tests for round-robin selection and the assignment scheduler."""

import asyncio
from datetime import date, datetime, timedelta

import pytest

from helpers import T0
from lead_routing.errors import ConcurrentModificationError, NoAgentAvailableError, NotFoundError
from lead_routing.memory_stores import InMemoryAgentRoster
from lead_routing.models import AgentSlot
from lead_routing.round_robin import RoundRobinScheduler, order_slots, select_next_agent

TODAY = date(2025, 3, 10)  # local (America/Sao_Paulo) day of T0


def minutes(n):
    return T0 + timedelta(minutes=n)


def scenario_slots():
    return [
        AgentSlot(agent_id="agent-a", priority=10, daily_cap=2),
        AgentSlot(agent_id="agent-b", priority=10, daily_cap=2),
        AgentSlot(agent_id="agent-c", priority=5),
    ]


# ── Selection ─────────────────────────────────────────

class TestSelectNextAgent:
    def test_empty(self):
        assert select_next_agent([], T0) is None

    def test_inactive_never_selected(self):
        slots = [AgentSlot(agent_id="a", active=False, priority=100), AgentSlot(agent_id="b")]
        assert select_next_agent(slots, T0) == "b"

    def test_capped_never_selected(self):
        slots = [
            AgentSlot(agent_id="a", priority=10, daily_cap=3, current_day_count=3),
            AgentSlot(agent_id="b", priority=1),
        ]
        assert select_next_agent(slots, T0) == "b"

    def test_zero_cap_never_selected(self):
        assert select_next_agent([AgentSlot(agent_id="a", daily_cap=0)], T0) is None

    def test_all_ineligible(self):
        slots = [
            AgentSlot(agent_id="a", active=False),
            AgentSlot(agent_id="b", daily_cap=1, current_day_count=1),
        ]
        assert select_next_agent(slots, T0) is None

    def test_priority_first(self):
        slots = [
            AgentSlot(agent_id="low", priority=1),
            AgentSlot(agent_id="high", priority=9, last_assigned_at=minutes(5)),
        ]
        assert select_next_agent(slots, T0) == "high"

    def test_least_recently_served_wins_ties(self):
        slots = [
            AgentSlot(agent_id="a", last_assigned_at=minutes(10)),
            AgentSlot(agent_id="b", last_assigned_at=minutes(3)),
        ]
        assert select_next_agent(slots, T0) == "b"

    def test_never_served_before_served(self):
        slots = [
            AgentSlot(agent_id="a", last_assigned_at=minutes(1)),
            AgentSlot(agent_id="z"),
        ]
        assert select_next_agent(slots, T0) == "z"

    def test_agent_id_breaks_remaining_ties(self):
        slots = [AgentSlot(agent_id="b"), AgentSlot(agent_id="a")]
        assert select_next_agent(slots, T0) == "a"

    def test_order_slots(self):
        ordered = order_slots(scenario_slots())
        assert [s.agent_id for s in ordered] == ["agent-a", "agent-b", "agent-c"]

    def test_strict_alternation_between_equals(self):
        slots = [AgentSlot(agent_id="a"), AgentSlot(agent_id="b")]
        picks = []
        for i in range(6):
            agent_id = select_next_agent(slots, minutes(i))
            picks.append(agent_id)
            next(s for s in slots if s.agent_id == agent_id).record_assignment(minutes(i))
        assert picks == ["a", "b", "a", "b", "a", "b"]


# ── Slot ──────────────────────────────────────────────

class TestAgentSlot:
    def test_record_assignment(self):
        slot = AgentSlot(agent_id="a")
        slot.record_assignment(T0)
        assert slot.current_day_count == 1
        assert slot.lifetime_assigned_count == 1
        assert slot.last_assigned_at == T0

    def test_reset_idempotent(self):
        slot = AgentSlot(agent_id="a", current_day_count=4)
        assert slot.reset(TODAY) is True
        slot.record_assignment(T0)
        assert slot.reset(TODAY) is False
        assert slot.current_day_count == 1


# ── Scheduler ─────────────────────────────────────────

class TestRoundRobinScheduler:
    @pytest.mark.asyncio
    async def test_priority_and_cap_scenario(self):
        roster = InMemoryAgentRoster(scenario_slots())
        scheduler = RoundRobinScheduler(roster, auto_reset=False)

        picks = [await scheduler.assign_next(minutes(i)) for i in range(5)]

        assert picks == ["agent-a", "agent-b", "agent-a", "agent-b", "agent-c"]
        assert await scheduler.assign_next(minutes(5)) == "agent-c"

    @pytest.mark.asyncio
    async def test_counters_recorded(self):
        roster = InMemoryAgentRoster([AgentSlot(agent_id="a")])
        scheduler = RoundRobinScheduler(roster, auto_reset=False)

        await scheduler.assign_next(T0)
        await scheduler.assign_next(minutes(1))

        slot = await roster.get_slot("a")
        assert slot.current_day_count == 2
        assert slot.lifetime_assigned_count == 2
        assert slot.last_assigned_at == minutes(1)

    @pytest.mark.asyncio
    async def test_no_agent_available(self):
        roster = InMemoryAgentRoster([AgentSlot(agent_id="a", active=False)])
        scheduler = RoundRobinScheduler(roster, auto_reset=False)
        with pytest.raises(NoAgentAvailableError):
            await scheduler.assign_next(T0)

    @pytest.mark.asyncio
    async def test_reset_makes_capped_agent_selectable(self):
        roster = InMemoryAgentRoster([AgentSlot(agent_id="a", daily_cap=1)])
        scheduler = RoundRobinScheduler(roster, auto_reset=False)

        assert await scheduler.assign_next(T0) == "a"
        assert await scheduler.preview_next(T0) is None

        # the first assignment stamped today, so only the next day resets it
        assert await scheduler.reset_daily_counts(TODAY) == 0
        tomorrow = TODAY + timedelta(days=1)
        assert await scheduler.reset_daily_counts(tomorrow) == 1
        assert await scheduler.reset_daily_counts(tomorrow) == 0
        assert await scheduler.preview_next(T0) == "a"

    @pytest.mark.asyncio
    async def test_preview_does_not_count(self):
        roster = InMemoryAgentRoster([AgentSlot(agent_id="a")])
        scheduler = RoundRobinScheduler(roster, auto_reset=False)

        assert await scheduler.preview_next(T0) == "a"
        assert (await roster.get_slot("a")).current_day_count == 0

    @pytest.mark.asyncio
    async def test_auto_reset_on_new_local_day(self):
        roster = InMemoryAgentRoster([
            AgentSlot(agent_id="a", daily_cap=1, current_day_count=1, last_reset_date=TODAY - timedelta(days=1)),
        ])
        scheduler = RoundRobinScheduler(roster, auto_reset=True)

        assert await scheduler.assign_next(T0) == "a"
        slot = await roster.get_slot("a")
        assert slot.current_day_count == 1
        assert slot.last_reset_date == TODAY

    @pytest.mark.asyncio
    async def test_restart_same_day_keeps_counts(self):
        roster = InMemoryAgentRoster([AgentSlot(agent_id="a")])
        await RoundRobinScheduler(roster, auto_reset=True).assign_next(T0)

        # a fresh process on the same local day must not wipe today's count
        await RoundRobinScheduler(roster, auto_reset=True).assign_next(minutes(30))

        assert (await roster.get_slot("a")).current_day_count == 2

    def test_local_day_uses_business_timezone(self):
        scheduler = RoundRobinScheduler(InMemoryAgentRoster(), business_timezone="America/Sao_Paulo")
        # 02:00 UTC is still the previous evening in Sao Paulo
        assert scheduler.local_day(datetime(2025, 3, 11, 2, 0)) == TODAY
        assert scheduler.local_day(datetime(2025, 3, 11, 4, 0)) == date(2025, 3, 11)

    @pytest.mark.asyncio
    async def test_record_assignment_unknown_agent(self):
        scheduler = RoundRobinScheduler(InMemoryAgentRoster(), auto_reset=False)
        with pytest.raises(NotFoundError):
            await scheduler.record_assignment("ghost", T0)


# ── Concurrency ───────────────────────────────────────

class _StaleRoster(InMemoryAgentRoster):
    """Reports eligibility from a snapshot, like a replica that lags behind."""

    def __init__(self, slots):
        super().__init__(slots)
        self.snapshot = None

    async def list_eligible(self):
        if self.snapshot is None:
            self.snapshot = await super().list_eligible()
        return self.snapshot


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_assignments_respect_caps(self):
        roster = InMemoryAgentRoster([
            AgentSlot(agent_id="a", daily_cap=3),
            AgentSlot(agent_id="b", daily_cap=3),
        ])
        scheduler = RoundRobinScheduler(roster, auto_reset=False)

        results = await asyncio.gather(
            *[scheduler.assign_next(minutes(i)) for i in range(10)], return_exceptions=True
        )

        assigned = [r for r in results if isinstance(r, str)]
        assert len(assigned) == 6
        assert all(isinstance(r, NoAgentAvailableError) for r in results if not isinstance(r, str))
        assert (await roster.get_slot("a")).current_day_count == 3
        assert (await roster.get_slot("b")).current_day_count == 3

    @pytest.mark.asyncio
    async def test_schedulers_sharing_a_roster_respect_caps(self):
        # two processes: separate locks, one roster doing compare-and-increment
        roster = InMemoryAgentRoster([
            AgentSlot(agent_id="a", daily_cap=3),
            AgentSlot(agent_id="b", daily_cap=3),
        ])
        first = RoundRobinScheduler(roster, auto_reset=False, max_attempts=10)
        second = RoundRobinScheduler(roster, auto_reset=False, max_attempts=10)

        calls = [(first if i % 2 else second).assign_next(minutes(i)) for i in range(10)]
        results = await asyncio.gather(*calls, return_exceptions=True)

        assert sum(isinstance(r, str) for r in results) == 6
        for agent_id in ("a", "b"):
            slot = await roster.get_slot(agent_id)
            assert slot.current_day_count == 3

    @pytest.mark.asyncio
    async def test_lost_race_retries_are_bounded(self):
        roster = _StaleRoster([AgentSlot(agent_id="a", daily_cap=1, current_day_count=0)])
        scheduler = RoundRobinScheduler(roster, auto_reset=False, max_attempts=3)

        assert await scheduler.assign_next(T0) == "a"
        # the stale view still offers "a"; the increment keeps refusing it
        with pytest.raises(ConcurrentModificationError):
            await scheduler.assign_next(minutes(1))
        assert (await roster.get_slot("a")).current_day_count == 1
