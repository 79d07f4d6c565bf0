"""
Round-robin assignment of leads to salespeople.

Weighted-fair rotation: higher priority serves first, the least recently
served agent wins among equals, and agent id breaks the remaining ties.
Inactive slots and slots at their daily cap are never selected.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from . import metrics
from .errors import ConcurrentModificationError, NoAgentAvailableError
from .models import AgentSlot
from .stores import AgentRoster
from .timeouts import call_collaborator

logger = logging.getLogger(__name__)


def _rotation_key(slot: AgentSlot):
    # never-served agents go first among equal priority
    served = slot.last_assigned_at is not None
    return (-slot.priority, served, slot.last_assigned_at or datetime.min, slot.agent_id)


def order_slots(slots: Iterable[AgentSlot]) -> List[AgentSlot]:
    """Eligible slots in the order they would be served."""
    return sorted((s for s in slots if s.is_eligible), key=_rotation_key)


def select_next_agent(slots: Iterable[AgentSlot], at: Optional[datetime] = None) -> Optional[str]:
    """
    Pick the next agent to receive a lead.

    Args:
        slots: Candidate slots (ineligible ones are filtered out here)
        at: Selection time, used for logging only

    Returns:
        Agent id, or None when no slot is eligible
    """
    ordered = order_slots(slots)
    if not ordered:
        return None
    chosen = ordered[0]
    logger.debug(
        f"Round robin picked {chosen.agent_id} at {at} "
        f"(priority={chosen.priority}, today={chosen.current_day_count})"
    )
    return chosen.agent_id


class RoundRobinScheduler:
    """
    Serialises select + record so concurrent qualifications never push an
    agent past their daily cap.

    In-process callers are serialised by an asyncio.Lock; across processes
    the roster's compare-and-increment rejects a stale selection, and the
    scheduler reselects a bounded number of times.
    """

    def __init__(
        self,
        roster: AgentRoster,
        max_attempts: int = 3,
        auto_reset: bool = True,
        business_timezone: str = "America/Sao_Paulo",
        timeout: float = 5.0,
    ):
        """
        Initialize the scheduler.

        Args:
            roster: Slot storage
            max_attempts: Reselections allowed after losing a race
            auto_reset: Reset daily counters on first use of each local day
            business_timezone: Timezone defining the dealership's day
            timeout: Deadline for each roster call, in seconds
        """
        self.roster = roster
        self.max_attempts = max_attempts
        self.auto_reset = auto_reset
        self.tz = ZoneInfo(business_timezone)
        self.timeout = timeout
        self._lock = asyncio.Lock()
        self._last_reset_day: Optional[date] = None

    def local_day(self, at: datetime) -> date:
        """Business-day date of a naive UTC timestamp."""
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        return at.astimezone(self.tz).date()

    def local_day_now(self) -> date:
        return self.local_day(datetime.utcnow())

    async def assign_next(self, at: Optional[datetime] = None) -> str:
        """
        Select an agent and count the assignment against their slot.

        Returns:
            The assigned agent id

        Raises:
            NoAgentAvailableError: no active slot under its cap
            ConcurrentModificationError: lost the slot race max_attempts times
            StorageUnavailable: the roster timed out or failed
        """
        at = at or datetime.utcnow()
        async with self._lock:
            if self.auto_reset:
                await self._reset_if_new_day(at)

            for attempt in range(1, self.max_attempts + 1):
                slots = await call_collaborator(
                    self.roster.list_eligible(), "roster.list_eligible", self.timeout
                )
                agent_id = select_next_agent(slots, at)
                if agent_id is None:
                    metrics.record_assignment("no_agent")
                    logger.warning("No eligible agent for round-robin assignment")
                    raise NoAgentAvailableError()

                try:
                    await call_collaborator(
                        self.roster.record_assignment(agent_id, at, self.local_day(at)),
                        "roster.record_assignment",
                        self.timeout,
                    )
                except ConcurrentModificationError:
                    logger.warning(
                        f"Slot {agent_id} changed before increment "
                        f"(attempt {attempt}/{self.max_attempts}), reselecting"
                    )
                    continue

                metrics.record_assignment("assigned")
                logger.info(f"Round robin assigned agent {agent_id}")
                return agent_id

        metrics.record_assignment("conflict")
        raise ConcurrentModificationError("agent_slot", "round_robin")

    async def preview_next(self, at: Optional[datetime] = None) -> Optional[str]:
        """Who would be picked now, without counting anything."""
        slots = await call_collaborator(
            self.roster.list_eligible(), "roster.list_eligible", self.timeout
        )
        return select_next_agent(slots, at or datetime.utcnow())

    async def record_assignment(self, agent_id: str, at: Optional[datetime] = None) -> AgentSlot:
        at = at or datetime.utcnow()
        async with self._lock:
            return await call_collaborator(
                self.roster.record_assignment(agent_id, at, self.local_day(at)),
                "roster.record_assignment",
                self.timeout,
            )

    async def reset_daily_counts(self, today: Optional[date] = None) -> int:
        """
        Zero the daily counters. Idempotent per day.

        Returns:
            Number of slots that were actually reset
        """
        today = today or self.local_day_now()
        async with self._lock:
            changed = await call_collaborator(
                self.roster.reset_daily_counts(today), "roster.reset_daily_counts", self.timeout
            )
            self._last_reset_day = today
        if changed:
            logger.info(f"Daily round-robin counters reset for {today} ({changed} slots)")
        return changed

    async def _reset_if_new_day(self, at: datetime):
        today = self.local_day(at)
        if self._last_reset_day == today:
            return
        changed = await call_collaborator(
            self.roster.reset_daily_counts(today), "roster.reset_daily_counts", self.timeout
        )
        self._last_reset_day = today
        if changed:
            logger.info(f"Daily round-robin counters reset for {today} ({changed} slots)")
