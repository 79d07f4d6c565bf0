"""
Round-robin administration API routes.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from lead_routing.errors import NotFoundError
from lead_routing.timeouts import call_collaborator
from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class SlotUpdate(BaseModel):
    """Create or update an agent's slot. Omitted fields keep their value."""
    active: Optional[bool] = None
    priority: Optional[int] = None
    daily_cap: Optional[int] = Field(default=None, ge=0)
    clear_cap: bool = False


@router.get("/round-robin/slots")
async def list_slots():
    services = get_services()
    slots = await call_collaborator(
        services.roster.list_slots(), "roster.list_slots", services.settings.collaborator_timeout_seconds
    )
    return {"slots": [s.to_dict() for s in slots]}


@router.put("/round-robin/slots/{agent_id}")
async def upsert_slot(agent_id: str, request: SlotUpdate):
    services = get_services()
    slot = await call_collaborator(
        services.roster.upsert_slot(
            agent_id,
            active=request.active,
            priority=request.priority,
            daily_cap=request.daily_cap,
            clear_cap=request.clear_cap,
        ),
        "roster.upsert_slot",
        services.settings.collaborator_timeout_seconds,
    )
    logger.info(f"Round-robin slot {agent_id} updated")
    return slot.to_dict()


@router.delete("/round-robin/slots/{agent_id}")
async def remove_slot(agent_id: str):
    services = get_services()
    removed = await call_collaborator(
        services.roster.remove_slot(agent_id), "roster.remove_slot", services.settings.collaborator_timeout_seconds
    )
    if not removed:
        raise NotFoundError("agent_slot", agent_id)
    logger.info(f"Round-robin slot {agent_id} removed")
    return {"agent_id": agent_id, "removed": True}


@router.post("/round-robin/reset")
async def reset_daily_counts(today: Optional[date] = Query(default=None)):
    """Zero the daily counters. Running it twice on the same day changes nothing."""
    scheduler = get_services().scheduler
    today = today or scheduler.local_day_now()
    changed = await scheduler.reset_daily_counts(today)
    return {"date": today.isoformat(), "reset": changed}


@router.get("/round-robin/next")
async def preview_next():
    """Agent the next assignment would go to, without counting it."""
    agent_id = await get_services().scheduler.preview_next()
    return {"agent_id": agent_id}
