"""
Lead intake API routes.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from lead_routing.errors import NotFoundError
from lead_routing.models import LeadSource
from lead_routing.timeouts import call_collaborator
from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class LeadCreate(BaseModel):
    """
    Lead creation request.

    Name and phone are optional here so that a missing value comes back
    as the same missing_fields payload the intake service produces.
    """
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    source: LeadSource = LeadSource.MANUAL
    vehicle_interest: Optional[str] = None
    attribution: Dict[str, str] = Field(default_factory=dict)
    notes: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    created_by: Optional[str] = None


@router.post("/leads", status_code=201)
async def create_lead(request: LeadCreate):
    """Create a lead after the duplicate check on phone and email."""
    services = get_services()
    lead = await services.intake.create_lead(
        name=request.name or "",
        phone=request.phone or "",
        email=request.email,
        source=request.source,
        vehicle_interest=request.vehicle_interest,
        attribution=request.attribution,
        notes=request.notes,
        assigned_agent_id=request.assigned_agent_id,
        created_by=request.created_by,
    )
    return lead.to_dict()


@router.get("/leads/{lead_id}")
async def get_lead(lead_id: str):
    services = get_services()
    lead = await call_collaborator(
        services.leads.get(lead_id), "leads.get", services.settings.collaborator_timeout_seconds
    )
    if lead is None:
        raise NotFoundError("lead", lead_id)
    return lead.to_dict()


@router.get("/leads/{lead_id}/qualifications")
async def list_lead_qualifications(lead_id: str):
    """Qualification history of a lead across all its negotiations, oldest first."""
    services = get_services()
    timeout = services.settings.collaborator_timeout_seconds
    lead = await call_collaborator(services.leads.get(lead_id), "leads.get", timeout)
    if lead is None:
        raise NotFoundError("lead", lead_id)
    records = await call_collaborator(
        services.qualifications.list_by_lead(lead_id), "qualifications.list_by_lead", timeout
    )
    return {"lead_id": lead_id, "qualifications": [r.to_dict() for r in records]}
