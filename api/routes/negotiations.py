"""
Negotiation pipeline API routes.

Every stage change goes through the pipeline state machine; warnings
(no agent available, lead not synchronised) come back in the 200 body.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from lead_routing.models import QualificationInput
from lead_routing.pipeline import TransitionPayload
from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


# Models
class NegotiationCreate(BaseModel):
    """Open a negotiation for a lead."""
    lead_id: str
    vehicle_id: Optional[str] = None
    customer_id: Optional[str] = None
    estimated_value: Optional[float] = None
    assigned_agent_id: Optional[str] = None
    notes: Optional[str] = None
    actor: Optional[str] = None


class QualificationForm(BaseModel):
    """Qualification answers; every field is optional."""
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

    def to_input(self) -> QualificationInput:
        return QualificationInput.from_dict(self.model_dump())


class TransitionRequest(BaseModel):
    """Stage change request. Which fields are required depends on target_stage."""
    target_stage: str
    expected_version: Optional[int] = None
    actor: Optional[str] = None
    estimated_value: Optional[float] = None
    probability: Optional[int] = None
    expected_close_date: Optional[date] = None
    appointment_at: Optional[datetime] = None
    proposal_description: Optional[str] = None
    objections: Optional[List[str]] = None
    notes: Optional[str] = None
    qualification: Optional[QualificationForm] = None
    structured_loss_reason: Optional[str] = None
    loss_reason: Optional[str] = None
    create_vehicle_alert: bool = False

    def to_payload(self) -> TransitionPayload:
        return TransitionPayload(
            estimated_value=self.estimated_value,
            probability=self.probability,
            expected_close_date=self.expected_close_date,
            appointment_at=self.appointment_at,
            proposal_description=self.proposal_description,
            objections=self.objections,
            notes=self.notes,
            qualification=self.qualification.to_input() if self.qualification else None,
            structured_loss_reason=self.structured_loss_reason,
            loss_reason=self.loss_reason,
            create_vehicle_alert=self.create_vehicle_alert,
        )


class CloseWonRequest(BaseModel):
    """Sale data for the two-phase won flow."""
    sale_price: float
    payment_method: Optional[str] = None
    sold_at: Optional[datetime] = None
    expected_version: Optional[int] = None
    actor: Optional[str] = None


class ReassignRequest(BaseModel):
    agent_id: Optional[str] = None
    expected_version: Optional[int] = None
    actor: Optional[str] = None
    notify: bool = True


# Routes
@router.post("/negotiations", status_code=201)
async def open_negotiation(request: NegotiationCreate):
    pipeline = get_services().pipeline
    negotiation = await pipeline.open_negotiation(
        lead_id=request.lead_id,
        vehicle_id=request.vehicle_id,
        customer_id=request.customer_id,
        estimated_value=request.estimated_value,
        assigned_agent_id=request.assigned_agent_id,
        notes=request.notes,
        actor=request.actor,
    )
    return negotiation.to_dict()


@router.get("/negotiations/{negotiation_id}")
async def get_negotiation(negotiation_id: str):
    negotiation = await get_services().pipeline.get_negotiation(negotiation_id)
    return negotiation.to_dict()


@router.post("/negotiations/{negotiation_id}/transition")
async def transition_negotiation(negotiation_id: str, request: TransitionRequest):
    """
    Move a negotiation to another stage.

    Entering `negotiating` scores the lead and, when nobody owns the
    negotiation yet, assigns an agent by round robin. `won` is refused
    here; close-won creates the sale first.
    """
    result = await get_services().pipeline.transition(
        negotiation_id,
        request.target_stage,
        payload=request.to_payload(),
        expected_version=request.expected_version,
        actor=request.actor,
    )
    return result.to_dict()


@router.post("/negotiations/{negotiation_id}/close-won")
async def close_won(negotiation_id: str, request: CloseWonRequest):
    """Create the sale, then mark the negotiation won with its reference."""
    result = await get_services().pipeline.close_won(
        negotiation_id,
        sale_price=request.sale_price,
        payment_method=request.payment_method,
        sold_at=request.sold_at,
        expected_version=request.expected_version,
        actor=request.actor,
    )
    return result.to_dict()


@router.post("/negotiations/{negotiation_id}/reassign")
async def reassign_negotiation(negotiation_id: str, request: ReassignRequest):
    """Manual override of the assigned agent. Round-robin counters are untouched."""
    negotiation = await get_services().pipeline.reassign(
        negotiation_id,
        request.agent_id or "",
        expected_version=request.expected_version,
        actor=request.actor,
        notify=request.notify,
    )
    return negotiation.to_dict()


@router.get("/negotiations/{negotiation_id}/qualifications")
async def list_negotiation_qualifications(negotiation_id: str):
    records = await get_services().pipeline.list_qualifications(negotiation_id)
    return {"negotiation_id": negotiation_id, "qualifications": [r.to_dict() for r in records]}
