"""
Scoring preview API route.

Scores a conversation and qualification form without storing anything,
for the qualification screen's live gauge.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from lead_routing.models import ConversationMessage, MessageDirection
from lead_routing.timeouts import call_collaborator
from .negotiations import QualificationForm
from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class MessageIn(BaseModel):
    direction: MessageDirection
    timestamp: datetime
    text: str = ""


class ScoringPreviewRequest(BaseModel):
    """Either inline messages or a lead whose stored conversation is scored."""
    lead_id: Optional[str] = None
    messages: List[MessageIn] = Field(default_factory=list)
    qualification: Optional[QualificationForm] = None


@router.post("/scoring/preview")
async def preview_score(request: ScoringPreviewRequest):
    services = get_services()
    history = [
        ConversationMessage(direction=m.direction, timestamp=m.timestamp, text=m.text)
        for m in request.messages
    ]
    if not history and request.lead_id:
        history = await call_collaborator(
            services.conversations.messages_for_lead(request.lead_id),
            "conversations.messages_for_lead",
            services.settings.collaborator_timeout_seconds,
        )

    form = request.qualification.to_input() if request.qualification else None
    breakdown = services.scoring.compute_score(history, form)
    return breakdown.to_dict()
