"""
Lead intake.

New leads are checked against existing leads and converted customers
before anything is written. Phone numbers are compared after stripping
formatting; emails case-insensitively.
"""

import logging
from typing import Dict, Optional

from . import metrics
from .errors import DuplicateLeadError, ValidationError
from .models import Lead, LeadSource, normalize_email, normalize_phone
from .stores import CustomerStore, LeadEventLog, LeadStore
from .timeouts import call_collaborator

logger = logging.getLogger(__name__)


class LeadIntakeService:
    """Creates leads, rejecting duplicates by phone and email."""

    def __init__(
        self,
        leads: LeadStore,
        customers: Optional[CustomerStore] = None,
        events: Optional[LeadEventLog] = None,
        timeout: float = 5.0,
    ):
        self.leads = leads
        self.customers = customers
        self.events = events
        self.timeout = timeout

    async def check_duplicates(self, phone: str, email: Optional[str] = None) -> None:
        """
        Raise DuplicateLeadError naming the first collision found.

        Checked in order: lead phone, customer phone, lead email, customer email.
        """
        phone = normalize_phone(phone)
        email = normalize_email(email)

        existing = await self._call(self.leads.find_by_phone(phone), "leads.find_by_phone")
        if existing:
            raise DuplicateLeadError("phone", phone, "lead", existing.id, existing.name)

        if self.customers is not None:
            customer = await self._call(self.customers.find_by_phone(phone), "customers.find_by_phone")
            if customer:
                raise DuplicateLeadError("phone", phone, "customer", customer.id, customer.name)

        if not email:
            return

        existing = await self._call(self.leads.find_by_email(email), "leads.find_by_email")
        if existing:
            raise DuplicateLeadError("email", email, "lead", existing.id, existing.name)

        if self.customers is not None:
            customer = await self._call(self.customers.find_by_email(email), "customers.find_by_email")
            if customer:
                raise DuplicateLeadError("email", email, "customer", customer.id, customer.name)

    async def create_lead(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None,
        source: LeadSource = LeadSource.MANUAL,
        vehicle_interest: Optional[str] = None,
        attribution: Optional[Dict[str, str]] = None,
        notes: Optional[str] = None,
        assigned_agent_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Lead:
        """
        Validate, dedupe and store a new lead.

        Raises:
            ValidationError: name or phone missing
            DuplicateLeadError: phone or email already known
            StorageUnavailable: a store timed out or failed
        """
        missing = []
        if not name or not name.strip():
            missing.append("name")
        if not normalize_phone(phone).lstrip("+"):
            missing.append("phone")
        if missing:
            raise ValidationError(missing_fields=missing)

        lead = Lead(
            name=name.strip(),
            phone=normalize_phone(phone),
            email=normalize_email(email),
            source=source,
            vehicle_interest=vehicle_interest,
            attribution=dict(attribution or {}),
            notes=notes,
            assigned_agent_id=assigned_agent_id,
            created_by=created_by,
        )
        try:
            await self.check_duplicates(phone, email)
            # the store enforces uniqueness again for intakes racing past the check
            lead = await self._call(self.leads.create(lead), "leads.create")
        except DuplicateLeadError as e:
            metrics.record_duplicate(e.field)
            logger.warning(f"Duplicate lead rejected: {e}")
            raise
        logger.info(f"Lead created: {lead.id} ({lead.source.value})")

        if self.events is not None:
            await self._call(
                self.events.record(lead.id, "created", {"source": lead.source.value}, created_by),
                "lead_events.record",
            )
        return lead

    async def _call(self, coro, operation: str):
        return await call_collaborator(coro, operation, self.timeout)
