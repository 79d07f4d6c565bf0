"""
Exceptions raised by the lead routing core.

Every error carries the data the caller needs to react (which field is
missing, which record collided) so the API layer can map it to a response
without parsing messages.
"""

from typing import Any, Dict, List, Optional


class LeadRoutingError(Exception):
    """Base class for all lead routing errors."""


class ValidationError(LeadRoutingError):
    """Required input is missing or malformed. Nothing was written."""

    def __init__(
        self,
        missing_fields: Optional[List[str]] = None,
        invalid_fields: Optional[Dict[str, str]] = None,
        message: Optional[str] = None,
    ):
        self.missing_fields = list(missing_fields or [])
        self.invalid_fields = dict(invalid_fields or {})
        if message is None:
            parts = []
            if self.missing_fields:
                parts.append(f"missing fields: {', '.join(self.missing_fields)}")
            if self.invalid_fields:
                parts.append(
                    "invalid fields: "
                    + ", ".join(f"{k} ({v})" for k, v in self.invalid_fields.items())
                )
            message = "; ".join(parts) or "validation failed"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "validation_error",
            "message": str(self),
            "missing_fields": self.missing_fields,
            "invalid_fields": self.invalid_fields,
        }


class TransitionValidationError(ValidationError):
    """A stage transition precondition is unmet. Nothing was written."""


class InvalidTransitionError(TransitionValidationError):
    """The requested move is not an edge of the pipeline graph."""

    def __init__(self, from_stage: str, to_stage: str):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(message=f"transition {from_stage} -> {to_stage} is not allowed")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["error"] = "invalid_transition"
        data["from_stage"] = self.from_stage
        data["to_stage"] = self.to_stage
        return data


class DuplicateLeadError(LeadRoutingError):
    """Lead creation collides with an existing lead or customer."""

    def __init__(self, field: str, value: str, existing_kind: str, existing_id: str,
                 existing_name: Optional[str] = None):
        self.field = field
        self.value = value
        self.existing_kind = existing_kind
        self.existing_id = existing_id
        self.existing_name = existing_name
        super().__init__(
            f"{field} '{value}' already belongs to {existing_kind} {existing_id}"
        )

    @property
    def existing_ref(self) -> Dict[str, Optional[str]]:
        return {"kind": self.existing_kind, "id": self.existing_id, "name": self.existing_name}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "duplicate_lead",
            "message": str(self),
            "field": self.field,
            "value": self.value,
            "existing": self.existing_ref,
        }


class NoAgentAvailableError(LeadRoutingError):
    """No active round-robin slot is under its daily cap."""

    def __init__(self, message: str = "no agent available for assignment"):
        super().__init__(message)


class ConcurrentModificationError(LeadRoutingError):
    """An optimistic version or compare-and-increment check failed."""

    def __init__(self, entity: str, entity_id: str, expected_version: Optional[int] = None):
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        detail = f" (expected version {expected_version})" if expected_version is not None else ""
        super().__init__(f"{entity} {entity_id} was modified concurrently{detail}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "concurrent_modification",
            "message": str(self),
            "entity": self.entity,
            "entity_id": self.entity_id,
            "expected_version": self.expected_version,
        }


class DispatchFailure(LeadRoutingError):
    """An assignment notification could not be delivered."""

    def __init__(self, agent_id: str, lead_id: str, reason: str):
        self.agent_id = agent_id
        self.lead_id = lead_id
        self.reason = reason
        super().__init__(f"notify {agent_id} about lead {lead_id} failed: {reason}")


class StorageUnavailable(LeadRoutingError):
    """A collaborator call timed out or failed."""

    def __init__(self, operation: str, reason: Optional[str] = None):
        self.operation = operation
        self.reason = reason
        message = f"{operation} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NotFoundError(LeadRoutingError):
    """A referenced record does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class SaleRejectedError(LeadRoutingError):
    """The sales service refused to create the sale; the negotiation is unchanged."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"sale rejected: {reason}")
