"""
Publication Approvals - Domain Event Schemas

Wire contracts for the events this core publishes and consumes.
Events are append-only; a payload is never mutated after publish.
"""

from typing import Any, ClassVar, Literal, Optional

from pydantic import BaseModel, Field


class DomainEvent(BaseModel):
    """Common base; DETAIL_TYPE names the event on the bus."""
    DETAIL_TYPE: ClassVar[str] = ""

    def to_detail(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class StatusChanged(DomainEvent):
    """Published by the Change Relay for allow-listed lifecycle transitions."""
    DETAIL_TYPE: ClassVar[str] = "StatusChanged"

    entity_id: str = Field(description="Entity whose status record changed")
    correlation_id: str = Field(description="Correlation id assigned at creation")
    lifecycle_state: str = Field(description="New lifecycle state")
    modified_at: str = Field(description="Writer-stamped modification time")


class ApprovalRequested(DomainEvent):
    """Starts one orchestrator instance for an entity."""
    DETAIL_TYPE: ClassVar[str] = "ApprovalRequested"

    entity_id: str = Field(description="Entity to evaluate")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Publication content: description text, image references",
    )


class EvaluationCompleted(DomainEvent):
    """Emitted exactly once when an orchestrator instance terminates."""
    DETAIL_TYPE: ClassVar[str] = "EvaluationCompleted"

    entity_id: str
    result: Literal["PASS", "FAIL"]
    reason: Optional[str] = Field(
        default=None,
        description="Set for non-content outcomes, e.g. NOT_FOUND or APPROVAL_TIMEOUT",
    )
    instance_id: Optional[str] = None


EVENT_SCHEMAS: dict[str, type[DomainEvent]] = {
    cls.DETAIL_TYPE: cls
    for cls in (StatusChanged, ApprovalRequested, EvaluationCompleted)
}


def unmarshal_event(detail_type: str, detail: dict[str, Any]) -> DomainEvent:
    """
    Validate an inbound event payload against its schema.

    Raises KeyError for an unknown detail type and
    pydantic.ValidationError for a malformed payload.
    """
    return EVENT_SCHEMAS[detail_type].model_validate(detail)
