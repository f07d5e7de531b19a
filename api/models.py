"""
Publication Approvals — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, worker, and tests.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any

from approvals.schemas import EVENT_SCHEMAS
from approvals.types import InstanceState


class JobStatus(str, enum.Enum):
    """Status of a trigger delivery job in the worker queue."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RecordSubmission:
    """POST /v1/records request body."""
    entity_id: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.entity_id or not isinstance(self.entity_id, str):
            errors.append("entity_id is required and must be a string")
        if not isinstance(self.attributes, dict):
            errors.append("attributes must be an object")
        return errors


@dataclass
class ApprovalRequestSubmission:
    """POST /v1/approval-requests request body."""
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors = []
        if not self.entity_id or not isinstance(self.entity_id, str):
            errors.append("entity_id is required and must be a string")
        if not isinstance(self.payload, dict):
            errors.append("payload must be an object")
        return errors


@dataclass
class EventSubmission:
    """POST /v1/events body — an envelope forwarded by another service."""
    detail_type: str
    detail: dict[str, Any]
    source: str = ""
    event_id: str = ""
    time: float | None = None

    def validate(self) -> list[str]:
        errors = []
        if self.detail_type not in EVENT_SCHEMAS:
            errors.append(
                f"detail_type must be one of {sorted(EVENT_SCHEMAS)}, got {self.detail_type!r}"
            )
        if not isinstance(self.detail, dict):
            errors.append("detail is required and must be an object")
        if not self.source or not isinstance(self.source, str):
            errors.append("source is required and must be a string")
        return errors


@dataclass
class AcceptedResponse:
    """202 response for asynchronous submissions."""
    event_id: str
    job_id: str
    status: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class InstanceStatusResponse:
    """GET /v1/instances/{id} response."""
    instance_id: str
    workflow_name: str
    entity_id: str
    trigger_id: str
    status: str
    created_at: float
    updated_at: float
    current_state: str
    step_count: int
    result: dict[str, Any] | None = None
    error: str | None = None

    @staticmethod
    def from_instance(inst: InstanceState) -> InstanceStatusResponse:
        return InstanceStatusResponse(
            instance_id=inst.instance_id,
            workflow_name=inst.workflow_name,
            entity_id=inst.entity_id,
            trigger_id=inst.trigger_id,
            status=inst.status.value,
            created_at=inst.created_at,
            updated_at=inst.updated_at,
            current_state=inst.current_state,
            step_count=inst.step_count,
            result=inst.result,
            error=inst.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
