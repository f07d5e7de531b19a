"""
Publication Approvals — Type Definitions

Status records, change-feed records, typed write results, batch
responses, workflow instances and suspensions, plus the error
taxonomy shared by every component.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    """ISO-8601 UTC timestamp, the format stamped on status records."""
    return datetime.now(timezone.utc).isoformat()


# ─── Status Records ──────────────────────────────────────────────────

class LifecycleState(str, enum.Enum):
    """Lifecycle of the contract behind a publication."""
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"
    EXPIRED = "EXPIRED"


# A record in one of these states may be re-drafted.
INACTIVE_STATES = frozenset({
    LifecycleState.CANCELLED,
    LifecycleState.CLOSED,
    LifecycleState.EXPIRED,
})
ACTIVE_STATES = frozenset({LifecycleState.DRAFT, LifecycleState.APPROVED})


@dataclass
class StatusRecord:
    """Current lifecycle state of one entity, keyed by entity_id."""
    entity_id: str
    correlation_id: str
    lifecycle_state: LifecycleState
    created_at: str
    modified_at: str
    resume_token: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_image(self) -> dict[str, Any]:
        """Flat, JSON-native image as carried on the change feed."""
        return {
            "entity_id": self.entity_id,
            "correlation_id": self.correlation_id,
            "lifecycle_state": self.lifecycle_state.value,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
            "resume_token": self.resume_token,
            "attributes": dict(self.attributes),
        }


class RejectReason(str, enum.Enum):
    """Why a conditional write was refused."""
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    NOT_IN_DRAFT = "NOT_IN_DRAFT"
    NOT_FOUND = "NOT_FOUND"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"
    NOT_ACTIVE = "NOT_ACTIVE"


@dataclass
class WriteResult:
    """
    Outcome of a conditional store write.

    Business-rule violations come back as ``ok=False`` with a reason;
    they are never raised.
    """
    ok: bool
    record: StatusRecord | None = None
    reason: RejectReason | None = None

    @staticmethod
    def accepted(record: StatusRecord | None) -> WriteResult:
        return WriteResult(ok=True, record=record)

    @staticmethod
    def rejected(reason: RejectReason, record: StatusRecord | None = None) -> WriteResult:
        return WriteResult(ok=False, record=record, reason=reason)


# ─── Change Feed ─────────────────────────────────────────────────────

class ChangeEventName(str, enum.Enum):
    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


@dataclass
class ChangeRecord:
    """
    One committed mutation of the status store.

    Images are plain dicts so a record can be dead-lettered unmodified.
    Either image may be None (INSERT has no old image, REMOVE no new one).
    """
    sequence: int
    event_id: str
    event_name: ChangeEventName
    entity_id: str
    shard: int
    old_image: dict[str, Any] | None
    new_image: dict[str, Any] | None
    committed_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_id": self.event_id,
            "event_name": self.event_name.value,
            "entity_id": self.entity_id,
            "shard": self.shard,
            "old_image": self.old_image,
            "new_image": self.new_image,
            "committed_at": self.committed_at,
        }


@dataclass
class BatchItemFailure:
    """A single failed record inside a consumed batch."""
    index: int
    item_identifier: str
    error: str = ""


@dataclass
class BatchResponse:
    """
    Per-item outcome of a batch handler. Only the listed failures are
    redelivered by the feed subscription.
    """
    batch_item_failures: list[BatchItemFailure] = field(default_factory=list)

    @property
    def failed_indices(self) -> list[int]:
        return [f.index for f in self.batch_item_failures]


# ─── Workflow Instances ──────────────────────────────────────────────

class InstanceStatus(str, enum.Enum):
    """Lifecycle states for an orchestrator instance."""
    RUNNING = "running"
    SUSPENDED = "suspended"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    ERRORED = "errored"


TERMINAL_INSTANCE_STATES = frozenset({
    InstanceStatus.SUCCEEDED,
    InstanceStatus.FAILED,
    InstanceStatus.REJECTED,
    InstanceStatus.ERRORED,
})


@dataclass
class InstanceState:
    """Registry entry for one run of the approval workflow."""
    instance_id: str
    workflow_name: str
    entity_id: str
    trigger_id: str
    status: InstanceStatus
    created_at: float
    updated_at: float
    current_state: str = ""
    step_count: int = 0
    resume_token: str = ""
    result: dict[str, Any] | None = None
    error: str | None = None

    @staticmethod
    def create(workflow_name: str, entity_id: str, trigger_id: str) -> InstanceState:
        now = time.time()
        return InstanceState(
            instance_id=f"wf_{uuid.uuid4().hex[:12]}",
            workflow_name=workflow_name,
            entity_id=entity_id,
            trigger_id=trigger_id,
            status=InstanceStatus.RUNNING,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Suspension:
    """
    Everything needed to continue a suspended instance: the state it
    waits in, the accumulated step context and the resume token.
    """
    instance_id: str
    suspended_at_state: str
    context: dict[str, Any]
    resume_token: str
    suspended_at: float

    @staticmethod
    def create(instance_id: str, state: str, context: dict[str, Any]) -> Suspension:
        return Suspension(
            instance_id=instance_id,
            suspended_at_state=state,
            context=context,
            resume_token=f"tok_{uuid.uuid4().hex}",
            suspended_at=time.time(),
        )


# ─── Errors ──────────────────────────────────────────────────────────

class TransientStoreError(Exception):
    """The status store is locked or unreachable. Callers retry with backoff."""


class StaleResumeToken(LookupError):
    """The token names no suspended instance (unknown, used, or completed)."""

    def __init__(self, token: str, detail: str = ""):
        self.token = token
        super().__init__(f"Stale or unknown resume token {token!r}{': ' + detail if detail else ''}")


class FeedDeliveryFailure(Exception):
    """Publishing to the event bus or calling ResumeWorkflow failed."""


class DefinitionError(ValueError):
    """The declarative workflow definition is malformed."""


# Dead-letter reason codes
class DeadLetterReason:
    RELAY_PUBLISH_EXHAUSTED = "RELAY_PUBLISH_EXHAUSTED"
    FEED_REDELIVERY_EXHAUSTED = "FEED_REDELIVERY_EXHAUSTED"
    WORKFLOW_TRIGGER_EXPIRED = "WORKFLOW_TRIGGER_EXPIRED"
    TRIGGER_RETRIES_EXHAUSTED = "TRIGGER_RETRIES_EXHAUSTED"
    ROUTING_FAILED = "ROUTING_FAILED"
    INVALID_EVENT = "INVALID_EVENT"


class WorkflowTriggerExpired(Exception):
    """The starting event aged out before it reached the orchestrator."""

    def __init__(self, event_id: str, age_seconds: float, max_age_seconds: float):
        self.event_id = event_id
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(
            f"Trigger {event_id} is {age_seconds:.0f}s old "
            f"(max {max_age_seconds:.0f}s); no workflow instance created"
        )
