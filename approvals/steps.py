"""
Publication Approvals — Step Registry

Named step implementations the workflow definition refers to.

A step is a callable taking a StepContext and returning a dict that is
merged into the instance's context. Steps raise StepError when they
cannot complete; the orchestrator ends the instance as errored.
ResumeTokenConflict marks an entity another instance is already
waiting on; a wait_for_resume state may route it through on_conflict.

Usage:
    registry = default_registry()
    registry.register("my_step", fn, description="...")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from approvals.inspection import ContentInspector, evaluate_content
from approvals.store import StatusStore
from approvals.types import RejectReason


class StepError(RuntimeError):
    """A step could not complete."""


class ResumeTokenConflict(StepError):
    """The entity already carries the token of another waiting instance."""

    def __init__(self, entity_id: str, token: str | None):
        super().__init__(f"{entity_id} is already awaiting approval under another instance")
        self.entity_id = entity_id
        self.token = token


@dataclass
class StepContext:
    """What a step sees: the instance, its accumulated data and services."""
    instance_id: str
    entity_id: str
    data: dict[str, Any]
    store: StatusStore
    inspector: ContentInspector | None = None
    resume_token: str | None = None


StepFn = Callable[[StepContext], dict[str, Any]]


@dataclass
class StepSpec:
    name: str
    fn: StepFn
    description: str = ""


class StepRegistry:
    def __init__(self):
        self._steps: dict[str, StepSpec] = {}

    def register(self, name: str, fn: StepFn, description: str = ""):
        self._steps[name] = StepSpec(name=name, fn=fn, description=description)

    def get(self, name: str) -> StepSpec | None:
        return self._steps.get(name)

    def names(self) -> set[str]:
        return set(self._steps)

    def run(self, name: str, ctx: StepContext) -> dict[str, Any]:
        entry = self._steps.get(name)
        if entry is None:
            raise StepError(f"Step {name!r} not registered")
        return entry.fn(ctx) or {}


# ─── Built-in Steps ──────────────────────────────────────────────────

def check_entity_exists(ctx: StepContext) -> dict[str, Any]:
    record = ctx.store.get_record(ctx.entity_id)
    if record is None:
        return {"entity_exists": False}
    return {
        "entity_exists": True,
        "lifecycle_state": record.lifecycle_state.value,
        "correlation_id": record.correlation_id,
    }


def attach_resume_token(ctx: StepContext) -> dict[str, Any]:
    if not ctx.resume_token:
        raise StepError("attach_resume_token needs a resume token")
    result = ctx.store.attach_resume_token(ctx.entity_id, ctx.resume_token)
    if result.reason == RejectReason.TOKEN_MISMATCH:
        raise ResumeTokenConflict(ctx.entity_id, result.record.resume_token if result.record else None)
    if not result.ok:
        raise StepError(
            f"Cannot attach resume token to {ctx.entity_id}: {result.reason.value}"
        )
    return {"token_attached": True}


def inspect_content(ctx: StepContext) -> dict[str, Any]:
    if ctx.inspector is None:
        raise StepError("inspect_content needs a content inspector")
    payload = ctx.data.get("payload") or {}
    description = str(payload.get("description", ""))
    images = payload.get("images") or []

    sentiment = ctx.inspector.detect_sentiment(description) if description else "NEUTRAL"
    moderation = {str(ref): ctx.inspector.moderate_image(str(ref)) for ref in images}
    return {"content_sentiment": sentiment, "image_moderation": moderation}


def validate_content_integrity(ctx: StepContext) -> dict[str, Any]:
    return {
        "validation_result": evaluate_content(
            ctx.data.get("content_sentiment", ""),
            ctx.data.get("image_moderation") or {},
        )
    }


def default_registry() -> StepRegistry:
    registry = StepRegistry()
    registry.register("check_entity_exists", check_entity_exists,
                      "Look up the entity's status record")
    registry.register("attach_resume_token", attach_resume_token,
                      "Write the instance's resume token to the status record")
    registry.register("inspect_content", inspect_content,
                      "Text sentiment and image moderation for the listing")
    registry.register("validate_content_integrity", validate_content_integrity,
                      "PASS when sentiment is positive and no image is flagged")
    return registry
