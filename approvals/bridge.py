"""
Publication Approvals — Resumption Bridge

Watches the change feed for records that are APPROVED while carrying a
resume token and delivers the resume signal to the waiting workflow
instance.

Images are merged old-then-new before inspection, so a token attached by
an earlier write is still seen when a later write does not repeat it.
Records are processed independently: one failed resume never blocks the
rest of the batch, and only the failed indices are reported back for
redelivery.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from approvals.types import (
    BatchItemFailure,
    BatchResponse,
    ChangeEventName,
    ChangeRecord,
    LifecycleState,
    StaleResumeToken,
)
from infra.logging import fields, log_context

logger = logging.getLogger("publication_approvals.bridge")

ResumeFn = Callable[[str, dict[str, Any]], Any]


def merge_images(old: dict[str, Any] | None, new: dict[str, Any] | None) -> dict[str, Any]:
    """Field-wise merge preferring the new image."""
    return {**(old or {}), **(new or {})}


class BridgeOutcome:
    RESUMED = "resumed"
    NO_TOKEN = "no_token"
    NOT_APPROVED = "not_approved"
    SKIPPED_REMOVE = "skipped_remove"


class ResumptionBridge:
    """Feed consumer that resumes suspended workflow instances."""

    name = "resumption-bridge"

    def __init__(self, resume_workflow: ResumeFn):
        self.resume_workflow = resume_workflow

    def handle_batch(self, records: list[ChangeRecord]) -> BatchResponse:
        response = BatchResponse()
        for i, record in enumerate(records):
            try:
                self.handle_record(record)
            except StaleResumeToken as e:
                logger.warning(
                    "Resume rejected for %s: %s", record.entity_id, e,
                    extra=fields(sequence=record.sequence),
                )
                response.batch_item_failures.append(
                    BatchItemFailure(i, self._identifier(record, i), str(e))
                )
            except Exception as e:
                logger.exception("Resume failed for %s", record.entity_id)
                response.batch_item_failures.append(
                    BatchItemFailure(i, self._identifier(record, i), f"{type(e).__name__}: {e}")
                )
        return response

    def handle_record(self, record: ChangeRecord) -> str:
        with log_context(entity_id=record.entity_id, change_event_id=record.event_id):
            return self._handle(record)

    def _handle(self, record: ChangeRecord) -> str:
        if record.event_name == ChangeEventName.REMOVE:
            return BridgeOutcome.SKIPPED_REMOVE

        merged = merge_images(record.old_image, record.new_image)
        token = merged.get("resume_token")
        if not token:
            return BridgeOutcome.NO_TOKEN

        state = merged.get("lifecycle_state")
        if state != LifecycleState.APPROVED.value:
            logger.info(
                "Record %s is %s with a token attached; instance stays suspended",
                record.entity_id, state,
            )
            return BridgeOutcome.NOT_APPROVED

        payload = {
            "entity_id": merged.get("entity_id", record.entity_id),
            "correlation_id": merged.get("correlation_id"),
            "lifecycle_state": state,
            "modified_at": merged.get("modified_at"),
            "change_event_id": record.event_id,
        }
        self.resume_workflow(token, payload)
        logger.info(
            "Resumed workflow for %s", record.entity_id,
            extra=fields(entity_id=record.entity_id, sequence=record.sequence),
        )
        return BridgeOutcome.RESUMED

    @staticmethod
    def _identifier(record: ChangeRecord, index: int) -> str:
        return record.entity_id or f"Index: {index}"
