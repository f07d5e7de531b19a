"""
Publication Approvals — Workflow Trigger Dispatch

Delivers ApprovalRequested events to the orchestrator. A failed
delivery is retried with exponential backoff, but never past the
event's maximum age; an event that ages out or exhausts its attempts
is dead-lettered so the missing workflow instance is operator-visible.

Delivery is keyed on the envelope's event_id, so redelivering an event
that already started an instance returns that instance.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from pydantic import ValidationError

from approvals.events import DeadLetter, DeadLetterSink, EventEnvelope
from approvals.orchestrator import Orchestrator
from approvals.schemas import ApprovalRequested, unmarshal_event
from approvals.types import DeadLetterReason, InstanceState, WorkflowTriggerExpired
from infra.logging import fields
from infra.retry import RetriesExhausted, RetryPolicy, call_with_retry

logger = logging.getLogger("publication_approvals.trigger")


@dataclass
class TriggerOutcome:
    event_id: str
    delivered: bool
    attempts: int = 0
    instance: InstanceState | None = None
    dead_letter_reason: str = ""


class TriggerDispatcher:
    """Bus subscriber that starts orchestrator instances."""

    name = "workflow-trigger"

    def __init__(
        self,
        orchestrator: Orchestrator,
        dead_letters: DeadLetterSink,
        retry_attempts: int = 5,
        max_event_age_seconds: float = 900.0,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.dead_letters = dead_letters
        self.max_event_age_seconds = max_event_age_seconds
        self.policy = RetryPolicy(
            max_attempts=1 + retry_attempts,
            backoff_base=backoff_base,
            backoff_max=backoff_max,
        )
        self.sleep_fn = sleep_fn
        self.clock = clock

    def __call__(self, envelope: EventEnvelope) -> None:
        self.deliver(envelope)

    def deliver(self, envelope: EventEnvelope) -> TriggerOutcome:
        try:
            event = unmarshal_event(envelope.detail_type, envelope.detail)
        except (KeyError, ValidationError) as e:
            return self._dead_letter(envelope, DeadLetterReason.INVALID_EVENT, str(e), attempts=0)
        if not isinstance(event, ApprovalRequested):
            return self._dead_letter(
                envelope, DeadLetterReason.INVALID_EVENT,
                f"{envelope.detail_type} does not start a workflow", attempts=0,
            )

        def check_age(attempt: int):
            age = self.clock() - envelope.time
            if age > self.max_event_age_seconds:
                raise WorkflowTriggerExpired(envelope.event_id, age, self.max_event_age_seconds)

        try:
            result = call_with_retry(
                lambda: self.orchestrator.start(
                    event.entity_id, event.payload, trigger_id=envelope.event_id,
                ),
                self.policy,
                operation=f"start workflow({event.entity_id})",
                sleep_fn=self.sleep_fn,
                before_attempt=check_age,
            )
        except WorkflowTriggerExpired as e:
            return self._dead_letter(envelope, DeadLetterReason.WORKFLOW_TRIGGER_EXPIRED, str(e))
        except RetriesExhausted as e:
            return self._dead_letter(
                envelope, DeadLetterReason.TRIGGER_RETRIES_EXHAUSTED,
                str(e.last_error), attempts=e.attempts,
            )

        instance = result.value
        logger.info(
            "Trigger %s started %s for %s", envelope.event_id, instance.instance_id, event.entity_id,
            extra=fields(entity_id=event.entity_id, instance_id=instance.instance_id,
                         attempts=result.attempts),
        )
        return TriggerOutcome(
            event_id=envelope.event_id, delivered=True,
            attempts=result.attempts, instance=instance,
        )

    def _dead_letter(self, envelope: EventEnvelope, reason: str, error: str, attempts: int = 0) -> TriggerOutcome:
        self.dead_letters.send(DeadLetter.create(
            source=self.name,
            reason=reason,
            payload=envelope.to_dict(),
            error=error,
            metadata={"attempts": attempts},
        ))
        return TriggerOutcome(
            event_id=envelope.event_id, delivered=False,
            attempts=attempts, dead_letter_reason=reason,
        )
