"""
Publication Approvals — Change Relay

Republishes lifecycle transitions from the change feed as StatusChanged
domain events. Only states on the relay's allow-list are published;
deletions and modifications that leave the lifecycle state and
correlation id unchanged (resume token writes) are skipped. A publish
that keeps failing is retried a fixed number of times and then the raw
change record is dead-lettered unmodified.

Delivery to downstream consumers is at-least-once. The envelope id is
derived from the change record id so consumers can de-duplicate.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from approvals.events import DeadLetter, DeadLetterSink, EventBus, EventEnvelope
from approvals.schemas import StatusChanged
from approvals.types import (
    BatchResponse,
    ChangeEventName,
    ChangeRecord,
    DeadLetterReason,
)
from infra.logging import fields
from infra.retry import RetriesExhausted, RetryPolicy, call_with_retry

logger = logging.getLogger("publication_approvals.relay")


class RelayOutcome:
    PUBLISHED = "published"
    FILTERED = "filtered"
    SKIPPED_REMOVE = "skipped_remove"
    UNCHANGED = "unchanged"
    DEAD_LETTERED = "dead_lettered"


class ChangeRelay:
    """Feed consumer that turns status changes into domain events."""

    name = "change-relay"

    def __init__(
        self,
        bus: EventBus,
        dead_letters: DeadLetterSink,
        allowed_states: tuple[str, ...] | list[str] = ("DRAFT", "APPROVED"),
        source: str = "publication.approvals",
        policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.bus = bus
        self.dead_letters = dead_letters
        self.allowed_states = frozenset(allowed_states)
        self.source = source
        self.policy = policy or RetryPolicy(max_attempts=3)
        self.sleep_fn = sleep_fn

    def handle_batch(self, records: list[ChangeRecord]) -> BatchResponse:
        # Failed publishes are dead-lettered here, so nothing is redelivered.
        for record in records:
            self.handle_record(record)
        return BatchResponse()

    def handle_record(self, record: ChangeRecord) -> str:
        if record.event_name == ChangeEventName.REMOVE:
            logger.debug("Skipping REMOVE for %s", record.entity_id)
            return RelayOutcome.SKIPPED_REMOVE

        image = record.new_image or {}
        state = image["lifecycle_state"]
        if state not in self.allowed_states:
            logger.debug("State %s for %s not relayed", state, record.entity_id)
            return RelayOutcome.FILTERED

        old = record.old_image
        if (record.event_name == ChangeEventName.MODIFY and old
                and old.get("lifecycle_state") == state
                and old.get("correlation_id") == image.get("correlation_id")):
            logger.debug("No lifecycle transition for %s", record.entity_id)
            return RelayOutcome.UNCHANGED

        event = StatusChanged(
            entity_id=image["entity_id"],
            correlation_id=image["correlation_id"],
            lifecycle_state=state,
            modified_at=image["modified_at"],
        )
        envelope = EventEnvelope.wrap(event, source=self.source, event_id=f"evt_{record.event_id}")

        try:
            call_with_retry(
                lambda: self.bus.publish(envelope),
                self.policy,
                operation=f"publish StatusChanged({record.entity_id})",
                sleep_fn=self.sleep_fn,
            )
        except RetriesExhausted as e:
            self.dead_letters.send(DeadLetter.create(
                source=self.name,
                reason=DeadLetterReason.RELAY_PUBLISH_EXHAUSTED,
                payload=record.to_dict(),
                error=str(e.last_error),
                metadata={"attempts": e.attempts},
            ))
            return RelayOutcome.DEAD_LETTERED

        logger.info(
            "Relayed %s for %s", state, record.entity_id,
            extra=fields(entity_id=record.entity_id, lifecycle_state=state,
                         event_id=envelope.event_id, sequence=record.sequence),
        )
        return RelayOutcome.PUBLISHED
