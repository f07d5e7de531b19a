"""
Publication Approvals — Workflow Trigger Dispatch Tests

Tests:
  - Valid ApprovalRequested starts an instance
  - Redelivered trigger returns the same instance
  - Aged-out trigger → WORKFLOW_TRIGGER_EXPIRED, no instance
  - Attempts exhausted → TRIGGER_RETRIES_EXHAUSTED, raw envelope kept
  - Age limit wins over remaining attempts
  - Malformed / wrong-type events → INVALID_EVENT
"""

import os
import sys
import time
import unittest
from unittest.mock import MagicMock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from approvals.db import SQLiteBackend
from approvals.definition import load_definition
from approvals.events import EventEnvelope, InMemoryDeadLetterSink, InMemoryEventBus
from approvals.inspection import StaticContentInspector
from approvals.orchestrator import InstanceStore, Orchestrator
from approvals.schemas import ApprovalRequested, StatusChanged
from approvals.steps import default_registry
from approvals.store import StatusStore
from approvals.trigger import TriggerDispatcher
from approvals.types import DeadLetterReason, InstanceStatus

WORKFLOW_PATH = os.path.join(_base, "approvals", "workflows", "publication_approval.yaml")


class FakeClock:
    def __init__(self, start=None):
        self.now = start if start is not None else time.time()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def request(entity_id="p1", payload=None, **kwargs):
    return EventEnvelope.wrap(
        ApprovalRequested(entity_id=entity_id, payload=payload or {"description": "Nice"}),
        source="properties.service", **kwargs,
    )


class TriggerTestCase(unittest.TestCase):

    def setUp(self):
        self.db = SQLiteBackend(":memory:")
        self.store = StatusStore(self.db, shard_count=1)
        self.instances = InstanceStore(self.db)
        self.bus = InMemoryEventBus()
        self.dead_letters = InMemoryDeadLetterSink()
        self.orch = Orchestrator(
            definition=load_definition(WORKFLOW_PATH),
            steps=default_registry(),
            store=self.store,
            instances=self.instances,
            bus=self.bus,
            inspector=StaticContentInspector(),
        )
        self.clock = FakeClock()
        self.sleeps = []

    def tearDown(self):
        self.db.close()

    def dispatcher(self, orchestrator=None, **kwargs):
        kwargs.setdefault("sleep_fn", self.sleeps.append)
        kwargs.setdefault("clock", self.clock)
        return TriggerDispatcher(orchestrator or self.orch, self.dead_letters, **kwargs)


# ═══════════════════════════════════════════════════════════════════
# 1. Delivery
# ═══════════════════════════════════════════════════════════════════

class TestDelivery(TriggerTestCase):

    def test_starts_instance(self):
        self.store.create_record("p1")
        env = request()
        outcome = self.dispatcher().deliver(env)
        self.assertTrue(outcome.delivered)
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(outcome.instance.status, InstanceStatus.SUSPENDED)
        self.assertEqual(outcome.instance.trigger_id, env.event_id)

    def test_redelivery_returns_same_instance(self):
        self.store.create_record("p1")
        env = request()
        dispatcher = self.dispatcher()
        first = dispatcher.deliver(env)
        second = dispatcher.deliver(env)
        self.assertEqual(first.instance.instance_id, second.instance.instance_id)
        self.assertEqual(len(self.instances.list_instances()), 1)

    def test_as_bus_subscriber(self):
        self.store.create_record("p1")
        self.bus.subscribe(self.dispatcher(), detail_types=["ApprovalRequested"])
        env = request()
        self.bus.publish(env)
        self.assertIsNotNone(self.instances.get_instance_by_trigger(env.event_id))

    def test_missing_entity_still_delivered(self):
        outcome = self.dispatcher().deliver(request("ghost"))
        self.assertTrue(outcome.delivered)
        self.assertEqual(outcome.instance.status, InstanceStatus.REJECTED)


# ═══════════════════════════════════════════════════════════════════
# 2. Retry, Age Limit and Dead-Lettering
# ═══════════════════════════════════════════════════════════════════

class TestRetryAndExpiry(TriggerTestCase):

    def test_transient_failures_then_success(self):
        orch = MagicMock()
        instance = MagicMock(instance_id="wf_1")
        orch.start.side_effect = [ConnectionError("down"), ConnectionError("down"), instance]
        outcome = self.dispatcher(orch).deliver(request())
        self.assertTrue(outcome.delivered)
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(len(self.sleeps), 2)

    def test_retries_exhausted(self):
        orch = MagicMock()
        orch.start.side_effect = ConnectionError("orchestrator unavailable")
        env = request()
        outcome = self.dispatcher(orch, retry_attempts=5).deliver(env)

        self.assertFalse(outcome.delivered)
        self.assertEqual(outcome.dead_letter_reason, DeadLetterReason.TRIGGER_RETRIES_EXHAUSTED)
        self.assertEqual(orch.start.call_count, 6)
        (letter,) = self.dead_letters.list()
        self.assertEqual(letter.source, "workflow-trigger")
        self.assertEqual(letter.payload, env.to_dict())
        self.assertEqual(letter.metadata["attempts"], 6)

    def test_expired_before_first_attempt(self):
        self.store.create_record("p1")
        env = request()
        env.time = self.clock.now - 1000
        outcome = self.dispatcher(max_event_age_seconds=900).deliver(env)

        self.assertFalse(outcome.delivered)
        self.assertEqual(outcome.dead_letter_reason, DeadLetterReason.WORKFLOW_TRIGGER_EXPIRED)
        self.assertEqual(self.instances.list_instances(), [])
        (letter,) = self.dead_letters.list(reason=DeadLetterReason.WORKFLOW_TRIGGER_EXPIRED)
        self.assertEqual(letter.payload["event_id"], env.event_id)

    def test_age_limit_stops_retries(self):
        orch = MagicMock()
        orch.start.side_effect = ConnectionError("down")
        env = request()
        env.time = self.clock.now
        dispatcher = self.dispatcher(
            orch,
            retry_attempts=5,
            max_event_age_seconds=900,
            backoff_base=2000,
            backoff_max=10_000,
            sleep_fn=self.clock.advance,
        )
        outcome = dispatcher.deliver(env)
        self.assertEqual(outcome.dead_letter_reason, DeadLetterReason.WORKFLOW_TRIGGER_EXPIRED)
        self.assertEqual(orch.start.call_count, 1)


# ═══════════════════════════════════════════════════════════════════
# 3. Invalid Events
# ═══════════════════════════════════════════════════════════════════

class TestInvalidEvents(TriggerTestCase):

    def test_wrong_event_type(self):
        env = EventEnvelope.wrap(
            StatusChanged(entity_id="p1", correlation_id="c", lifecycle_state="DRAFT",
                          modified_at="2024-01-01T00:00:00+00:00"),
            source="publication.approvals",
        )
        outcome = self.dispatcher().deliver(env)
        self.assertEqual(outcome.dead_letter_reason, DeadLetterReason.INVALID_EVENT)

    def test_malformed_detail(self):
        env = EventEnvelope("evt_bad", "x", "ApprovalRequested", time.time(), {"payload": {}})
        outcome = self.dispatcher().deliver(env)
        self.assertEqual(outcome.dead_letter_reason, DeadLetterReason.INVALID_EVENT)
        self.assertEqual(self.instances.list_instances(), [])

    def test_unknown_detail_type(self):
        env = EventEnvelope("evt_bad", "x", "SomethingElse", time.time(), {})
        outcome = self.dispatcher().deliver(env)
        self.assertEqual(outcome.dead_letter_reason, DeadLetterReason.INVALID_EVENT)


if __name__ == "__main__":
    unittest.main()
