"""
Publication Approvals — Event Bus, Dead Letters, Schemas and Content
Inspection Tests
"""

import json
import os
import sys
import time
import unittest

import httpx
from pydantic import ValidationError

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from approvals.db import SQLiteBackend
from approvals.events import (
    DeadLetter,
    EventEnvelope,
    InMemoryDeadLetterSink,
    InMemoryEventBus,
    SQLiteDeadLetterSink,
    SQLiteEventBus,
)
from approvals.inspection import HttpContentInspector, StaticContentInspector, evaluate_content
from approvals.schemas import (
    ApprovalRequested,
    EvaluationCompleted,
    StatusChanged,
    unmarshal_event,
)


def requested(entity_id="p1"):
    return EventEnvelope.wrap(ApprovalRequested(entity_id=entity_id), source="test")


# ═══════════════════════════════════════════════════════════════════
# 1. Envelopes and Schemas
# ═══════════════════════════════════════════════════════════════════

class TestEnvelope(unittest.TestCase):

    def test_wrap(self):
        env = requested()
        self.assertTrue(env.event_id.startswith("evt_"))
        self.assertEqual(env.detail_type, "ApprovalRequested")
        self.assertEqual(env.detail, {"entity_id": "p1", "payload": {}})

    def test_explicit_event_id(self):
        env = EventEnvelope.wrap(ApprovalRequested(entity_id="p1"), source="s", event_id="evt_x")
        self.assertEqual(env.event_id, "evt_x")

    def test_dict_round_trip(self):
        env = requested()
        self.assertEqual(EventEnvelope.from_dict(env.to_dict()), env)

    def test_age(self):
        env = requested()
        self.assertAlmostEqual(env.age_seconds(now=env.time + 30), 30.0)


class TestSchemas(unittest.TestCase):

    def test_unmarshal(self):
        event = unmarshal_event("StatusChanged", {
            "entity_id": "p1", "correlation_id": "c",
            "lifecycle_state": "APPROVED", "modified_at": "2024-01-01",
        })
        self.assertIsInstance(event, StatusChanged)

    def test_unknown_type(self):
        with self.assertRaises(KeyError):
            unmarshal_event("Nope", {})

    def test_missing_field(self):
        with self.assertRaises(ValidationError):
            unmarshal_event("ApprovalRequested", {"payload": {}})

    def test_completion_result_is_pass_or_fail(self):
        with self.assertRaises(ValidationError):
            EvaluationCompleted(entity_id="p1", result="MAYBE")
        self.assertIsNone(EvaluationCompleted(entity_id="p1", result="PASS").reason)


# ═══════════════════════════════════════════════════════════════════
# 2. Event Bus
# ═══════════════════════════════════════════════════════════════════

class TestInMemoryBus(unittest.TestCase):

    def setUp(self):
        self.bus = InMemoryEventBus()

    def test_publish_and_list(self):
        env = requested()
        self.assertEqual(self.bus.publish(env), env.event_id)
        self.assertEqual(self.bus.list_events(), [env])
        self.assertEqual(self.bus.list_events("StatusChanged"), [])

    def test_subscriber_filter(self):
        got = []
        self.bus.subscribe(got.append, detail_types=["StatusChanged"])
        self.bus.publish(requested())
        self.assertEqual(got, [])

    def test_subscriber_failure_does_not_fail_publisher(self):
        got = []

        def broken(env):
            raise RuntimeError("subscriber down")

        self.bus.subscribe(broken)
        self.bus.subscribe(got.append)
        env = requested()
        self.bus.publish(env)

        self.assertEqual(got, [env])
        self.assertEqual(len(self.bus.delivery_errors), 1)
        self.assertEqual(self.bus.delivery_errors[0]["event_id"], env.event_id)


class TestSQLiteBus(unittest.TestCase):

    def setUp(self):
        self.db = SQLiteBackend(":memory:")
        self.bus = SQLiteEventBus(self.db, name="approvals-bus")

    def tearDown(self):
        self.db.close()

    def test_outbox_persists(self):
        env = requested()
        self.bus.publish(env)
        (stored,) = self.bus.list_events("ApprovalRequested")
        self.assertEqual(stored.event_id, env.event_id)
        self.assertEqual(stored.detail, env.detail)

    def test_duplicate_event_id_stored_once(self):
        env = requested()
        self.bus.publish(env)
        self.bus.publish(env)
        self.assertEqual(len(self.bus.list_events()), 1)

    def test_buses_isolated_by_name(self):
        other = SQLiteEventBus(self.db, name="other-bus")
        self.bus.publish(requested())
        self.assertEqual(other.list_events(), [])


# ═══════════════════════════════════════════════════════════════════
# 3. Dead Letters
# ═══════════════════════════════════════════════════════════════════

class DeadLetterSinkContract:
    """Shared checks for every DeadLetterSink implementation."""

    def make_sink(self):
        raise NotImplementedError

    def test_send_and_filter(self):
        sink = self.make_sink()
        sink.send(DeadLetter.create("change-relay", "RELAY_PUBLISH_EXHAUSTED", {"sequence": 1}, "down"))
        sink.send(DeadLetter.create("workflow-trigger", "WORKFLOW_TRIGGER_EXPIRED", {"event_id": "e"}))
        self.assertEqual(sink.count(), 2)
        (letter,) = sink.list(source="change-relay")
        self.assertEqual(letter.payload, {"sequence": 1})
        self.assertEqual(letter.error, "down")
        self.assertEqual(len(sink.list(reason="WORKFLOW_TRIGGER_EXPIRED")), 1)
        self.assertEqual(sink.list(source="change-relay", reason="WORKFLOW_TRIGGER_EXPIRED"), [])

    def test_to_dict(self):
        letter = DeadLetter.create("s", "r", {"k": "v"}, metadata={"attempts": 3})
        d = letter.to_dict()
        self.assertTrue(d["dead_letter_id"].startswith("dlq_"))
        self.assertEqual(d["metadata"], {"attempts": 3})


class TestInMemoryDeadLetters(DeadLetterSinkContract, unittest.TestCase):
    def make_sink(self):
        return InMemoryDeadLetterSink()


class TestSQLiteDeadLetters(DeadLetterSinkContract, unittest.TestCase):
    def make_sink(self):
        self.db = SQLiteBackend(":memory:")
        self.addCleanup(self.db.close)
        return SQLiteDeadLetterSink(self.db)


# ═══════════════════════════════════════════════════════════════════
# 4. Content Inspection
# ═══════════════════════════════════════════════════════════════════

class TestEvaluateContent(unittest.TestCase):

    def test_pass(self):
        self.assertEqual(evaluate_content("POSITIVE", {"a": [], "b": []}), "PASS")
        self.assertEqual(evaluate_content("POSITIVE", {}), "PASS")

    def test_non_positive_fails(self):
        for sentiment in ("NEGATIVE", "NEUTRAL", "MIXED", ""):
            self.assertEqual(evaluate_content(sentiment, {}), "FAIL")

    def test_flagged_image_fails(self):
        self.assertEqual(evaluate_content("POSITIVE", {"a": [], "b": ["Explicit"]}), "FAIL")


class TestStaticInspector(unittest.TestCase):

    def test_markers(self):
        inspector = StaticContentInspector(negative_markers=("Mould",))
        self.assertEqual(inspector.detect_sentiment("Sunny"), "POSITIVE")
        self.assertEqual(inspector.detect_sentiment("black mould in bathroom"), "NEGATIVE")

    def test_image_labels(self):
        inspector = StaticContentInspector(image_labels={"x": ["Violence"]})
        self.assertEqual(inspector.moderate_image("x"), ["Violence"])
        self.assertEqual(inspector.moderate_image("y"), [])
        self.assertEqual(inspector.calls, [("image", "x"), ("image", "y")])


class TestHttpInspector(unittest.TestCase):

    def make(self, handler, **kwargs):
        return HttpContentInspector(
            "https://moderation.internal", transport=httpx.MockTransport(handler), **kwargs,
        )

    def test_sentiment(self):
        seen = []

        def handler(req):
            seen.append(req)
            return httpx.Response(200, json={"sentiment": "positive"})

        inspector = self.make(handler, auth_token="secret")
        self.assertEqual(inspector.detect_sentiment("Lovely"), "POSITIVE")
        self.assertEqual(seen[0].url.path, "/v1/sentiment")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer secret")
        self.assertEqual(json.loads(seen[0].content), {"text": "Lovely"})

    def test_moderation(self):
        inspector = self.make(lambda req: httpx.Response(200, json={"labels": ["Violence"]}))
        self.assertEqual(inspector.moderate_image("s3://img/1.jpg"), ["Violence"])

    def test_server_error_raises(self):
        inspector = self.make(lambda req: httpx.Response(500))
        with self.assertRaises(httpx.HTTPStatusError):
            inspector.detect_sentiment("x")


if __name__ == "__main__":
    unittest.main()
