"""
Publication Approvals — Cross-Service Routing Tests
"""

import json
import os
import sys
import unittest

import httpx

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from approvals.events import EventEnvelope, InMemoryDeadLetterSink, InMemoryEventBus, SQLiteEventBus
from approvals.inspection import StaticContentInspector
from approvals.routing import (
    BusEventTarget,
    EventRouter,
    HttpEventTarget,
    RoutingRule,
    rule_from_config,
)
from approvals.runtime import ApprovalRuntime
from approvals.schemas import EvaluationCompleted, StatusChanged
from approvals.types import DeadLetterReason, FeedDeliveryFailure
from infra.config import ApprovalsConfig
from infra.retry import RetryPolicy


def completed(source="publication.approvals"):
    return EventEnvelope.wrap(
        EvaluationCompleted(entity_id="p1", result="PASS", instance_id="wf_1"), source=source,
    )


def status_changed():
    return EventEnvelope.wrap(
        StatusChanged(entity_id="p1", correlation_id="c", lifecycle_state="APPROVED",
                      modified_at="2024-01-01T00:00:00+00:00"),
        source="publication.approvals",
    )


def no_sleep(seconds):
    pass


class RoutingTestCase(unittest.TestCase):

    def setUp(self):
        self.bus = InMemoryEventBus("approvals-bus")
        self.remote = InMemoryEventBus("properties-bus")
        self.dead_letters = InMemoryDeadLetterSink()
        self.router = EventRouter(
            self.bus, self.dead_letters,
            policy=RetryPolicy(max_attempts=3), sleep_fn=no_sleep,
        )
        self.router.attach()


class TestBusRouting(RoutingTestCase):

    def test_forwards_matching_events(self):
        self.router.add_rule(RoutingRule(
            "to-properties", BusEventTarget(self.remote),
            source="publication.approvals", detail_types=["EvaluationCompleted"],
        ))
        env = completed()
        self.bus.publish(env)
        self.bus.publish(status_changed())

        forwarded = self.remote.list_events()
        self.assertEqual([e.event_id for e in forwarded], [env.event_id])
        self.assertEqual(forwarded[0].detail, env.detail)

    def test_source_filter(self):
        self.router.add_rule(RoutingRule(
            "to-properties", BusEventTarget(self.remote), source="publication.approvals",
        ))
        self.bus.publish(completed(source="someone.else"))
        self.assertEqual(self.remote.list_events(), [])

    def test_disabled_rule(self):
        self.router.add_rule(RoutingRule("off", BusEventTarget(self.remote), enabled=False))
        self.bus.publish(completed())
        self.assertEqual(self.remote.list_events(), [])

    def test_history_and_describe(self):
        self.router.add_rule(RoutingRule("all", BusEventTarget(self.remote)))
        env = completed()
        self.bus.publish(env)
        self.assertEqual(self.router.history[-1].status, "delivered")
        self.assertEqual(self.router.describe()[0]["target"], "bus:properties-bus")


class TestHttpRouting(RoutingTestCase):

    def test_posts_envelope(self):
        seen = []

        def handler(req: httpx.Request) -> httpx.Response:
            seen.append(req)
            return httpx.Response(202, json={"status": "accepted"})

        target = HttpEventTarget(
            "https://properties.internal/", headers={"X-Api-Key": "k"},
            transport=httpx.MockTransport(handler),
        )
        env = completed()
        target.send(env)

        (req,) = seen
        self.assertEqual(req.method, "POST")
        self.assertEqual(req.url.path, "/v1/events")
        self.assertEqual(req.headers["X-Api-Key"], "k")
        self.assertEqual(json.loads(req.content)["event_id"], env.event_id)

    def test_http_error_status_raises(self):
        target = HttpEventTarget(
            "https://properties.internal",
            transport=httpx.MockTransport(lambda req: httpx.Response(503, text="busy")),
        )
        with self.assertRaises(FeedDeliveryFailure):
            target.send(completed())

    def test_connection_error_raises(self):
        def handler(req):
            raise httpx.ConnectError("refused", request=req)

        target = HttpEventTarget("https://properties.internal", transport=httpx.MockTransport(handler))
        with self.assertRaises(FeedDeliveryFailure):
            target.send(completed())

    def test_failed_route_dead_lettered(self):
        calls = []

        def handler(req):
            calls.append(req)
            return httpx.Response(500)

        self.router.add_rule(RoutingRule(
            "to-properties",
            HttpEventTarget("https://properties.internal", transport=httpx.MockTransport(handler)),
        ))
        env = completed()
        self.bus.publish(env)

        self.assertEqual(len(calls), 3)
        (letter,) = self.dead_letters.list(reason=DeadLetterReason.ROUTING_FAILED)
        self.assertEqual(letter.payload, env.to_dict())
        self.assertEqual(letter.metadata["rule"], "to-properties")
        self.assertEqual(self.router.history[-1].status, "dead_lettered")
        # The publisher is never failed by routing
        self.assertEqual(self.bus.delivery_errors, [])


class TestRulesFromConfig(unittest.TestCase):

    def bus_for(self, name):
        return InMemoryEventBus(name)

    def test_http_rule(self):
        rule = rule_from_config({
            "name": "to-properties",
            "source": "publication.approvals",
            "detail_types": "EvaluationCompleted",
            "target": {"type": "http", "url": "https://properties.internal/",
                       "headers": {"X-Api-Key": "k"}, "timeout_seconds": 3},
        }, self.bus_for)
        self.assertEqual(rule.name, "to-properties")
        self.assertEqual(rule.detail_types, ["EvaluationCompleted"])
        self.assertEqual(rule.target.describe(), "http:https://properties.internal")
        self.assertEqual(rule.target.headers, {"X-Api-Key": "k"})
        self.assertEqual(rule.target.timeout_seconds, 3.0)
        self.assertTrue(rule.enabled)

    def test_bus_rule(self):
        rule = rule_from_config(
            {"name": "mirror", "enabled": False, "target": {"type": "bus", "name": "audit-bus"}},
            self.bus_for,
        )
        self.assertEqual(rule.target.describe(), "bus:audit-bus")
        self.assertIsNone(rule.detail_types)
        self.assertFalse(rule.enabled)

    def test_invalid_rules(self):
        for spec in (
            {"target": {"type": "http", "url": "https://x"}},
            {"name": "r", "target": {"type": "http"}},
            {"name": "r", "target": {"type": "bus"}},
            {"name": "r", "target": {"type": "sqs", "url": "https://x"}},
        ):
            with self.subTest(spec=spec):
                with self.assertRaises(ValueError):
                    rule_from_config(spec, self.bus_for)


class TestRuntimeRouting(unittest.TestCase):

    def test_configured_rule_forwards_completions(self):
        config = ApprovalsConfig(db_path=":memory:", routing_rules=({
            "name": "to-properties",
            "detail_types": ["EvaluationCompleted"],
            "target": {"type": "bus", "name": "properties-bus"},
        },))
        rt = ApprovalRuntime(config, inspector=StaticContentInspector(), sleep_fn=no_sleep)
        try:
            self.assertEqual(rt.router.describe(), [{
                "name": "to-properties",
                "source": None,
                "detail_types": ["EvaluationCompleted"],
                "target": "bus:properties-bus",
                "enabled": True,
            }])
            rt.ingest.create("p1")
            rt.request_approval("p1", {"description": "Bright corner flat"})
            rt.ingest.approve("p1")
            rt.pump()

            remote = SQLiteEventBus(rt.db, name="properties-bus")
            (forwarded,) = remote.list_events()
            self.assertEqual(forwarded.detail_type, "EvaluationCompleted")
            self.assertEqual(forwarded.detail["entity_id"], "p1")
            self.assertEqual(
                forwarded.event_id, rt.bus.list_events("EvaluationCompleted")[0].event_id,
            )
        finally:
            rt.close()

    def test_rule_targeting_source_bus_rejected(self):
        config = ApprovalsConfig(db_path=":memory:", routing_rules=(
            {"name": "loop", "target": {"type": "bus", "name": "approvals-bus"}},
        ))
        with self.assertRaises(ValueError):
            ApprovalRuntime(config, sleep_fn=no_sleep)


if __name__ == "__main__":
    unittest.main()
