"""
Publication Approvals — Cross-Service Event Routing

Forwards domain events from this service's bus to buses owned by
other services. A rule matches on source and detail type; matching
envelopes are sent to the rule's target unchanged.

Targets:
  - BusEventTarget:  another in-process EventBus
  - HttpEventTarget: POST {url}/v1/events on a remote service

Usage:
    router = EventRouter(bus, dead_letters, rules=[
        RoutingRule("to-properties", source="publication.approvals",
                    detail_types=["EvaluationCompleted"],
                    target=HttpEventTarget("https://properties.internal")),
    ])
    router.attach()

Rules can also come from configuration (routing.rules); see
rule_from_config.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from approvals.events import DeadLetter, DeadLetterSink, EventBus, EventEnvelope
from approvals.types import DeadLetterReason, FeedDeliveryFailure
from infra.retry import RetriesExhausted, RetryPolicy, call_with_retry

logger = logging.getLogger("publication_approvals.routing")


class EventTarget(abc.ABC):

    @abc.abstractmethod
    def send(self, envelope: EventEnvelope) -> None:
        """Deliver an envelope. Raises FeedDeliveryFailure on failure."""
        ...

    def describe(self) -> str:
        return type(self).__name__


class BusEventTarget(EventTarget):
    def __init__(self, bus: EventBus):
        self.bus = bus

    def send(self, envelope: EventEnvelope) -> None:
        self.bus.publish(envelope)

    def describe(self) -> str:
        return f"bus:{self.bus.name}"


class HttpEventTarget(EventTarget):
    """POST the envelope as JSON to ``{url}/v1/events``."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def send(self, envelope: EventEnvelope) -> None:
        headers = {"Content-Type": "application/json", **self.headers}
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = client.post(f"{self.url}/v1/events", json=envelope.to_dict(), headers=headers)
        except httpx.HTTPError as e:
            raise FeedDeliveryFailure(f"POST {self.url}/v1/events failed: {e}") from e
        if resp.status_code >= 400:
            raise FeedDeliveryFailure(
                f"POST {self.url}/v1/events returned {resp.status_code}: {resp.text[:200]}"
            )

    def describe(self) -> str:
        return f"http:{self.url}"


@dataclass
class RoutingRule:
    name: str
    target: EventTarget
    source: str | None = None
    detail_types: list[str] | None = None
    enabled: bool = True

    def matches(self, envelope: EventEnvelope) -> bool:
        if not self.enabled:
            return False
        if self.source is not None and envelope.source != self.source:
            return False
        if self.detail_types and envelope.detail_type not in self.detail_types:
            return False
        return True


@dataclass
class RouteRecord:
    rule: str
    event_id: str
    status: str
    attempts: int = 0
    error: str = ""


class EventRouter:
    """Subscribes to a bus and forwards matching envelopes."""

    name = "event-router"

    def __init__(
        self,
        bus: EventBus,
        dead_letters: DeadLetterSink,
        rules: list[RoutingRule] | None = None,
        policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.bus = bus
        self.dead_letters = dead_letters
        self.rules: list[RoutingRule] = list(rules or [])
        self.policy = policy or RetryPolicy(max_attempts=3)
        self.sleep_fn = sleep_fn
        self.history: list[RouteRecord] = []

    def add_rule(self, rule: RoutingRule):
        self.rules.append(rule)

    def attach(self):
        self.bus.subscribe(self.route)

    def route(self, envelope: EventEnvelope) -> list[RouteRecord]:
        records = []
        for rule in self.rules:
            if not rule.matches(envelope):
                continue
            try:
                result = call_with_retry(
                    lambda: rule.target.send(envelope),
                    self.policy,
                    operation=f"route {envelope.detail_type} via {rule.name}",
                    sleep_fn=self.sleep_fn,
                )
                rec = RouteRecord(rule.name, envelope.event_id, "delivered", result.attempts)
                logger.debug("Routed %s to %s", envelope.event_id, rule.target.describe())
            except RetriesExhausted as e:
                self.dead_letters.send(DeadLetter.create(
                    source=self.name,
                    reason=DeadLetterReason.ROUTING_FAILED,
                    payload=envelope.to_dict(),
                    error=str(e.last_error),
                    metadata={"rule": rule.name, "target": rule.target.describe(),
                              "attempts": e.attempts},
                ))
                rec = RouteRecord(rule.name, envelope.event_id, "dead_lettered", e.attempts, str(e.last_error))
            records.append(rec)
        self.history.extend(records)
        return records

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "name": r.name,
                "source": r.source,
                "detail_types": r.detail_types,
                "target": r.target.describe(),
                "enabled": r.enabled,
            }
            for r in self.rules
        ]


# ═══════════════════════════════════════════════════════════════════
# Rules from Configuration
# ═══════════════════════════════════════════════════════════════════

def rule_from_config(spec: dict[str, Any], bus_for: Callable[[str], EventBus]) -> RoutingRule:
    """
    Build one rule from a routing.rules entry:

        name: to-properties
        source: publication.approvals         # optional
        detail_types: [EvaluationCompleted]   # optional, all types if absent
        enabled: true                         # optional
        target: {type: http, url: ..., headers: {...}, timeout_seconds: 10}
        target: {type: bus, name: properties-bus}

    bus_for resolves a bus target name to an EventBus. Raises ValueError
    for an incomplete entry or an unknown target type.
    """
    name = spec.get("name")
    if not name:
        raise ValueError(f"Routing rule has no name: {spec!r}")
    target_spec = spec.get("target") or {}
    kind = target_spec.get("type", "http")

    target: EventTarget
    if kind == "http":
        if not target_spec.get("url"):
            raise ValueError(f"Routing rule {name!r}: http target needs a url")
        target = HttpEventTarget(
            target_spec["url"],
            headers={str(k): str(v) for k, v in (target_spec.get("headers") or {}).items()},
            timeout_seconds=float(target_spec.get("timeout_seconds", 10.0)),
        )
    elif kind == "bus":
        if not target_spec.get("name"):
            raise ValueError(f"Routing rule {name!r}: bus target needs a name")
        target = BusEventTarget(bus_for(str(target_spec["name"])))
    else:
        raise ValueError(f"Routing rule {name!r}: unknown target type {kind!r}")

    detail_types = spec.get("detail_types")
    if isinstance(detail_types, str):
        detail_types = [detail_types]
    return RoutingRule(
        name=str(name),
        target=target,
        source=spec.get("source"),
        detail_types=[str(t) for t in detail_types] if detail_types else None,
        enabled=bool(spec.get("enabled", True)),
    )
