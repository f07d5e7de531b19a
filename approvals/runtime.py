"""
Publication Approvals — Runtime Wiring

Builds every component from one ApprovalsConfig and wires them
together over a single SQLite database:

    ingestion ─▶ StatusStore ─▶ change feed ─┬─▶ ChangeRelay ─▶ bus (StatusChanged)
                                             └─▶ ResumptionBridge ─▶ Orchestrator.resume_workflow
    bus (ApprovalRequested) ─▶ TriggerDispatcher ─▶ Orchestrator.start
    Orchestrator ─▶ bus (EvaluationCompleted) ─▶ EventRouter ─▶ other services

Usage:
    cfg = ApprovalsConfig.from_dict(load_config())
    with ApprovalRuntime(cfg) as rt:
        rt.ingest.create("p1", {"address": "..."})
        rt.request_approval("p1", {"description": "..."})
        rt.pump()
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from approvals.bridge import ResumptionBridge
from approvals.db import SQLiteBackend
from approvals.definition import load_definition
from approvals.events import (
    DeadLetterSink,
    EventBus,
    EventEnvelope,
    SQLiteDeadLetterSink,
    SQLiteEventBus,
)
from approvals.feed import ChangeFeed, FeedSubscription, FeedWorkerPool, PoolRound
from approvals.ingest import IngestionHandler
from approvals.inspection import ContentInspector, HttpContentInspector, StaticContentInspector
from approvals.orchestrator import InstanceStore, Orchestrator
from approvals.relay import ChangeRelay
from approvals.routing import EventRouter, rule_from_config
from approvals.schemas import ApprovalRequested
from approvals.steps import StepRegistry, default_registry
from approvals.store import StatusStore
from approvals.trigger import TriggerDispatcher
from infra.config import ApprovalsConfig
from infra.retry import RetryPolicy

logger = logging.getLogger("publication_approvals.runtime")


class ApprovalRuntime:
    """All components for one process, built once from config."""

    def __init__(
        self,
        config: ApprovalsConfig,
        inspector: ContentInspector | None = None,
        bus: EventBus | None = None,
        dead_letters: DeadLetterSink | None = None,
        steps: StepRegistry | None = None,
        dispatch_triggers: bool = True,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.db = SQLiteBackend(config.db_path)
        self.store = StatusStore(self.db, shard_count=config.shard_count)
        self.bus = bus or SQLiteEventBus(self.db, name=config.event_bus_name)
        self.dead_letters = dead_letters or SQLiteDeadLetterSink(self.db)

        if inspector is not None:
            self.inspector = inspector
        elif config.content_inspector_url:
            self.inspector = HttpContentInspector(config.content_inspector_url)
        else:
            self.inspector = StaticContentInspector()

        self.instances = InstanceStore(self.db)
        self.orchestrator = Orchestrator(
            definition=load_definition(config.workflow_definition),
            steps=steps or default_registry(),
            store=self.store,
            instances=self.instances,
            bus=self.bus,
            inspector=self.inspector,
            source=config.service_namespace,
            suspension_timeout_seconds=config.suspension_timeout_seconds,
        )

        self.relay = ChangeRelay(
            self.bus,
            self.dead_letters,
            allowed_states=config.relay_allowed_states,
            source=config.service_namespace,
            policy=RetryPolicy(
                max_attempts=config.relay_publish_attempts,
                backoff_base=config.backoff_base_seconds,
                backoff_max=config.backoff_max_seconds,
            ),
            sleep_fn=sleep_fn,
        )
        self.bridge = ResumptionBridge(self.orchestrator.resume_workflow)

        self.feed = ChangeFeed(self.store)
        self.subscriptions = [
            FeedSubscription(
                ChangeRelay.name, self.relay, self.feed, self.dead_letters,
                batch_size=config.feed_batch_size,
                max_redeliveries=config.bridge_max_redeliveries,
            ),
            FeedSubscription(
                ResumptionBridge.name, self.bridge, self.feed, self.dead_letters,
                batch_size=config.feed_batch_size,
                max_redeliveries=config.bridge_max_redeliveries,
            ),
        ]
        self.pool = FeedWorkerPool(
            self.subscriptions,
            shard_count=config.shard_count,
            max_in_flight=config.max_in_flight,
            poll_interval=config.poll_interval_seconds,
        )

        self.dispatcher = TriggerDispatcher(
            self.orchestrator,
            self.dead_letters,
            retry_attempts=config.trigger_retry_attempts,
            max_event_age_seconds=config.trigger_max_event_age_seconds,
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
            sleep_fn=sleep_fn,
            clock=clock,
        )
        if dispatch_triggers:
            self.bus.subscribe(self.dispatcher, detail_types=[ApprovalRequested.DETAIL_TYPE])

        self.router = EventRouter(self.bus, self.dead_letters, sleep_fn=sleep_fn)
        for spec in config.routing_rules:
            self.router.add_rule(rule_from_config(spec, self._routing_bus))
        self.router.attach()

        self.ingest = IngestionHandler(self.store)
        logger.info(
            "Runtime ready: db=%s shards=%d workflow=%s",
            config.db_path, config.shard_count, self.orchestrator.definition.name,
        )

    def _routing_bus(self, name: str) -> EventBus:
        if name == self.bus.name:
            raise ValueError(f"Routing rule cannot target the source bus {name!r}")
        return SQLiteEventBus(self.db, name=name)

    # ─── Operations ──────────────────────────────────────────────────

    def request_approval(self, entity_id: str, payload: dict[str, Any] | None = None) -> EventEnvelope:
        """Publish ApprovalRequested; the trigger dispatcher starts the instance."""
        envelope = EventEnvelope.wrap(
            ApprovalRequested(entity_id=entity_id, payload=payload or {}),
            source=self.config.service_namespace,
        )
        self.bus.publish(envelope)
        return envelope

    def pump(self, max_rounds: int = 50) -> PoolRound:
        """Drain the change feed for every consumer."""
        return self.pool.drain(max_rounds=max_rounds)

    def run_feed_forever(self, stop: threading.Event) -> None:
        self.pool.run_forever(stop)

    def sweep(self) -> list[str]:
        return self.orchestrator.expire_suspended()

    def stats(self) -> dict[str, Any]:
        return {
            "store": self.store.stats(),
            "orchestrator": self.orchestrator.stats(),
            "feed": {
                sub.consumer: {
                    "cursors": {s: sub.cursor(s) for s in range(self.config.shard_count)},
                    "pending_redeliveries": len(sub.pending_redeliveries()),
                }
                for sub in self.subscriptions
            },
            "dead_letters": self.dead_letters.count(),
        }

    def close(self) -> None:
        self.pool.shutdown()
        self.db.close()

    def __enter__(self) -> ApprovalRuntime:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
