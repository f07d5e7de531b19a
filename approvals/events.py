"""
Publication Approvals — Event Bus and Dead-Letter Sink

Abstract interfaces for publishing domain events and parking messages
that exhausted their retry budget. Publishers call publish() / send();
subscribers and operators consume.

The interfaces are transport-agnostic:
  - InMemoryEventBus / InMemoryDeadLetterSink: dev/test, same process
  - SQLiteEventBus / SQLiteDeadLetterSink:     durable outbox tables in
                                               the status store database
"""

from __future__ import annotations

import abc
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from approvals.db import SQLiteBackend
from approvals.schemas import DomainEvent
from approvals.types import FeedDeliveryFailure

logger = logging.getLogger("publication_approvals.events")


# ─── Envelopes ───────────────────────────────────────────────────────

@dataclass
class EventEnvelope:
    """One domain event as carried on a bus."""
    event_id: str
    source: str
    detail_type: str
    time: float
    detail: dict[str, Any]

    @staticmethod
    def wrap(event: DomainEvent, source: str, event_id: str = "") -> EventEnvelope:
        return EventEnvelope(
            event_id=event_id or f"evt_{uuid.uuid4().hex[:16]}",
            source=source,
            detail_type=event.DETAIL_TYPE,
            time=time.time(),
            detail=event.to_detail(),
        )

    def age_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.time

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "source": self.source,
            "detail_type": self.detail_type,
            "time": self.time,
            "detail": self.detail,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> EventEnvelope:
        return EventEnvelope(
            event_id=d["event_id"],
            source=d["source"],
            detail_type=d["detail_type"],
            time=float(d["time"]),
            detail=dict(d.get("detail") or {}),
        )


Subscriber = Callable[[EventEnvelope], None]


@dataclass
class _Subscription:
    handler: Subscriber
    detail_types: frozenset[str] | None = None

    def matches(self, envelope: EventEnvelope) -> bool:
        return self.detail_types is None or envelope.detail_type in self.detail_types


# ─── Abstract Bus Interface ──────────────────────────────────────────

class EventBus(abc.ABC):
    """
    Abstract event bus. Publishing records the envelope and then fans
    it out to matching subscribers. A failing subscriber is logged and
    counted; it never fails the publisher.

    A bus bound to a SQLiteBackend records inside the caller's
    transaction but fans out only after that transaction commits, so
    subscribers never run under the write lock and never see an event
    that was rolled back.
    """

    def __init__(self, name: str = "approvals-bus", db: SQLiteBackend | None = None):
        self.name = name
        self.db = db
        self._subscriptions: list[_Subscription] = []
        self.delivery_errors: list[dict[str, Any]] = []

    @abc.abstractmethod
    def _record(self, envelope: EventEnvelope) -> None:
        """Persist the envelope. Raises FeedDeliveryFailure if it cannot."""
        ...

    @abc.abstractmethod
    def list_events(self, detail_type: str | None = None) -> list[EventEnvelope]:
        """Published envelopes in publish order."""
        ...

    def publish(self, envelope: EventEnvelope) -> str:
        """Publish an envelope. Returns its event_id."""
        self._record(envelope)
        logger.debug(
            "Published %s %s on %s", envelope.detail_type, envelope.event_id, self.name,
        )
        if self.db is not None:
            self.db.after_commit(lambda: self._fan_out(envelope))
        else:
            self._fan_out(envelope)
        return envelope.event_id

    def _fan_out(self, envelope: EventEnvelope) -> None:
        for sub in list(self._subscriptions):
            if not sub.matches(envelope):
                continue
            try:
                sub.handler(envelope)
            except Exception as e:
                logger.exception(
                    "Subscriber %r failed for %s", getattr(sub.handler, "__name__", sub.handler),
                    envelope.event_id,
                )
                self.delivery_errors.append({
                    "event_id": envelope.event_id,
                    "detail_type": envelope.detail_type,
                    "error": str(e),
                })

    def subscribe(self, handler: Subscriber, detail_types: list[str] | None = None) -> None:
        self._subscriptions.append(
            _Subscription(handler, frozenset(detail_types) if detail_types else None)
        )


class InMemoryEventBus(EventBus):
    """In-process bus for dev/test."""

    def __init__(self, name: str = "approvals-bus", db: SQLiteBackend | None = None):
        super().__init__(name, db=db)
        self._events: list[EventEnvelope] = []

    def _record(self, envelope: EventEnvelope) -> None:
        self._events.append(envelope)

    def list_events(self, detail_type: str | None = None) -> list[EventEnvelope]:
        return [e for e in self._events if detail_type is None or e.detail_type == detail_type]


class SQLiteEventBus(EventBus):
    """
    Bus backed by an outbox table. Shares the status store connection so
    published events survive restarts and can be replayed by operators.
    """

    def __init__(self, db: SQLiteBackend, name: str = "approvals-bus"):
        super().__init__(name, db=db)
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS event_outbox (
                event_id     TEXT PRIMARY KEY,
                bus          TEXT NOT NULL,
                source       TEXT NOT NULL,
                detail_type  TEXT NOT NULL,
                time         REAL NOT NULL,
                detail       TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_outbox_type ON event_outbox(bus, detail_type);
        """)

    def _record(self, envelope: EventEnvelope) -> None:
        try:
            self.db.execute(
                """INSERT OR IGNORE INTO event_outbox
                   (event_id, bus, source, detail_type, time, detail)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (envelope.event_id, self.name, envelope.source,
                 envelope.detail_type, envelope.time, json.dumps(envelope.detail)),
            )
        except Exception as e:
            raise FeedDeliveryFailure(f"Outbox write failed: {e}") from e

    def list_events(self, detail_type: str | None = None) -> list[EventEnvelope]:
        sql = "SELECT * FROM event_outbox WHERE bus = ?"
        params: list[Any] = [self.name]
        if detail_type:
            sql += " AND detail_type = ?"
            params.append(detail_type)
        sql += " ORDER BY rowid"
        return [
            EventEnvelope(
                event_id=r["event_id"],
                source=r["source"],
                detail_type=r["detail_type"],
                time=r["time"],
                detail=json.loads(r["detail"]),
            )
            for r in self.db.fetchall(sql, tuple(params))
        ]


# ─── Dead Letters ────────────────────────────────────────────────────

@dataclass
class DeadLetter:
    """A message that exhausted its retry budget, kept unmodified."""
    dead_letter_id: str
    source: str
    reason: str
    payload: dict[str, Any]
    error: str = ""
    created_at: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(
        source: str,
        reason: str,
        payload: dict[str, Any],
        error: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> DeadLetter:
        return DeadLetter(
            dead_letter_id=f"dlq_{uuid.uuid4().hex[:12]}",
            source=source,
            reason=reason,
            payload=payload,
            error=error,
            created_at=time.time(),
            metadata=metadata or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dead_letter_id": self.dead_letter_id,
            "source": self.source,
            "reason": self.reason,
            "payload": self.payload,
            "error": self.error,
            "created_at": self.created_at,
            "metadata": self.metadata,
        }


class DeadLetterSink(abc.ABC):
    """Operator-visible sink for undeliverable messages."""

    @abc.abstractmethod
    def send(self, letter: DeadLetter) -> str:
        """Park a message. Returns dead_letter_id."""
        ...

    @abc.abstractmethod
    def list(self, source: str | None = None, reason: str | None = None) -> list[DeadLetter]:
        ...

    def count(self) -> int:
        return len(self.list())


class InMemoryDeadLetterSink(DeadLetterSink):
    def __init__(self):
        self._letters: list[DeadLetter] = []

    def send(self, letter: DeadLetter) -> str:
        self._letters.append(letter)
        logger.error(
            "Dead-lettered message from %s: %s (%s)",
            letter.source, letter.reason, letter.error,
        )
        return letter.dead_letter_id

    def list(self, source: str | None = None, reason: str | None = None) -> list[DeadLetter]:
        return [
            dl for dl in self._letters
            if (source is None or dl.source == source)
            and (reason is None or dl.reason == reason)
        ]


class SQLiteDeadLetterSink(DeadLetterSink):
    def __init__(self, db: SQLiteBackend):
        self.db = db
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS dead_letters (
                dead_letter_id  TEXT PRIMARY KEY,
                source          TEXT NOT NULL,
                reason          TEXT NOT NULL,
                payload         TEXT NOT NULL,
                error           TEXT NOT NULL DEFAULT '',
                created_at      REAL NOT NULL,
                metadata        TEXT NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_dlq_source ON dead_letters(source, reason);
        """)

    def send(self, letter: DeadLetter) -> str:
        self.db.execute(
            """INSERT INTO dead_letters
               (dead_letter_id, source, reason, payload, error, created_at, metadata)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (letter.dead_letter_id, letter.source, letter.reason,
             json.dumps(letter.payload, default=str), letter.error,
             letter.created_at, json.dumps(letter.metadata, default=str)),
        )
        logger.error(
            "Dead-lettered message from %s: %s (%s)",
            letter.source, letter.reason, letter.error,
        )
        return letter.dead_letter_id

    def list(self, source: str | None = None, reason: str | None = None) -> list[DeadLetter]:
        sql = "SELECT * FROM dead_letters WHERE 1=1"
        params: list[Any] = []
        if source:
            sql += " AND source = ?"
            params.append(source)
        if reason:
            sql += " AND reason = ?"
            params.append(reason)
        sql += " ORDER BY created_at, rowid"
        return [
            DeadLetter(
                dead_letter_id=r["dead_letter_id"],
                source=r["source"],
                reason=r["reason"],
                payload=json.loads(r["payload"]),
                error=r["error"],
                created_at=r["created_at"],
                metadata=json.loads(r["metadata"]),
            )
            for r in self.db.fetchall(sql, tuple(params))
        ]
