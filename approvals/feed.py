"""
Publication Approvals — Change Feed Subscriptions

The status store's change table read as an ordered, at-least-once feed.
Each consumer (Change Relay, Resumption Bridge) has its own durable
cursor per shard, so consumers never affect each other's progress.

A poll builds one batch per (consumer, shard): pending redeliveries
first, then new records after the cursor. The handler reports per-item
failures; only those are redelivered, and a record that keeps failing
is dead-lettered once it exceeds the redelivery budget.

Usage:
    feed = ChangeFeed(store)
    sub = FeedSubscription("bridge", bridge, feed, dead_letters, max_redeliveries=3)
    pool = FeedWorkerPool([relay_sub, sub], shard_count=4, max_in_flight=5)
    pool.drain()
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

from approvals.events import DeadLetter, DeadLetterSink
from approvals.store import StatusStore
from approvals.types import BatchResponse, ChangeRecord, DeadLetterReason

logger = logging.getLogger("publication_approvals.feed")


class BatchHandler(Protocol):
    def handle_batch(self, records: list[ChangeRecord]) -> BatchResponse:
        ...


class ChangeFeed:
    """Read-only view of the store's change table."""

    def __init__(self, store: StatusStore):
        self.store = store

    @property
    def shard_count(self) -> int:
        return self.store.shard_count

    def read(self, shard: int, after_sequence: int = 0, limit: int = 100) -> list[ChangeRecord]:
        return self.store.read_changes(shard, after_sequence, limit)

    def get(self, sequence: int) -> ChangeRecord | None:
        return self.store.get_change(sequence)


@dataclass
class PollResult:
    consumer: str
    shard: int
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0
    cursor: int = 0


class FeedSubscription:
    """One consumer's durable position in the change feed."""

    def __init__(
        self,
        consumer: str,
        handler: BatchHandler,
        feed: ChangeFeed,
        dead_letters: DeadLetterSink,
        batch_size: int = 10,
        max_redeliveries: int = 3,
    ):
        self.consumer = consumer
        self.handler = handler
        self.feed = feed
        self.dead_letters = dead_letters
        self.batch_size = batch_size
        self.max_redeliveries = max_redeliveries
        self.db = feed.store.db
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS feed_cursors (
                consumer    TEXT NOT NULL,
                shard       INTEGER NOT NULL,
                sequence    INTEGER NOT NULL DEFAULT 0,
                updated_at  REAL NOT NULL,
                PRIMARY KEY (consumer, shard)
            );

            CREATE TABLE IF NOT EXISTS feed_redeliveries (
                consumer    TEXT NOT NULL,
                sequence    INTEGER NOT NULL,
                shard       INTEGER NOT NULL,
                attempts    INTEGER NOT NULL,
                last_error  TEXT NOT NULL DEFAULT '',
                updated_at  REAL NOT NULL,
                PRIMARY KEY (consumer, sequence)
            );
        """)

    def cursor(self, shard: int) -> int:
        row = self.db.fetchone(
            "SELECT sequence FROM feed_cursors WHERE consumer = ? AND shard = ?",
            (self.consumer, shard),
        )
        return row["sequence"] if row else 0

    def pending_redeliveries(self, shard: int | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM feed_redeliveries WHERE consumer = ?"
        params: list[Any] = [self.consumer]
        if shard is not None:
            sql += " AND shard = ?"
            params.append(shard)
        return self.db.fetchall(sql + " ORDER BY sequence", tuple(params))

    def poll(self, shard: int) -> PollResult:
        """
        Deliver one batch for a shard. A handler exception propagates
        and leaves the cursor and redelivery table untouched.
        """
        result = PollResult(consumer=self.consumer, shard=shard)

        pending = self.pending_redeliveries(shard)[: self.batch_size]
        attempts_by_seq = {p["sequence"]: p["attempts"] for p in pending}
        batch: list[ChangeRecord] = []
        for p in pending:
            record = self.feed.get(p["sequence"])
            if record is not None:
                batch.append(record)

        cursor = self.cursor(shard)
        fresh = self.feed.read(shard, cursor, self.batch_size - len(batch)) if len(batch) < self.batch_size else []
        batch.extend(fresh)
        result.cursor = cursor
        if not batch and not pending:
            return result

        response = self.handler.handle_batch(batch) if batch else BatchResponse()
        failures = {f.index: f for f in response.batch_item_failures}

        with self.db.transaction():
            now = time.time()
            if fresh:
                result.cursor = fresh[-1].sequence
                self.db.execute(
                    """INSERT INTO feed_cursors (consumer, shard, sequence, updated_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(consumer, shard)
                       DO UPDATE SET sequence = excluded.sequence, updated_at = excluded.updated_at""",
                    (self.consumer, shard, result.cursor, now),
                )

            for seq in attempts_by_seq:
                self.db.execute(
                    "DELETE FROM feed_redeliveries WHERE consumer = ? AND sequence = ?",
                    (self.consumer, seq),
                )

            for i, record in enumerate(batch):
                failure = failures.get(i)
                if failure is None:
                    result.delivered += 1
                    continue

                attempts = attempts_by_seq.get(record.sequence, 0) + 1
                if attempts > self.max_redeliveries:
                    self.dead_letters.send(DeadLetter.create(
                        source=self.consumer,
                        reason=DeadLetterReason.FEED_REDELIVERY_EXHAUSTED,
                        payload=record.to_dict(),
                        error=failure.error,
                        metadata={"attempts": attempts, "item_identifier": failure.item_identifier},
                    ))
                    result.dead_lettered += 1
                    continue

                self.db.execute(
                    """INSERT INTO feed_redeliveries
                       (consumer, sequence, shard, attempts, last_error, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (self.consumer, record.sequence, shard, attempts, failure.error[:500], now),
                )
                result.failed += 1

        if result.failed or result.dead_lettered:
            logger.warning(
                "%s shard %d: %d delivered, %d queued for redelivery, %d dead-lettered",
                self.consumer, shard, result.delivered, result.failed, result.dead_lettered,
            )
        return result


# ═══════════════════════════════════════════════════════════════════
# Worker Pool
# ═══════════════════════════════════════════════════════════════════

@dataclass
class PoolRound:
    results: list[PollResult] = field(default_factory=list)
    errors: list[tuple[str, int, BaseException]] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(r.delivered + r.failed + r.dead_lettered for r in self.results)


class FeedWorkerPool:
    """
    Polls every (subscription, shard) pair on a bounded thread pool.
    At most ``max_in_flight`` batches run at once and a pair never has
    more than one batch in flight, which keeps per-shard order.
    """

    def __init__(
        self,
        subscriptions: list[FeedSubscription],
        shard_count: int,
        max_in_flight: int = 5,
        poll_interval: float = 1.0,
    ):
        self.subscriptions = subscriptions
        self.shard_count = shard_count
        self.max_in_flight = max_in_flight
        self.poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(
            max_workers=max_in_flight, thread_name_prefix="feed",
        )
        self._in_flight: set[tuple[str, int]] = set()
        self._lock = threading.Lock()

    def _pairs(self):
        for sub in self.subscriptions:
            for shard in range(self.shard_count):
                yield sub, shard

    def _run_pair(self, sub: FeedSubscription, shard: int) -> PollResult:
        try:
            return sub.poll(shard)
        finally:
            with self._lock:
                self._in_flight.discard((sub.consumer, shard))

    def run_once(self) -> PoolRound:
        """
        Poll each pair once and wait. Errors are collected, not raised;
        the failed pair's cursor has not moved so its batch comes back.
        """
        futures: list[tuple[str, int, Future]] = []
        for sub, shard in self._pairs():
            key = (sub.consumer, shard)
            with self._lock:
                if key in self._in_flight:
                    continue
                self._in_flight.add(key)
            futures.append((sub.consumer, shard, self._executor.submit(self._run_pair, sub, shard)))

        rnd = PoolRound()
        for consumer, shard, fut in futures:
            try:
                rnd.results.append(fut.result())
            except Exception as e:
                logger.exception("Feed consumer %s failed on shard %d", consumer, shard)
                rnd.errors.append((consumer, shard, e))
        return rnd

    def drain(self, max_rounds: int = 50) -> PoolRound:
        """Run rounds until no pair has anything left to deliver."""
        total = PoolRound()
        for _ in range(max_rounds):
            rnd = self.run_once()
            total.results.extend(rnd.results)
            total.errors.extend(rnd.errors)
            if rnd.errors:
                break
            if rnd.delivered == 0:
                break
        return total

    def run_forever(self, stop: threading.Event) -> None:
        logger.info(
            "Feed worker pool started: %d subscription(s), %d shard(s), max_in_flight=%d",
            len(self.subscriptions), self.shard_count, self.max_in_flight,
        )
        while not stop.is_set():
            rnd = self.run_once()
            if rnd.delivered == 0:
                stop.wait(self.poll_interval)
        logger.info("Feed worker pool stopped")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
