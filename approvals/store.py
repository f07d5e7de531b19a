"""
Publication Approvals — Status Store

SQLite-backed record store keyed by entity_id, holding each entity's
current lifecycle state and, while a workflow instance waits on it,
that instance's resume token.

Every mutation is a conditional write: the expected prior state is
part of the UPDATE/INSERT and a mismatch comes back as a typed
rejection. A successful mutation appends one change record to the
change feed inside the same transaction, so the feed never misses
or reorders a committed write for an entity.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
import zlib
from typing import Any

from approvals.db import SQLiteBackend
from approvals.types import (
    ACTIVE_STATES,
    INACTIVE_STATES,
    ChangeEventName,
    ChangeRecord,
    LifecycleState,
    RejectReason,
    StatusRecord,
    WriteResult,
    utc_now,
)

logger = logging.getLogger("publication_approvals.store")


def shard_for(entity_id: str, shard_count: int) -> int:
    """Stable shard assignment; one entity always lands on one shard."""
    return zlib.crc32(entity_id.encode("utf-8")) % shard_count


class StatusStore:
    """Conditional-write access layer over the status_records table."""

    def __init__(self, db: SQLiteBackend, shard_count: int = 4):
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self.db = db
        self.shard_count = shard_count
        self._create_tables()

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS status_records (
                entity_id        TEXT PRIMARY KEY,
                correlation_id   TEXT NOT NULL,
                lifecycle_state  TEXT NOT NULL,
                created_at       TEXT NOT NULL,
                modified_at      TEXT NOT NULL,
                resume_token     TEXT,
                attributes       TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS status_changes (
                sequence      INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id      TEXT NOT NULL UNIQUE,
                event_name    TEXT NOT NULL,
                entity_id     TEXT NOT NULL,
                shard         INTEGER NOT NULL,
                old_image     TEXT,
                new_image     TEXT,
                committed_at  REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_changes_shard ON status_changes(shard, sequence);
            CREATE INDEX IF NOT EXISTS idx_records_state ON status_records(lifecycle_state);
        """)

    # ─── Conditional Writes ──────────────────────────────────────────

    def create_record(self, entity_id: str, attributes: dict[str, Any] | None = None) -> WriteResult:
        """
        Insert a DRAFT record. Allowed when no record exists or the
        existing one is CANCELLED, CLOSED or EXPIRED.
        """
        now = utc_now()
        with self.db.transaction():
            old = self._get(entity_id)
            if old is not None and old.lifecycle_state not in INACTIVE_STATES:
                logger.info(
                    "Create rejected for %s: already %s", entity_id, old.lifecycle_state.value,
                )
                return WriteResult.rejected(RejectReason.ALREADY_ACTIVE, old)

            new = StatusRecord(
                entity_id=entity_id,
                correlation_id=str(uuid.uuid4()),
                lifecycle_state=LifecycleState.DRAFT,
                created_at=now,
                modified_at=now,
                attributes=dict(attributes or {}),
            )
            if old is None:
                cur = self.db.execute(
                    """INSERT OR IGNORE INTO status_records
                       (entity_id, correlation_id, lifecycle_state, created_at,
                        modified_at, resume_token, attributes)
                       VALUES (?, ?, ?, ?, ?, NULL, ?)""",
                    (entity_id, new.correlation_id, new.lifecycle_state.value,
                     new.created_at, new.modified_at, json.dumps(new.attributes)),
                )
            else:
                cur = self.db.execute(
                    """UPDATE status_records
                       SET correlation_id = ?, lifecycle_state = ?, created_at = ?,
                           modified_at = ?, resume_token = NULL, attributes = ?
                       WHERE entity_id = ? AND lifecycle_state = ?""",
                    (new.correlation_id, new.lifecycle_state.value, new.created_at,
                     new.modified_at, json.dumps(new.attributes),
                     entity_id, old.lifecycle_state.value),
                )
            if cur.rowcount != 1:
                return WriteResult.rejected(RejectReason.ALREADY_ACTIVE, self._get(entity_id))

            self._append_change(
                ChangeEventName.INSERT if old is None else ChangeEventName.MODIFY, old, new,
            )
        logger.info("Created record %s (correlation %s)", entity_id, new.correlation_id)
        return WriteResult.accepted(new)

    def approve_record(self, entity_id: str) -> WriteResult:
        """DRAFT → APPROVED. Any other current state is a no-op rejection."""
        with self.db.transaction():
            old = self._get(entity_id)
            if old is None:
                return WriteResult.rejected(RejectReason.NOT_FOUND)
            if old.lifecycle_state != LifecycleState.DRAFT:
                logger.info(
                    "Approve rejected for %s: state is %s", entity_id, old.lifecycle_state.value,
                )
                return WriteResult.rejected(RejectReason.NOT_IN_DRAFT, old)

            new = self._update_state(old, LifecycleState.APPROVED)
            if new is None:
                return WriteResult.rejected(RejectReason.NOT_IN_DRAFT, self._get(entity_id))
        logger.info("Approved record %s", entity_id)
        return WriteResult.accepted(new)

    def end_record(self, entity_id: str, terminal_state: LifecycleState | str) -> WriteResult:
        """Move an active record to CANCELLED, CLOSED or EXPIRED."""
        terminal_state = LifecycleState(terminal_state)
        if terminal_state not in INACTIVE_STATES:
            raise ValueError(f"{terminal_state.value} is not a terminal lifecycle state")

        with self.db.transaction():
            old = self._get(entity_id)
            if old is None:
                return WriteResult.rejected(RejectReason.NOT_FOUND)
            if old.lifecycle_state not in ACTIVE_STATES:
                return WriteResult.rejected(RejectReason.NOT_ACTIVE, old)

            new = self._update_state(old, terminal_state)
            if new is None:
                return WriteResult.rejected(RejectReason.NOT_ACTIVE, self._get(entity_id))
        logger.info("Ended record %s as %s", entity_id, terminal_state.value)
        return WriteResult.accepted(new)

    def attach_resume_token(self, entity_id: str, token: str) -> WriteResult:
        """
        Record the token of the workflow instance waiting on this entity.
        Attaching the token already present is a no-op and writes no change.
        A different token already attached belongs to another waiting
        instance; the attach is rejected with TOKEN_MISMATCH.
        """
        with self.db.transaction():
            old = self._get(entity_id)
            if old is None:
                return WriteResult.rejected(RejectReason.NOT_FOUND)
            if old.resume_token == token:
                return WriteResult.accepted(old)
            if old.resume_token:
                return WriteResult.rejected(RejectReason.TOKEN_MISMATCH, old)

            new = self._update_token(old, token)
            if new is None:
                return WriteResult.rejected(RejectReason.TOKEN_MISMATCH, self._get(entity_id))
        logger.debug("Attached resume token to %s", entity_id)
        return WriteResult.accepted(new)

    def detach_resume_token(self, entity_id: str, expected_token: str) -> WriteResult:
        """Clear the token, but only if it is still the one expected."""
        with self.db.transaction():
            old = self._get(entity_id)
            if old is None:
                return WriteResult.rejected(RejectReason.NOT_FOUND)
            if old.resume_token != expected_token:
                return WriteResult.rejected(RejectReason.TOKEN_MISMATCH, old)

            new = self._update_token(old, None)
            if new is None:
                return WriteResult.rejected(RejectReason.TOKEN_MISMATCH, self._get(entity_id))
        logger.debug("Detached resume token from %s", entity_id)
        return WriteResult.accepted(new)

    def purge_record(self, entity_id: str) -> WriteResult:
        """Administrative delete. Produces a REMOVE change."""
        with self.db.transaction():
            old = self._get(entity_id)
            if old is None:
                return WriteResult.rejected(RejectReason.NOT_FOUND)
            self.db.execute("DELETE FROM status_records WHERE entity_id = ?", (entity_id,))
            self._append_change(ChangeEventName.REMOVE, old, None)
        logger.warning("Purged record %s", entity_id)
        return WriteResult.accepted(None)

    # ─── Reads ───────────────────────────────────────────────────────

    def get_record(self, entity_id: str) -> StatusRecord | None:
        return self._get(entity_id)

    def list_records(
        self,
        lifecycle_state: LifecycleState | str | None = None,
        limit: int = 100,
    ) -> list[StatusRecord]:
        sql = "SELECT * FROM status_records"
        params: list[Any] = []
        if lifecycle_state:
            sql += " WHERE lifecycle_state = ?"
            params.append(LifecycleState(lifecycle_state).value)
        sql += " ORDER BY modified_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_record(r) for r in self.db.fetchall(sql, tuple(params))]

    def read_changes(self, shard: int, after_sequence: int = 0, limit: int = 100) -> list[ChangeRecord]:
        rows = self.db.fetchall(
            """SELECT * FROM status_changes
               WHERE shard = ? AND sequence > ?
               ORDER BY sequence LIMIT ?""",
            (shard, after_sequence, limit),
        )
        return [self._row_to_change(r) for r in rows]

    def get_change(self, sequence: int) -> ChangeRecord | None:
        row = self.db.fetchone("SELECT * FROM status_changes WHERE sequence = ?", (sequence,))
        return self._row_to_change(row) if row else None

    def latest_sequence(self) -> int:
        row = self.db.fetchone("SELECT MAX(sequence) AS seq FROM status_changes")
        return int(row["seq"] or 0) if row else 0

    def stats(self) -> dict[str, Any]:
        by_state = {
            r["lifecycle_state"]: r["n"]
            for r in self.db.fetchall(
                "SELECT lifecycle_state, COUNT(*) AS n FROM status_records GROUP BY lifecycle_state"
            )
        }
        waiting = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM status_records WHERE resume_token IS NOT NULL"
        )
        return {
            "records_by_state": by_state,
            "records_total": sum(by_state.values()),
            "records_with_token": waiting["n"] if waiting else 0,
            "changes_total": self.latest_sequence(),
            "shard_count": self.shard_count,
        }

    # ─── Internals ───────────────────────────────────────────────────

    def _get(self, entity_id: str) -> StatusRecord | None:
        row = self.db.fetchone("SELECT * FROM status_records WHERE entity_id = ?", (entity_id,))
        return self._row_to_record(row) if row else None

    def _update_state(self, old: StatusRecord, state: LifecycleState) -> StatusRecord | None:
        new = StatusRecord(
            entity_id=old.entity_id,
            correlation_id=old.correlation_id,
            lifecycle_state=state,
            created_at=old.created_at,
            modified_at=utc_now(),
            resume_token=old.resume_token,
            attributes=dict(old.attributes),
        )
        cur = self.db.execute(
            """UPDATE status_records SET lifecycle_state = ?, modified_at = ?
               WHERE entity_id = ? AND lifecycle_state = ?""",
            (state.value, new.modified_at, old.entity_id, old.lifecycle_state.value),
        )
        if cur.rowcount != 1:
            return None
        self._append_change(ChangeEventName.MODIFY, old, new)
        return new

    def _update_token(self, old: StatusRecord, token: str | None) -> StatusRecord | None:
        new = StatusRecord(
            entity_id=old.entity_id,
            correlation_id=old.correlation_id,
            lifecycle_state=old.lifecycle_state,
            created_at=old.created_at,
            modified_at=old.modified_at,
            resume_token=token,
            attributes=dict(old.attributes),
        )
        cur = self.db.execute(
            """UPDATE status_records SET resume_token = ?
               WHERE entity_id = ? AND resume_token IS ?""",
            (token, old.entity_id, old.resume_token),
        )
        if cur.rowcount != 1:
            return None
        self._append_change(ChangeEventName.MODIFY, old, new)
        return new

    def _append_change(
        self,
        event_name: ChangeEventName,
        old: StatusRecord | None,
        new: StatusRecord | None,
    ):
        entity_id = (new or old).entity_id
        self.db.execute(
            """INSERT INTO status_changes
               (event_id, event_name, entity_id, shard, old_image, new_image, committed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                f"chg_{uuid.uuid4().hex}",
                event_name.value,
                entity_id,
                shard_for(entity_id, self.shard_count),
                json.dumps(old.to_image()) if old else None,
                json.dumps(new.to_image()) if new else None,
                time.time(),
            ),
        )

    def _row_to_record(self, row: dict[str, Any]) -> StatusRecord:
        return StatusRecord(
            entity_id=row["entity_id"],
            correlation_id=row["correlation_id"],
            lifecycle_state=LifecycleState(row["lifecycle_state"]),
            created_at=row["created_at"],
            modified_at=row["modified_at"],
            resume_token=row["resume_token"],
            attributes=json.loads(row["attributes"] or "{}"),
        )

    def _row_to_change(self, row: dict[str, Any]) -> ChangeRecord:
        return ChangeRecord(
            sequence=row["sequence"],
            event_id=row["event_id"],
            event_name=ChangeEventName(row["event_name"]),
            entity_id=row["entity_id"],
            shard=row["shard"],
            old_image=json.loads(row["old_image"]) if row["old_image"] else None,
            new_image=json.loads(row["new_image"]) if row["new_image"] else None,
            committed_at=row["committed_at"],
        )
