"""
Publication Approvals — Workflow Orchestrator

Durable state machine, one instance per approval request. Runs the
declarative definition until it either reaches a terminal state or a
wait_for_resume state. Suspension is pure data: a row holding the
accumulated context and the resume token, plus the token written to
the entity's status record. No thread, timer or connection is held
while an instance waits.

Three operations:
  start(entity_id, payload, trigger_id)  → run until suspended/terminal
  resume_workflow(token, payload)        → continue a suspended instance
  expire_suspended()                     → fail instances that waited too long

Exactly-once effects are enforced through the action ledger's unique
idempotency keys:
  start:{trigger_id}        one instance per trigger event
  resume:{token}            a token resumes (or expires) at most once
  completed:{instance_id}   one EvaluationCompleted per instance

A StepError ends the instance as errored. Any other exception (an
unreachable inspection service, a locked database) undoes the run
instead: a failed start removes the instance so the trigger can be
redelivered, and a failed resume restores the suspension and releases
the resume key so the change can be redelivered.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import time
from typing import Any, Callable

from approvals.db import SQLiteBackend
from approvals.definition import StateDef, WorkflowDefinition, validate_definition
from approvals.events import EventBus, EventEnvelope
from approvals.inspection import ContentInspector
from approvals.schemas import EvaluationCompleted
from approvals.steps import ResumeTokenConflict, StepContext, StepError, StepRegistry
from approvals.store import StatusStore
from approvals.types import (
    InstanceState,
    InstanceStatus,
    StaleResumeToken,
    Suspension,
)
from infra.logging import WorkflowLogger

logger = logging.getLogger("publication_approvals.orchestrator")

MAX_TRANSITIONS = 100

_TERMINAL_STATUS = {
    "succeed": InstanceStatus.SUCCEEDED,
    "fail": InstanceStatus.FAILED,
    "reject": InstanceStatus.REJECTED,
}


# ═══════════════════════════════════════════════════════════════════
# Instance Store
# ═══════════════════════════════════════════════════════════════════

class InstanceStore:
    """Workflow instances, suspensions and the action ledger."""

    def __init__(self, db: SQLiteBackend):
        self.db = db
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS workflow_instances (
                instance_id    TEXT PRIMARY KEY,
                workflow_name  TEXT NOT NULL,
                entity_id      TEXT NOT NULL,
                trigger_id     TEXT NOT NULL,
                status         TEXT NOT NULL,
                created_at     REAL NOT NULL,
                updated_at     REAL NOT NULL,
                current_state  TEXT DEFAULT '',
                step_count     INTEGER DEFAULT 0,
                resume_token   TEXT DEFAULT '',
                result         TEXT,
                error          TEXT
            );

            CREATE TABLE IF NOT EXISTS suspensions (
                instance_id         TEXT PRIMARY KEY,
                suspended_at_state  TEXT NOT NULL,
                context             TEXT NOT NULL,
                resume_token        TEXT NOT NULL UNIQUE,
                suspended_at        REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS action_ledger (
                id               INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id      TEXT NOT NULL,
                entity_id        TEXT NOT NULL,
                action_type      TEXT NOT NULL,
                details          TEXT NOT NULL,
                idempotency_key  TEXT UNIQUE,
                created_at       REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_instances_entity ON workflow_instances(entity_id);
            CREATE INDEX IF NOT EXISTS idx_instances_trigger ON workflow_instances(trigger_id);
            CREATE INDEX IF NOT EXISTS idx_instances_status ON workflow_instances(status);
            CREATE INDEX IF NOT EXISTS idx_ledger_instance ON action_ledger(instance_id);
        """)

    # ─── Instances ───────────────────────────────────────────────────

    def save_instance(self, inst: InstanceState):
        self.db.execute("""
            INSERT OR REPLACE INTO workflow_instances
            (instance_id, workflow_name, entity_id, trigger_id, status,
             created_at, updated_at, current_state, step_count,
             resume_token, result, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            inst.instance_id, inst.workflow_name, inst.entity_id, inst.trigger_id,
            inst.status.value, inst.created_at, inst.updated_at,
            inst.current_state, inst.step_count, inst.resume_token,
            json.dumps(inst.result) if inst.result else None,
            inst.error,
        ))

    def get_instance(self, instance_id: str) -> InstanceState | None:
        row = self.db.fetchone(
            "SELECT * FROM workflow_instances WHERE instance_id = ?", (instance_id,)
        )
        return self._row_to_instance(row) if row else None

    def get_instance_by_trigger(self, trigger_id: str) -> InstanceState | None:
        row = self.db.fetchone(
            "SELECT * FROM workflow_instances WHERE trigger_id = ? ORDER BY created_at LIMIT 1",
            (trigger_id,),
        )
        return self._row_to_instance(row) if row else None

    def list_instances(
        self,
        status: InstanceStatus | None = None,
        entity_id: str | None = None,
        limit: int = 500,
    ) -> list[InstanceState]:
        query = "SELECT * FROM workflow_instances WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_instance(r) for r in self.db.fetchall(query, tuple(params))]

    def _row_to_instance(self, row: dict[str, Any]) -> InstanceState:
        return InstanceState(
            instance_id=row["instance_id"],
            workflow_name=row["workflow_name"],
            entity_id=row["entity_id"],
            trigger_id=row["trigger_id"],
            status=InstanceStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            current_state=row["current_state"],
            step_count=row["step_count"],
            resume_token=row["resume_token"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
        )

    # ─── Suspensions ─────────────────────────────────────────────────

    def save_suspension(self, sus: Suspension):
        self.db.execute("""
            INSERT OR REPLACE INTO suspensions
            (instance_id, suspended_at_state, context, resume_token, suspended_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            sus.instance_id, sus.suspended_at_state,
            json.dumps(sus.context, default=str),
            sus.resume_token, sus.suspended_at,
        ))

    def get_suspension(self, instance_id: str) -> Suspension | None:
        row = self.db.fetchone("SELECT * FROM suspensions WHERE instance_id = ?", (instance_id,))
        return self._row_to_suspension(row) if row else None

    def get_suspension_by_token(self, token: str) -> Suspension | None:
        row = self.db.fetchone("SELECT * FROM suspensions WHERE resume_token = ?", (token,))
        return self._row_to_suspension(row) if row else None

    def list_suspensions(self, suspended_before: float | None = None) -> list[Suspension]:
        if suspended_before is None:
            rows = self.db.fetchall("SELECT * FROM suspensions ORDER BY suspended_at")
        else:
            rows = self.db.fetchall(
                "SELECT * FROM suspensions WHERE suspended_at < ? ORDER BY suspended_at",
                (suspended_before,),
            )
        return [self._row_to_suspension(r) for r in rows]

    def delete_suspension(self, instance_id: str):
        self.db.execute("DELETE FROM suspensions WHERE instance_id = ?", (instance_id,))

    def _row_to_suspension(self, row: dict[str, Any]) -> Suspension:
        return Suspension(
            instance_id=row["instance_id"],
            suspended_at_state=row["suspended_at_state"],
            context=json.loads(row["context"]),
            resume_token=row["resume_token"],
            suspended_at=row["suspended_at"],
        )

    # ─── Action Ledger ───────────────────────────────────────────────

    def log_action(
        self,
        instance_id: str,
        entity_id: str,
        action_type: str,
        details: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> bool:
        """
        Log an action to the ledger. Returns False if the idempotency
        key already exists (preventing duplicate execution).
        """
        try:
            self.db.execute("""
                INSERT INTO action_ledger
                (instance_id, entity_id, action_type, details, idempotency_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                instance_id, entity_id, action_type,
                json.dumps(details, default=str), idempotency_key, time.time(),
            ))
            return True
        except sqlite3.IntegrityError:
            return False

    def remove_action(self, idempotency_key: str):
        self.db.execute("DELETE FROM action_ledger WHERE idempotency_key = ?", (idempotency_key,))

    def delete_instance(self, instance_id: str):
        """Drop an instance with its suspension and ledger entries."""
        self.db.execute("DELETE FROM suspensions WHERE instance_id = ?", (instance_id,))
        self.db.execute("DELETE FROM action_ledger WHERE instance_id = ?", (instance_id,))
        self.db.execute("DELETE FROM workflow_instances WHERE instance_id = ?", (instance_id,))

    def get_ledger(
        self,
        instance_id: str | None = None,
        entity_id: str | None = None,
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM action_ledger WHERE 1=1"
        params: list[Any] = []
        if instance_id:
            query += " AND instance_id = ?"
            params.append(instance_id)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY id"
        return [
            {
                "id": r["id"],
                "instance_id": r["instance_id"],
                "entity_id": r["entity_id"],
                "action_type": r["action_type"],
                "details": json.loads(r["details"]),
                "idempotency_key": r["idempotency_key"],
                "created_at": r["created_at"],
            }
            for r in self.db.fetchall(query, tuple(params))
        ]

    def stats(self) -> dict[str, Any]:
        instances = self.db.fetchall(
            "SELECT status, COUNT(*) AS cnt FROM workflow_instances GROUP BY status"
        )
        suspended = self.db.fetchone("SELECT COUNT(*) AS cnt FROM suspensions")
        ledger = self.db.fetchone("SELECT COUNT(*) AS cnt FROM action_ledger")
        return {
            "instances": {r["status"]: r["cnt"] for r in instances},
            "suspensions": suspended["cnt"] if suspended else 0,
            "action_ledger_entries": ledger["cnt"] if ledger else 0,
        }


# ═══════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════

class Orchestrator:
    """Runs approval workflow instances against the status store."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        steps: StepRegistry,
        store: StatusStore,
        instances: InstanceStore,
        bus: EventBus,
        inspector: ContentInspector | None = None,
        source: str = "publication.approvals",
        suspension_timeout_seconds: float = 0.0,
    ):
        validate_definition(definition, steps.names())
        self.definition = definition
        self.steps = steps
        self.store = store
        self.instances = instances
        self.bus = bus
        self.inspector = inspector
        self.source = source
        self.suspension_timeout_seconds = suspension_timeout_seconds

    # ─── Operations ──────────────────────────────────────────────────

    def start(
        self,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        trigger_id: str = "",
    ) -> InstanceState:
        """
        Create and run a new instance. A trigger id that already
        started an instance returns that instance instead.
        """
        if trigger_id:
            existing = self.instances.get_instance_by_trigger(trigger_id)
            if existing is not None:
                logger.info("Trigger %s already started %s", trigger_id, existing.instance_id)
                return existing

        inst = InstanceState.create(self.definition.name, entity_id, trigger_id)
        if not inst.trigger_id:
            inst.trigger_id = inst.instance_id
        wf_log = WorkflowLogger(inst.instance_id, entity_id, workflow=self.definition.name)

        with self.instances.db.transaction():
            if not self.instances.log_action(
                inst.instance_id, entity_id, "start",
                {"workflow": self.definition.name, "trigger_id": inst.trigger_id},
                idempotency_key=f"start:{inst.trigger_id}",
            ):
                return self.instances.get_instance_by_trigger(inst.trigger_id)
            self.instances.save_instance(inst)

        data = {
            "entity_id": entity_id,
            "payload": dict(payload or {}),
            "_trace_id": wf_log.trace_id,
        }
        with wf_log.bind():
            wf_log.on_workflow_start()
            self._run(inst, self.definition.start_at, data, wf_log, undo=lambda: self._undo_start(inst))
        return self.instances.get_instance(inst.instance_id)

    def resume_workflow(self, token: str, payload: dict[str, Any] | None = None) -> InstanceState:
        """
        Continue the instance suspended under ``token``.

        Raises StaleResumeToken when the token is unknown, was already
        used, or names an instance that is no longer suspended. Any
        other exception leaves the instance suspended under the same
        token, so a redelivered change can resume it.
        """
        with self.instances.db.transaction():
            sus = self.instances.get_suspension_by_token(token)
            if sus is None:
                raise StaleResumeToken(token, "no suspended instance")
            inst = self.instances.get_instance(sus.instance_id)
            if inst is None or inst.status != InstanceStatus.SUSPENDED:
                raise StaleResumeToken(token, "instance is not suspended")
            suspended = copy.deepcopy(inst)
            if not self.instances.log_action(
                inst.instance_id, inst.entity_id, "resume",
                {"state": sus.suspended_at_state, "payload_keys": sorted(payload or {})},
                idempotency_key=f"resume:{token}",
            ):
                raise StaleResumeToken(token, "already resumed")

            self.instances.delete_suspension(inst.instance_id)
            inst.status = InstanceStatus.RUNNING
            inst.updated_at = time.time()
            self.instances.save_instance(inst)

        data = copy.deepcopy(sus.context)
        data["approval"] = dict(payload or {})
        wf_log = WorkflowLogger(
            inst.instance_id, inst.entity_id,
            workflow=self.definition.name, trace_id=data.get("_trace_id"),
        )
        state = self.definition.state(sus.suspended_at_state)
        with wf_log.bind():
            wf_log.on_resumed(sus.suspended_at_state)
            self._run(inst, state.next, data, wf_log, undo=lambda: self._undo_resume(suspended, sus))
        return self.instances.get_instance(inst.instance_id)

    def expire_suspended(self, now: float | None = None) -> list[str]:
        """
        Fail instances suspended longer than the configured timeout.
        Disabled when the timeout is 0. Returns the expired instance ids.
        """
        if self.suspension_timeout_seconds <= 0:
            return []
        cutoff = (now if now is not None else time.time()) - self.suspension_timeout_seconds

        expired = []
        for sus in self.instances.list_suspensions(suspended_before=cutoff):
            with self.instances.db.transaction():
                inst = self.instances.get_instance(sus.instance_id)
                if inst is None or inst.status != InstanceStatus.SUSPENDED:
                    continue
                # Shares the resume key, so a late resume loses cleanly.
                if not self.instances.log_action(
                    inst.instance_id, inst.entity_id, "expire",
                    {"suspended_at": sus.suspended_at, "timeout": self.suspension_timeout_seconds},
                    idempotency_key=f"resume:{sus.resume_token}",
                ):
                    continue
                self.instances.delete_suspension(inst.instance_id)

            wf_log = WorkflowLogger(
                inst.instance_id, inst.entity_id,
                workflow=self.definition.name, trace_id=sus.context.get("_trace_id"),
            )
            with wf_log.bind():
                self._finish(
                    inst, InstanceStatus.FAILED, "FAIL", "APPROVAL_TIMEOUT",
                    sus.suspended_at_state, wf_log,
                )
            expired.append(inst.instance_id)
        if expired:
            logger.warning("Expired %d suspended instance(s)", len(expired))
        return expired

    def get_instance(self, instance_id: str) -> InstanceState | None:
        return self.instances.get_instance(instance_id)

    def get_ledger(self, instance_id: str | None = None, entity_id: str | None = None):
        return self.instances.get_ledger(instance_id=instance_id, entity_id=entity_id)

    def stats(self) -> dict[str, Any]:
        return self.instances.stats()

    # ─── Execution ───────────────────────────────────────────────────

    def _run(
        self,
        inst: InstanceState,
        state_name: str,
        data: dict[str, Any],
        wf_log: WorkflowLogger,
        undo: Callable[[], None],
    ):
        try:
            terminal = self._advance(inst, state_name, data, wf_log)
        except StepError as e:
            logger.warning("Instance %s errored at %s: %s", inst.instance_id, inst.current_state, e)
            inst.error = str(e)
            self._finish(inst, InstanceStatus.ERRORED, "FAIL", "WORKFLOW_ERROR", inst.current_state, wf_log)
            return
        except Exception:
            logger.exception(
                "Instance %s failed unexpectedly at %s; undoing the run",
                inst.instance_id, inst.current_state,
            )
            undo()
            raise

        if terminal is not None:
            self._finish(
                inst, _TERMINAL_STATUS[terminal.type], terminal.result,
                terminal.reason or None, terminal.name, wf_log,
            )

    def _advance(
        self,
        inst: InstanceState,
        state_name: str,
        data: dict[str, Any],
        wf_log: WorkflowLogger,
    ) -> StateDef | None:
        """Walk the definition. Returns the terminal state, or None once suspended."""
        for _ in range(MAX_TRANSITIONS):
            state = self.definition.state(state_name)
            inst.current_state = state.name
            inst.step_count += 1
            inst.updated_at = time.time()
            wf_log.on_state_enter(state.name, state.type)

            if state.type == "task":
                data.update(self.steps.run(state.step, self._context(inst, data)))
                state_name = state.next
            elif state.type == "choice":
                state_name = self._choose(state, data)
            elif state.type == "wait_for_resume":
                conflict = self._suspend(inst, state, data, wf_log)
                if conflict is None:
                    return None
                state_name = conflict
            else:
                return state
        raise StepError(f"{self.definition.name} exceeded {MAX_TRANSITIONS} transitions")

    def _undo_start(self, inst: InstanceState):
        with self.instances.db.transaction():
            self.instances.delete_instance(inst.instance_id)
        logger.warning(
            "Instance %s removed; trigger %s may be redelivered",
            inst.instance_id, inst.trigger_id,
        )

    def _undo_resume(self, suspended: InstanceState, sus: Suspension):
        with self.instances.db.transaction():
            self.instances.save_suspension(sus)
            self.instances.save_instance(suspended)
            self.instances.remove_action(f"resume:{sus.resume_token}")
        logger.warning(
            "Instance %s suspended again at %s; token %s may be redelivered",
            suspended.instance_id, sus.suspended_at_state, sus.resume_token,
        )

    def _context(self, inst: InstanceState, data: dict[str, Any], token: str | None = None) -> StepContext:
        return StepContext(
            instance_id=inst.instance_id,
            entity_id=inst.entity_id,
            data=data,
            store=self.store,
            inspector=self.inspector,
            resume_token=token,
        )

    @staticmethod
    def _choose(state: StateDef, data: dict[str, Any]) -> str:
        for rule in state.choices:
            if rule.matches(data):
                return rule.next
        return state.default

    def _suspend(
        self,
        inst: InstanceState,
        state: StateDef,
        data: dict[str, Any],
        wf_log: WorkflowLogger,
    ) -> str | None:
        """
        Suspend at ``state``. Returns None once suspended, or the state's
        on_conflict target when another instance already waits on the entity.
        """
        # The suspension exists before the token reaches the status
        # record, so a resume can never arrive ahead of it.
        sus = Suspension.create(inst.instance_id, state.name, data)
        with self.instances.db.transaction():
            inst.status = InstanceStatus.SUSPENDED
            inst.resume_token = sus.resume_token
            inst.updated_at = time.time()
            self.instances.save_suspension(sus)
            self.instances.save_instance(inst)
            self.instances.log_action(
                inst.instance_id, inst.entity_id, "suspend",
                {"state": state.name}, idempotency_key=f"suspend:{sus.resume_token}",
            )

        try:
            data.update(self.steps.run(state.step, self._context(inst, data, sus.resume_token)))
        except Exception as e:
            with self.instances.db.transaction():
                self.instances.log_action(
                    inst.instance_id, inst.entity_id, "suspend_aborted",
                    {"state": state.name, "error": str(e)},
                    idempotency_key=f"resume:{sus.resume_token}",
                )
                self.instances.delete_suspension(inst.instance_id)
            inst.status = InstanceStatus.RUNNING
            inst.resume_token = ""
            if isinstance(e, ResumeTokenConflict) and state.on_conflict:
                logger.warning(
                    "Instance %s not suspended: %s holds token %s",
                    inst.instance_id, e.entity_id, e.token,
                )
                return state.on_conflict
            raise

        wf_log.on_suspended(state.name)
        return None

    def _finish(
        self,
        inst: InstanceState,
        status: InstanceStatus,
        result: str,
        reason: str | None,
        state_name: str,
        wf_log: WorkflowLogger,
    ):
        event = EvaluationCompleted(
            entity_id=inst.entity_id, result=result, reason=reason,
            instance_id=inst.instance_id,
        )
        with self.instances.db.transaction():
            if not self.instances.log_action(
                inst.instance_id, inst.entity_id, "completed",
                {"status": status.value, "result": result, "reason": reason, "state": state_name},
                idempotency_key=f"completed:{inst.instance_id}",
            ):
                logger.info("Instance %s already completed", inst.instance_id)
                return
            inst.status = status
            inst.current_state = state_name
            inst.updated_at = time.time()
            inst.result = {"result": result, "reason": reason, "state": state_name}
            self.instances.save_instance(inst)
            envelope = EventEnvelope.wrap(
                event, source=self.source, event_id=f"evt_completed_{inst.instance_id}",
            )
            if self.bus.db is self.instances.db:
                # Outbox row commits with the ledger entry; fan-out waits for the commit.
                self.bus.publish(envelope)
            else:
                self.instances.db.after_commit(lambda: self.bus.publish(envelope))

        if inst.resume_token:
            detached = self.store.detach_resume_token(inst.entity_id, inst.resume_token)
            if not detached.ok:
                logger.info(
                    "Resume token for %s not detached: %s",
                    inst.entity_id, detached.reason.value,
                )
        wf_log.on_workflow_end(status.value, result, reason or "")
