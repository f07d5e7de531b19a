"""
Publication Approvals — Workflow Orchestrator Tests

Tests:
  - Entity missing → Reject, one EvaluationCompleted{FAIL, NOT_FOUND}
  - Entity present → token attached, instance suspended (pure data)
  - Resume with the matching token → content validation → PASS / FAIL
  - Stale, unknown and repeated tokens raise StaleResumeToken
  - One instance per trigger id
  - Step failures end the instance as errored; other failures undo the run
  - A second request while one waits is rejected
  - Completion subscribers run after the commit
  - Suspension timeout sweep
  - Action ledger entries
"""

import os
import sys
import time
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from approvals.db import SQLiteBackend
from approvals.definition import load_definition
from approvals.events import InMemoryEventBus, SQLiteEventBus
from approvals.inspection import StaticContentInspector
from approvals.orchestrator import InstanceStore, Orchestrator
from approvals.steps import StepError, StepRegistry, default_registry
from approvals.store import StatusStore
from approvals.types import DefinitionError, InstanceStatus, StaleResumeToken

WORKFLOW_PATH = os.path.join(_base, "approvals", "workflows", "publication_approval.yaml")

GOOD_LISTING = {"description": "Bright two-bedroom flat", "images": ["img-1", "img-2"]}


class OrchestratorTestCase(unittest.TestCase):
    timeout = 0.0

    def setUp(self):
        self.db = SQLiteBackend(":memory:")
        self.store = StatusStore(self.db, shard_count=1)
        self.instances = InstanceStore(self.db)
        self.bus = InMemoryEventBus()
        self.inspector = StaticContentInspector(
            negative_markers=("mould",),
            image_labels={"img-flagged": ["Violence"]},
        )
        self.orch = self.make_orchestrator(default_registry())

    def tearDown(self):
        self.db.close()

    def make_orchestrator(self, steps):
        return Orchestrator(
            definition=load_definition(WORKFLOW_PATH),
            steps=steps,
            store=self.store,
            instances=self.instances,
            bus=self.bus,
            inspector=self.inspector,
            suspension_timeout_seconds=self.timeout,
        )

    def completions(self):
        return [e.detail for e in self.bus.list_events("EvaluationCompleted")]

    def start_suspended(self, entity_id="p1", payload=None):
        self.store.create_record(entity_id)
        return self.orch.start(entity_id, payload if payload is not None else GOOD_LISTING)


# ═══════════════════════════════════════════════════════════════════
# 1. Start
# ═══════════════════════════════════════════════════════════════════

class TestStart(OrchestratorTestCase):

    def test_missing_entity_rejected(self):
        inst = self.orch.start("ghost", {})
        self.assertEqual(inst.status, InstanceStatus.REJECTED)
        self.assertEqual(inst.current_state, "not_found")
        self.assertEqual(self.completions(), [{
            "entity_id": "ghost", "result": "FAIL", "reason": "NOT_FOUND",
            "instance_id": inst.instance_id,
        }])

    def test_existing_entity_suspends_with_token(self):
        inst = self.start_suspended()
        self.assertEqual(inst.status, InstanceStatus.SUSPENDED)
        self.assertEqual(inst.current_state, "wait_for_approval")
        self.assertTrue(inst.resume_token)
        self.assertEqual(self.store.get_record("p1").resume_token, inst.resume_token)
        self.assertEqual(self.completions(), [])

    def test_suspension_is_persisted_data(self):
        inst = self.start_suspended()
        sus = self.instances.get_suspension(inst.instance_id)
        self.assertEqual(sus.resume_token, inst.resume_token)
        self.assertEqual(sus.suspended_at_state, "wait_for_approval")
        self.assertEqual(sus.context["payload"], GOOD_LISTING)
        self.assertTrue(sus.context["entity_exists"])

    def test_no_content_inspection_before_approval(self):
        self.start_suspended()
        self.assertEqual(self.inspector.calls, [])

    def test_duplicate_trigger_returns_existing(self):
        self.store.create_record("p1")
        first = self.orch.start("p1", GOOD_LISTING, trigger_id="evt_1")
        second = self.orch.start("p1", GOOD_LISTING, trigger_id="evt_1")
        self.assertEqual(first.instance_id, second.instance_id)
        self.assertEqual(len(self.instances.list_instances(entity_id="p1")), 1)

    def test_second_request_while_waiting_rejected(self):
        first = self.start_suspended()
        second = self.orch.start("p1", GOOD_LISTING)

        self.assertEqual(second.status, InstanceStatus.REJECTED)
        self.assertEqual(second.current_state, "already_awaiting_approval")
        self.assertIsNone(self.instances.get_suspension(second.instance_id))
        self.assertEqual(self.store.get_record("p1").resume_token, first.resume_token)
        self.assertEqual(self.completions(), [{
            "entity_id": "p1", "result": "FAIL", "reason": "ALREADY_AWAITING_APPROVAL",
            "instance_id": second.instance_id,
        }])

        done = self.orch.resume_workflow(first.resume_token, {})
        self.assertEqual(done.status, InstanceStatus.SUCCEEDED)
        self.assertEqual([e["result"] for e in self.completions()], ["FAIL", "PASS"])

    def test_request_after_completion_suspends_again(self):
        first = self.start_suspended()
        self.orch.resume_workflow(first.resume_token, {})
        second = self.orch.start("p1", GOOD_LISTING)
        self.assertEqual(second.status, InstanceStatus.SUSPENDED)
        self.assertEqual(self.store.get_record("p1").resume_token, second.resume_token)

    def test_trigger_id_defaults_to_instance_id(self):
        inst = self.start_suspended()
        self.assertEqual(inst.trigger_id, inst.instance_id)

    def test_registry_missing_step_fails_validation(self):
        steps = StepRegistry()
        with self.assertRaises(DefinitionError):
            self.make_orchestrator(steps)


# ═══════════════════════════════════════════════════════════════════
# 2. Resume
# ═══════════════════════════════════════════════════════════════════

class TestResume(OrchestratorTestCase):

    def test_resume_passes_clean_content(self):
        inst = self.start_suspended()
        done = self.orch.resume_workflow(inst.resume_token, {"lifecycle_state": "APPROVED"})
        self.assertEqual(done.status, InstanceStatus.SUCCEEDED)
        self.assertEqual(done.current_state, "publication_approved")
        self.assertEqual(done.result["result"], "PASS")
        (event,) = self.completions()
        self.assertEqual((event["entity_id"], event["result"]), ("p1", "PASS"))

    def test_resume_inspects_content(self):
        inst = self.start_suspended()
        self.orch.resume_workflow(inst.resume_token, {})
        self.assertIn(("sentiment", GOOD_LISTING["description"]), self.inspector.calls)
        self.assertIn(("image", "img-1"), self.inspector.calls)

    def test_negative_description_fails(self):
        inst = self.start_suspended(payload={"description": "Damp with mould", "images": []})
        done = self.orch.resume_workflow(inst.resume_token, {})
        self.assertEqual(done.status, InstanceStatus.FAILED)
        self.assertEqual(self.completions()[0]["result"], "FAIL")

    def test_flagged_image_fails(self):
        inst = self.start_suspended(payload={"description": "Lovely", "images": ["img-flagged"]})
        done = self.orch.resume_workflow(inst.resume_token, {})
        self.assertEqual(done.current_state, "publication_declined")

    def test_missing_description_fails(self):
        inst = self.start_suspended(payload={})
        done = self.orch.resume_workflow(inst.resume_token, {})
        self.assertEqual(done.result["result"], "FAIL")

    def test_token_detached_on_completion(self):
        inst = self.start_suspended()
        self.orch.resume_workflow(inst.resume_token, {})
        self.assertIsNone(self.store.get_record("p1").resume_token)
        self.assertIsNone(self.instances.get_suspension(inst.instance_id))

    def test_approval_payload_kept_in_context(self):
        steps = default_registry()
        seen = {}

        def capture(ctx):
            seen.update(ctx.data)
            return {"validation_result": "PASS"}

        steps.register("validate_content_integrity", capture)
        orch = self.make_orchestrator(steps)
        self.store.create_record("p1")
        inst = orch.start("p1", GOOD_LISTING)
        orch.resume_workflow(inst.resume_token, {"change_event_id": "chg_9"})
        self.assertEqual(seen["approval"], {"change_event_id": "chg_9"})
        self.assertEqual(seen["entity_id"], "p1")


# ═══════════════════════════════════════════════════════════════════
# 3. Stale Tokens
# ═══════════════════════════════════════════════════════════════════

class TestStaleTokens(OrchestratorTestCase):

    def test_unknown_token(self):
        with self.assertRaises(StaleResumeToken) as ctx:
            self.orch.resume_workflow("tok_unknown", {})
        self.assertEqual(ctx.exception.token, "tok_unknown")

    def test_second_resume_rejected_no_second_event(self):
        inst = self.start_suspended()
        self.orch.resume_workflow(inst.resume_token, {})
        with self.assertRaises(StaleResumeToken):
            self.orch.resume_workflow(inst.resume_token, {})
        self.assertEqual(len(self.completions()), 1)

    def test_token_of_other_instance_does_not_resume(self):
        a = self.start_suspended("a")
        b = self.start_suspended("b")
        self.orch.resume_workflow(a.resume_token, {})
        self.assertEqual(self.orch.get_instance(b.instance_id).status, InstanceStatus.SUSPENDED)
        self.assertEqual(self.orch.get_instance(a.instance_id).status, InstanceStatus.SUCCEEDED)

    def test_stale_token_is_lookup_error(self):
        self.assertTrue(issubclass(StaleResumeToken, LookupError))


# ═══════════════════════════════════════════════════════════════════
# 4. Step Failures
# ═══════════════════════════════════════════════════════════════════

class TestStepFailures(OrchestratorTestCase):

    def test_step_error_ends_errored(self):
        steps = default_registry()

        def broken(ctx):
            raise StepError("moderation service refused the request")

        steps.register("inspect_content", broken)
        orch = self.make_orchestrator(steps)
        self.store.create_record("p1")
        inst = orch.start("p1", GOOD_LISTING)
        done = orch.resume_workflow(inst.resume_token, {})

        self.assertEqual(done.status, InstanceStatus.ERRORED)
        self.assertIn("moderation service", done.error)
        (event,) = self.completions()
        self.assertEqual((event["result"], event["reason"]), ("FAIL", "WORKFLOW_ERROR"))

    def test_unexpected_error_on_resume_leaves_instance_suspended(self):
        steps = default_registry()
        calls = []

        def unreachable_once(ctx):
            calls.append(ctx.instance_id)
            if len(calls) == 1:
                raise ConnectionError("moderation service unreachable")
            return {"content_sentiment": "POSITIVE", "image_moderation": {}}

        steps.register("inspect_content", unreachable_once)
        orch = self.make_orchestrator(steps)
        self.store.create_record("p1")
        inst = orch.start("p1", GOOD_LISTING)

        with self.assertRaises(ConnectionError):
            orch.resume_workflow(inst.resume_token, {})
        after = orch.get_instance(inst.instance_id)
        self.assertEqual(after.status, InstanceStatus.SUSPENDED)
        self.assertEqual(after.current_state, "wait_for_approval")
        self.assertEqual(self.instances.get_suspension(inst.instance_id).resume_token, inst.resume_token)
        self.assertEqual(self.store.get_record("p1").resume_token, inst.resume_token)
        self.assertEqual(self.completions(), [])

        done = orch.resume_workflow(inst.resume_token, {})
        self.assertEqual(done.status, InstanceStatus.SUCCEEDED)
        (event,) = self.completions()
        self.assertEqual(event["result"], "PASS")
        actions = [e["action_type"] for e in orch.get_ledger(instance_id=inst.instance_id)]
        self.assertEqual(actions, ["start", "suspend", "resume", "completed"])

    def test_unexpected_error_on_start_removes_instance(self):
        steps = default_registry()

        def locked(ctx):
            raise ConnectionError("status store unavailable")

        steps.register("check_entity_exists", locked)
        orch = self.make_orchestrator(steps)
        with self.assertRaises(ConnectionError):
            orch.start("p1", GOOD_LISTING, trigger_id="evt_1")
        self.assertIsNone(self.instances.get_instance_by_trigger("evt_1"))
        self.assertEqual(self.instances.get_ledger(entity_id="p1"), [])

        self.store.create_record("p1")
        retried = self.make_orchestrator(default_registry()).start("p1", GOOD_LISTING, trigger_id="evt_1")
        self.assertEqual(retried.status, InstanceStatus.SUSPENDED)

    def test_attach_failure_clears_suspension(self):
        steps = default_registry()

        def refuse(ctx):
            raise StepError("store refused token")

        steps.register("attach_resume_token", refuse)
        orch = self.make_orchestrator(steps)
        self.store.create_record("p1")
        inst = orch.start("p1", GOOD_LISTING)
        self.assertEqual(inst.status, InstanceStatus.ERRORED)
        self.assertEqual(inst.resume_token, "")
        self.assertIsNone(self.instances.get_suspension(inst.instance_id))
        ledger = self.orch.get_ledger(instance_id=inst.instance_id)
        suspend = next(e for e in ledger if e["action_type"] == "suspend")
        token = suspend["idempotency_key"].split(":", 1)[1]
        with self.assertRaises(StaleResumeToken):
            orch.resume_workflow(token, {})
        self.assertIn("suspend_aborted", [e["action_type"] for e in ledger])


# ═══════════════════════════════════════════════════════════════════
# 5. Suspension Timeout
# ═══════════════════════════════════════════════════════════════════

class TestExpireSuspended(OrchestratorTestCase):
    timeout = 60.0

    def test_expire_after_timeout(self):
        inst = self.start_suspended()
        expired = self.orch.expire_suspended(now=time.time() + 120)
        self.assertEqual(expired, [inst.instance_id])

        after = self.orch.get_instance(inst.instance_id)
        self.assertEqual(after.status, InstanceStatus.FAILED)
        (event,) = self.completions()
        self.assertEqual((event["result"], event["reason"]), ("FAIL", "APPROVAL_TIMEOUT"))
        self.assertIsNone(self.store.get_record("p1").resume_token)

    def test_not_expired_before_timeout(self):
        self.start_suspended()
        self.assertEqual(self.orch.expire_suspended(now=time.time() + 10), [])

    def test_late_resume_after_expiry_is_stale(self):
        inst = self.start_suspended()
        self.orch.expire_suspended(now=time.time() + 120)
        with self.assertRaises(StaleResumeToken):
            self.orch.resume_workflow(inst.resume_token, {})
        self.assertEqual(len(self.completions()), 1)

    def test_disabled_when_zero(self):
        self.orch.suspension_timeout_seconds = 0
        self.start_suspended()
        self.assertEqual(self.orch.expire_suspended(now=time.time() + 10_000), [])


# ═══════════════════════════════════════════════════════════════════
# 6. Completion Delivery
# ═══════════════════════════════════════════════════════════════════

class TestCompletionDelivery(OrchestratorTestCase):

    def test_subscribers_run_after_commit(self):
        seen = []
        self.bus.subscribe(lambda env: seen.append((env.detail_type, self.db.in_transaction)))
        inst = self.start_suspended()
        self.orch.resume_workflow(inst.resume_token, {})
        self.assertEqual(seen, [("EvaluationCompleted", False)])

    def test_outbox_bus_fans_out_committed_instance(self):
        self.bus = SQLiteEventBus(self.db)
        orch = self.make_orchestrator(default_registry())
        seen = []

        def on_completed(env):
            inst = self.instances.get_instance(env.detail["instance_id"])
            seen.append((self.db.in_transaction, inst.status))

        self.bus.subscribe(on_completed, detail_types=["EvaluationCompleted"])
        self.store.create_record("p1")
        inst = orch.start("p1", GOOD_LISTING)
        orch.resume_workflow(inst.resume_token, {})

        self.assertEqual(seen, [(False, InstanceStatus.SUCCEEDED)])
        self.assertEqual(len(self.bus.list_events("EvaluationCompleted")), 1)


# ═══════════════════════════════════════════════════════════════════
# 7. Ledger and Stats
# ═══════════════════════════════════════════════════════════════════

class TestLedger(OrchestratorTestCase):

    def test_ledger_records_lifecycle(self):
        inst = self.start_suspended()
        self.orch.resume_workflow(inst.resume_token, {})
        actions = [e["action_type"] for e in self.orch.get_ledger(instance_id=inst.instance_id)]
        self.assertEqual(actions, ["start", "suspend", "resume", "completed"])

    def test_duplicate_idempotency_key_refused(self):
        self.assertTrue(self.instances.log_action("wf_1", "p1", "x", {}, idempotency_key="k"))
        self.assertFalse(self.instances.log_action("wf_1", "p1", "x", {}, idempotency_key="k"))

    def test_stats(self):
        self.start_suspended()
        stats = self.orch.stats()
        self.assertEqual(stats["instances"], {"suspended": 1})
        self.assertEqual(stats["suspensions"], 1)


if __name__ == "__main__":
    unittest.main()
