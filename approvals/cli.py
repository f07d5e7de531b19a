"""
Publication Approvals — Operator CLI

Usage:
    # Register a publication and approve its contract
    python -m approvals.cli create p1 --attributes '{"address": "1 Main St"}'
    python -m approvals.cli approve p1

    # Start the approval workflow, then drain the change feed
    python -m approvals.cli request-approval p1 --payload '{"description": "Sunny flat"}'
    python -m approvals.cli pump

    # Inspect
    python -m approvals.cli show p1
    python -m approvals.cli dead-letters [--source resumption-bridge]
    python -m approvals.cli ledger --entity p1
    python -m approvals.cli stats

    # End a contract / expire instances waiting too long
    python -m approvals.cli end p1 --state CLOSED
    python -m approvals.cli sweep
"""

import argparse
import dataclasses
import json
import sys
import time
from pathlib import Path

from approvals import __version__
from approvals.runtime import ApprovalRuntime
from infra.config import ApprovalsConfig, load_config
from infra.logging import configure_logging


def _print_write(resp):
    marker = "✓" if resp.accepted else "✗"
    line = f"  {marker} {resp.entity_id}: {resp.status}"
    if resp.reason:
        line += f" ({resp.reason})"
    print(line)
    if resp.record:
        print(f"    state:       {resp.record.lifecycle_state.value}")
        print(f"    correlation: {resp.record.correlation_id}")


def cmd_create(args, rt: ApprovalRuntime):
    """Create a DRAFT status record."""
    attributes = json.loads(args.attributes) if args.attributes else {}
    _print_write(rt.ingest.create(args.entity_id, attributes))


def cmd_approve(args, rt: ApprovalRuntime):
    _print_write(rt.ingest.approve(args.entity_id))


def cmd_end(args, rt: ApprovalRuntime):
    result = rt.store.end_record(args.entity_id, args.state)
    if result.ok:
        print(f"  ✓ {args.entity_id}: {result.record.lifecycle_state.value}")
    else:
        print(f"  ✗ {args.entity_id}: rejected ({result.reason.value})")


def cmd_show(args, rt: ApprovalRuntime):
    """Show a status record and the workflow instances for it."""
    record = rt.store.get_record(args.entity_id)
    if record is None:
        print(f"No record for {args.entity_id}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(record.to_image(), indent=2))

    instances = rt.instances.list_instances(entity_id=args.entity_id)
    if instances:
        print(f"\nWorkflow instances ({len(instances)})")
        print(f"{'─' * 50}")
        for inst in instances:
            print(f"  {inst.instance_id}")
            print(f"    status: {inst.status.value}")
            print(f"    state:  {inst.current_state}")
            if inst.result:
                print(f"    result: {inst.result.get('result')} {inst.result.get('reason') or ''}")


def cmd_request_approval(args, rt: ApprovalRuntime):
    payload = json.loads(args.payload) if args.payload else {}
    envelope = rt.request_approval(args.entity_id, payload)
    print(f"  Published ApprovalRequested {envelope.event_id}")
    inst = rt.instances.get_instance_by_trigger(envelope.event_id)
    if inst:
        print(f"  Instance {inst.instance_id}: {inst.status.value} at {inst.current_state}")
    else:
        print("  No instance started (see dead-letters)")


def cmd_pump(args, rt: ApprovalRuntime):
    """Drain the change feed for the relay and the bridge."""
    rnd = rt.pump(max_rounds=args.rounds)
    for r in rnd.results:
        if r.delivered or r.failed or r.dead_lettered:
            print(
                f"  {r.consumer:20s} shard {r.shard}: "
                f"{r.delivered} ok, {r.failed} retry, {r.dead_lettered} dead-lettered"
            )
    for consumer, shard, err in rnd.errors:
        print(f"  ✗ {consumer} shard {shard}: {err}", file=sys.stderr)
    if rnd.errors:
        sys.exit(1)


def cmd_dead_letters(args, rt: ApprovalRuntime):
    letters = rt.dead_letters.list(source=args.source, reason=args.reason)
    if not letters:
        print("No dead letters.")
        return
    print(f"\nDead Letters ({len(letters)})")
    print(f"{'─' * 70}")
    for dl in letters:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(dl.created_at))
        print(f"  [{ts}] {dl.source:20s} {dl.reason}")
        if dl.error:
            print(f"           {dl.error[:100]}")
        if args.verbose:
            print(f"           {json.dumps(dl.payload, default=str)[:200]}")


def cmd_ledger(args, rt: ApprovalRuntime):
    entries = rt.orchestrator.get_ledger(instance_id=args.instance, entity_id=args.entity)
    if not entries:
        print("No ledger entries found.")
        return
    print(f"\nAction Ledger ({len(entries)} entries)")
    print(f"{'─' * 70}")
    for e in entries:
        ts = time.strftime("%H:%M:%S", time.localtime(e["created_at"]))
        print(f"  [{ts}] {e['action_type']:16s} {e['instance_id']:18s} {e['entity_id']}")


def cmd_sweep(args, rt: ApprovalRuntime):
    expired = rt.sweep()
    print(f"  Expired {len(expired)} instance(s)")
    for instance_id in expired:
        print(f"    {instance_id}")


def cmd_stats(args, rt: ApprovalRuntime):
    print(json.dumps(rt.stats(), indent=2, default=str))


COMMANDS = {
    "create": cmd_create,
    "approve": cmd_approve,
    "end": cmd_end,
    "show": cmd_show,
    "request-approval": cmd_request_approval,
    "pump": cmd_pump,
    "dead-letters": cmd_dead_letters,
    "ledger": cmd_ledger,
    "sweep": cmd_sweep,
    "stats": cmd_stats,
}


def build_parser() -> argparse.ArgumentParser:
    _project_root = Path(__file__).resolve().parent.parent

    parser = argparse.ArgumentParser(
        description="Publication Approvals — operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default=str(_project_root / "config" / "approvals.yaml"),
        help="Base config YAML (default: config/approvals.yaml)",
    )
    parser.add_argument("--db", help="Override store.db_path")

    subs = parser.add_subparsers(dest="command", help="Command")

    create_p = subs.add_parser("create", help="Create a DRAFT status record")
    create_p.add_argument("entity_id")
    create_p.add_argument("--attributes", "-a", help="JSON object of record attributes")

    approve_p = subs.add_parser("approve", help="Move a DRAFT record to APPROVED")
    approve_p.add_argument("entity_id")

    end_p = subs.add_parser("end", help="End an active record's contract")
    end_p.add_argument("entity_id")
    end_p.add_argument("--state", default="CLOSED", choices=["CANCELLED", "CLOSED", "EXPIRED"])

    show_p = subs.add_parser("show", help="Show a record and its workflow instances")
    show_p.add_argument("entity_id")

    req_p = subs.add_parser("request-approval", help="Start the approval workflow")
    req_p.add_argument("entity_id")
    req_p.add_argument("--payload", "-p", help="JSON publication content")

    pump_p = subs.add_parser("pump", help="Drain the change feed")
    pump_p.add_argument("--rounds", type=int, default=50)

    dl_p = subs.add_parser("dead-letters", help="List dead letters")
    dl_p.add_argument("--source")
    dl_p.add_argument("--reason")
    dl_p.add_argument("--verbose", "-v", action="store_true")

    ledger_p = subs.add_parser("ledger", help="Show the action ledger")
    ledger_p.add_argument("--instance", help="Filter by instance ID")
    ledger_p.add_argument("--entity", help="Filter by entity ID")

    subs.add_parser("sweep", help="Expire instances suspended past the timeout")
    subs.add_parser("stats", help="Show statistics")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = ApprovalsConfig.from_dict(load_config(args.config))
    if args.db:
        config = dataclasses.replace(config, db_path=args.db)
    configure_logging(level=config.log_level, namespace=config.service_namespace, version=__version__)

    with ApprovalRuntime(config) as rt:
        COMMANDS[args.command](args, rt)


if __name__ == "__main__":
    main()
