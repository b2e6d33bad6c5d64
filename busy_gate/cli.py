"""
busy-gate - Command Line Interface

Usage:
    busy-gate serve [--host H] [--port P]          Run the HTTP server
    busy-gate status <subject>                     Quota and lock state for a subject
    busy-gate allocate <subject> <requester> --hours H
    busy-gate release-allocation <allocation_id>   End an allocation early
    busy-gate enable <subject>                     Re-enable a quota window after cooldown
    busy-gate engage <subject> <requester> [--ttl SECONDS] [--context C]
    busy-gate heartbeat <subject> <requester> --extend SECONDS
    busy-gate release <subject> <requester> [--value V] [--notes N]
    busy-gate busy                                 List held locks
    busy-gate history [--party ID] [--role worker|hirer|both] [--limit N]
    busy-gate sweep                                Clear expired locks
    busy-gate reconcile                            Re-push listing busy flags
    busy-gate verify-history                       Verify the history hash chain

Global options: --db PATH (default: $BUSY_DB_PATH or busy_gate.db), --json, -v.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any, List, Optional

from .clock import MS_IN_HOUR, MS_IN_SECOND, ms_to_iso
from .errors import BUSY_E_BAD_REQUEST, BusyGateError, busy_error
from .gateway import BusyGate, GateConfig
from .lockdown import StorageLockdownError

logger = logging.getLogger("busy_gate")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _gate(args) -> BusyGate:
    config = GateConfig.from_env()
    if args.db:
        config = replace(config, db_path=args.db)
    return BusyGate(config)


def _emit(args, obj: Any, lines: List[str]) -> None:
    if args.json:
        print(json.dumps(obj, indent=2, sort_keys=True, default=str))
    else:
        for line in lines:
            print(line)


def cmd_serve(args):
    """Run the HTTP server."""
    from .server import main as server_main

    argv = ["--host", args.host, "--port", str(args.port)]
    if args.db:
        argv += ["--db", args.db]
    return server_main(argv)


def cmd_status(args):
    """Quota window and engagement lock state for one subject."""
    gate = _gate(args)
    try:
        quota = gate.quota_status(args.subject)
        lock = gate.lock_status(args.subject)
    finally:
        gate.close()
    now = gate.clock.now_ms()
    q = quota.as_dict()
    lk = lock.as_dict(now_ms=now)
    _emit(args, {"quota": q, "lock": lk}, [
        f"Subject:    {args.subject}",
        f"Quota:      {q['busy_hours_used']}h used, {q['remaining_hours']}h remaining",
        f"Window:     {'enabled' if q['enabled'] else 'disabled'} (since {q['window_start']})",
        f"Re-enable:  {q['reenable_at'] or '-'}",
        f"Lock:       {lk['status']}" + (f" by {lk['holder']} until {lk['expires_at'] or 'released'}" if lk["holder"] else ""),
    ])
    return 0


def cmd_allocate(args):
    """Pre-grant busy time from the daily quota."""
    gate = _gate(args)
    try:
        grant = gate.allocate(args.subject, args.requester, int(round(args.hours * MS_IN_HOUR)))
    finally:
        gate.close()
    d = grant.as_dict()
    _emit(args, d, [
        f"Allocation: {grant.record.allocation_id}",
        f"Granted:    {d['granted_hours']:.3f}h (ends {d['record']['end_at']})",
        f"Remaining:  {d['remaining_hours']:.3f}h",
    ])
    return 0


def cmd_release_allocation(args):
    gate = _gate(args)
    try:
        rec = gate.release_allocation(args.allocation_id)
    finally:
        gate.close()
    _emit(args, rec.as_dict(), [f"Allocation {rec.allocation_id} ended at {ms_to_iso(rec.end_at_ms)}"])
    return 0


def cmd_enable(args):
    gate = _gate(args)
    try:
        w = gate.manual_enable(args.subject)
    finally:
        gate.close()
    _emit(args, w.as_dict(), [f"Quota window for {args.subject} enabled"])
    return 0


def cmd_engage(args):
    """Try to take the engagement lock."""
    gate = _gate(args)
    try:
        ttl_ms = int(args.ttl * MS_IN_SECOND) if args.ttl is not None else None
        result = gate.try_acquire(args.subject, args.requester, ttl_ms=ttl_ms, context=args.context)
    finally:
        gate.close()
    d = result.as_dict()
    if result.acquired:
        lines = [f"{result.code}: {args.subject} held by {result.holder} until {d['expires_at'] or 'released'}"]
    else:
        lines = [f"ALREADY_HELD: {args.subject} is held by {result.holder}"]
    _emit(args, d, lines)
    return 0 if result.acquired else 3


def cmd_heartbeat(args):
    gate = _gate(args)
    try:
        expires_at = gate.heartbeat(args.subject, args.requester, int(args.extend * MS_IN_SECOND))
    finally:
        gate.close()
    _emit(args, {"subject": args.subject, "expires_at": ms_to_iso(expires_at)},
          [f"{args.subject} extended until {ms_to_iso(expires_at)}"])
    return 0


def cmd_release(args):
    gate = _gate(args)
    try:
        metadata = json.loads(args.metadata) if args.metadata else {}
        if not isinstance(metadata, dict):
            raise busy_error(BUSY_E_BAD_REQUEST, "--metadata must be a JSON object")
        result = gate.release(
            args.subject,
            args.requester,
            value=args.value,
            notes=args.notes,
            metadata=metadata,
            record_history=not args.no_history,
        )
    finally:
        gate.close()
    lines = [f"{args.subject} released"]
    if result.history is not None:
        lines.append(f"History:  {result.history.history_id}")
    for w in result.warnings:
        lines.append(f"Warning:  {w}")
    _emit(args, result.as_dict(), lines)
    return 0


def cmd_busy(args):
    """List currently held locks."""
    gate = _gate(args)
    try:
        locks = gate.busy_list()
    finally:
        gate.close()
    now = gate.clock.now_ms()
    rows = [lock.as_dict(now_ms=now) for lock in locks]
    lines = [f"{len(rows)} busy subject(s)"]
    for r in rows:
        lines.append(f"  {r['subject']}: {r['holder']} since {r['acquired_at']} until {r['expires_at'] or '-'}")
    _emit(args, rows, lines)
    return 0


def cmd_history(args):
    """Show recent engagement history (newest first)."""
    gate = _gate(args)
    try:
        records = gate.history(args.party, args.role, limit=args.limit)
    finally:
        gate.close()
    rows = [r.as_dict() for r in records]
    lines = [f"\n{'='*60}", f"ENGAGEMENT HISTORY ({len(rows)} records)", f"{'='*60}"]
    for r in rows:
        lines.append(f"{r['ended_at']} | {r['subject']} <- {r['holder']}")
        lines.append(f"  Started: {r['started_at']}  Value: {r['value']}")
        lines.append(f"  Notes: {r['notes'][:70]}")
    _emit(args, rows, lines)
    return 0


def cmd_sweep(args):
    gate = _gate(args)
    try:
        freed = gate.sweep_expired()
    finally:
        gate.close()
    _emit(args, {"freed": freed}, [f"Cleared {len(freed)} expired lock(s)"] + [f"  {s}" for s in freed])
    return 0


def cmd_reconcile(args):
    """Re-push authoritative busy flags to listings (backfill)."""
    gate = _gate(args)
    try:
        results = gate.reconcile_listings()
    finally:
        gate.close()
    failed = [s for s, r in results.items() if not r.ok]
    _emit(args, {s: r.as_dict() for s, r in results.items()}, [
        f"Reconciled {len(results)} subject(s), {len(failed)} failed",
    ] + [f"  failed: {s}" for s in failed])
    return 0 if not failed else 1


def cmd_verify_history(args):
    """Verify the engagement history hash chain."""
    gate = _gate(args)
    try:
        ok, reason, count = gate.verify_history()
    finally:
        gate.close()
    _emit(args, {"ok": ok, "reason": reason, "count": count}, [
        f"{'✓' if ok else '✗'} history chain {reason} ({count} records)",
    ])
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="busy-gate",
        description="busy-gate CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=os.getenv("BUSY_DB_PATH"), help="Path to SQLite database")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p = subparsers.add_parser("serve", help="Run the HTTP server")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8000)
    p.set_defaults(func=cmd_serve)

    p = subparsers.add_parser("status", help="Quota and lock state for a subject")
    p.add_argument("subject")
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("allocate", help="Allocate busy time from the quota")
    p.add_argument("subject")
    p.add_argument("requester")
    p.add_argument("--hours", type=float, required=True)
    p.set_defaults(func=cmd_allocate)

    p = subparsers.add_parser("release-allocation", help="End an allocation early")
    p.add_argument("allocation_id")
    p.set_defaults(func=cmd_release_allocation)

    p = subparsers.add_parser("enable", help="Re-enable a quota window")
    p.add_argument("subject")
    p.set_defaults(func=cmd_enable)

    p = subparsers.add_parser("engage", help="Try to acquire the engagement lock")
    p.add_argument("subject")
    p.add_argument("requester")
    p.add_argument("--ttl", type=float, default=None, help="Lock TTL in seconds (<= 0: no expiry)")
    p.add_argument("--context", default=None)
    p.set_defaults(func=cmd_engage)

    p = subparsers.add_parser("heartbeat", help="Extend a held lock")
    p.add_argument("subject")
    p.add_argument("requester")
    p.add_argument("--extend", type=float, required=True, help="Seconds from now")
    p.set_defaults(func=cmd_heartbeat)

    p = subparsers.add_parser("release", help="Release a held lock")
    p.add_argument("subject")
    p.add_argument("requester")
    p.add_argument("--value", type=float, default=0.0)
    p.add_argument("--notes", default="")
    p.add_argument("--metadata", default=None, help="JSON object")
    p.add_argument("--no-history", action="store_true")
    p.set_defaults(func=cmd_release)

    p = subparsers.add_parser("busy", help="List held locks")
    p.set_defaults(func=cmd_busy)

    p = subparsers.add_parser("history", help="Show engagement history")
    p.add_argument("--party", default=None)
    p.add_argument("--role", default="both", choices=["worker", "hirer", "both"])
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_history)

    p = subparsers.add_parser("sweep", help="Clear expired locks")
    p.set_defaults(func=cmd_sweep)

    p = subparsers.add_parser("reconcile", help="Re-push listing busy flags")
    p.set_defaults(func=cmd_reconcile)

    p = subparsers.add_parser("verify-history", help="Verify the history hash chain")
    p.set_defaults(func=cmd_verify_history)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return int(args.func(args) or 0)
    except BusyGateError as e:
        if args.json:
            print(json.dumps(e.as_dict(), indent=2, sort_keys=True, default=str))
        else:
            print(f"error: {e}", file=sys.stderr)
        return 2
    except StorageLockdownError:
        print("error: store in lockdown, retry later", file=sys.stderr)
        return 2
    except json.JSONDecodeError as e:
        print(f"error: invalid JSON: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
