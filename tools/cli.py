#!/usr/bin/env python3
# =============================================================================
# CLI Tool for the Concierge Dispatch Pipeline
# =============================================================================
# Developer/admin tooling. Talks to the same coordination store, audit table
# and broker as the services (configured through the environment).
#
# Without EVENT_QUEUE_URL, dispatch runs the built-in handlers in this process
# and prints the audit entries they wrote. kill-switch and reload need
# COORDINATION_TABLE_NAME, and audit needs AUDIT_TABLE_NAME.
#
# Usage:
#   python tools/cli.py dispatch --source cron --type task.scheduled \
#       --payload '{"intent": "daily_summary", "execute_at": "2025-02-05T14:00:00Z"}'
#   python tools/cli.py dispatch --via-api --type message.sent --payload '{"text": "hi"}'
#   python tools/cli.py kill-switch on
#   python tools/cli.py reload slack email
#   python tools/cli.py audit --limit 20
#   python tools/cli.py audit --clear default
#   python tools/cli.py worker
# =============================================================================

import argparse
import json
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from concierge.app.relay_client import relay_clients_from_config
from concierge.runtime.deps import configure_logging, create_deps
from concierge.runtime.normalize import DispatchValidationError
from concierge.runtime.queue import QueueFullError
from concierge.runtime.reload_flags import ReloadScope


def _print(data, pretty: bool) -> None:
    if pretty:
        print(json.dumps(data, indent=2, ensure_ascii=False, default=str))
    else:
        print(json.dumps(data, ensure_ascii=False, default=str))


def cmd_dispatch(args, deps) -> int:
    if args.file:
        with open(args.file, "r") as f:
            payload = json.load(f)
    else:
        payload = json.loads(args.payload or "{}")

    raw = {"source": args.source, "type": args.type, "payload": payload}
    if args.priority is not None:
        raw["priority"] = args.priority

    in_process = not args.via_api and not deps.distributed
    if in_process:
        from concierge.app.bootstrap import build_api_app
        build_api_app(deps)

    try:
        if args.via_api:
            dispatch_client, _ = relay_clients_from_config(deps.config)
            event_id = dispatch_client.dispatch(raw)
        else:
            event_id = deps.dispatcher.dispatch(raw)
    except (DispatchValidationError, QueueFullError) as e:
        _print({"error": str(e)}, args.pretty)
        return 1
    if in_process:
        entries = [entry.to_dict() for entry in deps.audit_log.list(newest_first=False)]
        _print({"id": event_id, "entries": entries}, args.pretty)
    else:
        _print({"id": event_id}, args.pretty)
    return 0


def _require_table(args, deps, setting: str) -> bool:
    if deps.config[setting]:
        return True
    _print({"error": f"{args.command} needs {setting}; an in-memory store would not outlive this command"}, args.pretty)
    return False


def cmd_kill_switch(args, deps) -> int:
    if not _require_table(args, deps, "COORDINATION_TABLE_NAME"):
        return 1
    if args.state == "on":
        deps.kill_switch.set(True)
    elif args.state == "off":
        deps.kill_switch.set(False)
    _print({"enabled": deps.kill_switch.get()}, args.pretty)
    return 0


def cmd_reload(args, deps) -> int:
    if not _require_table(args, deps, "COORDINATION_TABLE_NAME"):
        return 1
    scopes = ReloadScope.ALL if "all" in args.scopes else args.scopes
    try:
        scopes = deps.reload_flags.set_flags(scopes)
    except ValueError as e:
        _print({"error": str(e)}, args.pretty)
        return 1
    _print({"scopes": scopes}, args.pretty)
    return 0


def cmd_audit(args, deps) -> int:
    if not _require_table(args, deps, "AUDIT_TABLE_NAME"):
        return 1
    if args.clear:
        removed = deps.audit_log.clear(args.clear)
        _print({"removed": removed}, args.pretty)
        return 0
    entries = [entry.to_dict() for entry in deps.audit_log.list(newest_first=True)]
    if args.limit:
        entries = entries[:args.limit]
    _print({"entries": entries}, args.pretty)
    return 0


def cmd_worker(args, deps) -> int:
    from concierge.app.worker_handler import run_worker
    run_worker(deps)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Concierge dispatch pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s dispatch --source cron --type task.scheduled --payload '{"intent": "daily_summary", "cron": "0 9 * * *"}'
  %(prog)s kill-switch status
  %(prog)s reload all
  %(prog)s dispatch --type message.sent --payload '{"text": "hi"}'
  %(prog)s audit --clear default
        """
    )
    parser.add_argument("--pretty", "-p", action="store_true", help="Pretty print output")
    parser.add_argument("--region", "-r", help="AWS region (default: AWS_REGION or ap-south-1)")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("dispatch", help="Submit a raw event")
    p.add_argument("--source", default="cli", help="Producer name")
    p.add_argument("--type", required=True, help="Event type, e.g. message.sent")
    p.add_argument("--payload", "-j", help="JSON payload")
    p.add_argument("--file", "-f", help="JSON file to load payload from")
    p.add_argument("--priority", type=int, help="Explicit priority")
    p.add_argument("--via-api", action="store_true", help="Submit through the API's internal endpoint")
    p.set_defaults(func=cmd_dispatch)

    p = sub.add_parser("kill-switch", help="Show or set the global pause")
    p.add_argument("state", nargs="?", choices=["on", "off", "status"], default="status")
    p.set_defaults(func=cmd_kill_switch)

    p = sub.add_parser("reload", help="Ask channel adapters to reload")
    p.add_argument("scopes", nargs="+", help="slack, email, whatsapp, schedule or all")
    p.set_defaults(func=cmd_reload)

    p = sub.add_parser("audit", help="List or clear audit entries")
    p.add_argument("--clear", metavar="USER", help="Delete all entries for USER")
    p.add_argument("--limit", type=int, help="Show at most N entries")
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("worker", help="Run a worker loop against EVENT_QUEUE_URL")
    p.set_defaults(func=cmd_worker)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    deps = create_deps(region=args.region, background_drain=False)
    configure_logging(deps)
    return args.func(args, deps)


if __name__ == "__main__":
    sys.exit(main())
