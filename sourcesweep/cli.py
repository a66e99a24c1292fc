from __future__ import annotations

import argparse
import json
import logging
import sys

import uvicorn

from sourcesweep import __version__
from sourcesweep.config import Settings, apply_config, load_config
from sourcesweep.errors import EntityNotFoundError, RemoteOperationError
from sourcesweep.log import setup_logging
from sourcesweep.rollback import RollbackJournal
from sourcesweep.store import EntityStore


def _journal(settings: Settings) -> RollbackJournal:
    journal = RollbackJournal(settings.rollback, settings.analysis.retirement_marker)
    journal.load()
    return journal


def cmd_serve(args: argparse.Namespace) -> int:
    print(f"[*] Starting SourceSweep control plane on {args.host}:{args.port}")
    uvicorn.run("sourcesweep.web.api:app", host=args.host, port=args.port, reload=False)
    return 0


def cmd_check_connection(args: argparse.Namespace) -> int:
    inventory = args.settings.inventory
    print(f"[*] Connecting to {inventory.hostname}:{inventory.port}")
    with EntityStore(inventory) as store:
        try:
            store.check_connection()
        except RemoteOperationError as e:
            print(f"[!] Connection failed: {e}", file=sys.stderr)
            return 1
    print("[+] Connection successful")
    return 0


def cmd_rollback_list(args: argparse.Namespace) -> int:
    summaries = _journal(args.settings).list()
    if args.json:
        print(json.dumps([s.model_dump(mode="json") for s in summaries], indent=2))
        return 0
    if not summaries:
        print("[*] No rollback records")
        return 0
    for s in summaries:
        print(f"{s.id}  {s.timestamp:%Y-%m-%d %H:%M:%S}  {s.operation:<10}  "
              f"{s.log_sources} log sources, {s.hosts} hosts, {s.system_monitors} agents  "
              f"(job {s.job_id})")
    return 0


def cmd_rollback_show(args: argparse.Namespace) -> int:
    try:
        data = _journal(args.settings).get(args.rollback_id)
    except EntityNotFoundError as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1
    print(json.dumps(data.model_dump(mode="json"), indent=2))
    return 0


def cmd_rollback_delete(args: argparse.Namespace) -> int:
    try:
        _journal(args.settings).delete(args.rollback_id)
    except EntityNotFoundError as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"[!] Failed to delete rollback file: {e}", file=sys.stderr)
        return 1
    print(f"[+] Deleted {args.rollback_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sourcesweep",
        description="Find and retire stale log sources, hosts and collection agents.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--version", action="version", version=f"sourcesweep {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Start the control plane (REST API + SSE)")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind host")
    serve_parser.add_argument("--port", type=int, default=8080, help="Bind port")
    serve_parser.set_defaults(func=cmd_serve)

    check_parser = subparsers.add_parser("check-connection", help="Test access to the inventory API")
    check_parser.set_defaults(func=cmd_check_connection)

    rollback_parser = subparsers.add_parser("rollback", help="Inspect the rollback journal")
    rollback_sub = rollback_parser.add_subparsers(dest="rollback_command", required=True)

    list_parser = rollback_sub.add_parser("list", help="List rollback records, newest first")
    list_parser.add_argument("--json", action="store_true", help="Print as JSON")
    list_parser.set_defaults(func=cmd_rollback_list)

    show_parser = rollback_sub.add_parser("show", help="Print one rollback record")
    show_parser.add_argument("rollback_id")
    show_parser.set_defaults(func=cmd_rollback_show)

    delete_parser = rollback_sub.add_parser("delete", help="Delete a rollback record and its file")
    delete_parser.add_argument("rollback_id")
    delete_parser.set_defaults(func=cmd_rollback_delete)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    config = load_config()
    apply_config(parser, config)
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)
    args.settings = Settings.model_validate(config)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
