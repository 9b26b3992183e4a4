#!/usr/bin/env python3
"""
dirsync -- Directory identity synchronization for the library system.

Operator CLI. Run it from cron (or any scheduler) for periodic syncs, or by
hand to diagnose the directory connection.

Usage:
  python main.py sync
  python main.py sync --json
  python main.py sync-user jdoe
  python main.py status
  python main.py probe
  python main.py test-connection

Environment variables (or .env):
  DIRECTORY_URL, DIRECTORY_BASE_DN, DIRECTORY_ADMIN_USER,
  DIRECTORY_ADMIN_PASSWORD, DIRECTORY_UPN_SUFFIX, DATABASE_URL, SECRET_KEY
  See core/config.py for the full list.

Exit codes: 0 success, 1 the operation failed or reported errors, 2 usage.
"""

import argparse
import logging
import sys

from auth.store import IdentityStore
from core.config import get_settings
from core.errors import DirectorySyncError
from core.formatter import (
    disable_color,
    print_connection_test,
    print_identity,
    print_probe,
    print_status,
    print_sync_report,
    to_json,
)
from directory.connection import DirectoryConnectionManager
from directory.diagnostics import run_connection_test
from directory.models import DirectoryEndpoint
from directory.probe import probe
from sync.engine import SyncEngine

logger = logging.getLogger("dirsync.cli")


def _cmd_sync(engine: SyncEngine, as_json: bool) -> int:
    report = engine.sync_all().to_dict()
    if as_json:
        print(to_json(report))
    else:
        print_sync_report(report)
    return 1 if report["errors"] else 0


def _cmd_sync_user(engine: SyncEngine, account_name: str, as_json: bool) -> int:
    identity = engine.sync_account(account_name)
    if identity is None:
        print(f"  [!] Account '{account_name}' was not found in the directory.", file=sys.stderr)
        return 1
    data = {
        "id": identity.id,
        "account_name": identity.account_name,
        "display_name": identity.display_name,
        "email": identity.email,
        "role": identity.role.value,
        "is_active": identity.is_active,
        "manual_override": identity.manual_override,
        "department": identity.department,
        "last_sync": identity.last_sync,
    }
    if as_json:
        print(to_json(data))
    else:
        print_identity(data)
    return 0


def _cmd_status(engine: SyncEngine, as_json: bool) -> int:
    status = engine.status().to_dict()
    if as_json:
        print(to_json(status))
    else:
        print_status(status)
    return 0


def _cmd_probe(as_json: bool) -> int:
    """Probe the configured endpoint and every discovery candidate, without binding."""
    settings = get_settings()
    configured = DirectoryEndpoint.parse(settings.directory_url)
    endpoints = [configured] + [DirectoryEndpoint.parse(h, default=configured) for h in settings.directory_candidate_hosts]
    results = [
        {"endpoint": e.url, "reachable": probe(e.host, e.port, settings.directory_probe_timeout)} for e in endpoints
    ]
    if as_json:
        print(to_json({"endpoints": results}))
    else:
        print()
        for r in results:
            print_probe(r["endpoint"], r["reachable"])
        print()
    return 0 if any(r["reachable"] for r in results) else 1


def _cmd_test_connection(connections: DirectoryConnectionManager, as_json: bool) -> int:
    result = run_connection_test(connections)
    if as_json:
        print(to_json(result.to_dict()))
    else:
        print_connection_test(result.to_dict())
    return 0 if result.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dirsync",
        description="Synchronize directory accounts into the library identity store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sync
  python main.py sync-user jdoe --json
  python main.py status
  DIRECTORY_URL=ldaps://dc01.corp.example python main.py test-connection
        """,
    )
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI color codes in terminal output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")

    json_flag = argparse.ArgumentParser(add_help=False)
    json_flag.add_argument("--json", action="store_true", help="Output structured JSON")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("sync", parents=[json_flag], help="Sync every directory user")
    user = sub.add_parser("sync-user", parents=[json_flag], help="Sync a single account")
    user.add_argument("account_name", metavar="NAME", help="sAMAccountName, UPN or DOMAIN\\name")
    sub.add_parser("status", parents=[json_flag], help="Show store freshness and role distribution")
    sub.add_parser("probe", parents=[json_flag], help="TCP-probe the configured and candidate endpoints")
    sub.add_parser("test-connection", parents=[json_flag], help="Probe, bind as admin and list sample users")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.no_color:
        disable_color()

    if args.command == "probe":
        return _cmd_probe(args.json)

    store = IdentityStore()
    try:
        if args.command == "status":
            return _cmd_status(SyncEngine(store), args.json)

        connections = DirectoryConnectionManager(get_settings())
        if args.command == "test-connection":
            return _cmd_test_connection(connections, args.json)

        engine = SyncEngine(store, connections)
        if args.command == "sync":
            return _cmd_sync(engine, args.json)
        return _cmd_sync_user(engine, args.account_name, args.json)
    except DirectorySyncError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"  [!] {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
