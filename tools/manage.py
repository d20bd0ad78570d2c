#!/usr/bin/env python3
"""
didchain Management CLI

Commands for resolving DIDs and managing the log cache:
- resolve: Resolve a DID to its DID document
- read: Point query with a selector (stops the walk early)
- logs: Print the log document of a DID
- owner: Print the current owner of a DID
- merge: Merge partial log documents saved as JSON files
- init-db: Create the log cache table in PostgreSQL
- clear-cache: Drop cached log documents
- health-check: Check ledger and cache connectivity

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage resolve did:ethr:0x...
    python -m tools.manage read did:ethr:0x... --selector '{"service": {"type": "Hub"}}'
    python -m tools.manage merge part1.json part2.json --did did:ethr:0x...
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def cmd_resolve(args):
    """Resolve a DID to its DID document."""
    from didchain.core import create_resolver

    resolver = create_resolver()
    _print_json(resolver.resolve(args.did).to_json_dict())


def cmd_read(args):
    """Print the first entry matching a selector, or null."""
    from didchain.core import create_resolver
    from didchain.schemas import Selector

    try:
        selector = Selector.from_dict(json.loads(args.selector))
    except (json.JSONDecodeError, ValueError) as e:
        print(f"Error: invalid selector: {e}")
        return 1

    resolver = create_resolver()
    match = resolver.read(args.did, selector)
    _print_json(match)
    return 0 if match is not None else 2


def cmd_logs(args):
    """Print the log document of a DID, optionally saving it to a file."""
    from didchain.core import create_resolver

    resolver = create_resolver()
    log = resolver.read_log(args.did).to_json_dict()

    if args.output:
        with open(args.output, "w") as f:
            json.dump(log, f, indent=2)
        print(f"[OK] Log document (topBlock {log['topBlock']}) written to {args.output}")
    else:
        _print_json(log)


def cmd_owner(args):
    """Print the current owner of a DID."""
    from didchain.core import create_resolver

    print(create_resolver().owner_of(args.did))


def cmd_merge(args):
    """Merge partial log documents; render them when --did is given."""
    from didchain.core import DocumentBuilder, merge_logs
    from didchain.schemas import LogDocument

    logs = []
    for path in args.files:
        with open(path) as f:
            logs.append(LogDocument.from_json_dict(json.load(f)))
    print(f"Merging {len(logs)} log document(s)...", file=sys.stderr)

    merged = merge_logs(logs)
    if args.did:
        _print_json(DocumentBuilder().build(args.did, merged).to_json_dict())
    else:
        _print_json(merged.to_json_dict())


def _postgres_store():
    from didchain.db import LogStoreDriver, get_logstore_driver, create_log_store, PostgresLogStore

    if get_logstore_driver() != LogStoreDriver.PSYCOPG2:
        print("Error: no PostgreSQL configured (set DATABASE_URL or DATABASE_HOST)")
        return None
    store = create_log_store()
    if not isinstance(store, PostgresLogStore):
        print("Error: could not connect to PostgreSQL")
        return None
    return store


def cmd_init_db(args):
    """Create the did_logs table."""
    store = _postgres_store()
    if store is None:
        return 1
    store.init_schema()
    print(f"[OK] Log cache ready ({store.count()} cached documents)")


def cmd_clear_cache(args):
    """Drop one cached log document, or all of them."""
    from didchain.db import create_log_store

    store = create_log_store()
    if args.did:
        if store.delete(args.did):
            print(f"[OK] Removed cached log for {args.did}")
        else:
            print(f"No cached log for {args.did}")
    else:
        removed = store.clear()
        print(f"[OK] Removed {removed} cached log document(s)")


def cmd_health_check(args):
    """Run ledger and cache health checks."""
    from didchain.core import create_resolver
    from didchain.observability import check_health

    resolver = create_resolver()
    status = check_health(ledger=resolver.ledger, store=resolver.store)

    print("=== didchain Health Check ===\n")
    for name, check in status.checks.items():
        marker = "[OK]" if check["status"] == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}".rstrip())
    print(f"\n=== Health Check Complete ({status.duration_ms} ms) ===")
    return 0 if status.healthy else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="didchain Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # resolve
    p_resolve = subparsers.add_parser("resolve", help="Resolve a DID to its DID document")
    p_resolve.add_argument("did", help="DID to resolve")

    # read
    p_read = subparsers.add_parser("read", help="Query one entry of a DID document")
    p_read.add_argument("did", help="DID to query")
    p_read.add_argument(
        "--selector", "-s",
        required=True,
        help='Selector JSON, e.g. {"publicKey": {"type": "Secp256k1VerificationKey2018"}}'
    )

    # logs
    p_logs = subparsers.add_parser("logs", help="Print the log document of a DID")
    p_logs.add_argument("did", help="DID to read")
    p_logs.add_argument("--output", "-o", help="Write the log document to this file")

    # owner
    p_owner = subparsers.add_parser("owner", help="Print the current owner of a DID")
    p_owner.add_argument("did", help="DID to look up")

    # merge
    p_merge = subparsers.add_parser("merge", help="Merge partial log documents")
    p_merge.add_argument("files", nargs="+", help="Log document JSON files")
    p_merge.add_argument("--did", help="Render the merged log as this DID's document")

    # init-db
    subparsers.add_parser("init-db", help="Create the log cache table")

    # clear-cache
    p_clear = subparsers.add_parser("clear-cache", help="Drop cached log documents")
    p_clear.add_argument("did", nargs="?", help="Only drop this DID's cached log")

    # health-check
    subparsers.add_parser("health-check", help="Check ledger and cache connectivity")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    from didchain.errors import ResolverError

    commands = {
        "resolve": cmd_resolve,
        "read": cmd_read,
        "logs": cmd_logs,
        "owner": cmd_owner,
        "merge": cmd_merge,
        "init-db": cmd_init_db,
        "clear-cache": cmd_clear_cache,
        "health-check": cmd_health_check,
    }

    try:
        return commands[args.command](args) or 0
    except ResolverError as e:
        print(f"Error: {type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
