"""Oncely CLI - operational commands for the idempotency store.

Usage:
    python -m oncely.cli [--backend sqlite|postgres] [--db-path PATH] reap
    python -m oncely.cli [--backend sqlite|postgres] [--db-path PATH] inspect --scope S --token T
    python -m oncely.cli migrate

Output is deterministic JSON on stdout.

Exit codes:
    0: Success
    1: Internal error / store unavailable
    2: Record not found / invalid input or configuration
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from oncely.coordinator.config import CoordinatorConfigError
from oncely.idempotency.keys import IdempotencyKey, InvalidKeyError
from oncely.idempotency.models import IdempotencyRecord
from oncely.idempotency.sqlite_store import SqliteIdempotencyStore
from oncely.idempotency.store import IdempotencyStore, StoreUnavailableError
from oncely.persistence.db import DatabaseConfigError
from oncely.reaper.worker import LeaseReaper

BACKENDS = ("sqlite", "postgres")


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _error(code: str, message: str) -> dict[str, Any]:
    return {"code": code, "message": message}


def _payload_text(payload: bytes | None) -> str | None:
    if payload is None:
        return None
    return payload.decode("utf-8", errors="replace")


def _record_to_dict(record: IdempotencyRecord) -> dict[str, Any]:
    """Render a record for display. The raw token is echoed since the caller supplied it."""
    return {
        "scope": record.key.scope,
        "token": record.key.token,
        "token_sha256": record.key.token_sha256,
        "status": record.status.value,
        "owner_token": record.owner_token,
        "created_at": record.created_at.isoformat(),
        "lease_expires_at": record.lease_expires_at.isoformat(),
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "retention_expires_at": record.retention_expires_at.isoformat(),
        "result_payload": _payload_text(record.result_payload),
        "error_payload": _payload_text(record.error_payload),
    }


def _open_store(args: argparse.Namespace) -> IdempotencyStore:
    if args.backend == "postgres":
        from oncely.idempotency.postgres_store import PostgresIdempotencyStore

        return PostgresIdempotencyStore()
    return SqliteIdempotencyStore(db_path=args.db_path)


def cmd_reap(args: argparse.Namespace) -> int:
    """Run one reaper pass and print the counts."""
    store = _open_store(args)
    try:
        report = LeaseReaper(store).run_once()
    finally:
        store.close()

    _output_json(
        {
            "backend": store.backend_name,
            "expired_leases": report.expired_leases,
            "expired_records": report.expired_records,
        }
    )
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    """Print one record as JSON.

    Exit codes:
        0: Record found
        2: Invalid key or no record for the key
    """
    try:
        key = IdempotencyKey(scope=args.scope, token=args.token)
    except InvalidKeyError as e:
        _output_json(_error("INVALID_KEY", str(e)))
        return 2

    store = _open_store(args)
    try:
        record = store.get(key)
    finally:
        store.close()

    if record is None:
        _output_json(_error("NOT_FOUND", f"No record for {key}"))
        return 2

    _output_json(_record_to_dict(record))
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    """Upgrade the PostgreSQL schema to the latest revision."""
    from oncely.persistence.migrate import get_head_revision, run_upgrade

    run_upgrade(revision=args.revision)
    _output_json({"revision": args.revision, "head": get_head_revision()})
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="oncely",
        description="Oncely - idempotent operation coordinator CLI",
    )
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default="sqlite",
        help="Store backend (default: sqlite)",
    )
    parser.add_argument(
        "--db-path",
        metavar="PATH",
        help="SQLite database path (default: ONCELY_IDEMPOTENCY_DB_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("reap", help="Delete expired leases and expired records once")

    inspect_parser = subparsers.add_parser("inspect", help="Show the record for a key")
    inspect_parser.add_argument("--scope", required=True, help="Key scope")
    inspect_parser.add_argument("--token", required=True, help="Key token")

    migrate_parser = subparsers.add_parser(
        "migrate", help="Run PostgreSQL migrations (uses ONCELY_DATABASE_ADMIN_URL)"
    )
    migrate_parser.add_argument(
        "--revision", default="head", help="Target revision (default: head)"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Internal error (unexpected) / store unavailable
        2: Not found / invalid input / missing configuration
    """
    try:
        parser = create_parser()
        args = parser.parse_args(argv)

        if args.command is None:
            parser.print_help()
            return 0

        if args.command == "reap":
            return cmd_reap(args)

        if args.command == "inspect":
            return cmd_inspect(args)

        if args.command == "migrate":
            return cmd_migrate(args)

        return 0

    except (DatabaseConfigError, CoordinatorConfigError) as e:
        _output_json(_error("CONFIG_ERROR", str(e)))
        return 2
    except StoreUnavailableError as e:
        _output_json(_error("STORE_UNAVAILABLE", str(e)))
        return 1
    except Exception as e:
        # Fail-closed: unexpected errors return exit code 1
        _output_json(_error("INTERNAL_ERROR", str(e)))
        return 1


if __name__ == "__main__":
    sys.exit(main())
