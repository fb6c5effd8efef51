"""Operator tool: merge-sync collections, take backups and check the local cache."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from ipma_prep.backup import (
    create_backup,
    default_backup_name,
    read_backup_file,
    restore_backup,
    validate_data_integrity,
    write_backup_file,
)
from ipma_prep.config import get_settings
from ipma_prep.errors import RemoteOperationError
from ipma_prep.logging_config import configure_logging
from ipma_prep.reconciliation import ReconciliationEngine, SyncReport

logger = logging.getLogger("ipma.sync")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile the local cache with the remote store.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("pull", help="Merge newer remote records into the local cache.")
    commands.add_parser("push", help="Upsert newer local records into the remote store.")

    backup = commands.add_parser("backup", help="Write a full snapshot to a JSON file.")
    backup.add_argument("--output-dir", default=".", help="Directory for the backup file.")

    restore = commands.add_parser("restore", help="Replace local state with a snapshot file.")
    restore.add_argument("path", help="Backup file produced by the backup command.")
    restore.add_argument("--push", action="store_true", help="Push the restored state to the remote store.")

    commands.add_parser("integrity", help="Report the status of every local cache key.")
    return parser.parse_args(argv)


def _print_report(report: SyncReport) -> None:
    for name, stats in report.collections.items():
        print(f"{name:20} pulled={stats.pulled:<4} pushed={stats.pushed:<4} unchanged={stats.unchanged}")


def run(args: argparse.Namespace, engine: ReconciliationEngine) -> int:
    if args.command == "pull":
        engine.load(prefer="cache")
        _print_report(engine.sync_from_remote())
    elif args.command == "push":
        engine.load(prefer="cache")
        _print_report(engine.sync_to_remote())
    elif args.command == "backup":
        engine.load()
        snapshot = create_backup(engine)
        path = write_backup_file(snapshot, Path(args.output_dir) / default_backup_name(snapshot))
        print(f"Wrote {snapshot.metadata.record_count} records to {path}")
    elif args.command == "restore":
        engine.load(prefer="cache")
        restore_backup(engine, read_backup_file(Path(args.path)))
        if args.push:
            _print_report(engine.sync_to_remote())
    elif args.command == "integrity":
        report = validate_data_integrity(engine.cache)
        print(json.dumps({key: status.status for key, status in report.items()}, indent=2))
        if any(status.status == "error" for status in report.values()):
            return 2
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    engine = ReconciliationEngine.from_settings(get_settings())
    try:
        return run(args, engine)
    except RemoteOperationError as exc:
        logger.error("Remote store unavailable: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
