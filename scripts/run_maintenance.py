#!/usr/bin/env python3
"""Maintenance tasks for the IPEDS database.

Applies the versioned maintenance operations, rebuilds consolidated
tables on demand and manages database backups.

Usage:
    python scripts/run_maintenance.py status
    python scripts/run_maintenance.py apply --dry-run
    python scripts/run_maintenance.py apply
    python scripts/run_maintenance.py consolidate --family hd
    python scripts/run_maintenance.py backup
    python scripts/run_maintenance.py list-backups
    python scripts/run_maintenance.py history hd2023
    python scripts/run_maintenance.py restore ~/.ipeds/backups/ipeds_backup_20240101_120000.duckdb
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / 'src'))

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.consolidate import Consolidator, SurveyFamily
from ipeds_pipeline.exceptions import IpedsBaseError
from ipeds_pipeline.logging_config import create_logger, set_log_level
from ipeds_pipeline.maintenance import MaintenanceRunner, MaintenanceStatus
from ipeds_pipeline.store import IpedsStore, list_backups, restore_backup
from ipeds_pipeline.versioning import VersionTracker

logger = create_logger(__name__)


def show_status(config: IpedsConfig) -> None:
    with IpedsStore.open(config.db_path, read_only=True) as store:
        runner = MaintenanceRunner(store)
        applied = set(runner.applied_versions())
        for operation in runner.operations:
            state = "applied" if operation.version in applied else "pending"
            print(f"{operation.version} {operation.name:<28} {state:<8} {operation.describe()}")


def apply_operations(config: IpedsConfig, dry_run: bool) -> bool:
    with IpedsStore.open(config.db_path, read_only=dry_run) as store:
        records = MaintenanceRunner(store).apply_all(dry_run=dry_run)
    return all(record.status != MaintenanceStatus.FAILED for record in records)


def consolidate(config: IpedsConfig, families) -> None:
    with IpedsStore.open(config.db_path) as store:
        for result in Consolidator(store).consolidate_all(families):
            print(f"{result.table_name}: {result.row_count:,} rows from {len(result.member_tables)} tables")


def show_history(config: IpedsConfig, table_name, schema_changes: bool) -> None:
    with IpedsStore.open(config.db_path, read_only=True) as store:
        tracker = VersionTracker(store)
        frame = tracker.schema_changes(table_name) if schema_changes else tracker.history(table_name)
    if frame.empty:
        print("No imports recorded")
        return
    if not schema_changes:
        frame = frame.drop(columns=["columns"])
    print(frame.to_string(index=False))


def main():
    """Main entry point for the maintenance script."""
    parser = argparse.ArgumentParser(description='IPEDS database maintenance')
    parser.add_argument('--db-path', type=str, help='DuckDB file (default: ~/.ipeds/ipeds.duckdb)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('status', help='Show applied and pending maintenance operations')

    apply_parser = subparsers.add_parser('apply', help='Apply pending maintenance operations')
    apply_parser.add_argument('--dry-run', action='store_true', help='Only show planned changes')

    consolidate_parser = subparsers.add_parser('consolidate', help='Rebuild consolidated tables')
    consolidate_parser.add_argument(
        '--family',
        choices=[family.value for family in SurveyFamily],
        nargs='+',
        help='Survey families to rebuild (default: all)'
    )

    subparsers.add_parser('backup', help='Back up the database')
    subparsers.add_parser('list-backups', help='List database backups, newest first')

    restore_parser = subparsers.add_parser('restore', help='Restore the database from a backup')
    restore_parser.add_argument('backup_path', type=str)

    history_parser = subparsers.add_parser('history', help='Show recorded imports, newest first')
    history_parser.add_argument('table', nargs='?', help='Only this table')
    history_parser.add_argument('--schema-changes', action='store_true', help='Show schema changes instead')

    args = parser.parse_args()
    if args.verbose:
        set_log_level('DEBUG')

    try:
        config = IpedsConfig.from_env(db_path=args.db_path)

        if args.command == 'status':
            show_status(config)
        elif args.command == 'apply':
            if not apply_operations(config, args.dry_run):
                sys.exit(2)
        elif args.command == 'consolidate':
            families = [SurveyFamily(f) for f in args.family] if args.family else list(SurveyFamily)
            consolidate(config, families)
        elif args.command == 'backup':
            with IpedsStore.open(config.db_path) as store:
                path = store.backup_database(config.backup_dir)
            print(path or "Nothing to back up")
        elif args.command == 'list-backups':
            for path in list_backups(config.backup_dir):
                print(path)
        elif args.command == 'restore':
            restore_backup(args.backup_path, config.db_path)
            print(f"Restored {config.db_path}")
        elif args.command == 'history':
            show_history(config, args.table, args.schema_changes)

    except (IpedsBaseError, FileNotFoundError) as e:
        logger.error(f"Maintenance failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
