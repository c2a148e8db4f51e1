#!/usr/bin/env python3
"""Update the IPEDS database from the NCES Data Center.

Scrapes the listing page of each requested year, downloads the data and
dictionary files into the cache, loads them into DuckDB and rebuilds the
consolidated dictionary tables.

Usage:
    python scripts/update_database.py --years 2023
    python scripts/update_database.py --years 2021 2022 2023 --force
    python scripts/update_database.py --years 2023 --no-dictionaries --no-backup
    python scripts/update_database.py --years 2022 2023 2024 --check
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / 'src'))

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.error_handler import install_global_exception_handler
from ipeds_pipeline.exceptions import IpedsBaseError, PartialFailureError, WriteLockError
from ipeds_pipeline.ingest.run import Ingest
from ipeds_pipeline.ingest.scraper import RemoteIndexScraper
from ipeds_pipeline.logging_config import create_logger, set_log_level
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.versioning import UpdateStatus, check_updates

logger = create_logger(__name__)


def check_only(config: IpedsConfig, years) -> bool:
    """Print which years have files upstream that are not stored yet."""
    years = Ingest.bounded_years(years)
    db_path = config.db_path if config.db_path.exists() else ':memory:'
    with IpedsStore.open(db_path, read_only=db_path != ':memory:') as store:
        statuses = check_updates(years, RemoteIndexScraper(config), store)

    for status in statuses:
        detail = f"{len(status.missing_tables)} of {len(status.remote_tables)} tables missing"
        if status.error:
            detail = status.error
        print(f"{status.year}  {status.status.value:<12} {detail}")
        for name in status.missing_tables[:10]:
            print(f"      {name}")
    return any(s.status in (UpdateStatus.NEW, UpdateStatus.PARTIAL) for s in statuses)


def main():
    """Main entry point for the update script."""
    parser = argparse.ArgumentParser(
        description='Download IPEDS data files and load them into DuckDB'
    )
    parser.add_argument(
        '--years',
        type=int,
        nargs='+',
        required=True,
        help='Data years to update, e.g. 2022 2023'
    )
    parser.add_argument(
        '--force',
        action='store_true',
        help='Download files again even when they are cached'
    )
    parser.add_argument(
        '--no-dictionaries',
        action='store_true',
        help='Skip the dictionary workbooks'
    )
    parser.add_argument(
        '--no-consolidate',
        action='store_true',
        help='Do not rebuild the consolidated tables'
    )
    parser.add_argument(
        '--no-backup',
        action='store_true',
        help='Do not back up the database before updating'
    )
    parser.add_argument('--db-path', type=str, help='DuckDB file (default: ~/.ipeds/ipeds.duckdb)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--cache-dir', type=str, help='Download cache directory')
    parser.add_argument('--env-file', type=str, help='Optional .env file')
    parser.add_argument(
        '--check',
        action='store_true',
        help='Only report years with files not yet stored; exit 3 when an update is available'
    )

    args = parser.parse_args()
    if args.verbose:
        set_log_level('DEBUG')
    install_global_exception_handler()

    try:
        config = IpedsConfig.from_env(env_file=args.env_file, db_path=args.db_path, cache_dir=args.cache_dir)

        if args.check:
            if check_only(config, args.years):
                sys.exit(3)
            return

        config.ensure_directories()

        with IpedsStore.open(config.db_path) as store:
            summary = Ingest(config, store).run(
                args.years,
                force=args.force,
                include_dictionaries=not args.no_dictionaries,
                consolidate=not args.no_consolidate,
                backup_first=not args.no_backup,
            )

        summary.raise_if_failures()
        print("\nUpdate completed successfully!")

    except WriteLockError as e:
        logger.error(f"{e}")
        print("\nThe database is in use by another process. Try again later.")
        sys.exit(75)
    except PartialFailureError as e:
        logger.warning(f"{e}")
        print(f"\n{e}")
        sys.exit(2)
    except IpedsBaseError as e:
        logger.error(f"Update failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
