#!/usr/bin/env python3
"""Data quality report for the IPEDS database.

Runs the validation checks against stored tables and prints a summary,
optionally writing the full report as JSON.

Usage:
    python scripts/data_quality_report.py --level basic
    python scripts/data_quality_report.py --tables hd2023 ic2023 --level comprehensive
    python scripts/data_quality_report.py --format json --output reports/validation.json
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / 'src'))

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.exceptions import IpedsBaseError
from ipeds_pipeline.logging_config import create_logger, set_log_level
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.validation import CheckStatus, ValidationEngine, ValidationLevel

logger = create_logger(__name__)


def main():
    """Validate stored tables and report the results."""
    parser = argparse.ArgumentParser(
        description='Validate tables of the IPEDS database'
    )
    parser.add_argument(
        '--tables',
        nargs='+',
        help='Tables to validate (default: all data tables)'
    )
    parser.add_argument(
        '--level',
        choices=[level.value for level in ValidationLevel],
        default=ValidationLevel.STANDARD.value,
        help='Validation depth (default: standard)'
    )
    parser.add_argument(
        '--format',
        choices=['json', 'console'],
        default='console',
        help='Output format (default: console)'
    )
    parser.add_argument(
        '--output',
        type=str,
        help='Output file path (required for json format)'
    )
    parser.add_argument('--db-path', type=str, help='DuckDB file (default: ~/.ipeds/ipeds.duckdb)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args()
    if args.verbose:
        set_log_level('DEBUG')

    if args.format == 'json' and not args.output:
        parser.error("--output is required for json format")

    try:
        config = IpedsConfig.from_env(db_path=args.db_path)
        with IpedsStore.open(config.db_path, read_only=True) as store:
            report = ValidationEngine(store).validate(args.tables, level=args.level)

        report.log_summary()
        if args.format == 'json':
            report.export_json(args.output)

        if report.tables_with_status(CheckStatus.ERROR) or report.tables_with_status(CheckStatus.FAIL):
            sys.exit(2)
        print(f"\nValidated {len(report.tables)} table(s) at level {args.level}")

    except IpedsBaseError as e:
        logger.error(f"Validation failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
