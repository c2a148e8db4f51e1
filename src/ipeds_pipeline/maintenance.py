"""Versioned maintenance operations on the IPEDS database.

Maintenance operations repair tables written by older releases of the
pipeline. They run outside the regular update path, each one at most
once per database, and every applied operation is recorded in the
``_maintenance_log`` table.

Example usage:
    runner = MaintenanceRunner(store)
    for operation in runner.pending():
        print(operation.version, operation.describe())

    runner.apply_all(dry_run=True)
    runner.apply_all()
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence

from ipeds_pipeline.ingest.normalizer import ID_COLUMN, YEAR_COLUMN, derive_year
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.utils import quote_identifier

logger = create_logger(__name__)

LOG_TABLE = "_maintenance_log"

# Families without a YEAR column of their own
_DICTIONARY_TABLES = re.compile(r"^(tables|vartable|valuesets)\d{2}$|_all$")


class MaintenanceStatus(Enum):
    """Status of a maintenance operation."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    DRY_RUN = "dry_run"
    FAILED = "failed"


@dataclass
class MaintenanceRecord:
    """Outcome of running one operation."""

    version: str
    name: str
    status: MaintenanceStatus
    actions: List[str] = field(default_factory=list)
    error: Optional[str] = None


class MaintenanceOperation(ABC):
    """Base class for maintenance operations."""

    version: str = ""
    name: str = ""

    @abstractmethod
    def plan(self, store: IpedsStore) -> List[str]:
        """List the changes the operation would make, without making them."""
        pass

    @abstractmethod
    def apply(self, store: IpedsStore) -> List[str]:
        """Make the changes and return what was done."""
        pass

    @abstractmethod
    def describe(self) -> str:
        """Human-readable description of the operation."""
        pass


class LowercaseTableNames(MaintenanceOperation):
    """Rename tables with uppercase letters to their lowercase name."""

    version = "0001"
    name = "lowercase_table_names"

    def _targets(self, store: IpedsStore):
        names = store.list_tables()
        lowercase = set(names)
        for table in names:
            if table != table.lower():
                yield table, table.lower() in lowercase

    def plan(self, store: IpedsStore) -> List[str]:
        return [
            f"drop {table} (lowercase {table.lower()} exists)" if collides else f"rename {table} to {table.lower()}"
            for table, collides in self._targets(store)
        ]

    def apply(self, store: IpedsStore) -> List[str]:
        actions = []
        for table, collides in list(self._targets(store)):
            if collides:
                store.execute(f"DROP TABLE {quote_identifier(table)}")
                actions.append(f"dropped {table}")
            else:
                store.rename_table(table, table.lower())
                actions.append(f"renamed {table} to {table.lower()}")
        return actions

    def describe(self) -> str:
        return "Rename mixed and uppercase tables to lowercase, keeping the lowercase table on collisions"


class BackfillYearColumns(MaintenanceOperation):
    """Give data tables the canonical YEAR column."""

    version = "0002"
    name = "backfill_year_columns"

    def _targets(self, store: IpedsStore):
        for table in store.list_tables():
            if _DICTIONARY_TABLES.search(table.lower()):
                continue
            columns = [column for column, _ in store.table_schema(table)]
            existing = [column for column in columns if column.lower() == YEAR_COLUMN.lower()]
            if existing:
                if existing[0] != YEAR_COLUMN:
                    yield table, columns, None
                continue
            year = derive_year(table)
            if year is not None:
                yield table, columns, year

    def plan(self, store: IpedsStore) -> List[str]:
        return [
            f"rename year column of {table} to {YEAR_COLUMN}" if year is None else f"add {YEAR_COLUMN}={year} to {table}"
            for table, _, year in self._targets(store)
        ]

    @staticmethod
    def rebuild_sql(table: str, columns: Sequence[str], year: Optional[int]) -> str:
        """Build the statement giving ``table`` its YEAR column."""
        expressions = []
        for column in columns:
            if column.lower() == YEAR_COLUMN.lower():
                expressions.append(f"{quote_identifier(column)} AS {quote_identifier(YEAR_COLUMN)}")
            else:
                expressions.append(quote_identifier(column))

        if year is not None:
            ids = [i for i, column in enumerate(columns) if column.lower() == ID_COLUMN.lower()]
            position = ids[0] + 1 if ids else 0
            expressions.insert(position, f"CAST({year} AS BIGINT) AS {quote_identifier(YEAR_COLUMN)}")

        return (
            f"CREATE OR REPLACE TABLE {quote_identifier(table)} AS "
            f"SELECT {', '.join(expressions)} FROM {quote_identifier(table)}"
        )

    def apply(self, store: IpedsStore) -> List[str]:
        actions = []
        for table, columns, year in list(self._targets(store)):
            store.execute(self.rebuild_sql(table, columns, year))
            actions.append(f"renamed year column of {table}" if year is None else f"added {YEAR_COLUMN}={year} to {table}")
        return actions

    def describe(self) -> str:
        return "Add a YEAR column derived from the table name to data tables lacking one"


class DropStatisticalPackageTables(MaintenanceOperation):
    """Drop tables imported from the Stata, SPSS and SAS variants of data files."""

    version = "0003"
    name = "drop_stata_tables"

    SUFFIXES = ("_stata", "_sps", "_sas")

    def _targets(self, store: IpedsStore) -> List[str]:
        return [table for table in store.list_tables() if table.lower().endswith(self.SUFFIXES)]

    def plan(self, store: IpedsStore) -> List[str]:
        return [f"drop {table}" for table in self._targets(store)]

    def apply(self, store: IpedsStore) -> List[str]:
        actions = []
        for table in self._targets(store):
            store.drop_table(table)
            actions.append(f"dropped {table}")
        return actions

    def describe(self) -> str:
        return f"Drop tables ending in {', '.join(self.SUFFIXES)}"


BUILTIN_OPERATIONS: List[MaintenanceOperation] = [
    LowercaseTableNames(),
    BackfillYearColumns(),
    DropStatisticalPackageTables(),
]


class MaintenanceRunner:
    """Apply maintenance operations in version order, each at most once."""

    def __init__(self, store: IpedsStore, operations: Optional[Sequence[MaintenanceOperation]] = None):
        self.store = store
        self.operations = sorted(operations or BUILTIN_OPERATIONS, key=lambda op: op.version)

    def _ensure_log_table(self) -> None:
        self.store.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {LOG_TABLE} (
                version VARCHAR PRIMARY KEY,
                name VARCHAR,
                applied_at TIMESTAMP,
                actions VARCHAR
            )
            """
        )

    def applied_versions(self) -> List[str]:
        if not self.store.table_exists(LOG_TABLE):
            return []
        rows = self.store.con.execute(f"SELECT version FROM {LOG_TABLE} ORDER BY version").fetchall()
        return [row[0] for row in rows]

    def pending(self) -> List[MaintenanceOperation]:
        applied = set(self.applied_versions())
        return [op for op in self.operations if op.version not in applied]

    def apply(self, operation: MaintenanceOperation, dry_run: bool = False) -> MaintenanceRecord:
        """
        Apply one operation unless it is already recorded.

        :param operation: Operation to run
        :param dry_run: Only report the planned changes
        :return: MaintenanceRecord of the run
        """
        if operation.version in self.applied_versions():
            logger.info(f"⏭️  {operation.version} {operation.name} already applied")
            return MaintenanceRecord(operation.version, operation.name, MaintenanceStatus.ALREADY_APPLIED)

        if dry_run:
            actions = operation.plan(self.store)
            logger.info(f"🔍 DRY RUN {operation.version} {operation.name}: {len(actions)} changes")
            for action in actions:
                logger.info(f"    {action}")
            return MaintenanceRecord(operation.version, operation.name, MaintenanceStatus.DRY_RUN, actions)

        logger.info(f"🔧 Applying {operation.version} {operation.name}: {operation.describe()}")
        self._ensure_log_table()
        try:
            actions = operation.apply(self.store)
        except Exception as e:
            logger.error(f"❌ {operation.version} {operation.name} failed: {e}")
            return MaintenanceRecord(operation.version, operation.name, MaintenanceStatus.FAILED, error=str(e))

        self.store.execute(
            f"INSERT INTO {LOG_TABLE} VALUES (?, ?, ?, ?)",
            [operation.version, operation.name, datetime.now(), json.dumps(actions)],
        )

        for action in actions:
            logger.info(f"    {action}")
        logger.info(f"✅ {operation.version} {operation.name}: {len(actions)} changes")
        return MaintenanceRecord(operation.version, operation.name, MaintenanceStatus.APPLIED, actions)

    def apply_all(self, dry_run: bool = False) -> List[MaintenanceRecord]:
        """Apply every pending operation, stopping at the first failure."""
        records = []
        for operation in self.operations:
            record = self.apply(operation, dry_run=dry_run)
            records.append(record)
            if record.status == MaintenanceStatus.FAILED:
                break
        return records
