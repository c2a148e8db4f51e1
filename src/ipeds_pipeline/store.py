"""DuckDB-backed analytical store for IPEDS tables.

The store is single-writer, many-reader. Every table is stored under its
lowercase canonical name and every write is a full create-or-replace.
"""

import glob
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import duckdb
import pandas as pd

from ipeds_pipeline.exceptions import LoadError, WriteLockError
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.utils import canonical_table_name, quote_identifier

logger = create_logger(__name__)

BACKUP_PREFIX = "ipeds_backup_"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_INCOMING_VIEW = "_ipeds_incoming"


class IpedsStore:
    """Handle on an IPEDS DuckDB database.

    Pass the handle explicitly to the components that need it; there is
    no module-level connection.

    Example:
        with IpedsStore.open("~/.ipeds/ipeds.duckdb", read_only=True) as store:
            for table in store.list_tables():
                print(table, store.row_count(table))
    """

    def __init__(self, con: duckdb.DuckDBPyConnection, db_path: str = ":memory:", read_only: bool = False):
        self.con = con
        self.db_path = db_path
        self.read_only = read_only

    @classmethod
    def open(cls, db_path, read_only: bool = False) -> "IpedsStore":
        """
        Open the database file.

        :param db_path: Path to the DuckDB file, or ``:memory:``
        :param read_only: Open without taking the write lock
        :raises WriteLockError: If another process holds the database for writing
        """
        db_path = str(db_path)
        if db_path != ":memory:":
            db_path = os.path.expanduser(db_path)
            parent = os.path.dirname(db_path)
            if parent and not read_only:
                os.makedirs(parent, exist_ok=True)

        try:
            con = duckdb.connect(db_path, read_only=read_only)
        except duckdb.IOException as e:
            if "lock" in str(e).lower():
                raise WriteLockError(
                    f"Database {db_path} is locked by another process; retry once it has finished",
                    db_path=db_path,
                ) from e
            raise

        logger.debug(f"Opened {db_path} ({'read-only' if read_only else 'read-write'})")
        return cls(con, db_path=db_path, read_only=read_only)

    def close(self) -> None:
        self.con.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    def list_tables(self, include_internal: bool = False) -> List[str]:
        """Return the names of all tables in the main schema.

        Args:
            include_internal: Also return bookkeeping tables whose names start
                with an underscore

        Returns:
            Sorted list of table names
        """
        rows = self.con.execute(
            """
            SELECT table_name
            FROM duckdb_tables()
            WHERE database_name = current_database() AND schema_name = 'main'
            ORDER BY table_name
            """
        ).fetchall()
        names = [row[0] for row in rows]
        if not include_internal:
            names = [name for name in names if not name.startswith("_")]
        return names

    def resolve_table(self, name: str) -> Optional[str]:
        """Return the stored spelling of a table, matched case-insensitively."""
        wanted = canonical_table_name(name)
        for existing in self.list_tables(include_internal=True):
            if existing.lower() == wanted:
                return existing
        return None

    def table_exists(self, name: str) -> bool:
        return self.resolve_table(name) is not None

    def table_schema(self, name: str) -> List[Tuple[str, str]]:
        """Return ``(column, type)`` pairs of a table in column order.

        An unknown table yields an empty list.
        """
        rows = self.con.execute(
            """
            SELECT column_name, data_type
            FROM duckdb_columns()
            WHERE database_name = current_database()
              AND schema_name = 'main'
              AND lower(table_name) = lower(?)
            ORDER BY column_index
            """,
            [name.strip()],
        ).fetchall()
        return [(column, data_type) for column, data_type in rows]

    def query(self, sql: str, params: Optional[Sequence] = None) -> pd.DataFrame:
        """Run a SQL query and return the result as a DataFrame."""
        return self.con.execute(sql, params or []).df()

    def execute(self, sql: str, params: Optional[Sequence] = None) -> None:
        """Run a SQL statement without fetching results."""
        self.con.execute(sql, params or [])

    def scalar(self, sql: str, params: Optional[Sequence] = None):
        """Run a SQL query and return the first column of the first row."""
        row = self.con.execute(sql, params or []).fetchone()
        return row[0] if row else None

    def row_count(self, name: str) -> int:
        """
        Count the rows of a table.

        :param name: Table name, matched case-insensitively
        :raises LoadError: If the table does not exist
        """
        stored = self.resolve_table(name)
        if stored is None:
            raise LoadError(f"Table {name} does not exist")
        return int(self.scalar(f"SELECT COUNT(*) FROM {quote_identifier(stored)}"))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def replace_table(self, df: pd.DataFrame, name: str, column_types: Optional[Dict[str, str]] = None) -> int:
        """Create or replace a table from a DataFrame under its lowercase name.

        Any table whose name differs only in case is dropped in the same
        transaction, so two spellings of one table never coexist.

        Args:
            df: Rows to store
            name: Table name in any case
            column_types: Optional mapping of column name to SQL type used
                to cast each column

        Returns:
            Row count of the stored table
        """
        canonical = canonical_table_name(name)
        column_types = dict(column_types or {})
        for column in df.columns:
            if column not in column_types and df[column].dtype == object:
                column_types[column] = "VARCHAR"

        select_list = ", ".join(
            f"CAST({quote_identifier(column)} AS {column_types[column]}) AS {quote_identifier(column)}"
            if column in column_types
            else quote_identifier(column)
            for column in df.columns
        )
        if not select_list:
            raise LoadError(f"Cannot store {canonical}: no columns")

        self.con.register(_INCOMING_VIEW, df)
        try:
            self.con.execute("BEGIN TRANSACTION")
            try:
                for existing in self.list_tables(include_internal=True):
                    if existing.lower() == canonical and existing != canonical:
                        logger.info(f"Dropping case variant {existing} of {canonical}")
                        self.con.execute(f"DROP TABLE {quote_identifier(existing)}")
                self.con.execute(
                    f"CREATE OR REPLACE TABLE {quote_identifier(canonical)} AS "
                    f"SELECT {select_list} FROM {_INCOMING_VIEW}"
                )
                self.con.execute("COMMIT")
            except Exception:
                self.con.execute("ROLLBACK")
                raise
        finally:
            self.con.unregister(_INCOMING_VIEW)

        return self.row_count(canonical)

    def drop_table(self, name: str) -> bool:
        """Drop a table if it exists. Returns True if a table was dropped."""
        stored = self.resolve_table(name)
        if stored is None:
            return False
        self.con.execute(f"DROP TABLE {quote_identifier(stored)}")
        logger.info(f"Dropped table {stored}")
        return True

    def rename_table(self, old_name: str, new_name: str) -> None:
        """
        Rename a table.

        Renames that only change case go through a temporary name because
        the catalog resolves names case-insensitively.

        :raises LoadError: If the source table is missing or the target exists
        """
        stored = self.resolve_table(old_name)
        if stored is None:
            raise LoadError(f"Table {old_name} does not exist")
        if stored == new_name:
            return

        if stored.lower() == new_name.lower():
            interim = f"__rename_{new_name.lower()}"
            self.con.execute(f"ALTER TABLE {quote_identifier(stored)} RENAME TO {quote_identifier(interim)}")
            self.con.execute(f"ALTER TABLE {quote_identifier(interim)} RENAME TO {quote_identifier(new_name)}")
        else:
            if self.table_exists(new_name):
                raise LoadError(f"Cannot rename {stored}: {new_name} already exists")
            self.con.execute(f"ALTER TABLE {quote_identifier(stored)} RENAME TO {quote_identifier(new_name)}")

        logger.info(f"Renamed table {stored} to {new_name}")

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup_database(self, backup_dir) -> Optional[Path]:
        """Write a timestamped copy of the database file.

        Args:
            backup_dir: Directory receiving the copy

        Returns:
            Path of the backup, or None for an in-memory database
        """
        if self.db_path == ":memory:":
            logger.warning("In-memory database, skipping backup")
            return None

        if not self.read_only:
            self.con.execute("CHECKPOINT")
        return backup_database_file(self.db_path, backup_dir)


def backup_database_file(db_path, backup_dir) -> Optional[Path]:
    """Copy a closed or checkpointed database file into ``backup_dir``."""
    db_path = Path(db_path).expanduser()
    if not db_path.exists():
        logger.info(f"No database at {db_path}, nothing to back up")
        return None

    backup_dir = Path(backup_dir).expanduser()
    backup_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
    backup_path = backup_dir / f"{BACKUP_PREFIX}{timestamp}.duckdb"

    shutil.copy2(db_path, backup_path)
    logger.info(f"💾 Backed up {db_path} to {backup_path}")
    return backup_path


def list_backups(backup_dir) -> List[Path]:
    """Return the backups in ``backup_dir``, newest first."""
    pattern = os.path.join(os.path.expanduser(str(backup_dir)), f"{BACKUP_PREFIX}*.duckdb")
    return sorted((Path(p) for p in glob.glob(pattern)), key=lambda p: p.name, reverse=True)


def restore_backup(backup_path, db_path) -> Path:
    """
    Replace the database file with a backup.

    The database must not be open in this or any other process.

    :param backup_path: Backup file to restore
    :param db_path: Database file to overwrite
    :raises FileNotFoundError: If the backup file does not exist
    """
    backup_path = Path(backup_path).expanduser()
    if not backup_path.is_file():
        raise FileNotFoundError(f"Backup file not found: {backup_path}")

    db_path = Path(db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    wal_path = Path(str(db_path) + ".wal")
    if wal_path.exists():
        wal_path.unlink()

    shutil.copy2(backup_path, db_path)
    logger.info(f"Restored {db_path} from {backup_path}")
    return db_path
