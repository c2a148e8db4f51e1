"""Import history and schema change tracking for IPEDS tables.

Every data file loaded by an update leaves one row in ``_import_metadata``:
where it came from, how big it was, its shape, a content checksum and a
version stamp. When a table is re-imported with a different column set or
column types the differences go to ``_schema_changes``.

The module also answers "what is new upstream": ``check_updates`` compares
the files listed for each year with the tables already stored.

Example usage:
    tracker = VersionTracker(store)
    tracker.record_import(entry, previous_schema=[], file_size=1234)
    tracker.history("hd2023")

    for status in check_updates([2022, 2023], scraper, store):
        print(status.year, status.status.value, status.missing_tables)
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from ipeds_pipeline.exceptions import RemoteFetchError
from ipeds_pipeline.ingest.normalizer import derive_year
from ipeds_pipeline.ingest.scraper import RemoteFileEntry, RemoteIndexScraper
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.utils import canonical_table_name, quote_identifier

logger = create_logger(__name__)

METADATA_TABLE = "_import_metadata"
SCHEMA_CHANGES_TABLE = "_schema_changes"

VERSION_FORMAT = "v%Y%m%d_%H%M%S"
CHECKSUM_SAMPLE_ROWS = 1000

Schema = Sequence[Tuple[str, str]]


class SchemaChangeType(Enum):
    """Kinds of differences between two imports of one table."""

    COLUMN_ADDED = "column_added"
    COLUMN_REMOVED = "column_removed"
    TYPE_CHANGED = "type_changed"


@dataclass
class SchemaChange:
    """One column-level difference between two imports."""

    table_name: str
    change_type: SchemaChangeType
    column_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None

    def describe(self) -> str:
        if self.change_type == SchemaChangeType.TYPE_CHANGED:
            return f"{self.column_name}: {self.old_value} -> {self.new_value}"
        return f"{self.change_type.value} {self.column_name}"


@dataclass
class ImportRecord:
    """Metadata of one import of one table."""

    table_name: str
    data_year: Optional[int]
    survey: str
    title: str
    source_url: str
    file_size: int
    row_count: int
    column_count: int
    checksum: str
    version: str
    imported_at: datetime
    columns: List[Tuple[str, str]] = field(default_factory=list)
    content_changed: bool = True


def compare_schemas(table_name: str, previous: Schema, current: Schema) -> List[SchemaChange]:
    """List the column differences from ``previous`` to ``current``.

    Column names match case-insensitively; types compare as declared, so
    ``BIGINT`` to ``VARCHAR`` is a change and so is ``INTEGER`` to ``BIGINT``.
    """
    old = {name.lower(): (name, sql_type) for name, sql_type in previous}
    new = {name.lower(): (name, sql_type) for name, sql_type in current}

    changes = []
    for key, (name, sql_type) in new.items():
        if key not in old:
            changes.append(SchemaChange(table_name, SchemaChangeType.COLUMN_ADDED, name, new_value=sql_type))
        elif old[key][1] != sql_type:
            changes.append(
                SchemaChange(table_name, SchemaChangeType.TYPE_CHANGED, name, old_value=old[key][1], new_value=sql_type)
            )
    for key, (name, sql_type) in old.items():
        if key not in new:
            changes.append(SchemaChange(table_name, SchemaChangeType.COLUMN_REMOVED, name, old_value=sql_type))
    return changes


def table_checksum(store: IpedsStore, table_name: str, sample_rows: int = CHECKSUM_SAMPLE_ROWS) -> str:
    """MD5 over the column names and the first ``sample_rows`` rows of a table."""
    stored = store.resolve_table(table_name) or table_name
    frame = store.query(f"SELECT * FROM {quote_identifier(stored)} LIMIT {int(sample_rows)}")
    digest = hashlib.md5("|".join(frame.columns).encode("utf-8"))
    if not frame.empty:
        digest.update(pd.util.hash_pandas_object(frame, index=False).values.tobytes())
    return digest.hexdigest()


class VersionTracker:
    """Record table imports and the schema changes between them."""

    def __init__(self, store: IpedsStore):
        self.store = store

    def _ensure_tables(self) -> None:
        self.store.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {METADATA_TABLE} (
                table_name VARCHAR,
                data_year INTEGER,
                survey VARCHAR,
                title VARCHAR,
                source_url VARCHAR,
                file_size BIGINT,
                row_count BIGINT,
                column_count INTEGER,
                checksum VARCHAR,
                version VARCHAR,
                imported_at TIMESTAMP,
                columns VARCHAR
            )
            """
        )
        self.store.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {SCHEMA_CHANGES_TABLE} (
                table_name VARCHAR,
                version VARCHAR,
                changed_at TIMESTAMP,
                change_type VARCHAR,
                column_name VARCHAR,
                old_value VARCHAR,
                new_value VARCHAR
            )
            """
        )

    def latest(self, table_name: str) -> Optional[ImportRecord]:
        """Return the most recent import of a table, or None."""
        if not self.store.table_exists(METADATA_TABLE):
            return None
        frame = self.store.query(
            f"SELECT * FROM {METADATA_TABLE} WHERE table_name = ? ORDER BY imported_at DESC LIMIT 1",
            [canonical_table_name(table_name)],
        )
        if frame.empty:
            return None
        row = frame.iloc[0]
        return ImportRecord(
            table_name=row["table_name"],
            data_year=None if pd.isna(row["data_year"]) else int(row["data_year"]),
            survey=row["survey"],
            title=row["title"],
            source_url=row["source_url"],
            file_size=int(row["file_size"]),
            row_count=int(row["row_count"]),
            column_count=int(row["column_count"]),
            checksum=row["checksum"],
            version=row["version"],
            imported_at=pd.Timestamp(row["imported_at"]).to_pydatetime(),
            columns=[tuple(pair) for pair in json.loads(row["columns"])],
        )

    def record_import(
        self,
        entry: RemoteFileEntry,
        previous_schema: Optional[Schema] = None,
        file_size: int = 0,
    ) -> Tuple[ImportRecord, List[SchemaChange]]:
        """
        Record the import of a table that has just been loaded.

        :param entry: Listed data file the table was loaded from
        :param previous_schema: Schema the table had before the load; ``[]``
            for a new table, None to compare with the last recorded import
        :param file_size: Size of the downloaded file in bytes
        :return: The new ImportRecord and the schema changes it introduced
        """
        self._ensure_tables()
        name = canonical_table_name(entry.table_name)
        last = self.latest(name)
        if previous_schema is None:
            previous_schema = last.columns if last else []

        columns = self.store.table_schema(name)
        imported_at = datetime.now()
        record = ImportRecord(
            table_name=name,
            data_year=derive_year(name),
            survey=entry.survey,
            title=entry.title,
            source_url=entry.data_url,
            file_size=file_size,
            row_count=self.store.row_count(name),
            column_count=len(columns),
            checksum=table_checksum(self.store, name),
            version=imported_at.strftime(VERSION_FORMAT),
            imported_at=imported_at,
            columns=list(columns),
        )
        record.content_changed = last is None or last.checksum != record.checksum

        self.store.execute(
            f"INSERT INTO {METADATA_TABLE} VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                record.table_name, record.data_year, record.survey, record.title, record.source_url,
                record.file_size, record.row_count, record.column_count, record.checksum,
                record.version, record.imported_at, json.dumps(record.columns),
            ],
        )

        changes = compare_schemas(name, previous_schema, columns) if previous_schema else []
        for change in changes:
            self.store.execute(
                f"INSERT INTO {SCHEMA_CHANGES_TABLE} VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    name, record.version, imported_at, change.change_type.value,
                    change.column_name, change.old_value, change.new_value,
                ],
            )
        if changes:
            logger.warning(
                f"🧬 {name}: {len(changes)} schema change(s) since the previous import: "
                + ", ".join(change.describe() for change in changes[:5])
            )
        elif not record.content_changed:
            logger.debug(f"{name}: content unchanged since {last.version}")

        return record, changes

    def history(self, table_name: Optional[str] = None) -> pd.DataFrame:
        """Import records, newest first, optionally for one table."""
        return self._read(METADATA_TABLE, table_name, "imported_at")

    def schema_changes(self, table_name: Optional[str] = None) -> pd.DataFrame:
        """Recorded schema changes, newest first, optionally for one table."""
        return self._read(SCHEMA_CHANGES_TABLE, table_name, "changed_at")

    def _read(self, log_table: str, table_name: Optional[str], order_column: str) -> pd.DataFrame:
        if not self.store.table_exists(log_table):
            return pd.DataFrame()
        sql = f"SELECT * FROM {log_table}"
        params = []
        if table_name:
            sql += " WHERE table_name = ?"
            params.append(canonical_table_name(table_name))
        return self.store.query(sql + f" ORDER BY {order_column} DESC", params)


# ============================================================================
# Available versus loaded years
# ============================================================================

class UpdateStatus(Enum):
    """How a year's stored tables compare with the remote listing."""

    NEW = "new"
    PARTIAL = "partial"
    CURRENT = "current"
    UNAVAILABLE = "unavailable"


@dataclass
class YearStatus:
    year: int
    status: UpdateStatus
    remote_tables: List[str] = field(default_factory=list)
    missing_tables: List[str] = field(default_factory=list)
    error: Optional[str] = None


def loaded_years(store: IpedsStore) -> List[int]:
    """Years that have at least one stored per-year table."""
    years = {
        derive_year(name)
        for name in store.list_tables()
        if not name.lower().endswith("_all")
    }
    return sorted(year for year in years if year is not None)


def check_updates(years: Iterable[int], scraper: RemoteIndexScraper, store: IpedsStore) -> List[YearStatus]:
    """
    Compare the files listed for each year with the stored tables.

    A year whose listing page cannot be read is reported as unavailable
    rather than raising.
    """
    stored = {name.lower() for name in store.list_tables()}
    statuses = []
    for year in years:
        try:
            entries = scraper.index(year)
        except RemoteFetchError as e:
            logger.warning(f"{year}: listing unavailable ({e})")
            statuses.append(YearStatus(year, UpdateStatus.UNAVAILABLE, error=str(e)))
            continue

        remote = [entry.table_name for entry in entries]
        missing = [name for name in remote if name not in stored]
        if not remote:
            status = UpdateStatus.UNAVAILABLE
        elif len(missing) == len(remote):
            status = UpdateStatus.NEW
        elif missing:
            status = UpdateStatus.PARTIAL
        else:
            status = UpdateStatus.CURRENT
        logger.info(f"{year}: {status.value} ({len(remote) - len(missing)}/{len(remote)} tables stored)")
        statuses.append(YearStatus(year, status, remote_tables=remote, missing_tables=missing))
    return statuses
