"""Table loader writing normalized rows into the store."""

import pandas as pd

from ipeds_pipeline.column_types import ColumnType
from ipeds_pipeline.exceptions import LoadError
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.utils import canonical_table_name

logger = create_logger(__name__)


class TableLoader:
    """Write normalized tables under their lowercase canonical name.

    Every load is a full create-or-replace of the table.
    """

    def __init__(self, store: IpedsStore):
        self.store = store

    def load(self, rows: pd.DataFrame, canonical_name: str, overwrite: bool = True) -> int:
        """
        Store rows as a table.

        :param rows: Normalized frame, column types in ``rows.attrs["column_types"]``
        :param canonical_name: Table name; lowercased before any store operation
        :param overwrite: Replace an existing table of the same name
        :return: Row count of the stored table
        :raises LoadError: If the table exists and overwrite is False, or the write fails
        """
        name = canonical_table_name(canonical_name)
        if not name:
            raise LoadError("Cannot load a table without a name")

        if not overwrite and self.store.table_exists(name):
            raise LoadError(f"Table {name} already exists")

        declared = rows.attrs.get("column_types", {})
        column_types = {
            column: ColumnType(declared[column]).sql_type
            for column in rows.columns
            if column in declared
        }

        try:
            row_count = self.store.replace_table(rows, name, column_types)
        except LoadError:
            raise
        except Exception as e:
            raise LoadError(f"Failed to write table {name}: {e}") from e

        logger.info(f"✅ Loaded {name}: {row_count:,} rows, {len(rows.columns)} columns")
        return row_count
