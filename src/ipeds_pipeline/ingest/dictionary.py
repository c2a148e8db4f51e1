"""Dictionary workbooks and per-year catalog tables.

Each data file has a dictionary workbook with a variable list sheet and
a value code sheet. For each year the pipeline stores:

- ``tablesYY``: the catalog of data files listed for the year
- ``vartableYY``: variable lists of every dictionary, tagged by source file
- ``valuesetsYY``: value codes of every dictionary, tagged by source file
"""

import io
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

import pandas as pd

from ipeds_pipeline.exceptions import LoadError
from ipeds_pipeline.ingest.fetcher import is_archive, is_workbook, select_archive_member
from ipeds_pipeline.ingest.scraper import RemoteFileEntry
from ipeds_pipeline.logging_config import create_logger

logger = create_logger(__name__)

VARLIST_SHEET = "varlist"
VALUESET_SHEETS = ("description", "frequencies")

SOURCE_COLUMN = "source_file"
TABLES_COLUMNS = ["Survey", "TableName", "TableTitle"]


@dataclass
class DictionarySheets:
    """Worksheets read from one dictionary workbook."""

    vartable: Optional[pd.DataFrame] = None
    valuesets: Optional[pd.DataFrame] = None

    @property
    def is_empty(self) -> bool:
        return self.vartable is None and self.valuesets is None


def year_suffix(year: int) -> str:
    """Two digit suffix of per-year dictionary tables, e.g. 2023 -> ``23``."""
    return f"{year % 100:02d}"


def tables_table_name(year: int) -> str:
    return f"tables{year_suffix(year)}"


def vartable_table_name(year: int) -> str:
    return f"vartable{year_suffix(year)}"


def valuesets_table_name(year: int) -> str:
    return f"valuesets{year_suffix(year)}"


def _workbook_bytes(path: Path, table_name: str) -> bytes:
    with open(path, "rb") as f:
        payload = f.read()

    if not is_archive(path):
        raise LoadError(f"{path.name} is neither a workbook nor an archive")
    if is_workbook(path):
        return payload

    with zipfile.ZipFile(io.BytesIO(payload)) as archive:
        names = archive.namelist()
        member = select_archive_member(names, table_name, extension=".xlsx")
        if member is None:
            raise LoadError(f"No .xlsx workbook found in {path.name}")
        return archive.read(member)


def _clean_sheet(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [str(column).strip() for column in df.columns]
    return df.dropna(how="all").reset_index(drop=True)


def read_dictionary_workbook(path: Union[str, Path], table_name: str) -> DictionarySheets:
    """Read the variable list and value code sheets of a dictionary.

    Args:
        path: Downloaded dictionary, either a workbook or an archive holding one
        table_name: Data table the dictionary describes

    Returns:
        DictionarySheets with the sheets that were present

    Raises:
        LoadError: If no workbook can be read
    """
    path = Path(path)
    try:
        workbook = _workbook_bytes(path, table_name)
        sheets: Dict[str, pd.DataFrame] = pd.read_excel(
            io.BytesIO(workbook), sheet_name=None, dtype=str, engine="openpyxl"
        )
    except (zipfile.BadZipFile, ValueError, KeyError) as e:
        raise LoadError(f"Unreadable dictionary {path.name}: {e}") from e

    by_name = {name.strip().lower(): frame for name, frame in sheets.items()}

    result = DictionarySheets()
    if VARLIST_SHEET in by_name:
        result.vartable = _clean_sheet(by_name[VARLIST_SHEET])
    for sheet in VALUESET_SHEETS:
        if sheet in by_name:
            result.valuesets = _clean_sheet(by_name[sheet])
            break

    if result.is_empty:
        logger.warning(f"{path.name}: no Varlist, Description or Frequencies sheet")
    return result


def combine_dictionary_sheets(sheets_by_table: Dict[str, DictionarySheets]):
    """Stack the sheets of several dictionaries, tagging rows with their table.

    Columns are matched by name; a column missing from one dictionary is
    null in its rows.

    Returns:
        Tuple of (vartable frame or None, valuesets frame or None)
    """
    vartables = []
    valuesets = []
    for table_name, sheets in sheets_by_table.items():
        if sheets.vartable is not None:
            vartables.append(sheets.vartable.assign(**{SOURCE_COLUMN: table_name}))
        if sheets.valuesets is not None:
            valuesets.append(sheets.valuesets.assign(**{SOURCE_COLUMN: table_name}))

    combined_vartable = pd.concat(vartables, ignore_index=True, sort=False) if vartables else None
    combined_valuesets = pd.concat(valuesets, ignore_index=True, sort=False) if valuesets else None
    return combined_vartable, combined_valuesets


def build_tables_metadata(entries: Iterable[RemoteFileEntry]) -> pd.DataFrame:
    """Build the per-year catalog of listed data files.

    Returns:
        Frame with columns Survey, TableName and TableTitle sorted by
        survey then table name
    """
    rows = [
        {"Survey": entry.survey, "TableName": entry.table_name, "TableTitle": entry.title}
        for entry in entries
    ]
    df = pd.DataFrame(rows, columns=TABLES_COLUMNS)
    return df.sort_values(["Survey", "TableName"], kind="stable").reset_index(drop=True)
