"""Schema inference and type normalization of tabular payloads.

Payloads are decoded, read as text, de-duplicated, narrowed to numeric
types only where every value converts, and given a YEAR column derived
from the table name.
"""

import io
import os
import re
from typing import Dict, List, Optional, Tuple

import pandas as pd

from ipeds_pipeline.column_types import DEFAULT_SAMPLE_SIZE, ColumnType, coerce_column, infer_column_type
from ipeds_pipeline.exceptions import DecodeError, LoadError
from ipeds_pipeline.logging_config import create_logger

logger = create_logger(__name__)

ID_COLUMN = "UNITID"
YEAR_COLUMN = "YEAR"

# Tried in order, first match wins
_FOUR_DIGIT_YEAR = re.compile(r"20\d{2}")
_YEAR_RANGE = re.compile(r"(\d{2})(\d{2})")
_TRAILING_YEAR = re.compile(r"(\d{2})$")

_CONTROL_CHARACTERS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def decode_strict(raw: bytes, encoding: str = "utf-8-sig") -> str:
    """
    Decode a payload in its declared encoding.

    :raises DecodeError: If the payload holds invalid byte sequences
    """
    try:
        return raw.decode(encoding)
    except UnicodeDecodeError as e:
        raise DecodeError(f"Payload is not valid {encoding}: {e}") from e


def decode_lossy(raw: bytes) -> str:
    """Decode to ASCII, dropping non-ASCII bytes and control characters."""
    text = raw.decode("ascii", errors="ignore")
    return _CONTROL_CHARACTERS.sub("", text)


def decode_payload(raw: bytes, encoding: str = "utf-8-sig", source: str = "payload") -> str:
    """Decode a payload, falling back to a lossy ASCII decoding.

    A few lost characters in free-text fields are accepted; the table
    itself is never dropped because of its encoding.
    """
    try:
        return decode_strict(raw, encoding)
    except DecodeError as e:
        logger.warning(f"⚠️  {source}: {e}; falling back to lossy ASCII decoding")
        return decode_lossy(raw)


def _unique_headers(headers: List[str]) -> List[str]:
    seen = set()
    unique = []
    for header in headers:
        candidate = header
        suffix = 2
        while candidate.lower() in seen:
            candidate = f"{header}_{suffix}"
            suffix += 1
        seen.add(candidate.lower())
        unique.append(candidate)
    return unique


def read_rows(text: str, source: str = "payload") -> pd.DataFrame:
    """
    Read CSV text with every column as text.

    Empty fields become nulls; nothing else is treated as missing.

    :raises LoadError: If the text is empty or not parseable as CSV
    """
    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            na_values=[""],
        )
    except pd.errors.EmptyDataError as e:
        raise LoadError(f"{source} is empty") from e
    except pd.errors.ParserError as e:
        raise LoadError(f"{source} is not valid CSV: {e}") from e

    headers = [str(column).strip() for column in df.columns]
    df.columns = _unique_headers(headers)
    return df


def drop_duplicate_rows(df: pd.DataFrame) -> Tuple[pd.DataFrame, int]:
    """Collapse exact full-row duplicates to a single row.

    Returns:
        Tuple of the de-duplicated frame and the number of rows removed
    """
    deduplicated = df.drop_duplicates(ignore_index=True)
    removed = len(df) - len(deduplicated)
    deduplicated.attrs = dict(df.attrs)
    return deduplicated, removed


def infer_types(df: pd.DataFrame, sample_size: int = DEFAULT_SAMPLE_SIZE) -> pd.DataFrame:
    """Narrow text columns to integer or float where every value converts.

    The declared type of each column is stored in
    ``df.attrs["column_types"]``.
    """
    column_types: Dict[str, ColumnType] = {}
    converted = {}
    for column in df.columns:
        column_type = infer_column_type(df[column], sample_size)
        column_types[column] = column_type
        converted[column] = coerce_column(df[column], column_type)

    result = pd.DataFrame(converted, columns=list(df.columns), index=df.index)
    result.attrs = dict(df.attrs)
    result.attrs["column_types"] = column_types
    return result


def _base_name(table_name: str) -> str:
    name = os.path.basename(table_name.strip())
    stem, extension = os.path.splitext(name)
    return stem if extension.lower() in (".csv", ".zip", ".xlsx") else name


def derive_year(table_name: str) -> Optional[int]:
    """Derive the data year from a table name.

    Rules, first match wins:

    1. a four digit ``20xx`` run gives that year (``hd2023`` -> 2023)
    2. a run of two digit pairs gives 2000 + the second pair
       (``sfa1819_p1`` -> 2019)
    3. two trailing digits give 2000 + their value (``ef19`` -> 2019)

    Args:
        table_name: Table or file name

    Returns:
        Four digit year, or None when no rule applies
    """
    name = _base_name(table_name)

    match = _FOUR_DIGIT_YEAR.search(name)
    if match:
        return int(match.group(0))

    match = _YEAR_RANGE.search(name)
    if match:
        return 2000 + int(match.group(2))

    match = _TRAILING_YEAR.search(name)
    if match:
        return 2000 + int(match.group(1))

    return None


def family_stem(table_name: str) -> str:
    """Return a table name with its year digits removed.

    Tables of one survey family across years share a stem, e.g.
    ``sfa1819_p1`` and ``sfa2021_p1`` both give ``sfa_p1``.
    """
    return re.sub(r"\d{2,}", "", _base_name(table_name).lower())


def find_column(columns, name: str) -> Optional[str]:
    """Return the first column whose name matches ``name`` case-insensitively."""
    wanted = name.lower()
    for column in columns:
        if str(column).strip().lower() == wanted:
            return column
    return None


def apply_year_column(df: pd.DataFrame, year: Optional[int]) -> pd.DataFrame:
    """Give a table its canonical YEAR column.

    An existing column named ``year`` in any case is renamed to YEAR and
    kept as is. Otherwise, when a year is known, YEAR is inserted right
    after UNITID, or first when there is no UNITID. Applying it again to
    its own result changes nothing.

    Args:
        df: Normalized rows
        year: Year derived from the table name, or None

    Returns:
        Frame with the YEAR column applied
    """
    column_types = dict(df.attrs.get("column_types", {}))

    existing = find_column(df.columns, YEAR_COLUMN)
    if existing is not None:
        if existing == YEAR_COLUMN:
            return df
        result = df.rename(columns={existing: YEAR_COLUMN})
        if existing in column_types:
            column_types[YEAR_COLUMN] = column_types.pop(existing)
        result.attrs = dict(df.attrs)
        result.attrs["column_types"] = column_types
        return result

    if year is None:
        return df

    id_column = find_column(df.columns, ID_COLUMN)
    position = list(df.columns).index(id_column) + 1 if id_column is not None else 0

    result = df.copy()
    result.insert(position, YEAR_COLUMN, pd.Series([year] * len(df), index=df.index, dtype="Int64"))
    column_types[YEAR_COLUMN] = ColumnType.INTEGER
    result.attrs = dict(df.attrs)
    result.attrs["column_types"] = {column: column_types[column] for column in result.columns if column in column_types}
    return result


def normalize(
    raw_payload: bytes,
    table_name: str,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> Tuple[pd.DataFrame, Optional[int]]:
    """Turn a raw tabular payload into typed rows.

    Args:
        raw_payload: Bytes of a CSV file
        table_name: Canonical table name, used for the YEAR column
        sample_size: Values sampled per column for type inference

    Returns:
        Tuple of the normalized frame and the derived year (None when
        the name carries no year)

    Raises:
        LoadError: If the payload cannot be read as CSV
    """
    text = decode_payload(raw_payload, source=table_name)
    df = read_rows(text, source=table_name)

    df, removed = drop_duplicate_rows(df)
    if removed:
        logger.warning(f"{table_name}: removed {removed} duplicate rows")

    df = infer_types(df, sample_size)

    year = derive_year(table_name)
    if year is None:
        logger.info(f"{table_name}: no year in table name, leaving without YEAR column")
    df = apply_year_column(df, year)

    logger.debug(f"{table_name}: {len(df)} rows, {len(df.columns)} columns, year={year}")
    return df, year
