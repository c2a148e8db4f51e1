"""Column typing for tabular payloads.

A table is an ordered sequence of named columns, each with a declared
``ColumnType``. Columns are read as text and only narrowed to integer or
floating point when every value converts cleanly.
"""

import re
from enum import Enum
from typing import Iterable

import pandas as pd

DEFAULT_SAMPLE_SIZE = 10000

_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
_FLOAT_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_LEADING_ZERO_PATTERN = re.compile(r"^[+-]?0\d")

# Longest digit run that always fits a signed 64-bit integer
_MAX_INTEGER_DIGITS = 18


class ColumnType(str, Enum):
    """Declared type of a normalized column."""
    TEXT = "text"
    INTEGER = "integer"
    FLOAT = "float"

    @property
    def sql_type(self) -> str:
        return _SQL_TYPES[self]


_SQL_TYPES = {
    ColumnType.TEXT: "VARCHAR",
    ColumnType.INTEGER: "BIGINT",
    ColumnType.FLOAT: "DOUBLE",
}

_CHARACTER_TYPES = {"VARCHAR", "CHAR", "BPCHAR", "TEXT", "STRING", "NVARCHAR"}
_INTEGER_TYPES = {
    "TINYINT", "SMALLINT", "INTEGER", "INT", "BIGINT", "HUGEINT",
    "UTINYINT", "USMALLINT", "UINTEGER", "UBIGINT", "UHUGEINT",
    "INT1", "INT2", "INT4", "INT8", "LONG", "SHORT",
}
_FLOAT_TYPES = {"FLOAT", "REAL", "DOUBLE", "FLOAT4", "FLOAT8", "DECIMAL", "NUMERIC"}
_PARAMETERIZED_NUMERIC = {"DECIMAL", "NUMERIC"}


def _is_integer(value: str) -> bool:
    if not _INTEGER_PATTERN.match(value) or _LEADING_ZERO_PATTERN.match(value):
        return False
    return len(value.lstrip("+-")) <= _MAX_INTEGER_DIGITS


def _is_float(value: str) -> bool:
    return bool(_FLOAT_PATTERN.match(value)) and not _LEADING_ZERO_PATTERN.match(value)


def infer_column_type(series: pd.Series, sample_size: int = DEFAULT_SAMPLE_SIZE) -> ColumnType:
    """Infer the narrowest safe type for a text column.

    A narrower type is proposed from the first ``sample_size`` non-null
    values and only kept if the whole column then converts cleanly.
    Columns with no values, or with leading-zero codes such as ZIP
    codes, stay text.

    Args:
        series: Column values as strings, nulls as NaN/None
        sample_size: Number of non-null values used to propose a type

    Returns:
        ColumnType for the column
    """
    values = series.dropna().astype(str).str.strip()
    values = values[values != ""]
    if values.empty:
        return ColumnType.TEXT

    sample = values.iloc[:sample_size]

    for candidate, check in ((ColumnType.INTEGER, _is_integer), (ColumnType.FLOAT, _is_float)):
        if all(check(value) for value in sample):
            if len(values) == len(sample) or all(check(value) for value in values.iloc[sample_size:]):
                return candidate

    return ColumnType.TEXT


def coerce_column(series: pd.Series, column_type: ColumnType) -> pd.Series:
    """Convert a text column to its declared type."""
    if column_type == ColumnType.TEXT:
        return series.astype(object).where(series.notna(), None)

    values = [value.strip() if isinstance(value, str) else None for value in series]
    values = [value or None for value in values]

    if column_type == ColumnType.INTEGER:
        converted = [int(value) if value is not None else None for value in values]
        return pd.Series(converted, index=series.index, name=series.name, dtype="Int64")

    converted = [float(value) if value is not None else None for value in values]
    return pd.Series(converted, index=series.index, name=series.name, dtype="float64")


def normalize_type(sql_type: str) -> str:
    """Uppercase a SQL type and drop spaces around its parameters."""
    return re.sub(r"\s*([(),])\s*", r"\1", sql_type.strip().upper())


def base_type(sql_type: str) -> str:
    """Strip parameters from a SQL type name, e.g. ``VARCHAR(10)`` -> ``VARCHAR``."""
    return sql_type.split("(")[0].strip().upper()


def type_family(sql_type: str) -> str:
    """Return the family of a SQL type: text, integer, float or the base type itself."""
    name = base_type(sql_type)
    if name in _CHARACTER_TYPES:
        return "text"
    if name in _INTEGER_TYPES:
        return "integer"
    if name in _FLOAT_TYPES:
        return "float"
    return name.lower()


def types_equivalent(left: str, right: str) -> bool:
    """Check whether two SQL types belong to the same family.

    Fixed and variable length character types compare equal, as do all
    integer widths.
    """
    return type_family(left) == type_family(right)


def promote_types(sql_types: Iterable[str]) -> str:
    """Return the loosest SQL type able to hold values of all given types.

    Identical declarations are kept with their parameters. DECIMAL members
    with different precision or scale are promoted to DOUBLE.

    Args:
        sql_types: Declared types of one column across several tables

    Returns:
        The promoted SQL type name
    """
    declared = [normalize_type(t) for t in sql_types if t]
    if not declared:
        return "VARCHAR"
    if len(set(declared)) == 1:
        return declared[0]

    names = [base_type(t) for t in declared]
    if len(set(names)) == 1 and names[0] not in _PARAMETERIZED_NUMERIC:
        return names[0]

    families = {type_family(name) for name in names}
    if families == {"integer"}:
        return "BIGINT"
    if families <= {"integer", "float"}:
        return "DOUBLE"
    return "VARCHAR"
