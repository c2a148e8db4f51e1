"""Longitudinal consolidation of per-year survey tables.

All per-year tables of a survey family are unioned by column name into
one ``<family>_all`` table. A column missing from some year is filled
with typed nulls in that year's rows; conflicting types are promoted to
the looser type. The consolidated table is always rebuilt from scratch.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ipeds_pipeline.column_types import base_type, promote_types
from ipeds_pipeline.exceptions import SchemaConflictError
from ipeds_pipeline.ingest.normalizer import ID_COLUMN, YEAR_COLUMN, derive_year
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.utils import quote_identifier

logger = create_logger(__name__)

Schema = List[Tuple[str, str]]


class SurveyFamily(str, Enum):
    """Known families of per-year tables."""
    TABLES = "tables"
    VARTABLE = "vartable"
    VALUESETS = "valuesets"
    DIRECTORY = "hd"

    @property
    def pattern(self) -> "re.Pattern":
        return _FAMILY_PATTERNS[self]

    @property
    def target_table(self) -> str:
        return f"{self.value}_all"


_FAMILY_PATTERNS = {
    SurveyFamily.TABLES: re.compile(r"^tables\d{2}$"),
    SurveyFamily.VARTABLE: re.compile(r"^vartable\d{2}$"),
    SurveyFamily.VALUESETS: re.compile(r"^valuesets\d{2}$"),
    SurveyFamily.DIRECTORY: re.compile(r"^hd\d{4}$"),
}


@dataclass
class OutputColumn:
    """One column of a consolidated table."""

    name: str
    sql_type: str
    sources: Dict[str, str] = field(default_factory=dict)


@dataclass
class ConsolidationResult:
    """Outcome of consolidating one survey family."""

    family: SurveyFamily
    table_name: str
    member_tables: List[str]
    row_count: int
    columns: List[str]
    placeholder_columns: Dict[str, List[str]] = field(default_factory=dict)
    promoted_columns: Dict[str, str] = field(default_factory=dict)


def check_schema_alignment(schemas: Dict[str, Schema]) -> None:
    """
    Check that all member tables share one schema.

    :param schemas: Member table name to its ``(column, type)`` pairs
    :raises SchemaConflictError: If a table lacks a column another table has,
        or a column is declared with different types
    """
    all_columns: Dict[str, str] = {}
    column_types: Dict[str, set] = {}
    for schema in schemas.values():
        for column, sql_type in schema:
            key = column.lower()
            all_columns.setdefault(key, column)
            column_types.setdefault(key, set()).add(base_type(sql_type))

    missing: Dict[str, List[str]] = {}
    for table, schema in schemas.items():
        present = {column.lower() for column, _ in schema}
        absent = [all_columns[key] for key in all_columns if key not in present]
        if absent:
            missing[table] = absent

    conflicts = {all_columns[key]: sorted(types) for key, types in column_types.items() if len(types) > 1}

    if missing or conflicts:
        raise SchemaConflictError(
            f"{len(missing)} tables lack columns, {len(conflicts)} columns have conflicting types",
            missing_columns=missing,
            type_conflicts=conflicts,
        )


def build_output_columns(schemas: Dict[str, Schema], with_year: bool = True) -> List[OutputColumn]:
    """Build the superset schema of several tables.

    Columns are matched case-insensitively and kept in order of first
    appearance. YEAR sits right after UNITID, or first when there is no
    UNITID.
    """
    columns: Dict[str, OutputColumn] = {}
    types: Dict[str, List[str]] = {}
    for table, schema in schemas.items():
        for column, sql_type in schema:
            key = column.lower()
            if key not in columns:
                columns[key] = OutputColumn(name=column, sql_type="")
                types[key] = []
            columns[key].sources[table] = column
            types[key].append(sql_type)

    year_key = YEAR_COLUMN.lower()
    if with_year:
        if year_key not in columns:
            columns[year_key] = OutputColumn(name=YEAR_COLUMN, sql_type="")
            types[year_key] = []
        columns[year_key].name = YEAR_COLUMN

    for key, column in columns.items():
        found = types[key]
        if key == year_key and with_year and len(column.sources) < len(schemas):
            found = found + ["BIGINT"]
        column.sql_type = promote_types(found)

    ordered = list(columns.values())
    if with_year:
        year = columns[year_key]
        ordered.remove(year)
        id_key = ID_COLUMN.lower()
        position = ordered.index(columns[id_key]) + 1 if id_key in columns else 0
        ordered.insert(position, year)
    return ordered


def _literal_year(table: str) -> str:
    year = derive_year(table)
    return "NULL" if year is None else str(year)


def build_union_sql(target: str, tables: List[str], columns: List[OutputColumn]) -> str:
    """Build the statement that rebuilds a consolidated table."""
    selects = []
    for table in tables:
        expressions = []
        for column in columns:
            source = column.sources.get(table)
            if source is not None:
                value = quote_identifier(source)
            elif column.name == YEAR_COLUMN:
                value = _literal_year(table)
            else:
                value = "NULL"
            expressions.append(f"CAST({value} AS {column.sql_type}) AS {quote_identifier(column.name)}")
        selects.append(f"SELECT {', '.join(expressions)} FROM {quote_identifier(table)}")

    union = "\nUNION ALL\n".join(selects)
    return f"CREATE OR REPLACE TABLE {quote_identifier(target)} AS\n{union}"


class Consolidator:
    """Rebuild consolidated tables from per-year member tables."""

    def __init__(self, store: IpedsStore):
        self.store = store

    def member_tables(self, family: SurveyFamily) -> List[str]:
        """Return the stored tables of a family, oldest year first."""
        members = [name for name in self.store.list_tables() if family.pattern.match(name.lower())]
        return sorted(members, key=lambda name: (derive_year(name) or 0, name.lower()))

    def consolidate(self, family: Union[SurveyFamily, str]) -> Optional[ConsolidationResult]:
        """Rebuild the consolidated table of a survey family.

        Args:
            family: SurveyFamily or its prefix, e.g. ``"vartable"``

        Returns:
            ConsolidationResult, or None when the family has no tables yet
        """
        family = SurveyFamily(family)
        target = family.target_table
        members = self.member_tables(family)
        if not members:
            logger.info(f"No {family.value} tables to consolidate")
            return None

        schemas = {table: self.store.table_schema(table) for table in members}

        try:
            check_schema_alignment(schemas)
            missing, conflicts = {}, {}
        except SchemaConflictError as e:
            missing, conflicts = e.missing_columns, e.type_conflicts
            logger.info(
                f"Reconciling {family.value} schemas: {len(missing)} tables get placeholder columns, "
                f"{len(conflicts)} columns promoted"
            )

        columns = build_output_columns(schemas)
        placeholders = {
            table: [c.name for c in columns if table not in c.sources]
            for table in members
        }
        placeholders = {table: names for table, names in placeholders.items() if names}

        for existing in self.store.list_tables():
            if existing.lower() == target and existing != target:
                self.store.drop_table(existing)

        self.store.execute(build_union_sql(target, members, columns))

        row_count = self.store.row_count(target)
        expected = sum(self.store.row_count(table) for table in members)
        if row_count != expected:
            logger.warning(f"{target}: {row_count} rows, members hold {expected}")

        logger.info(f"🔗 Consolidated {len(members)} {family.value} tables into {target} ({row_count:,} rows)")
        return ConsolidationResult(
            family=family,
            table_name=target,
            member_tables=members,
            row_count=row_count,
            columns=[c.name for c in columns],
            placeholder_columns=placeholders,
            promoted_columns={c.name: c.sql_type for c in columns if c.name in conflicts},
        )

    def consolidate_all(self, families: Iterable[SurveyFamily] = tuple(SurveyFamily)) -> List[ConsolidationResult]:
        """Rebuild the consolidated tables of several families."""
        results = []
        for family in families:
            result = self.consolidate(family)
            if result is not None:
                results.append(result)
        return results
