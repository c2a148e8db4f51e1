"""
Data quality validation for stored IPEDS tables.

Checks are grouped in three nested levels:
- basic: existence, non-emptiness and schema presence
- standard: identifier, year, duplicate, null and type checks
- comprehensive: cross-year drift, referential integrity, value ranges,
  encoding, completeness and outliers

Each check runs in isolation: an exception inside one check becomes an
"error" result for that check only.
"""

import json
import os
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ipeds_pipeline.column_types import type_family, types_equivalent
from ipeds_pipeline.exceptions import ValidationCheckError
from ipeds_pipeline.ingest.normalizer import ID_COLUMN, YEAR_COLUMN, derive_year, family_stem
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.utils import quote_identifier

logger = create_logger(__name__)


class ValidationLevel(str, Enum):
    """Depth of a validation run."""
    BASIC = "basic"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class CheckStatus(str, Enum):
    """Outcome of a single check, in increasing severity."""
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"
    ERROR = "error"


class CheckCategory(str, Enum):
    STRUCTURAL = "structural"
    CONTENT = "content"
    LOGICAL = "logical"
    QUALITY = "quality"
    CONSISTENCY = "consistency"


class CheckId(str, Enum):
    """Closed set of validation checks."""
    TABLE_EXISTS = "table_exists"
    TABLE_NOT_EMPTY = "table_not_empty"
    BASIC_SCHEMA = "basic_schema_check"
    UNITID = "unitid_validation"
    YEAR_CONSISTENCY = "year_consistency"
    DUPLICATES = "duplicate_detection"
    NULL_VALUES = "null_value_analysis"
    DATA_TYPES = "data_type_consistency"
    CROSS_YEAR = "cross_year_comparison"
    REFERENTIAL_INTEGRITY = "referential_integrity"
    VALUE_RANGES = "value_range_validation"
    ENCODING = "encoding_validation"
    COMPLETENESS = "completeness_analysis"
    OUTLIERS = "outlier_detection"


_BASIC_CHECKS = [CheckId.TABLE_EXISTS, CheckId.TABLE_NOT_EMPTY, CheckId.BASIC_SCHEMA]
_STANDARD_CHECKS = _BASIC_CHECKS + [
    CheckId.UNITID,
    CheckId.YEAR_CONSISTENCY,
    CheckId.DUPLICATES,
    CheckId.NULL_VALUES,
    CheckId.DATA_TYPES,
]
_COMPREHENSIVE_CHECKS = _STANDARD_CHECKS + [
    CheckId.CROSS_YEAR,
    CheckId.REFERENTIAL_INTEGRITY,
    CheckId.VALUE_RANGES,
    CheckId.ENCODING,
    CheckId.COMPLETENESS,
    CheckId.OUTLIERS,
]

LEVEL_CHECKS: Dict[ValidationLevel, List[CheckId]] = {
    ValidationLevel.BASIC: _BASIC_CHECKS,
    ValidationLevel.STANDARD: _STANDARD_CHECKS,
    ValidationLevel.COMPREHENSIVE: _COMPREHENSIVE_CHECKS,
}

CHECK_CATEGORIES: Dict[CheckId, CheckCategory] = {
    CheckId.TABLE_EXISTS: CheckCategory.STRUCTURAL,
    CheckId.TABLE_NOT_EMPTY: CheckCategory.CONTENT,
    CheckId.BASIC_SCHEMA: CheckCategory.STRUCTURAL,
    CheckId.UNITID: CheckCategory.CONTENT,
    CheckId.YEAR_CONSISTENCY: CheckCategory.LOGICAL,
    CheckId.DUPLICATES: CheckCategory.QUALITY,
    CheckId.NULL_VALUES: CheckCategory.QUALITY,
    CheckId.DATA_TYPES: CheckCategory.STRUCTURAL,
    CheckId.CROSS_YEAR: CheckCategory.CONSISTENCY,
    CheckId.REFERENTIAL_INTEGRITY: CheckCategory.CONSISTENCY,
    CheckId.VALUE_RANGES: CheckCategory.QUALITY,
    CheckId.ENCODING: CheckCategory.QUALITY,
    CheckId.COMPLETENESS: CheckCategory.QUALITY,
    CheckId.OUTLIERS: CheckCategory.QUALITY,
}

CRITICAL_COLUMNS = ("UNITID", "YEAR", "INSTNM")
COMPLETENESS_COLUMNS = ("UNITID", "INSTNM", "YEAR")

EXPECTED_TYPES = {
    "UNITID": "INTEGER",
    "YEAR": "INTEGER",
    "FIPS": "INTEGER",
    "OBEREG": "INTEGER",
    "SECTOR": "INTEGER",
    "INSTNM": "VARCHAR",
    "CITY": "VARCHAR",
    "STABBR": "VARCHAR",
    "ZIP": "VARCHAR",
}

VALUE_RANGES: Dict[str, Tuple[float, float]] = {
    "UNITID": (100000, 999999),
    "YEAR": (1980, 2030),
    "FIPS": (1, 99),
    "OBEREG": (0, 9),
    "SECTOR": (0, 99),
}

OUTLIER_EXCLUDED = re.compile(r"UNITID|YEAR|FIPS|ID", re.IGNORECASE)
DIRECTORY_TABLE = re.compile(r"^hd\d{4}$")


@dataclass
class ValidationThresholds:
    """Tunable limits of the validation checks."""

    duplicate_sample_threshold: int = 100000
    duplicate_sample_size: int = 10000
    duplicate_warning_rate: float = 0.01
    critical_null_rate: float = 0.05
    completeness_minimum: float = 0.95
    unitid_pass_completeness: float = 0.95
    unitid_warning_completeness: float = 0.90
    orphan_warning_rate: float = 0.05
    outlier_mean_multiple: float = 100.0
    outlier_min_count: int = 10
    sampled_columns: int = 3
    encoding_sample_size: int = 100
    drift_warning_issues: int = 2
    type_warning_issues: int = 2
    range_warning_issues: int = 2
    healthy_pass_rate: float = 0.8


@dataclass
class CheckResult:
    """Result of one check on one table."""

    check: CheckId
    category: CheckCategory
    status: CheckStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check": self.check.value,
            "category": self.category.value,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class TableValidation:
    """All check results for one table."""

    table_name: str
    results: List[CheckResult] = field(default_factory=list)

    def _count(self, status: CheckStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return self._count(CheckStatus.PASS)

    @property
    def failed(self) -> int:
        return self._count(CheckStatus.FAIL)

    @property
    def warnings(self) -> int:
        return self._count(CheckStatus.WARNING)

    @property
    def errors(self) -> int:
        return self._count(CheckStatus.ERROR)

    @property
    def overall_status(self) -> CheckStatus:
        if self.errors:
            return CheckStatus.ERROR
        if self.failed:
            return CheckStatus.FAIL
        if self.warnings:
            return CheckStatus.WARNING
        return CheckStatus.PASS

    def result_for(self, check: CheckId) -> Optional[CheckResult]:
        for result in self.results:
            if result.check == check:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "overall_status": self.overall_status.value,
            "total_checks": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "warnings": self.warnings,
            "errors": self.errors,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class ValidationReport:
    """Validation results of a set of tables."""

    level: ValidationLevel
    tables: Dict[str, TableValidation] = field(default_factory=dict)
    thresholds: ValidationThresholds = field(default_factory=ValidationThresholds)
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def total_checks(self) -> int:
        return sum(t.total for t in self.tables.values())

    @property
    def total_passed(self) -> int:
        return sum(t.passed for t in self.tables.values())

    @property
    def pass_rate(self) -> float:
        total = self.total_checks
        return self.total_passed / total if total else 1.0

    def tables_with_status(self, status: CheckStatus) -> List[str]:
        return [name for name, t in self.tables.items() if t.overall_status == status]

    @property
    def recommendations(self) -> List[str]:
        """Heuristic follow-ups derived from the aggregate counts."""
        recommendations = []

        error_tables = [name for name, t in self.tables.items() if t.errors > 0]
        if error_tables:
            recommendations.append(f"Investigate error conditions in tables: {', '.join(error_tables)}")

        failing_tables = [name for name, t in self.tables.items() if t.failed > t.passed]
        if failing_tables:
            recommendations.append(
                f"Review data quality in tables with high failure rates: {', '.join(failing_tables)}"
            )

        if self.total_checks and self.pass_rate < self.thresholds.healthy_pass_rate:
            recommendations.append(
                f"Overall pass rate is {self.pass_rate * 100:.1f}% - consider comprehensive data review"
            )

        if not recommendations:
            recommendations.append(
                "Data quality appears good overall. Consider running comprehensive validation periodically."
            )
        return recommendations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "generated_at": self.generated_at.isoformat(),
            "summary": {
                "tables": len(self.tables),
                "total_checks": self.total_checks,
                "passed": self.total_passed,
                "failed": sum(t.failed for t in self.tables.values()),
                "warnings": sum(t.warnings for t in self.tables.values()),
                "errors": sum(t.errors for t in self.tables.values()),
                "pass_rate": round(self.pass_rate, 4),
            },
            "thresholds": asdict(self.thresholds),
            "tables": {name: t.to_dict() for name, t in self.tables.items()},
            "recommendations": self.recommendations,
        }

    def export_json(self, path: str) -> str:
        """Write the report as JSON and return the path."""
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.info(f"📄 Validation report written to {path}")
        return path

    def log_summary(self) -> None:
        logger.info("=" * 60)
        logger.info(f"📋 VALIDATION REPORT ({self.level.value})")
        logger.info("=" * 60)
        logger.info(f"Tables validated: {len(self.tables)}")
        logger.info(f"Checks: {self.total_checks}, pass rate {self.pass_rate * 100:.1f}%")

        for name, table in self.tables.items():
            line = (
                f"{name}: {table.overall_status.value.upper()} "
                f"({table.passed} passed, {table.failed} failed, "
                f"{table.warnings} warnings, {table.errors} errors)"
            )
            if table.overall_status in (CheckStatus.FAIL, CheckStatus.ERROR):
                logger.error(line)
            elif table.overall_status == CheckStatus.WARNING:
                logger.warning(line)
            else:
                logger.info(line)
            for result in table.results:
                if result.status != CheckStatus.PASS:
                    logger.info(f"    {result.check.value}: {result.status.value} - {result.message}")

        logger.info("Recommendations:")
        for recommendation in self.recommendations:
            logger.info(f"  • {recommendation}")


@dataclass
class TableContext:
    """A stored table as seen by the checks."""

    name: str
    stored_name: str
    schema: List[Tuple[str, str]]

    @property
    def sql(self) -> str:
        return quote_identifier(self.stored_name)

    def column(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for column, _ in self.schema:
            if column.lower() == wanted:
                return column
        return None

    def column_type(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for column, data_type in self.schema:
            if column.lower() == wanted:
                return data_type
        return None


# ----------------------------------------------------------------------
# Checks
# ----------------------------------------------------------------------

CheckOutcome = Tuple[CheckStatus, str, Dict[str, Any]]


def _check_table_exists(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    return CheckStatus.PASS, "Table exists", {"stored_name": table.stored_name}


def _check_table_not_empty(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    rows = engine.row_count(table)
    status = CheckStatus.PASS if rows > 0 else CheckStatus.FAIL
    return status, f"Table has {rows} rows", {"row_count": rows}


def _check_basic_schema(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    columns = [column for column, _ in table.schema]
    status = CheckStatus.PASS if columns else CheckStatus.FAIL
    return status, f"Table has {len(columns)} columns", {"columns": columns}


def _check_unitid(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    column = table.column(ID_COLUMN)
    if column is None:
        return CheckStatus.PASS, "No UNITID column found (not required for all tables)", {}

    q = quote_identifier(column)
    total, non_null, low, high = engine.store.con.execute(
        f"SELECT COUNT(*), COUNT({q}), MIN(TRY_CAST({q} AS BIGINT)), MAX(TRY_CAST({q} AS BIGINT)) FROM {table.sql}"
    ).fetchone()
    if total == 0:
        return CheckStatus.WARNING, "Table has no rows to validate UNITID", {}

    t = engine.thresholds
    completeness = non_null / total
    valid_range = low is not None and high is not None and low >= 100000 and high <= 999999

    if completeness >= t.unitid_pass_completeness and valid_range:
        status = CheckStatus.PASS
    elif completeness >= t.unitid_warning_completeness:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL

    return (
        status,
        f"UNITID completeness: {completeness * 100:.1f}%; Range valid: {valid_range}",
        {"completeness": round(completeness, 4), "min": low, "max": high},
    )


def _check_year_consistency(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    table_year = derive_year(table.name)
    if table_year is None:
        return CheckStatus.PASS, "No year found in table name", {}

    column = table.column(YEAR_COLUMN)
    if column is None:
        return (
            CheckStatus.WARNING,
            "Table name contains year but no year column found",
            {"table_year": table_year},
        )

    q = quote_identifier(column)
    rows = engine.store.con.execute(
        f"SELECT DISTINCT TRY_CAST({q} AS BIGINT) AS y FROM {table.sql} WHERE {q} IS NOT NULL ORDER BY y"
    ).fetchall()
    data_years = [row[0] for row in rows]

    consistent = table_year in data_years
    status = CheckStatus.PASS if consistent else CheckStatus.WARNING
    return (
        status,
        f"Table year: {table_year}; Data years: {', '.join(str(y) for y in data_years) or 'none'}",
        {"table_year": table_year, "data_years": data_years, "consistent": consistent},
    )


def _check_duplicates(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    t = engine.thresholds
    total = engine.row_count(table)
    if total == 0:
        return CheckStatus.PASS, "No rows to check for duplicates", {}

    if total > t.duplicate_sample_threshold:
        sample_size = min(t.duplicate_sample_size, total)
        distinct = engine.store.scalar(
            f"SELECT COUNT(*) FROM (SELECT DISTINCT * FROM (SELECT * FROM {table.sql} LIMIT {sample_size}))"
        )
        rate = (sample_size - distinct) / sample_size
        duplicates = round(rate * total)
        details = {"method": "sample", "sample_size": sample_size, "estimated_duplicates": duplicates}
        message = f"Estimated {duplicates} duplicates ({rate * 100:.2f}%)"
    else:
        distinct = engine.store.scalar(f"SELECT COUNT(*) FROM (SELECT DISTINCT * FROM {table.sql})")
        duplicates = total - distinct
        rate = duplicates / total
        details = {"method": "exhaustive", "duplicates": duplicates}
        message = f"{duplicates} duplicate rows ({rate * 100:.2f}%)"

    if rate == 0:
        status = CheckStatus.PASS
    elif rate < t.duplicate_warning_rate:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL
    details["duplicate_rate"] = round(rate, 6)
    return status, message, details


def _null_rates(engine: "ValidationEngine", table: TableContext, names: Sequence[str]) -> Dict[str, float]:
    columns = [table.column(name) for name in names]
    columns = [c for c in columns if c is not None]
    if not columns:
        return {}

    counts = ", ".join(f"COUNT({quote_identifier(c)})" for c in columns)
    row = engine.store.con.execute(f"SELECT COUNT(*), {counts} FROM {table.sql}").fetchone()
    total = row[0]
    if total == 0:
        return {c: 0.0 for c in columns}
    return {c: 1 - (non_null / total) for c, non_null in zip(columns, row[1:])}


def _check_null_values(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    rates = _null_rates(engine, table, CRITICAL_COLUMNS)
    if not rates:
        return CheckStatus.PASS, "No critical columns present", {}

    issues = {c: round(rate, 4) for c, rate in rates.items() if rate > engine.thresholds.critical_null_rate}
    if not issues:
        status = CheckStatus.PASS
    elif len(issues) == 1:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL
    return status, f"{len(issues)} critical columns with high null rates", {"null_rates": issues}


def _check_data_types(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    mismatches = {}
    for name, expected in EXPECTED_TYPES.items():
        actual = table.column_type(name)
        if actual is not None and not types_equivalent(actual, expected):
            mismatches[table.column(name)] = {"expected": expected, "actual": actual}

    if not mismatches:
        status = CheckStatus.PASS
    elif len(mismatches) <= engine.thresholds.type_warning_issues:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL
    return status, f"{len(mismatches)} columns with unexpected types", {"mismatches": mismatches}


def _check_cross_year(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    stem = family_stem(table.name)
    siblings = [
        name for name in engine.store.list_tables()
        if name.lower() != table.stored_name.lower()
        and not name.lower().endswith("_all")
        and family_stem(name) == stem
    ]
    if not siblings:
        return CheckStatus.PASS, "No related tables found for comparison", {}

    current = {column.lower() for column, _ in table.schema}
    drift = {}
    for sibling in siblings:
        other = {column.lower() for column, _ in engine.store.table_schema(sibling)}
        missing = sorted(current - other)
        extra = sorted(other - current)
        if missing or extra:
            drift[sibling] = {"missing": len(missing), "extra": len(extra)}

    if not drift:
        status = CheckStatus.PASS
    elif len(drift) <= engine.thresholds.drift_warning_issues:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL
    return status, f"{len(drift)} schema inconsistencies found", {"siblings": siblings, "drift": drift}


def _latest_directory_table(engine: "ValidationEngine") -> Optional[str]:
    directories = [name for name in engine.store.list_tables() if DIRECTORY_TABLE.match(name.lower())]
    if not directories:
        return None
    return max(directories, key=lambda name: (derive_year(name) or 0, name))


def _check_referential_integrity(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    column = table.column(ID_COLUMN)
    if column is None:
        return CheckStatus.PASS, "No UNITID column for referential integrity check", {}

    reference = _latest_directory_table(engine)
    if reference is None:
        return CheckStatus.WARNING, "No institutional directory (hd) tables found for referential check", {}

    reference_column = None
    for name, _ in engine.store.table_schema(reference):
        if name.lower() == ID_COLUMN.lower():
            reference_column = name
    if reference_column is None:
        return CheckStatus.WARNING, f"Reference table {reference} has no UNITID column", {"reference": reference}

    q = quote_identifier(column)
    rq = quote_identifier(reference_column)
    total = engine.store.scalar(f"SELECT COUNT(DISTINCT {q}) FROM {table.sql}")
    if not total:
        return CheckStatus.PASS, "No UNITID values to check", {"reference": reference}

    orphaned = engine.store.scalar(
        f"""
        SELECT COUNT(*) FROM (SELECT DISTINCT TRY_CAST({q} AS BIGINT) AS id FROM {table.sql} WHERE {q} IS NOT NULL) t1
        LEFT JOIN (SELECT DISTINCT TRY_CAST({rq} AS BIGINT) AS id FROM {quote_identifier(reference)}) t2
        ON t1.id = t2.id
        WHERE t2.id IS NULL
        """
    )
    rate = orphaned / total
    if orphaned == 0:
        status = CheckStatus.PASS
    elif rate < engine.thresholds.orphan_warning_rate:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL
    return (
        status,
        f"{orphaned} orphaned UNITIDs ({rate * 100:.1f}%)",
        {"reference": reference, "orphaned": orphaned, "distinct_unitids": total},
    )


def _check_value_ranges(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    out_of_range = {}
    for name, (low, high) in VALUE_RANGES.items():
        column = table.column(name)
        if column is None:
            continue
        q = quote_identifier(column)
        min_value, max_value = engine.store.con.execute(
            f"SELECT MIN(TRY_CAST({q} AS DOUBLE)), MAX(TRY_CAST({q} AS DOUBLE)) FROM {table.sql}"
        ).fetchone()
        if min_value is None:
            continue
        if min_value < low or max_value > high:
            out_of_range[column] = {"min": min_value, "max": max_value, "expected": [low, high]}

    if not out_of_range:
        status = CheckStatus.PASS
    elif len(out_of_range) <= engine.thresholds.range_warning_issues:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL
    return status, f"{len(out_of_range)} columns with unexpected ranges", {"columns": out_of_range}


def _has_encoding_anomaly(value: str) -> bool:
    return "\x00" in value or any(ord(ch) > 127 for ch in value)


def _check_encoding(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    t = engine.thresholds
    text_columns = [c for c, data_type in table.schema if type_family(data_type) == "text"][: t.sampled_columns]
    if not text_columns:
        return CheckStatus.PASS, "No text columns to check", {}

    suspicious = {}
    for column in text_columns:
        q = quote_identifier(column)
        rows = engine.store.con.execute(
            f"SELECT {q} FROM {table.sql} WHERE {q} IS NOT NULL LIMIT {t.encoding_sample_size}"
        ).fetchall()
        hits = sum(1 for (value,) in rows if _has_encoding_anomaly(str(value)))
        if hits:
            suspicious[column] = hits

    status = CheckStatus.PASS if not suspicious else CheckStatus.WARNING
    return (
        status,
        f"{len(suspicious)} columns with potential encoding issues",
        {"sampled_columns": text_columns, "suspicious": suspicious},
    )


def _check_completeness(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    if engine.row_count(table) == 0:
        return CheckStatus.FAIL, "Table is empty", {}

    rates = _null_rates(engine, table, COMPLETENESS_COLUMNS)
    completeness = {c: round(1 - rate, 4) for c, rate in rates.items()}
    issues = {c: value for c, value in completeness.items() if value < engine.thresholds.completeness_minimum}

    if not issues:
        status = CheckStatus.PASS
    elif len(issues) == 1:
        status = CheckStatus.WARNING
    else:
        status = CheckStatus.FAIL
    return status, f"{len(issues)} columns with low completeness", {"completeness": completeness}


def _check_outliers(engine: "ValidationEngine", table: TableContext) -> CheckOutcome:
    t = engine.thresholds
    numeric_columns = [
        c for c, data_type in table.schema
        if type_family(data_type) in ("integer", "float") and not OUTLIER_EXCLUDED.search(c)
    ][: t.sampled_columns]
    if not numeric_columns:
        return CheckStatus.PASS, "No numeric columns to check", {}

    outliers = {}
    for column in numeric_columns:
        q = quote_identifier(column)
        count, mean, maximum = engine.store.con.execute(
            f"SELECT COUNT({q}), AVG({q}), MAX({q}) FROM {table.sql} WHERE {q} IS NOT NULL AND {q} > 0"
        ).fetchone()
        if count > t.outlier_min_count and mean is not None and maximum > mean * t.outlier_mean_multiple:
            outliers[column] = {"mean": float(mean), "max": float(maximum), "count": int(count)}

    status = CheckStatus.PASS if not outliers else CheckStatus.WARNING
    return status, f"{len(outliers)} columns with potential outliers", {"checked": numeric_columns, "outliers": outliers}


CHECKS: Dict[CheckId, Callable[["ValidationEngine", TableContext], CheckOutcome]] = {
    CheckId.TABLE_EXISTS: _check_table_exists,
    CheckId.TABLE_NOT_EMPTY: _check_table_not_empty,
    CheckId.BASIC_SCHEMA: _check_basic_schema,
    CheckId.UNITID: _check_unitid,
    CheckId.YEAR_CONSISTENCY: _check_year_consistency,
    CheckId.DUPLICATES: _check_duplicates,
    CheckId.NULL_VALUES: _check_null_values,
    CheckId.DATA_TYPES: _check_data_types,
    CheckId.CROSS_YEAR: _check_cross_year,
    CheckId.REFERENTIAL_INTEGRITY: _check_referential_integrity,
    CheckId.VALUE_RANGES: _check_value_ranges,
    CheckId.ENCODING: _check_encoding,
    CheckId.COMPLETENESS: _check_completeness,
    CheckId.OUTLIERS: _check_outliers,
}


class ValidationEngine:
    """Run validation checks against tables of an IpedsStore.

    Example:
        engine = ValidationEngine(store)
        report = engine.validate(["hd2023"], level="comprehensive")
        report.log_summary()
    """

    def __init__(self, store: IpedsStore, thresholds: Optional[ValidationThresholds] = None):
        self.store = store
        self.thresholds = thresholds or ValidationThresholds()
        self._row_counts: Dict[str, int] = {}

    def row_count(self, table: TableContext) -> int:
        if table.stored_name not in self._row_counts:
            self._row_counts[table.stored_name] = self.store.row_count(table.stored_name)
        return self._row_counts[table.stored_name]

    def run_check(self, check: CheckId, table: TableContext) -> CheckResult:
        """Run one check, turning an internal failure into an error result."""
        category = CHECK_CATEGORIES[check]
        try:
            status, message, details = CHECKS[check](self, table)
        except Exception as e:
            error = ValidationCheckError(check.value, table.name, e)
            logger.warning(f"⚠️  {error}")
            return CheckResult(check, category, CheckStatus.ERROR, str(error), {"error_type": type(e).__name__})
        return CheckResult(check, category, status, message, details)

    def validate_table(self, table_name: str, level: ValidationLevel = ValidationLevel.STANDARD) -> TableValidation:
        """Validate one table at the given level."""
        validation = TableValidation(table_name=table_name)

        stored = self.store.resolve_table(table_name)
        if stored is None:
            validation.results.append(
                CheckResult(
                    CheckId.TABLE_EXISTS,
                    CHECK_CATEGORIES[CheckId.TABLE_EXISTS],
                    CheckStatus.FAIL,
                    "Table does not exist",
                )
            )
            return validation

        table = TableContext(name=table_name, stored_name=stored, schema=self.store.table_schema(stored))
        for check in LEVEL_CHECKS[level]:
            validation.results.append(self.run_check(check, table))
        return validation

    def validate(
        self,
        table_names: Optional[Sequence[str]] = None,
        level: Union[ValidationLevel, str] = ValidationLevel.STANDARD,
    ) -> ValidationReport:
        """
        Validate tables and build a report.

        :param table_names: Tables to validate; all data tables when omitted
        :param level: basic, standard or comprehensive
        :return: ValidationReport
        """
        level = ValidationLevel(level)
        if table_names is None:
            table_names = self.store.list_tables()

        logger.info(f"🔍 Validating {len(table_names)} tables ({level.value})")
        report = ValidationReport(level=level, thresholds=self.thresholds)
        self._row_counts = {}

        for position, table_name in enumerate(table_names, start=1):
            logger.debug(f"[{position}/{len(table_names)}] {table_name}")
            report.tables[table_name] = self.validate_table(table_name, level)

        return report
