"""
Error handling utilities for the IPEDS pipeline.

One listing year is processed as a batch of files. A file that fails is
recorded here and the batch moves on; at the end the failures are
reported grouped by whether a rerun is likely to fix them.
"""

import sys
import traceback
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List

import duckdb
import requests

from ipeds_pipeline.exceptions import (
    ConfigurationError,
    DownloadError,
    PartialFailureError,
    RemoteFetchError,
    WriteLockError,
)
from ipeds_pipeline.logging_config import create_logger, log_exception

logger = create_logger(__name__)

MAX_REPORTED_FAILURES = 10


class ErrorCategory(str, Enum):
    """Whether rerunning the update can be expected to help."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


@dataclass
class FailedItem:
    item: str
    error: Exception
    category: ErrorCategory

    def describe(self, width: int = 100) -> str:
        return f"{self.item} [{self.category.value}]: {str(self.error)[:width]}"


@dataclass
class PartialFailureCollector:
    """Outcome of every file handled while updating one year.

    Example:
        collector = PartialFailureCollector()
        for entry in entries:
            try:
                load_entry(entry)
            except Exception as e:
                collector.add_failure(entry.table_name, e)
            else:
                collector.add_success(entry.table_name)
        collector.log_summary()
    """

    successes: List[str] = field(default_factory=list)
    failures: List[FailedItem] = field(default_factory=list)

    def add_failure(self, item, exception: Exception) -> FailedItem:
        failed = FailedItem(str(item), exception, categorize_error(exception))
        self.failures.append(failed)
        logger.warning(f"❌ {failed.describe(200)}")
        return failed

    def add_success(self, item) -> None:
        self.successes.append(str(item))

    def has_failures(self) -> bool:
        return bool(self.failures)

    def get_total_count(self) -> int:
        return len(self.successes) + len(self.failures)

    def failed_items(self) -> List[str]:
        return [failed.item for failed in self.failures]

    def by_category(self) -> Dict[ErrorCategory, List[FailedItem]]:
        grouped: Dict[ErrorCategory, List[FailedItem]] = {}
        for failed in self.failures:
            grouped.setdefault(failed.category, []).append(failed)
        return grouped

    def merge(self, other: "PartialFailureCollector", prefix: str = "") -> None:
        """Fold another collector in, labelling its items with ``prefix``."""
        self.successes.extend(f"{prefix}{item}" for item in other.successes)
        self.failures.extend(replace(failed, item=f"{prefix}{failed.item}") for failed in other.failures)

    def retryable_items(self) -> List[str]:
        """Items whose failure looked transient (timeouts, 5xx, locks)."""
        return [f.item for f in self.failures if f.category == ErrorCategory.TRANSIENT]

    def raise_if_failures(self, message: str = "Some files could not be imported") -> None:
        """Raise PartialFailureError listing at most ``MAX_REPORTED_FAILURES`` items."""
        if not self.has_failures():
            return

        total = self.get_total_count()
        lines = [
            message,
            f"Successes: {len(self.successes)}/{total}",
            f"Failures: {len(self.failures)}/{total}",
        ]
        lines.extend(f"  - {failed.describe()}" for failed in self.failures[:MAX_REPORTED_FAILURES])
        hidden = len(self.failures) - MAX_REPORTED_FAILURES
        if hidden > 0:
            lines.append(f"  ... {hidden} more")
        retryable = self.retryable_items()
        if retryable:
            lines.append(f"{len(retryable)} of these look transient; rerunning the update may fix them")
        raise PartialFailureError("\n".join(lines))

    def log_summary(self) -> None:
        total = self.get_total_count()
        if not total:
            logger.info("Nothing was processed")
            return

        logger.info(f"✅ {len(self.successes)}/{total} items imported")
        for category, failed_items in self.by_category().items():
            logger.warning(f"{len(failed_items)} {category.value} failure(s):")
            for failed in failed_items[:5]:
                logger.warning(f"  - {failed.item}: {str(failed.error)[:100]}")
        if self.retryable_items():
            logger.warning("Rerunning the update may fix the transient failures")


def categorize_error(exception: Exception) -> ErrorCategory:
    """Classify a failure; a DownloadError is judged by its cause."""
    if isinstance(exception, WriteLockError):
        return ErrorCategory.TRANSIENT

    if isinstance(exception, (ConfigurationError, RemoteFetchError)):
        return ErrorCategory.PERMANENT

    if isinstance(exception, DownloadError):
        cause = exception.__cause__
        if isinstance(cause, Exception):
            return categorize_error(cause)
        return ErrorCategory.UNKNOWN

    if isinstance(exception, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.TRANSIENT

    if isinstance(exception, requests.HTTPError):
        response = exception.response
        status = response.status_code if response is not None else None
        if status is not None and (status == 429 or status >= 500):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    if isinstance(exception, (FileNotFoundError, PermissionError)):
        return ErrorCategory.PERMANENT

    if isinstance(exception, (ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT

    if isinstance(exception, duckdb.IOException) and "lock" in str(exception).lower():
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def global_exception_handler(exc_type, exc_value, exc_traceback):
    """``sys.excepthook`` for the command-line scripts."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    context = {}
    frames = traceback.extract_tb(exc_traceback)
    if frames:
        context["raised at"] = f"{frames[-1].filename}:{frames[-1].lineno} in {frames[-1].name}"
    if isinstance(exc_value, Exception):
        category = categorize_error(exc_value)
        context["category"] = category.value
        if category == ErrorCategory.TRANSIENT:
            context["note"] = "transient error, a rerun may succeed"

    log_exception(logger, exc_value, context)
    sys.__excepthook__(exc_type, exc_value, exc_traceback)


def install_global_exception_handler() -> None:
    """Route unhandled exceptions through the pipeline logger."""
    sys.excepthook = global_exception_handler
