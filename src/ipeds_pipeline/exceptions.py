"""
Custom exceptions for the IPEDS pipeline.

This module defines a hierarchy of exceptions to provide more
precise error handling across scraping, downloading, loading,
consolidation and validation.
"""

from typing import Dict, List, Optional


class IpedsBaseError(Exception):
    """
    Base exception for all pipeline-related errors.

    All custom exceptions in the pipeline inherit from this class.
    """

    pass


class ConfigurationError(IpedsBaseError):
    """
    Raised when there are configuration-related issues.

    This exception is used when:
    - Required paths are missing or unusable
    - The download cache points at a transient location
    - Numeric settings are out of range
    """

    pass


class RemoteFetchError(IpedsBaseError):
    """
    Raised when a year's listing page cannot be used.

    Covers:
    - Non-2xx responses from the listing page
    - Network failures while fetching the page
    - Absence of the results table in the returned HTML

    Fatal for that year's scrape and never retried automatically.
    """

    def __init__(self, message: str, year: Optional[int] = None):
        super().__init__(message)
        self.year = year


class DownloadError(IpedsBaseError):
    """
    Raised when a single remote file could not be downloaded.

    Non-fatal to a batch: callers record the failure and continue
    with the remaining files.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class DecodeError(IpedsBaseError):
    """
    Raised when a payload is not valid in its declared encoding.

    Never fatal: the normalizer catches it and degrades to a lossy
    ASCII-safe decoding.
    """

    pass


class SchemaConflictError(IpedsBaseError):
    """
    Raised when per-year tables of one survey family disagree on schema.

    Consolidation resolves it by inserting typed null placeholders and
    promoting conflicting types, so it never reaches the caller.
    """

    def __init__(
        self,
        message: str,
        missing_columns: Optional[Dict[str, List[str]]] = None,
        type_conflicts: Optional[Dict[str, List[str]]] = None,
    ):
        super().__init__(message)
        self.missing_columns = missing_columns or {}
        self.type_conflicts = type_conflicts or {}


class LoadError(IpedsBaseError):
    """
    Raised when a payload cannot be turned into a stored table.

    Covers archives without a tabular member, unreadable CSV
    content and failed table writes.
    """

    pass


class WriteLockError(IpedsBaseError):
    """
    Raised when the database file is held exclusively by another process.

    This is a retryable condition, not a data-correctness problem.
    """

    retryable = True

    def __init__(self, message: str, db_path: Optional[str] = None):
        super().__init__(message)
        self.db_path = db_path


class ValidationCheckError(IpedsBaseError):
    """
    Raised when a single validation check fails internally.

    The validation engine converts it into an "error" result for that
    check and continues with the remaining checks.
    """

    def __init__(self, check: str, table_name: str, cause: Exception):
        super().__init__(f"Check {check} failed on {table_name}: {cause}")
        self.check = check
        self.table_name = table_name
        self.cause = cause


class PartialFailureError(IpedsBaseError):
    """
    Raised when batch operations have partial failures.

    This exception indicates that some operations succeeded
    while others failed.
    """

    pass
