"""
Logging setup shared by the ingest, consolidation and validation stages.

Every module asks for its logger through :func:`create_logger`. Console
output is colored with colorlog; when a log directory is known (argument
or ``IPEDS_LOG_DIR``) all loggers also append to one plain-text file so a
full ``update_database`` run can be read back in order.
"""

import logging
import os
import sys
from typing import Dict, List, Optional, Union

import colorlog

from ipeds_pipeline.exceptions import (
    ConfigurationError,
    DownloadError,
    LoadError,
    RemoteFetchError,
    WriteLockError,
)

PACKAGE_LOGGER_PREFIX = "ipeds_pipeline"
DEFAULT_LOG_FILE = "ipeds_pipeline.log"

CONSOLE_FORMAT = (
    "%(log_color)s[%(levelname)s]%(reset)s %(blue)s[%(name)s]%(reset)s %(message)s"
)
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# Checked in order; first isinstance match wins.
_HINTS = [
    (RemoteFetchError, [
        "The NCES Data Center listing could not be read",
        "Check network access to nces.ed.gov and retry later",
    ]),
    (DownloadError, [
        "A data or dictionary archive failed to download",
        "Delete the partial file from the cache directory and rerun",
    ]),
    (LoadError, [
        "A downloaded file could not be loaded into a table",
        "Re-download the archive; NCES occasionally republishes files",
    ]),
    (WriteLockError, [
        "Another process holds the DuckDB file for writing",
        "Close other sessions on the database and rerun",
    ]),
    (ConfigurationError, [
        "A data, cache or database path is invalid",
        "Check --db-path / --cache-dir and any values in the .env file",
    ]),
]
_GENERIC_HINTS = [
    "Rerun with --verbose for debug output",
    "Check the log file under IPEDS_LOG_DIR if one is configured",
]

_file_handlers: Dict[str, logging.FileHandler] = {}


def _resolve_level(log_level: Optional[Union[int, str]]) -> int:
    if log_level is None:
        log_level = os.getenv("IPEDS_LOG_LEVEL", "INFO")
    if isinstance(log_level, str):
        resolved = logging.getLevelName(log_level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return log_level


def _shared_file_handler(path: str) -> logging.FileHandler:
    """One handler per file so modules do not interleave partial writes."""
    path = os.path.abspath(path)
    handler = _file_handlers.get(path)
    if handler is None:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        _file_handlers[path] = handler
    return handler


def create_logger(
    name: Optional[str] = None,
    log_level: Optional[Union[int, str]] = None,
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Return a colored console logger, optionally also writing to a file.

    :param name: Logger name, normally ``__name__``
    :param log_level: Level name or number; ``IPEDS_LOG_LEVEL`` when omitted
    :param log_dir: Directory for the log file; ``IPEDS_LOG_DIR`` when omitted
    :param log_file: File name inside ``log_dir`` (default ipeds_pipeline.log)
    """
    level = _resolve_level(log_level)
    logger = colorlog.getLogger(name or PACKAGE_LOGGER_PREFIX)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console = colorlog.StreamHandler(sys.stdout)
    console.setFormatter(
        colorlog.ColoredFormatter(CONSOLE_FORMAT, log_colors=LEVEL_COLORS)
    )
    logger.addHandler(console)

    log_dir = log_dir or os.getenv("IPEDS_LOG_DIR") or None
    if log_dir or log_file:
        path = log_file or DEFAULT_LOG_FILE
        if log_dir:
            path = os.path.join(log_dir, path)
        logger.addHandler(_shared_file_handler(path))

    return logger


def set_log_level(log_level: Union[int, str]) -> None:
    """Change the level of every logger already created by this package."""
    level = _resolve_level(log_level)
    for name, candidate in logging.root.manager.loggerDict.items():
        if not isinstance(candidate, logging.Logger):
            continue
        if name.startswith(PACKAGE_LOGGER_PREFIX) or name == "__main__":
            candidate.setLevel(level)


def troubleshooting_hints(e: BaseException) -> List[str]:
    for exc_type, hints in _HINTS:
        if isinstance(e, exc_type):
            return hints + _GENERIC_HINTS
    return list(_GENERIC_HINTS)


def log_exception(logger, e, context=None):
    """
    Log a pipeline failure as a block of CRITICAL lines.

    ``context`` is usually a dict such as ``{"year": 2022, "url": ...}``;
    each key gets its own line. Anything else is logged as-is.
    """
    logger.critical("🚨 IPEDS PIPELINE ERROR 🚨")
    logger.critical(f"{type(e).__name__}: {e}")

    if isinstance(context, dict):
        for key, value in context.items():
            logger.critical(f"  {key}: {value}")
    elif context:
        logger.critical(f"  context: {context}")

    logger.critical("What to check:")
    for number, hint in enumerate(troubleshooting_hints(e), start=1):
        logger.critical(f"  {number}. {hint}")
