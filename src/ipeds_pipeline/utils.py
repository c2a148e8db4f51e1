import functools
import os
import tempfile
import time
from typing import Callable, Tuple
from urllib.parse import urlparse

from ipeds_pipeline.logging_config import create_logger

logger = create_logger(__name__)

MAX_RETRY_DELAY = 30.0


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[type, ...] = (Exception,),
    max_delay: float = MAX_RETRY_DELAY,
) -> Callable:
    """
    Call the wrapped function up to ``max_attempts`` times.

    Only ``exceptions`` trigger another attempt; anything else propagates
    at once. The wait starts at ``delay`` and grows by ``backoff`` up to
    ``max_delay`` seconds. The last error is re-raised unchanged.
    """
    max_attempts = max(1, max_attempts)

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            label = args[0] if args and isinstance(args[0], str) else func.__name__
            wait = delay
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(f"{label}: giving up after {attempt} attempt(s): {e}")
                        raise
                    logger.warning(f"{label}: attempt {attempt}/{max_attempts} failed ({e}); waiting {wait:.1f}s")
                    time.sleep(wait)
                    wait = min(wait * backoff, max_delay)
                    attempt += 1

        return wrapper

    return decorator


def canonical_table_name(name: str) -> str:
    """Return the store identity of a table: trimmed and lowercased.

    Args:
        name: Table name as it appears in the source listing or file name

    Returns:
        Lowercase table name
    """
    return name.strip().lower()


def quote_identifier(name: str) -> str:
    """Quote a table or column name for use in DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def get_filename_from_url(url: str) -> str:
    """Extract the last path segment of a URL, ignoring any query string."""
    return os.path.basename(urlparse(url).path)


def is_under_temp_dir(path: str) -> bool:
    """Check whether a path lives inside the OS temporary directory."""
    temp_root = os.path.realpath(tempfile.gettempdir())
    candidate = os.path.realpath(os.path.expanduser(path))
    return candidate == temp_root or candidate.startswith(temp_root + os.sep)
