"""Idempotent downloads into the durable cache directory.

A file already present in the cache is returned without touching the
network unless a refresh is forced. Payload kind is decided from the
file signature, never from the URL extension.
"""

import os
import posixpath
import re
import zipfile
from pathlib import Path
from typing import Optional, Tuple

import requests

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.exceptions import ConfigurationError, DownloadError, LoadError
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.utils import get_filename_from_url, retry

logger = create_logger(__name__)

ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06")
CHUNK_SIZE = 1024 * 1024
RETRY_DELAY = 2.0

TRANSIENT_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
    requests.HTTPError,
)


def is_archive(path) -> bool:
    """Check the file signature for a zip archive."""
    with open(path, "rb") as f:
        header = f.read(4)
    return header in ZIP_SIGNATURES


def is_workbook(path) -> bool:
    """Check whether a zip file is an Office Open XML spreadsheet."""
    if not is_archive(path):
        return False
    try:
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
    except zipfile.BadZipFile:
        return False
    return "[Content_Types].xml" in names and any(name.startswith("xl/") for name in names)


def _is_revised(member: str) -> bool:
    stem = posixpath.splitext(posixpath.basename(member))[0].lower()
    return stem.endswith("_rv")


def select_archive_member(members, table_name: str, extension: str = ".csv") -> Optional[str]:
    """Choose the member of an archive holding a table's data.

    Members named after the table come first, with a revised (``_rv``)
    release preferred over the provisional one. Then any member whose
    name contains the table name, then the first member with the
    extension.

    Args:
        members: Archive member names
        table_name: Canonical table name
        extension: File extension to look for

    Returns:
        Member name, or None if the archive has no matching file
    """
    candidates = [
        m for m in members
        if not m.endswith("/") and m.lower().endswith(extension) and not posixpath.basename(m).startswith(".")
    ]
    if not candidates:
        return None

    table = table_name.lower()
    named = re.compile(rf"^{re.escape(table)}($|[^a-z0-9]).*{re.escape(extension)}$")

    preferred = [m for m in candidates if named.match(posixpath.basename(m).lower())]
    if preferred:
        revised = [m for m in preferred if _is_revised(m)]
        return (revised or preferred)[0]

    containing = [m for m in candidates if table in posixpath.basename(m).lower()]
    if containing:
        return containing[0]

    return candidates[0]


def extract_tabular_file(archive_path, table_name: str) -> Tuple[str, bytes]:
    """
    Read the CSV member of a downloaded archive.

    :param archive_path: Path to the zip archive
    :param table_name: Canonical table name used to pick the member
    :return: Tuple of member name and raw bytes
    :raises LoadError: If the archive is unreadable or holds no CSV file
    """
    try:
        with zipfile.ZipFile(archive_path) as archive:
            member = select_archive_member(archive.namelist(), table_name)
            if member is None:
                raise LoadError(f"No CSV file found in {os.path.basename(str(archive_path))}")
            logger.debug(f"Reading {member} from {archive_path}")
            return member, archive.read(member)
    except zipfile.BadZipFile as e:
        raise LoadError(f"Corrupt archive {archive_path}: {e}") from e


class Fetcher:
    """Download remote files into a cache directory.

    Attributes:
        downloads: Number of files actually fetched over the network
    """

    def __init__(self, config: IpedsConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", config.user_agent)
        self.downloads = 0

    @staticmethod
    def destination_path(url: str, destination_dir, name: Optional[str] = None) -> Path:
        """Return the cache path of a URL.

        With ``name`` the file is named after it, keeping the URL's
        extension; otherwise the URL's file name is used.
        """
        filename = get_filename_from_url(url)
        if name:
            filename = name + os.path.splitext(filename)[1].lower()
        if not filename:
            raise DownloadError(f"Cannot derive a file name from {url}", url=url)
        return Path(destination_dir) / filename

    def fetch(self, url: str, destination_dir, force: bool = False, name: Optional[str] = None) -> Path:
        """Return a local copy of ``url``, downloading it only when needed.

        Args:
            url: Remote file URL
            destination_dir: Cache directory
            force: Download even when a cached copy exists
            name: Optional base name for the cached file

        Returns:
            Path of the cached file

        Raises:
            DownloadError: Network failure, non-2xx response or empty payload
            ConfigurationError: If the destination directory is unusable
        """
        path = self.destination_path(url, destination_dir, name)

        if not force and path.is_file() and path.stat().st_size > 0:
            logger.debug(f"Using cached {path}")
            return path

        try:
            os.makedirs(path.parent, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot use download directory {path.parent}: {e}") from e

        download = retry(
            max_attempts=self.config.download_attempts,
            delay=RETRY_DELAY,
            exceptions=TRANSIENT_ERRORS,
        )(self._download)

        try:
            size = download(url, path)
        except requests.RequestException as e:
            raise DownloadError(f"Failed to download {url}: {e}", url=url) from e

        self.downloads += 1
        logger.info(f"⬇️  Downloaded {path.name} ({size:,} bytes)")
        return path

    def _download(self, url: str, path: Path) -> int:
        partial = path.with_name(path.name + ".part")
        response = self.session.get(url, stream=True, timeout=self.config.request_timeout)
        try:
            status = response.status_code
            if status == 429 or status >= 500:
                raise requests.HTTPError(f"HTTP {status} for {url}", response=response)
            if not 200 <= status < 300:
                raise DownloadError(f"HTTP {status} for {url}", url=url)

            size = 0
            with open(partial, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        size += len(chunk)
        except Exception:
            if partial.exists():
                partial.unlink()
            raise
        finally:
            response.close()

        if size == 0:
            partial.unlink()
            raise DownloadError(f"Empty payload from {url}", url=url)

        os.replace(partial, path)
        return size
