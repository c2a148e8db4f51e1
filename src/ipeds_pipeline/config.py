"""Configuration module for project settings and environment variables.

This module manages the paths and network settings of the IPEDS pipeline.
Settings are resolved in this order: explicit arguments, environment
variables, a ``.env`` file, then user-scoped defaults. The resulting
``IpedsConfig`` object is passed explicitly to every component.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from ipeds_pipeline.exceptions import ConfigurationError
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.utils import is_under_temp_dir

logger = create_logger(__name__)

DEFAULT_DATA_DIR = os.path.join(os.path.expanduser("~"), ".ipeds")
DB_FILE_NAME = "ipeds.duckdb"

BASE_URL = "https://nces.ed.gov"
LISTING_URL_TEMPLATE = "{base_url}/ipeds/datacenter/DataFiles.aspx?year={year}"
USER_AGENT = "ipeds-pipeline/0.3 (+https://nces.ed.gov/ipeds/datacenter)"


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


@dataclass
class IpedsConfig:
    """Paths and network settings for one pipeline process.

    Attributes:
        data_dir: Root of the user-scoped data directory
        cache_dir: Durable directory holding downloaded payloads
        db_path: DuckDB database file
        backup_dir: Directory receiving database backups
        base_url: Site origin the listing pages are served from
        listing_url_template: Listing page URL with ``{base_url}`` and ``{year}``
            placeholders; links on a page resolve against the page URL
        request_delay: Seconds to wait after each network request
        request_timeout: Seconds before an HTTP request is abandoned
        download_attempts: Attempts per file on transient network failures
    """

    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))
    cache_dir: Optional[Path] = None
    db_path: Optional[Path] = None
    backup_dir: Optional[Path] = None
    base_url: str = BASE_URL
    listing_url_template: str = LISTING_URL_TEMPLATE
    user_agent: str = USER_AGENT
    request_delay: float = 1.0
    request_timeout: float = 60.0
    download_attempts: int = 3

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()
        self.cache_dir = Path(self.cache_dir).expanduser() if self.cache_dir else self.data_dir / "downloads"
        self.db_path = Path(self.db_path).expanduser() if self.db_path else self.data_dir / DB_FILE_NAME
        self.backup_dir = Path(self.backup_dir).expanduser() if self.backup_dir else self.data_dir / "backups"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> "IpedsConfig":
        """Build a configuration from the environment.

        Args:
            env_file: Optional path to a ``.env`` file. Values already present
                in the environment are not overridden by the file.
            **overrides: Explicit settings that win over the environment

        Returns:
            IpedsConfig instance
        """
        load_dotenv(dotenv_path=env_file, override=False)

        settings = {
            "data_dir": os.getenv("IPEDS_DATA_DIR") or DEFAULT_DATA_DIR,
            "cache_dir": os.getenv("IPEDS_CACHE_DIR") or None,
            "db_path": os.getenv("IPEDS_DB_PATH") or None,
            "backup_dir": os.getenv("IPEDS_BACKUP_DIR") or None,
            "base_url": os.getenv("IPEDS_BASE_URL") or BASE_URL,
            "request_delay": _env_float("IPEDS_REQUEST_DELAY", 1.0),
            "request_timeout": _env_float("IPEDS_REQUEST_TIMEOUT", 60.0),
            "download_attempts": _env_int("IPEDS_DOWNLOAD_ATTEMPTS", 3),
        }
        settings.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**settings)

    def listing_url(self, year: int) -> str:
        """Return the listing page URL for a data year."""
        return self.listing_url_template.format(base_url=self.base_url.rstrip("/"), year=year)

    def validate(self) -> None:
        """
        Validate critical configuration parameters.

        :raises ConfigurationError: If configuration is invalid
        """
        required_paths = [
            ("data_dir", self.data_dir),
            ("cache_dir", self.cache_dir),
            ("db_path", self.db_path),
            ("backup_dir", self.backup_dir),
        ]
        for name, path in required_paths:
            if not str(path).strip():
                raise ConfigurationError(f"Missing required path configuration: {name}")

        if is_under_temp_dir(str(self.cache_dir)):
            raise ConfigurationError(
                f"Download cache {self.cache_dir} is inside the temporary directory; "
                "cached files would not survive between runs"
            )

        if self.request_delay < 0:
            raise ConfigurationError("request_delay cannot be negative")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        if self.download_attempts < 1:
            raise ConfigurationError("download_attempts must be at least 1")

        logger.debug("Configuration validation successful")

    def ensure_directories(self) -> None:
        """Validate the configuration and create the directories it names."""
        self.validate()

        for path in (self.data_dir, self.cache_dir, self.backup_dir, self.db_path.parent):
            try:
                os.makedirs(path, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Unable to create directory {path}: {e}")
