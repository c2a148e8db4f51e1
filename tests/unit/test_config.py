"""Unit tests for configuration module.

Tests cover:
- Environment variable and .env loading
- Precedence of explicit settings
- Configuration validation
- Directory creation
"""

import os
import tempfile
from pathlib import Path

import pytest

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.exceptions import ConfigurationError

IPEDS_VARS = [
    "IPEDS_DATA_DIR",
    "IPEDS_CACHE_DIR",
    "IPEDS_DB_PATH",
    "IPEDS_BACKUP_DIR",
    "IPEDS_BASE_URL",
    "IPEDS_REQUEST_DELAY",
    "IPEDS_REQUEST_TIMEOUT",
    "IPEDS_DOWNLOAD_ATTEMPTS",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove IPEDS variables, restoring them after the test."""
    for name in IPEDS_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


# ============================================================================
# Environment Variable Tests
# ============================================================================

@pytest.mark.unit
class TestFromEnv:
    """Test building configuration from the environment."""

    def test_defaults_are_user_scoped(self, clean_env):
        """Test default paths live under ~/.ipeds."""
        config = IpedsConfig.from_env()

        home_dir = Path(os.path.expanduser("~")) / ".ipeds"
        assert config.data_dir == home_dir
        assert config.cache_dir == home_dir / "downloads"
        assert config.backup_dir == home_dir / "backups"
        assert config.db_path == home_dir / "ipeds.duckdb"
        assert config.request_delay == 1.0
        assert config.download_attempts == 3

    def test_environment_variables(self, clean_env, monkeypatch, temp_dir):
        """Test IPEDS_* variables are picked up."""
        monkeypatch.setenv("IPEDS_DATA_DIR", str(temp_dir))
        monkeypatch.setenv("IPEDS_REQUEST_DELAY", "0.5")
        monkeypatch.setenv("IPEDS_DOWNLOAD_ATTEMPTS", "5")

        config = IpedsConfig.from_env()

        assert config.data_dir == temp_dir
        assert config.cache_dir == temp_dir / "downloads"
        assert config.request_delay == 0.5
        assert config.download_attempts == 5

    def test_explicit_overrides_win(self, clean_env, monkeypatch, temp_dir):
        """Test explicit settings take precedence over the environment."""
        monkeypatch.setenv("IPEDS_DB_PATH", str(temp_dir / "env.duckdb"))

        config = IpedsConfig.from_env(db_path=str(temp_dir / "explicit.duckdb"))

        assert config.db_path == temp_dir / "explicit.duckdb"

    def test_none_overrides_are_ignored(self, clean_env, monkeypatch, temp_dir):
        """Test None overrides fall back to the environment."""
        monkeypatch.setenv("IPEDS_DB_PATH", str(temp_dir / "env.duckdb"))

        config = IpedsConfig.from_env(db_path=None)

        assert config.db_path == temp_dir / "env.duckdb"

    def test_env_file(self, clean_env, temp_dir):
        """Test values are read from a .env file."""
        env_file = temp_dir / ".env"
        env_file.write_text(f"IPEDS_DB_PATH={temp_dir / 'dotenv.duckdb'}\nIPEDS_REQUEST_TIMEOUT=30\n")

        config = IpedsConfig.from_env(env_file=str(env_file))

        assert config.db_path == temp_dir / "dotenv.duckdb"
        assert config.request_timeout == 30.0

    def test_environment_beats_env_file(self, clean_env, monkeypatch, temp_dir):
        """Test variables already set are not overridden by the .env file."""
        monkeypatch.setenv("IPEDS_REQUEST_TIMEOUT", "10")
        env_file = temp_dir / ".env"
        env_file.write_text("IPEDS_REQUEST_TIMEOUT=30\n")

        config = IpedsConfig.from_env(env_file=str(env_file))

        assert config.request_timeout == 10.0

    def test_invalid_number(self, clean_env, monkeypatch):
        """Test a non-numeric delay raises ConfigurationError."""
        monkeypatch.setenv("IPEDS_REQUEST_DELAY", "soon")

        with pytest.raises(ConfigurationError, match="IPEDS_REQUEST_DELAY"):
            IpedsConfig.from_env()

    def test_listing_url(self):
        """Test the listing URL carries the year."""
        config = IpedsConfig()

        assert config.listing_url(2023) == "https://nces.ed.gov/ipeds/datacenter/DataFiles.aspx?year=2023"

    def test_listing_url_follows_base_url(self):
        """Test a mirror origin moves the listing page with it."""
        config = IpedsConfig(base_url="http://localhost:8080/")

        assert config.listing_url(2022) == "http://localhost:8080/ipeds/datacenter/DataFiles.aspx?year=2022"


# ============================================================================
# Validation Tests
# ============================================================================

@pytest.mark.unit
class TestValidation:
    """Test configuration validation."""

    def test_valid_configuration(self, temp_dir, monkeypatch):
        """Test a durable configuration passes."""
        monkeypatch.setattr("ipeds_pipeline.config.is_under_temp_dir", lambda path: False)

        IpedsConfig(data_dir=temp_dir).validate()

    def test_cache_in_temp_dir_rejected(self):
        """Test a cache directory inside the OS temp directory is rejected."""
        config = IpedsConfig(data_dir=Path(tempfile.gettempdir()) / "ipeds")

        with pytest.raises(ConfigurationError, match="temporary directory"):
            config.validate()

    def test_negative_delay_rejected(self, temp_dir, monkeypatch):
        monkeypatch.setattr("ipeds_pipeline.config.is_under_temp_dir", lambda path: False)

        with pytest.raises(ConfigurationError, match="request_delay"):
            IpedsConfig(data_dir=temp_dir, request_delay=-1).validate()

    def test_zero_attempts_rejected(self, temp_dir, monkeypatch):
        monkeypatch.setattr("ipeds_pipeline.config.is_under_temp_dir", lambda path: False)

        with pytest.raises(ConfigurationError, match="download_attempts"):
            IpedsConfig(data_dir=temp_dir, download_attempts=0).validate()

    def test_ensure_directories(self, config):
        """Test the cache, backup and database directories are created."""
        config.ensure_directories()

        assert config.cache_dir.is_dir()
        assert config.backup_dir.is_dir()
        assert config.db_path.parent.is_dir()

    def test_ensure_directories_unusable_path(self, config, temp_dir):
        """Test a file in place of a directory raises ConfigurationError."""
        blocker = temp_dir / "blocker"
        blocker.write_text("not a directory")
        config.cache_dir = blocker / "downloads"

        with pytest.raises(ConfigurationError, match="Unable to create directory"):
            config.ensure_directories()
