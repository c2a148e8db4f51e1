"""Unit tests for the DuckDB store.

Tests cover:
- Lowercase canonical table names
- Replacement of case variants
- Schema and row count queries
- Rename and drop
- Backups and restore
- Write lock detection
"""

from unittest.mock import patch

import duckdb
import pandas as pd
import pytest

from ipeds_pipeline.exceptions import LoadError, WriteLockError
from ipeds_pipeline.store import IpedsStore, list_backups, restore_backup


# ============================================================================
# Table Write Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.duckdb
class TestReplaceTable:
    """Test writing tables."""

    def test_table_stored_lowercase(self, memory_store, sample_rows):
        """Test a mixed-case name is stored in lowercase."""
        memory_store.replace_table(sample_rows, "HD2023")

        assert memory_store.list_tables() == ["hd2023"]

    def test_case_variant_replaced(self, memory_store, sample_rows):
        """Test an existing upper-case spelling does not survive a load."""
        memory_store.execute('CREATE TABLE "HD2023" (UNITID BIGINT)')

        memory_store.replace_table(sample_rows, "hd2023")

        assert memory_store.list_tables() == ["hd2023"]
        assert memory_store.row_count("hd2023") == 3

    def test_round_trip_schema(self, memory_store, sample_rows):
        """Test column names, order and declared types are preserved."""
        count = memory_store.replace_table(
            sample_rows, "hd2023", {"UNITID": "BIGINT", "ENROLL": "DOUBLE"}
        )

        assert count == 3
        assert memory_store.table_schema("HD2023") == [
            ("UNITID", "BIGINT"),
            ("INSTNM", "VARCHAR"),
            ("ENROLL", "DOUBLE"),
        ]
        stored = memory_store.query("SELECT * FROM hd2023 ORDER BY UNITID")
        assert stored["INSTNM"].tolist() == sample_rows["INSTNM"].tolist()
        assert pd.isna(stored.loc[2, "ENROLL"])

    def test_replace_overwrites_rows(self, memory_store, sample_rows):
        memory_store.replace_table(sample_rows, "hd2023")

        count = memory_store.replace_table(sample_rows.head(1), "hd2023")

        assert count == 1

    def test_no_columns(self, memory_store):
        with pytest.raises(LoadError, match="no columns"):
            memory_store.replace_table(pd.DataFrame(), "empty")


# ============================================================================
# Query Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.duckdb
class TestQueries:
    """Test the query surface."""

    def test_internal_tables_hidden(self, memory_store):
        memory_store.execute("CREATE TABLE _maintenance_log (version VARCHAR)")
        memory_store.execute("CREATE TABLE hd2023 (UNITID BIGINT)")

        assert memory_store.list_tables() == ["hd2023"]
        assert memory_store.list_tables(include_internal=True) == ["_maintenance_log", "hd2023"]

    def test_unknown_table(self, memory_store):
        assert memory_store.table_schema("missing") == []
        assert not memory_store.table_exists("missing")
        with pytest.raises(LoadError, match="does not exist"):
            memory_store.row_count("missing")

    def test_scalar(self, memory_store):
        assert memory_store.scalar("SELECT ? + 1", [41]) == 42


# ============================================================================
# Rename and Drop Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.duckdb
class TestRenameAndDrop:
    """Test renaming and dropping tables."""

    def test_case_only_rename(self, memory_store):
        memory_store.execute('CREATE TABLE "HD2023" (UNITID BIGINT)')

        memory_store.rename_table("HD2023", "hd2023")

        assert memory_store.list_tables() == ["hd2023"]

    def test_rename_onto_existing(self, memory_store):
        memory_store.execute("CREATE TABLE hd2022 (UNITID BIGINT)")
        memory_store.execute("CREATE TABLE hd2023 (UNITID BIGINT)")

        with pytest.raises(LoadError, match="already exists"):
            memory_store.rename_table("hd2022", "hd2023")

    def test_rename_missing(self, memory_store):
        with pytest.raises(LoadError):
            memory_store.rename_table("missing", "other")

    def test_drop_table(self, memory_store):
        memory_store.execute("CREATE TABLE hd2023 (UNITID BIGINT)")

        assert memory_store.drop_table("HD2023") is True
        assert memory_store.drop_table("hd2023") is False


# ============================================================================
# Backup Tests
# ============================================================================

@pytest.mark.unit
@pytest.mark.duckdb
class TestBackups:
    """Test database backups and restore."""

    def test_backup_and_restore(self, temp_dir, sample_rows):
        """Test a restored backup brings back a dropped table."""
        db_path = temp_dir / "ipeds.duckdb"
        backup_dir = temp_dir / "backups"

        store = IpedsStore.open(db_path)
        store.replace_table(sample_rows, "hd2023")
        backup_path = store.backup_database(backup_dir)
        store.drop_table("hd2023")
        store.close()

        assert backup_path.name.startswith("ipeds_backup_")
        assert list_backups(backup_dir) == [backup_path]

        restore_backup(backup_path, db_path)

        with IpedsStore.open(db_path, read_only=True) as restored:
            assert restored.list_tables() == ["hd2023"]
            assert restored.row_count("hd2023") == 3

    def test_memory_store_not_backed_up(self, memory_store, temp_dir):
        assert memory_store.backup_database(temp_dir) is None

    def test_list_backups_newest_first(self, temp_dir):
        for stamp in ("20240101_000000", "20250101_000000", "20230101_000000"):
            (temp_dir / f"ipeds_backup_{stamp}.duckdb").write_bytes(b"x")
        (temp_dir / "unrelated.duckdb").write_bytes(b"x")

        names = [p.name for p in list_backups(temp_dir)]

        assert names == [
            "ipeds_backup_20250101_000000.duckdb",
            "ipeds_backup_20240101_000000.duckdb",
            "ipeds_backup_20230101_000000.duckdb",
        ]

    def test_restore_missing_backup(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            restore_backup(temp_dir / "missing.duckdb", temp_dir / "ipeds.duckdb")


# ============================================================================
# Lock Tests
# ============================================================================

@pytest.mark.unit
class TestWriteLock:
    """Test write lock detection."""

    def test_locked_database(self, temp_dir):
        """Test a lock conflict surfaces as a retryable WriteLockError."""
        error = duckdb.IOException('IO Error: Could not set lock on file "ipeds.duckdb": Conflicting lock is held')
        with patch("ipeds_pipeline.store.duckdb.connect", side_effect=error):
            with pytest.raises(WriteLockError) as exc_info:
                IpedsStore.open(temp_dir / "ipeds.duckdb")

        assert exc_info.value.retryable is True
        assert exc_info.value.db_path.endswith("ipeds.duckdb")

    def test_other_io_errors_propagate(self, temp_dir):
        error = duckdb.IOException("IO Error: disk full")
        with patch("ipeds_pipeline.store.duckdb.connect", side_effect=error):
            with pytest.raises(duckdb.IOException):
                IpedsStore.open(temp_dir / "ipeds.duckdb")
