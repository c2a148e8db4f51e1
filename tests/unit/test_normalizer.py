"""Unit tests for payload normalization.

Tests cover:
- Year derivation from table names
- Strict and lossy decoding
- Header handling and duplicate rows
- Column type inference
- YEAR column placement and idempotence
"""

import pandas as pd
import pytest

from ipeds_pipeline.column_types import ColumnType, infer_column_type, promote_types, types_equivalent
from ipeds_pipeline.exceptions import DecodeError, LoadError
from ipeds_pipeline.ingest.normalizer import (
    apply_year_column,
    decode_payload,
    decode_strict,
    derive_year,
    drop_duplicate_rows,
    family_stem,
    normalize,
    read_rows,
)


# ============================================================================
# Year Derivation Tests
# ============================================================================

@pytest.mark.unit
class TestDeriveYear:
    """Test deriving the data year from table names."""

    @pytest.mark.parametrize("name,expected", [
        ("hd2023", 2023),
        ("ic2023_ay", 2023),
        ("c2019_a", 2019),
        ("effy2019_dist", 2019),
        ("sfa1819_p1", 2019),
        ("f1819_f1a", 2019),
        ("ef19", 2019),
        ("gr200_19", 2019),
        ("tables21", 2021),
        ("HD2023.csv", 2023),
        ("sfa2021_p1", 2021),
    ])
    def test_year_rules(self, name, expected):
        assert derive_year(name) == expected

    def test_no_year(self):
        """Test names without digits give no year."""
        assert derive_year("flags") is None
        assert derive_year("") is None

    def test_family_stem(self):
        """Test year digits are stripped so families line up across years."""
        assert family_stem("sfa1819_p1") == "sfa_p1"
        assert family_stem("sfa2021_p1") == "sfa_p1"
        assert family_stem("HD2023.csv") == "hd"


# ============================================================================
# Decoding Tests
# ============================================================================

@pytest.mark.unit
class TestDecoding:
    """Test payload decoding."""

    def test_utf8_with_bom(self):
        df = read_rows(decode_payload(b"\xef\xbb\xbfUNITID,INSTNM\n100654,Alabama\n"))

        assert list(df.columns) == ["UNITID", "INSTNM"]

    def test_strict_rejects_invalid_bytes(self):
        with pytest.raises(DecodeError):
            decode_strict(b"Caf\xe9 Univ")

    def test_lossy_fallback(self):
        """Test invalid bytes and control characters are dropped, the row is kept."""
        text = decode_payload(b"UNITID,INSTNM\n100654,Caf\xe9 U\x01niv\n", source="hd2023")

        df = read_rows(text)

        assert df.loc[0, "INSTNM"] == "Caf Univ"
        assert len(df) == 1


# ============================================================================
# Reading Tests
# ============================================================================

@pytest.mark.unit
class TestReadRows:
    """Test reading CSV text."""

    def test_values_kept_as_text(self):
        df = read_rows("UNITID,ZIP,FLAG\n100654,01234,NA\n")

        assert df.loc[0, "ZIP"] == "01234"
        assert df.loc[0, "FLAG"] == "NA"

    def test_empty_fields_are_null(self):
        df = read_rows("UNITID,INSTNM\n100654,\n")

        assert pd.isna(df.loc[0, "INSTNM"])

    def test_headers_stripped_and_unique(self):
        """Test headers differing only in case get distinct names."""
        df = read_rows(" UNITID ,unitid,INSTNM\n1,2,A\n")

        assert list(df.columns) == ["UNITID", "unitid_2", "INSTNM"]

    def test_empty_payload(self):
        with pytest.raises(LoadError, match="empty"):
            read_rows("", source="hd2023")

    def test_drop_duplicate_rows(self):
        df = pd.DataFrame({"UNITID": ["1", "1", "2"], "INSTNM": ["A", "A", "B"]})

        deduplicated, removed = drop_duplicate_rows(df)

        assert removed == 1
        assert deduplicated["UNITID"].tolist() == ["1", "2"]


# ============================================================================
# Type Inference Tests
# ============================================================================

@pytest.mark.unit
class TestTypeInference:
    """Test column type inference."""

    def test_integer(self):
        assert infer_column_type(pd.Series(["1", "-2", None, "30"])) == ColumnType.INTEGER

    def test_float(self):
        assert infer_column_type(pd.Series(["1", "2.5", "0.75", "1e3"])) == ColumnType.FLOAT

    def test_leading_zero_stays_text(self):
        """Test codes such as ZIP codes keep their leading zeros."""
        assert infer_column_type(pd.Series(["01234", "35762"])) == ColumnType.TEXT

    def test_mixed_values_stay_text(self):
        assert infer_column_type(pd.Series(["35762", "35294-0110"])) == ColumnType.TEXT

    def test_empty_column_is_text(self):
        assert infer_column_type(pd.Series([None, None], dtype=object)) == ColumnType.TEXT

    def test_value_beyond_sample_checked(self):
        """Test a value outside the sample that fails conversion keeps the column text."""
        assert infer_column_type(pd.Series(["1", "2", "x"]), sample_size=2) == ColumnType.TEXT

    def test_oversized_integer_is_text(self):
        assert infer_column_type(pd.Series(["1234567890123456789012"])) == ColumnType.TEXT

    def test_types_equivalent(self):
        assert types_equivalent("VARCHAR", "VARCHAR(10)")
        assert types_equivalent("INTEGER", "BIGINT")
        assert not types_equivalent("BIGINT", "VARCHAR")

    def test_promote_types(self):
        assert promote_types(["BIGINT", "INTEGER"]) == "BIGINT"
        assert promote_types(["BIGINT", "DOUBLE"]) == "DOUBLE"
        assert promote_types(["BIGINT", "VARCHAR"]) == "VARCHAR"
        assert promote_types([]) == "VARCHAR"

    def test_promote_keeps_identical_decimal(self):
        assert promote_types(["DECIMAL(12,2)", "decimal(12, 2)"]) == "DECIMAL(12,2)"

    def test_promote_mixed_decimal_to_double(self):
        """Test DECIMAL members that disagree on precision do not fall back to DECIMAL(18,3)."""
        assert promote_types(["DECIMAL(12,2)", "DECIMAL(9,4)"]) == "DOUBLE"
        assert promote_types(["DECIMAL(12,2)", "BIGINT"]) == "DOUBLE"

    def test_promote_same_base_character_types(self):
        assert promote_types(["VARCHAR(10)", "VARCHAR(20)"]) == "VARCHAR"


# ============================================================================
# YEAR Column Tests
# ============================================================================

@pytest.mark.unit
class TestApplyYearColumn:
    """Test YEAR column placement."""

    def test_inserted_after_unitid(self):
        df = pd.DataFrame({"INSTNM": ["A"], "UNITID": [1]})

        result = apply_year_column(df, 2023)

        assert list(result.columns) == ["INSTNM", "UNITID", "YEAR"]
        assert result.loc[0, "YEAR"] == 2023
        assert result.attrs["column_types"]["YEAR"] == ColumnType.INTEGER

    def test_inserted_first_without_unitid(self):
        df = pd.DataFrame({"varName": ["UNITID"], "varTitle": ["Unit id"]})

        result = apply_year_column(df, 2021)

        assert list(result.columns) == ["YEAR", "varName", "varTitle"]

    def test_existing_year_column_renamed(self):
        """Test a lowercase year column becomes YEAR with its values kept."""
        df = pd.DataFrame({"UNITID": [1], "year": [2022]})

        result = apply_year_column(df, 2023)

        assert list(result.columns) == ["UNITID", "YEAR"]
        assert result.loc[0, "YEAR"] == 2022

    def test_no_year_leaves_frame(self):
        df = pd.DataFrame({"UNITID": [1]})

        assert list(apply_year_column(df, None).columns) == ["UNITID"]

    def test_idempotent(self):
        """Test applying the YEAR column twice changes nothing."""
        df = pd.DataFrame({"UNITID": [1, 2], "INSTNM": ["A", "B"]})

        once = apply_year_column(df, 2023)
        twice = apply_year_column(once, 2023)

        pd.testing.assert_frame_equal(once, twice)
        assert list(twice.columns).count("YEAR") == 1


# ============================================================================
# Normalize Tests
# ============================================================================

@pytest.mark.unit
class TestNormalize:
    """Test the full normalization of a payload."""

    def test_normalize(self, hd_csv):
        df, year = normalize(hd_csv, "hd2023")

        assert year == 2023
        assert len(df) == 3
        assert list(df.columns) == ["UNITID", "YEAR", "INSTNM", "CITY", "STABBR", "ZIP", "FIPS", "SECTOR"]

        types = df.attrs["column_types"]
        assert types["UNITID"] == ColumnType.INTEGER
        assert types["ZIP"] == ColumnType.TEXT
        assert types["FIPS"] == ColumnType.INTEGER
        assert types["INSTNM"] == ColumnType.TEXT
        assert str(df["UNITID"].dtype) == "Int64"

    def test_normalize_without_year(self):
        df, year = normalize(b"UNITID,FLAG\n1,A\n", "flags")

        assert year is None
        assert "YEAR" not in df.columns
