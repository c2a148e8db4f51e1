"""Pytest configuration and shared fixtures for IPEDS pipeline tests.

This module provides fixtures for:
- Temporary directories and pipeline configuration
- On-disk DuckDB stores
- Mocked HTTP sessions and listing pages
- Sample CSV payloads and zip archives
"""

import io
import tempfile
import zipfile
from pathlib import Path
from typing import Dict, Generator
from unittest.mock import MagicMock

import pandas as pd
import pytest

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.store import IpedsStore


# ============================================================================
# Helpers
# ============================================================================

def make_zip(members: Dict[str, bytes]) -> bytes:
    """Build a zip archive in memory from member names and contents."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def make_workbook(sheets: Dict[str, pd.DataFrame]) -> bytes:
    """Build an xlsx workbook in memory from sheet names and frames."""
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for name, frame in sheets.items():
            frame.to_excel(writer, sheet_name=name, index=False)
    return buffer.getvalue()


def make_response(status_code: int = 200, content: bytes = b"", text: str = "") -> MagicMock:
    """Build a mocked requests response."""
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.iter_content.return_value = [content] if content else []
    return response


def make_session(*responses) -> MagicMock:
    """Build a mocked requests session returning the given responses in order."""
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = list(responses)
    return session


def make_routed_session(routes: Dict[str, MagicMock]) -> MagicMock:
    """Build a mocked requests session answering by URL, 404 for anything else."""
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = lambda url, **kwargs: routes.get(url, make_response(404))
    return session


def listing_row(survey: str, title: str, table: str, dictionary: bool = True) -> str:
    """Render one row of the listing page results table."""
    dictionary_cell = f'<a href="/ipeds/datacenter/data/{table.upper()}_Dict.zip">Dictionary</a>' if dictionary else ""
    return (
        "<tr>"
        "<td>2023</td>"
        f"<td>{survey}</td>"
        f"<td>{title}</td>"
        f'<td><a href="data/{table.upper()}.zip">{table.upper()}</a></td>'
        f'<td><a href="data/{table.upper()}_Stata.zip">Stata</a></td>'
        "<td>Programs</td>"
        f"<td>{dictionary_cell}</td>"
        "</tr>"
    )


def listing_page(*rows: str) -> str:
    """Render a listing page containing the results table."""
    return (
        "<html><body>"
        '<table id="contentPlaceHolder_tblResult">'
        "<tr><th>Year</th><th>Survey</th><th>Title</th><th>Data File</th>"
        "<th>Stata</th><th>Programs</th><th>Dictionary</th></tr>"
        + "".join(rows)
        + "</table></body></html>"
    )


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for testing.

    Yields:
        Path to temporary directory
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="function")
def config(temp_dir: Path, monkeypatch) -> IpedsConfig:
    """Provide a configuration rooted in the temporary directory.

    The durable-cache rule is relaxed because pytest directories live in
    the OS temp directory.
    """
    monkeypatch.setattr("ipeds_pipeline.config.is_under_temp_dir", lambda path: False)
    return IpedsConfig(
        data_dir=temp_dir / "ipeds",
        request_delay=0,
        request_timeout=5,
        download_attempts=2,
    )


# ============================================================================
# DuckDB Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def store(temp_dir: Path) -> Generator[IpedsStore, None, None]:
    """Provide an on-disk IpedsStore.

    Yields:
        Open IpedsStore
    """
    db = IpedsStore.open(temp_dir / "test.duckdb")
    yield db
    db.close()


@pytest.fixture(scope="function")
def memory_store() -> Generator[IpedsStore, None, None]:
    """Provide an in-memory IpedsStore."""
    db = IpedsStore.open(":memory:")
    yield db
    db.close()


# ============================================================================
# Test Data Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def hd_csv() -> bytes:
    """Directory-style CSV payload with a duplicated row."""
    return (
        "UNITID,INSTNM,CITY,STABBR,ZIP,FIPS,SECTOR\r\n"
        "100654,Alabama A & M University,Normal,AL,35762,1,1\r\n"
        "100663,University of Alabama at Birmingham,Birmingham,AL,35294-0110,1,1\r\n"
        "100690,Amridge University,Montgomery,AL,36117-3553,1,2\r\n"
        "100690,Amridge University,Montgomery,AL,36117-3553,1,2\r\n"
    ).encode("utf-8")


@pytest.fixture(scope="function")
def sample_rows() -> pd.DataFrame:
    """Small normalized-looking frame."""
    return pd.DataFrame({
        "UNITID": pd.array([100654, 100663, 100690], dtype="Int64"),
        "INSTNM": ["Alabama A & M University", "University of Alabama at Birmingham", "Amridge University"],
        "ENROLL": [6000.5, 21000.0, None],
    })


@pytest.fixture(scope="function")
def listing_html() -> str:
    """Listing page with a decoration row, a duplicate listing and two tables."""
    return listing_page(
        "<tr><td colspan='7'>Institutional Characteristics</td></tr>",
        listing_row("Institutional Characteristics", "Directory information", "hd2023"),
        listing_row("Institutional Characteristics", "Educational offerings", "ic2023", dictionary=False),
        listing_row("Admissions", "Directory information (again)", "HD2023"),
    )
