"""Unit tests for the listing page scraper.

Tests cover:
- Parsing of results rows into entries
- Skipping of decoration rows and duplicate listings
- Link resolution against the listing page URL
- Failure handling for unreachable or changed pages
"""

import pytest
import requests

from ipeds_pipeline.exceptions import RemoteFetchError
from ipeds_pipeline.ingest.scraper import RemoteFileEntry, RemoteIndexScraper, parse_listing
from tests.conftest import listing_page, listing_row, make_response, make_session

PAGE_URL = "https://nces.ed.gov/ipeds/datacenter/DataFiles.aspx?year=2023"


# ============================================================================
# Parsing Tests
# ============================================================================

@pytest.mark.unit
class TestParseListing:
    """Test listing page parsing."""

    def test_one_entry_per_unique_table(self, listing_html):
        """Test decoration rows and repeated tables are dropped."""
        entries = parse_listing(listing_html, 2023, PAGE_URL)

        assert [e.table_name for e in entries] == ["hd2023", "ic2023"]

    def test_entry_fields(self, listing_html):
        """Test survey, title and links are captured."""
        entry = parse_listing(listing_html, 2023, PAGE_URL)[0]

        assert entry == RemoteFileEntry(
            year=2023,
            survey="Institutional Characteristics",
            title="Directory information",
            table_name="hd2023",
            data_url="https://nces.ed.gov/ipeds/datacenter/data/HD2023.zip",
            dictionary_url="https://nces.ed.gov/ipeds/datacenter/data/HD2023_Dict.zip",
        )

    def test_missing_dictionary_link(self, listing_html):
        """Test a row without a dictionary link has no dictionary URL."""
        entry = parse_listing(listing_html, 2023, PAGE_URL)[1]

        assert entry.table_name == "ic2023"
        assert entry.dictionary_url is None

    def test_row_without_data_link_skipped(self):
        """Test only rows with a data file link become entries."""
        html = listing_page(
            "<tr><td>2023</td><td>Finance</td><td>Pending release</td><td>F2223_F1A</td>"
            "<td></td><td></td><td></td></tr>",
            listing_row("Finance", "Public institutions", "f2223_f2"),
        )

        entries = parse_listing(html, 2023, PAGE_URL)

        assert len(entries) == 1
        assert entries[0].table_name == "f2223_f2"

    def test_relative_and_absolute_links_resolve_against_page(self):
        """Test page-relative, root-relative and absolute hrefs."""
        html = listing_page(
            "<tr><td>2023</td><td>Admissions</td><td>Admissions</td>"
            '<td><a href="data/ADM2023.zip">ADM2023</a></td>'
            '<td></td><td></td><td><a href="/ipeds/datacenter/data/ADM2023_Dict.zip">Dictionary</a></td></tr>',
            "<tr><td>2023</td><td>Finance</td><td>Finance</td>"
            '<td><a href="https://mirror.example.org/F2223_F1A.zip">F2223_F1A</a></td>'
            "<td></td><td></td><td></td></tr>",
        )

        adm, finance = parse_listing(html, 2023, PAGE_URL)

        assert adm.data_url == "https://nces.ed.gov/ipeds/datacenter/data/ADM2023.zip"
        assert adm.dictionary_url == "https://nces.ed.gov/ipeds/datacenter/data/ADM2023_Dict.zip"
        assert finance.data_url == "https://mirror.example.org/F2223_F1A.zip"

    def test_blank_data_link_skipped(self):
        """Test an anchor whose href is only whitespace is not an entry."""
        html = listing_page(
            "<tr><td>2023</td><td>Finance</td><td>Pending</td>"
            '<td><a href="   ">F2223_F1A</a></td><td></td><td></td><td></td></tr>',
            listing_row("Finance", "Public institutions", "f2223_f2"),
        )

        entries = parse_listing(html, 2023, PAGE_URL)

        assert [e.table_name for e in entries] == ["f2223_f2"]
        assert all(e.data_url for e in entries)

    def test_missing_results_table(self):
        """Test a page without the results table raises RemoteFetchError."""
        with pytest.raises(RemoteFetchError) as exc_info:
            parse_listing("<html><body><p>Maintenance</p></body></html>", 2023, PAGE_URL)

        assert exc_info.value.year == 2023

    def test_empty_results_table(self):
        """Test a results table with only headers yields no entries."""
        assert parse_listing(listing_page(), 2023, PAGE_URL) == []


# ============================================================================
# Scraper Tests
# ============================================================================

@pytest.mark.unit
class TestRemoteIndexScraper:
    """Test fetching listing pages."""

    def test_index(self, config, listing_html):
        """Test the year's listing page is fetched and parsed."""
        session = make_session(make_response(200, text=listing_html))
        scraper = RemoteIndexScraper(config, session=session)

        entries = scraper.index(2023)

        assert len(entries) == 2
        assert entries[0].data_url == "https://nces.ed.gov/ipeds/datacenter/data/HD2023.zip"
        session.get.assert_called_once_with(config.listing_url(2023), timeout=config.request_timeout)

    def test_sets_user_agent(self, config):
        session = make_session()

        RemoteIndexScraper(config, session=session)

        assert session.headers["User-Agent"] == config.user_agent

    def test_http_error_not_retried(self, config):
        """Test a non-2xx listing page fails after one request."""
        session = make_session(make_response(503), make_response(200, text=listing_page()))
        scraper = RemoteIndexScraper(config, session=session)

        with pytest.raises(RemoteFetchError, match="HTTP 503"):
            scraper.index(2023)

        assert session.get.call_count == 1

    def test_unreachable(self, config):
        """Test network errors are reported as RemoteFetchError."""
        session = make_session(requests.ConnectionError("connection refused"))
        scraper = RemoteIndexScraper(config, session=session)

        with pytest.raises(RemoteFetchError, match="unreachable") as exc_info:
            scraper.index(2021)

        assert exc_info.value.year == 2021
