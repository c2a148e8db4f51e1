"""Remote index scraper for the IPEDS Data Center listing pages.

One listing page per year lists every data file of that year with its
survey component, title and dictionary file.
"""

from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.exceptions import RemoteFetchError
from ipeds_pipeline.logging_config import create_logger
from ipeds_pipeline.utils import canonical_table_name

logger = create_logger(__name__)

RESULTS_TABLE_ID = "contentPlaceHolder_tblResult"

# Cell positions within a results row
SURVEY_CELL = 1
TITLE_CELL = 2
DATA_CELL = 3
# The dictionary link sits in the last cell


@dataclass(frozen=True)
class RemoteFileEntry:
    """One data file listed on a year's listing page."""

    year: int
    survey: str
    title: str
    table_name: str
    data_url: str
    dictionary_url: Optional[str] = None


def _cell_text(cells, index: int) -> str:
    if index >= len(cells):
        return ""
    return cells[index].get_text(" ", strip=True)


def _cell_link(cells, index: int, page_url: str) -> Optional[str]:
    if index >= len(cells):
        return None
    anchor = cells[index].find("a", href=True)
    if anchor is None or not anchor["href"].strip():
        return None
    return urljoin(page_url, anchor["href"].strip())


def parse_listing(html: str, year: int, page_url: str) -> List[RemoteFileEntry]:
    """Parse a listing page into file entries.

    Rows without a usable data file link are skipped. When the same table is
    listed under several survey headings the first row wins.

    Args:
        html: Listing page HTML
        year: Data year the page was requested for
        page_url: URL the page was fetched from; links resolve against it

    Returns:
        List of RemoteFileEntry in page order

    Raises:
        RemoteFetchError: If the page has no results table
    """
    soup = BeautifulSoup(html, "html.parser")
    table = soup.find("table", id=RESULTS_TABLE_ID)
    if table is None:
        raise RemoteFetchError(
            f"Listing page for {year} has no results table (#{RESULTS_TABLE_ID}); the page layout may have changed",
            year=year,
        )

    entries: List[RemoteFileEntry] = []
    seen = set()

    for row in table.find_all("tr"):
        cells = row.find_all("td")
        if len(cells) <= DATA_CELL:
            continue

        data_url = _cell_link(cells, DATA_CELL, page_url)
        if data_url is None:
            continue

        raw_name = cells[DATA_CELL].find("a", href=True).get_text(strip=True)
        if not raw_name:
            continue

        table_name = canonical_table_name(raw_name)
        if table_name in seen:
            logger.debug(f"Skipping duplicate listing of {table_name}")
            continue
        seen.add(table_name)

        entries.append(
            RemoteFileEntry(
                year=year,
                survey=_cell_text(cells, SURVEY_CELL),
                title=_cell_text(cells, TITLE_CELL),
                table_name=table_name,
                data_url=data_url,
                dictionary_url=_cell_link(cells, len(cells) - 1, page_url) if len(cells) - 1 > DATA_CELL else None,
            )
        )

    return entries


class RemoteIndexScraper:
    """Fetch and parse the yearly listing pages.

    The listing page is never retried: a failure usually means the site
    changed and needs attention.
    """

    def __init__(self, config: IpedsConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", config.user_agent)

    def index(self, year: int) -> List[RemoteFileEntry]:
        """
        Return the data files listed for a year.

        :param year: Data year, e.g. 2023
        :return: Entries in page order, one per distinct table
        :raises RemoteFetchError: If the page cannot be fetched or parsed
        """
        url = self.config.listing_url(year)
        logger.info(f"🔍 Fetching listing page for {year}: {url}")

        try:
            response = self.session.get(url, timeout=self.config.request_timeout)
        except requests.RequestException as e:
            raise RemoteFetchError(f"Listing page for {year} is unreachable: {e}", year=year) from e

        if not 200 <= response.status_code < 300:
            raise RemoteFetchError(
                f"Listing page for {year} returned HTTP {response.status_code}", year=year
            )

        entries = parse_listing(response.text, year, url)
        logger.info(f"Found {len(entries)} data files for {year}")
        return entries
