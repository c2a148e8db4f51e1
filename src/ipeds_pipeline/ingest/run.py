"""Ingest module for yearly IPEDS updates.

This module drives one update run: for each requested year it scrapes the
listing page, downloads and loads every data file, stores the year's
catalog and dictionaries, and finally rebuilds the consolidated tables.
Files are processed one at a time with a courtesy delay between requests.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ipeds_pipeline.config import IpedsConfig
from ipeds_pipeline.consolidate import Consolidator, SurveyFamily
from ipeds_pipeline.error_handler import PartialFailureCollector
from ipeds_pipeline.exceptions import ConfigurationError, RemoteFetchError
from ipeds_pipeline.ingest.dictionary import (
    DictionarySheets,
    build_tables_metadata,
    combine_dictionary_sheets,
    read_dictionary_workbook,
    tables_table_name,
    valuesets_table_name,
    vartable_table_name,
)
from ipeds_pipeline.ingest.fetcher import Fetcher, extract_tabular_file, is_archive
from ipeds_pipeline.ingest.loader import TableLoader
from ipeds_pipeline.ingest.normalizer import infer_types, normalize
from ipeds_pipeline.ingest.scraper import RemoteFileEntry, RemoteIndexScraper
from ipeds_pipeline.logging_config import create_logger, log_exception
from ipeds_pipeline.store import IpedsStore
from ipeds_pipeline.versioning import VersionTracker

# Initialize logger
logger = create_logger(__name__)

MIN_YEAR = 1990
MAX_YEAR = 2030

UPDATE_FAMILIES = (SurveyFamily.TABLES, SurveyFamily.VARTABLE, SurveyFamily.VALUESETS)


@dataclass
class YearSummary:
    """Outcome of updating one year."""

    year: int
    data_files_found: int = 0
    data_files_downloaded: int = 0
    data_files_imported: int = 0
    dictionary_files_found: int = 0
    dictionary_files_imported: int = 0
    failures: PartialFailureCollector = field(default_factory=PartialFailureCollector, repr=False)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def failed_items(self) -> List[str]:
        return self.failures.failed_items()


@dataclass
class UpdateSummary:
    """Outcome of a whole update run."""

    years: List[YearSummary] = field(default_factory=list)
    consolidated: Dict[str, int] = field(default_factory=dict)
    consolidation: PartialFailureCollector = field(default_factory=PartialFailureCollector, repr=False)
    backup_path: Optional[Path] = None
    duration: float = 0.0

    @property
    def total_downloaded(self) -> int:
        return sum(y.data_files_downloaded for y in self.years)

    @property
    def total_imported(self) -> int:
        return sum(y.data_files_imported for y in self.years)

    def all_failures(self) -> PartialFailureCollector:
        """Every failed item of the run, labelled with its year."""
        merged = PartialFailureCollector()
        for year in self.years:
            merged.merge(year.failures, prefix=f"{year.year} ")
        merged.merge(self.consolidation)
        return merged

    @property
    def total_failed(self) -> int:
        return len(self.all_failures().failures)

    def raise_if_failures(self) -> None:
        """Raise PartialFailureError when any file, year or consolidation failed."""
        years = ", ".join(str(y.year) for y in self.years)
        self.all_failures().raise_if_failures(f"Update of {years} finished with failures")

    def log_summary(self) -> None:
        logger.info("=" * 60)
        logger.info("📊 UPDATE SUMMARY")
        logger.info("=" * 60)
        for year in self.years:
            if not year.succeeded:
                logger.error(f"{year.year}: ❌ {year.error}")
                continue
            logger.info(
                f"{year.year}: {year.data_files_imported}/{year.data_files_found} data files imported "
                f"({year.data_files_downloaded} downloaded), "
                f"{year.dictionary_files_imported}/{year.dictionary_files_found} dictionaries, "
                f"{len(year.failed_items)} failed"
            )
            for item in year.failed_items:
                logger.warning(f"    failed: {item}")
        for table, rows in self.consolidated.items():
            logger.info(f"Consolidated {table}: {rows:,} rows")
        for failed in self.consolidation.failures:
            logger.error(f"Consolidation of {failed.item} failed: {failed.error}")
        if self.backup_path:
            logger.info(f"Backup: {self.backup_path}")
        logger.info(f"Finished in {self.duration:.1f}s")


class Ingest:
    """Run yearly updates of the IPEDS database.

    Collaborators are passed in explicitly; the scraper, fetcher and
    consolidator default to instances built from the configuration.
    """

    def __init__(
        self,
        config: IpedsConfig,
        store: IpedsStore,
        scraper: Optional[RemoteIndexScraper] = None,
        fetcher: Optional[Fetcher] = None,
        consolidator: Optional[Consolidator] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.scraper = scraper or RemoteIndexScraper(config)
        self.fetcher = fetcher or Fetcher(config, session=self.scraper.session)
        self.loader = TableLoader(store)
        self.consolidator = consolidator or Consolidator(store)
        self.versions = VersionTracker(store)

    def _pause(self) -> None:
        if self.config.request_delay > 0:
            time.sleep(self.config.request_delay)

    @staticmethod
    def bounded_years(years: Iterable[int]) -> List[int]:
        """
        Keep the distinct years within the supported range, in order.

        :raises ConfigurationError: If no year remains
        """
        kept = []
        for year in years:
            year = int(year)
            if not MIN_YEAR <= year <= MAX_YEAR:
                logger.warning(f"Ignoring year {year}: outside {MIN_YEAR}-{MAX_YEAR}")
                continue
            if year not in kept:
                kept.append(year)
        if not kept:
            raise ConfigurationError(f"No valid years to update (supported range {MIN_YEAR}-{MAX_YEAR})")
        return kept

    def import_entry(self, entry: RemoteFileEntry, force: bool = False) -> int:
        """
        Download one data file, load it as a table and record the import.

        :param entry: Listed data file
        :param force: Download even when a cached copy exists
        :return: Row count of the stored table
        """
        downloads_before = self.fetcher.downloads
        path = self.fetcher.fetch(entry.data_url, self.config.cache_dir, force=force, name=entry.table_name)
        if self.fetcher.downloads > downloads_before:
            self._pause()

        if is_archive(path):
            member, payload = extract_tabular_file(path, entry.table_name)
            logger.debug(f"{entry.table_name}: using {member}")
        else:
            payload = path.read_bytes()

        rows, _ = normalize(payload, entry.table_name)
        previous_schema = self.store.table_schema(entry.table_name)
        row_count = self.loader.load(rows, entry.table_name)
        self.versions.record_import(entry, previous_schema=previous_schema, file_size=path.stat().st_size)
        return row_count

    def import_dictionaries(
        self,
        year: int,
        entries: List[RemoteFileEntry],
        collector: PartialFailureCollector,
        force: bool = False,
    ) -> int:
        """Load the dictionaries of a year into ``vartableYY`` and ``valuesetsYY``.

        Returns:
            Number of dictionaries read
        """
        sheets_by_table: Dict[str, DictionarySheets] = {}
        for entry in entries:
            if not entry.dictionary_url:
                continue
            item = f"{entry.table_name} dictionary"
            try:
                downloads_before = self.fetcher.downloads
                path = self.fetcher.fetch(
                    entry.dictionary_url, self.config.cache_dir, force=force, name=f"{entry.table_name}_dict"
                )
                if self.fetcher.downloads > downloads_before:
                    self._pause()
                sheets = read_dictionary_workbook(path, entry.table_name)
            except ConfigurationError:
                raise
            except Exception as e:
                collector.add_failure(item, e)
                continue

            if not sheets.is_empty:
                sheets_by_table[entry.table_name] = sheets
            collector.add_success(item)

        vartable, valuesets = combine_dictionary_sheets(sheets_by_table)
        for frame, table_name in ((vartable, vartable_table_name(year)), (valuesets, valuesets_table_name(year))):
            if frame is None:
                continue
            try:
                self.loader.load(infer_types(frame), table_name)
            except Exception as e:
                collector.add_failure(table_name, e)

        return len(sheets_by_table)

    def process_year(self, year: int, force: bool = False, include_dictionaries: bool = True) -> YearSummary:
        """Update every table of one year.

        A listing page that cannot be used fails the year; a file that
        cannot be downloaded or loaded is recorded and skipped.
        """
        summary = YearSummary(year=year)
        logger.info(f"📅 Processing year {year}")

        try:
            entries = self.scraper.index(year)
        except RemoteFetchError as e:
            log_exception(logger, e, {"year": year, "url": self.config.listing_url(year)})
            summary.error = str(e)
            summary.failures.add_failure("listing page", e)
            return summary
        self._pause()

        summary.data_files_found = len(entries)
        collector = summary.failures

        for position, entry in enumerate(entries, start=1):
            logger.info(f"[{position}/{len(entries)}] {entry.table_name}")
            downloads_before = self.fetcher.downloads
            try:
                self.import_entry(entry, force=force)
            except ConfigurationError:
                raise
            except Exception as e:
                collector.add_failure(entry.table_name, e)
            else:
                collector.add_success(entry.table_name)
                summary.data_files_imported += 1
            finally:
                summary.data_files_downloaded += self.fetcher.downloads - downloads_before

        if entries:
            try:
                self.loader.load(build_tables_metadata(entries), tables_table_name(year))
            except Exception as e:
                collector.add_failure(tables_table_name(year), e)

        if include_dictionaries:
            summary.dictionary_files_found = sum(1 for entry in entries if entry.dictionary_url)
            summary.dictionary_files_imported = self.import_dictionaries(year, entries, collector, force=force)

        collector.log_summary()
        return summary

    def run(
        self,
        years: Iterable[int],
        force: bool = False,
        include_dictionaries: bool = True,
        consolidate: bool = True,
        backup_first: bool = True,
    ) -> UpdateSummary:
        """
        Main method to run an update.

        :param years: Data years to update
        :param force: Download files even when cached
        :param include_dictionaries: Also import the dictionary workbooks
        :param consolidate: Rebuild the consolidated dictionary tables afterwards
        :param backup_first: Back up the database before changing it
        :return: UpdateSummary of the run
        :raises ConfigurationError: If the configuration or year list is invalid
        :raises RemoteFetchError: If no requested year could be scraped
        """
        start_time = time.time()
        years = self.bounded_years(years)
        self.config.ensure_directories()

        summary = UpdateSummary()
        logger.info(f"🚀 Starting update for {', '.join(str(y) for y in years)}")

        if backup_first and self.store.list_tables():
            summary.backup_path = self.store.backup_database(self.config.backup_dir)

        for year in years:
            summary.years.append(self.process_year(year, force=force, include_dictionaries=include_dictionaries))

        if all(not year.succeeded for year in summary.years):
            summary.duration = time.time() - start_time
            summary.log_summary()
            raise RemoteFetchError(f"No listing page could be used for {', '.join(str(y) for y in years)}")

        if consolidate:
            for family in UPDATE_FAMILIES:
                try:
                    result = self.consolidator.consolidate(family)
                except Exception as e:
                    summary.consolidation.add_failure(family.target_table, e)
                    continue
                if result is not None:
                    summary.consolidation.add_success(result.table_name)
                    summary.consolidated[result.table_name] = result.row_count

        summary.duration = time.time() - start_time
        summary.log_summary()
        return summary
