"""
Ingest service: crawl a date window from the registry, normalize every
record and upsert it into the repository.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional

from farol_analyzer.config import RegistryConfig
from farol_analyzer.data.repository import ContractRepository
from farol_analyzer.download.downloader import RegistryClient
from farol_analyzer.download.transform_data import (
    normalize_amendments,
    normalize_contract,
    parse_control_number,
)
from farol_analyzer.utils.result import AutoUpdateErrorCode, Result

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CrawlerStats:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    pages: int = 0
    total_found: int = 0
    new_contracts: int = 0
    updated_contracts: int = 0
    new_amendments: int = 0
    errors: int = 0
    last_error: Optional[str] = None

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.last_error = message

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "finished_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class ContractIngestService:
    """
    Pulls contracts for a date window and stores them.

    A page that cannot be fetched aborts the crawl (the caller decides what
    that means for the run). A single record that fails to normalize or to
    be stored is counted in the stats and skipped.
    """

    def __init__(
        self,
        client: RegistryClient,
        repository: ContractRepository,
        config: Optional[RegistryConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.repository = repository
        self.config = config or client.config
        self.clock = clock

    def ingest_record(self, raw: Dict[str, Any], stats: CrawlerStats) -> bool:
        """
        Normalize and upsert one raw record.

        Returns:
            True if the record was stored
        """
        try:
            normalized = normalize_contract(raw)
            contract = normalized.contract
            if not contract.external_id:
                stats.record_error("Record without numeroControlePNCP skipped")
                logger.warning("Skipping record without numeroControlePNCP")
                return False

            if normalized.agency is not None:
                self.repository.upsert_agency(normalized.agency)
            if normalized.supplier is not None:
                self.repository.upsert_supplier(normalized.supplier)

            contract.last_fetched_at = self.clock()
            if self.repository.upsert_contract(contract):
                stats.new_contracts += 1
            else:
                stats.updated_contracts += 1

            amendments = normalized.amendments
            if self.config.fetch_amendments:
                amendments = amendments + self._fetch_amendments(contract.external_id, stats)
            for amendment in amendments:
                if self.repository.upsert_amendment(amendment):
                    stats.new_amendments += 1
            return True
        except Exception as e:
            external_id = raw.get("numeroControlePNCP") if isinstance(raw, dict) else None
            stats.record_error(f"Failed to store {external_id}: {e}")
            logger.error(f"Failed to store contract {external_id}: {e}")
            return False

    def _fetch_amendments(self, external_id: str, stats: CrawlerStats):
        parsed = parse_control_number(external_id)
        if parsed is None:
            return []
        result = self.client.fetch_contract_history(parsed.cnpj, parsed.year, parsed.sequence)
        if not result.ok:
            stats.record_error(f"History of {external_id}: {result.error}")
            logger.warning(f"Could not fetch history for {external_id}: {result.error}")
            return []
        return normalize_amendments(result.value, external_id)

    def crawl_contracts(
        self,
        date_from: date,
        date_to: date,
        municipality_code: Optional[str] = None,
    ) -> Result[CrawlerStats]:
        """
        Crawl every page of a date window.

        Args:
            date_from: First publication date
            date_to: Last publication date
            municipality_code: IBGE code, defaults to the configured municipality

        Returns:
            Result with the crawl stats, or CRAWLER_ERROR when a page fetch failed
        """
        if municipality_code is None:
            municipality_code = self.config.municipality_code

        stats = CrawlerStats(started_at=self.clock())
        logger.info(f"Crawling contracts from {date_from} to {date_to} (municipality {municipality_code})")

        for page, result in self.client.iter_pages(date_from, date_to, municipality_code):
            if not result.ok:
                stats.finished_at = self.clock()
                stats.record_error(str(result.error))
                logger.error(f"Crawl aborted on page {page}: {result.error}")
                return Result.failure(
                    AutoUpdateErrorCode.CRAWLER_ERROR,
                    f"Failed to fetch page {page}: {result.error.message}",
                    details={"stats": stats, "cause": result.error.code},
                )
            stats.pages += 1
            stats.total_found += len(result.value)
            for raw in result.value:
                self.ingest_record(raw, stats)

        stats.finished_at = self.clock()
        logger.info(
            f"Crawl finished: {stats.total_found} found, {stats.new_contracts} new, "
            f"{stats.updated_contracts} updated, {stats.errors} errors"
        )
        return Result.success(stats)
