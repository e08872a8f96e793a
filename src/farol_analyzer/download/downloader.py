"""
PNCP registry client.
Rate-limited, retrying and paginated fetch of contract records from the
public consultation API.
"""

import time
import logging
import threading
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests

from farol_analyzer.config import RegistryConfig
from farol_analyzer.data.preprocess import format_registry_date
from farol_analyzer.utils.result import RegistryErrorCode, Result

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 30000

# Keys under which the registry has been seen to wrap the record list
WRAPPER_KEYS = ("data", "items", "resultado")


def backoff_delay_ms(attempt: int) -> int:
    """Exponential backoff for retry number attempt (0-based), capped at 30 s."""
    return min(1000 * 2 ** attempt, MAX_BACKOFF_MS)


class RateLimiter:
    """
    Minimum interval between request dispatches, shared by every caller.

    The lock is held while waiting, so concurrent callers queue up and are
    released one interval apart.
    """

    def __init__(
        self,
        min_interval_ms: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval_ms / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_dispatch: Optional[float] = None

    def acquire(self) -> float:
        """Block until a request may be dispatched. Returns the dispatch time."""
        with self._lock:
            now = self._clock()
            if self._last_dispatch is not None:
                remaining = self.min_interval - (now - self._last_dispatch)
                if remaining > 0:
                    self._sleep(remaining)
                    now = self._clock()
            self._last_dispatch = now
            return now


def extract_records(payload: Any) -> Optional[List[Dict[str, Any]]]:
    """
    Accept both response shapes: a bare list of records, or an object
    wrapping the list. Returns None for anything else.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in WRAPPER_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
        # Paginated envelope with no records
        if "totalRegistros" in payload or "paginaAtual" in payload:
            return []
    return None


def parse_retry_after(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


class RegistryClient:
    """
    HTTP client for the PNCP consultation API.

    429 responses wait for the announced retry-after and repeat the same
    attempt, up to max_rate_limit_waits times before failing with RATE_LIMIT. Network errors, timeouts, 5xx responses and unparseable bodies
    are retried with exponential backoff. Other 4xx responses fail at once.
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or RegistryConfig()
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(self.config.rate_limit_ms, sleep=sleep)
        self._sleep = sleep
        self.headers = {"Accept": "application/json"}

    def _request_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Result[Any]:
        attempt = 0
        rate_limit_waits = 0
        timeout = self.config.timeout_ms / 1000.0

        while True:
            self.rate_limiter.acquire()
            try:
                response = self.session.get(
                    url, params=params, headers=self.headers, timeout=timeout
                )
            except requests.Timeout as e:
                result = Result.failure(
                    RegistryErrorCode.TIMEOUT, f"Request timed out: {e}", retryable=True
                )
            except requests.RequestException as e:
                result = Result.failure(
                    RegistryErrorCode.NETWORK_ERROR, f"Request failed: {e}", retryable=True
                )
            else:
                status = response.status_code
                if status == 429:
                    if rate_limit_waits >= self.config.max_rate_limit_waits:
                        logger.error(f"Still rate limited on {url} after {rate_limit_waits} waits")
                        return Result.failure(
                            RegistryErrorCode.RATE_LIMIT,
                            f"Registry kept answering 429 after {rate_limit_waits} waits",
                            details={"status": status},
                            retryable=True,
                        )
                    rate_limit_waits += 1
                    wait = parse_retry_after(
                        response.headers.get("Retry-After"),
                        self.config.rate_limit_wait_seconds,
                    )
                    logger.warning(f"429 Too Many Requests - Sleeping for {wait:.0f} seconds")
                    self._sleep(wait)
                    continue
                if status == 204:
                    return Result.success([])
                if status >= 500:
                    result = Result.failure(
                        RegistryErrorCode.API_ERROR,
                        f"Registry returned {status}",
                        details={"status": status},
                        retryable=True,
                    )
                elif status >= 400:
                    logger.error(f"Error {status}: {response.text[:200]}")
                    return Result.failure(
                        RegistryErrorCode.API_ERROR,
                        f"Registry returned {status}",
                        details={"status": status},
                    )
                else:
                    try:
                        return Result.success(response.json())
                    except ValueError as e:
                        result = Result.failure(
                            RegistryErrorCode.PARSE_ERROR,
                            f"Invalid JSON response: {e}",
                            retryable=True,
                        )

            if attempt >= self.config.max_retries:
                logger.error(f"Giving up on {url} after {attempt + 1} attempts: {result.error}")
                return result

            delay_ms = backoff_delay_ms(attempt)
            logger.warning(
                f"Attempt {attempt + 1} failed ({result.error}), retrying in {delay_ms} ms"
            )
            self._sleep(delay_ms / 1000.0)
            attempt += 1

    def fetch_page(
        self,
        date_from: date,
        date_to: date,
        municipality_code: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        agency_cnpj: Optional[str] = None,
    ) -> Result[List[Dict[str, Any]]]:
        """
        Fetch one page of contracts published in a date window.

        Args:
            date_from: First publication date (inclusive)
            date_to: Last publication date (inclusive)
            municipality_code: IBGE municipality filter
            page: 1-based page number
            page_size: Records per page (defaults to config)
            agency_cnpj: Restrict to one agency

        Returns:
            Result holding the list of raw records
        """
        params = {
            "dataInicial": format_registry_date(date_from),
            "dataFinal": format_registry_date(date_to),
            "pagina": page,
            "tamanhoPagina": page_size or self.config.page_size,
        }
        if municipality_code:
            params["codigoMunicipio"] = municipality_code
        if agency_cnpj:
            params["cnpjOrgao"] = agency_cnpj

        url = f"{self.config.base_url}{self.config.contracts_path}"
        result = self._request_json(url, params)
        if not result.ok:
            return result

        records = extract_records(result.value)
        if records is None:
            return Result.failure(
                RegistryErrorCode.PARSE_ERROR,
                f"Unexpected response shape: {type(result.value).__name__}",
            )
        return Result.success(records)

    def iter_pages(
        self,
        date_from: date,
        date_to: date,
        municipality_code: Optional[str] = None,
        agency_cnpj: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> Iterator[Tuple[int, Result[List[Dict[str, Any]]]]]:
        """
        Yield (page number, page result) until a short page, a failure or max_pages.
        """
        page_size = self.config.page_size
        page = 1
        while True:
            result = self.fetch_page(
                date_from,
                date_to,
                municipality_code=municipality_code,
                page=page,
                page_size=page_size,
                agency_cnpj=agency_cnpj,
            )
            yield page, result
            if not result.ok:
                return
            logger.info(f"Page {page}: Retrieved {len(result.value)} records")
            if len(result.value) < page_size:
                return
            if max_pages is not None and page >= max_pages:
                logger.info(f"Reached the page limit: {max_pages}")
                return
            page += 1

    def fetch_all(
        self,
        date_from: date,
        date_to: date,
        municipality_code: Optional[str] = None,
        agency_cnpj: Optional[str] = None,
        stats=None,
    ) -> Result[List[Dict[str, Any]]]:
        """
        Fetch every page of a date window.

        Args:
            stats: Optional CrawlerStats updated with pages and records found

        Returns:
            Result holding all raw records, or the first page failure
        """
        records: List[Dict[str, Any]] = []
        for _, result in self.iter_pages(date_from, date_to, municipality_code, agency_cnpj):
            if not result.ok:
                return result
            records.extend(result.value)
            if stats is not None:
                stats.pages += 1
                stats.total_found += len(result.value)
        return Result.success(records)

    def fetch_contract_history(self, cnpj: str, year: int, sequence: int) -> Result[List[Dict[str, Any]]]:
        """
        Fetch the amendment history of one contract.

        Args:
            cnpj: Agency tax id (digits)
            year: Contract year
            sequence: Contract sequence within the agency and year

        Returns:
            Result holding the raw history items
        """
        path = self.config.history_path.format(cnpj=cnpj, year=year, sequence=sequence)
        result = self._request_json(f"{self.config.history_base_url}{path}")
        if not result.ok:
            return result
        items = extract_records(result.value)
        if items is None:
            return Result.failure(
                RegistryErrorCode.PARSE_ERROR, "Unexpected history response shape"
            )
        return Result.success(items)
