"""
Persistence contract for the pipeline.
ContractRepository is what every component talks to; InMemoryRepository is
the implementation used by tests and short-lived runs, the SQLite store in
sqlite_store.py is the one used by the CLI.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, NamedTuple, Optional

from farol_analyzer.data.models import (
    CATCH_ALL_CATEGORY,
    AgencyRecord,
    AmendmentRecord,
    AnomalyScore,
    ClassificationSource,
    ContractCategory,
    ContractRecord,
    SupplierRecord,
)

logger = logging.getLogger(__name__)


class AmendmentTotals(NamedTuple):
    count: int
    # Sum of the absolute net value change of each amendment
    value_change: float
    # Net prolongation in days
    duration_change: int


def summarize_amendments(amendments: List[AmendmentRecord]) -> AmendmentTotals:
    return AmendmentTotals(
        count=len(amendments),
        value_change=sum(abs(a.net_value_change) for a in amendments),
        duration_change=sum(a.net_duration_change for a in amendments),
    )


def is_scorable(contract: ContractRecord) -> bool:
    """Only classified contracts outside the catch-all category are scored."""
    return contract.category is not None and contract.category != CATCH_ALL_CATEGORY


def needs_score(contract: ContractRecord, score: Optional[AnomalyScore]) -> bool:
    """
    Eligibility for score recalculation.

    A scorable contract is eligible when it has no score yet, or when its
    score was calculated before the contract was last refreshed.
    """
    if not is_scorable(contract):
        return False
    if score is None:
        return True
    if score.calculated_at is None:
        return True
    if contract.last_fetched_at is None:
        return False
    return score.calculated_at < contract.last_fetched_at


def merge_contract(existing: ContractRecord, incoming: ContractRecord) -> ContractRecord:
    """
    Apply a re-sighted contract over the stored one.

    Registry fields are overwritten; classification state is kept. A change
    in the text or expense code sends a non-manual contract back to the
    classification queue.
    """
    merged = replace(
        incoming,
        category=existing.category,
        category_manual=existing.category_manual,
        classification_source=existing.classification_source,
        classified_at=existing.classified_at,
        last_fetched_at=incoming.last_fetched_at or existing.last_fetched_at,
    )
    changed = (
        incoming.object != existing.object
        or incoming.expense_code != existing.expense_code
    )
    if changed and not existing.category_manual:
        merged.classified_at = None
    return merged


def backfill(existing, incoming):
    """Fill empty fields of existing with values from incoming, never overwrite."""
    updates = {
        name: getattr(incoming, name)
        for name in existing.__dataclass_fields__
        if getattr(existing, name) in (None, "") and getattr(incoming, name) not in (None, "")
    }
    return replace(existing, **updates) if updates else existing


class ContractRepository(ABC):
    """Abstract repository: upserts by natural key plus the reads the pipeline needs."""

    # --- Agencies and suppliers ---

    @abstractmethod
    def upsert_agency(self, agency: AgencyRecord) -> bool:
        """Create the agency or backfill its missing fields. Returns True when created."""

    @abstractmethod
    def upsert_supplier(self, supplier: SupplierRecord) -> bool:
        """Create the supplier or backfill its name. Returns True when created."""

    @abstractmethod
    def get_agency(self, code: str) -> Optional[AgencyRecord]:
        pass

    @abstractmethod
    def get_supplier(self, cnpj: str) -> Optional[SupplierRecord]:
        pass

    # --- Contracts ---

    @abstractmethod
    def upsert_contract(self, contract: ContractRecord) -> bool:
        """Insert or update by external id. Returns True when created."""

    @abstractmethod
    def get_contract(self, contract_id: str) -> Optional[ContractRecord]:
        pass

    @abstractmethod
    def list_contracts(self) -> List[ContractRecord]:
        pass

    @abstractmethod
    def save_classification(
        self,
        contract_id: str,
        category: Optional[ContractCategory],
        source: Optional[ClassificationSource],
        manual: bool,
        classified_at: Optional[datetime],
    ) -> bool:
        """Store the classification of a contract. Returns False if it does not exist."""

    @abstractmethod
    def reset_classifications(self) -> int:
        """Clear every non-manual classification. Returns the number cleared."""

    @abstractmethod
    def get_last_fetched_at(self) -> Optional[datetime]:
        pass

    # --- Amendments ---

    @abstractmethod
    def upsert_amendment(self, amendment: AmendmentRecord) -> bool:
        """Insert a new amendment; existing ones are left untouched. Returns True when created."""

    @abstractmethod
    def list_amendments(self, contract_id: str) -> List[AmendmentRecord]:
        pass

    # --- Anomaly scores ---

    @abstractmethod
    def get_anomaly_score(self, contract_id: str) -> Optional[AnomalyScore]:
        pass

    @abstractmethod
    def save_anomaly_score(self, score: AnomalyScore) -> None:
        """Create or replace the score of a contract."""

    @abstractmethod
    def delete_anomaly_score(self, contract_id: str) -> bool:
        pass

    @abstractmethod
    def list_anomaly_scores(self) -> List[AnomalyScore]:
        pass

    # --- Derived queries ---

    def count_contracts(self) -> int:
        return len(self.list_contracts())

    def list_contracts_pending_classification(
        self, limit: Optional[int] = None
    ) -> List[ContractRecord]:
        """Contracts never classified (or sent back to the queue), manual ones excluded."""
        pending = [
            c
            for c in self.list_contracts()
            if c.classified_at is None and not c.category_manual
        ]
        return pending[:limit] if limit is not None else pending

    def list_contracts_in_category(
        self, category: ContractCategory, year: Optional[int] = None
    ) -> List[ContractRecord]:
        return [
            c
            for c in self.list_contracts()
            if c.category == category and (year is None or c.year == year)
        ]

    def list_contracts_for_agency(self, agency_code: str) -> List[ContractRecord]:
        return [c for c in self.list_contracts() if c.agency_code == agency_code]

    def list_contracts_needing_score_recalc(
        self, limit: Optional[int] = None
    ) -> List[ContractRecord]:
        scores = {s.contract_id: s for s in self.list_anomaly_scores()}
        eligible = [
            c for c in self.list_contracts() if needs_score(c, scores.get(c.external_id))
        ]
        return eligible[:limit] if limit is not None else eligible

    def amendment_totals(self, contract_ids: Iterable[str]) -> Dict[str, AmendmentTotals]:
        """Amendment aggregates per contract, only for contracts that have amendments."""
        totals = {}
        for contract_id in contract_ids:
            amendments = self.list_amendments(contract_id)
            if amendments:
                totals[contract_id] = summarize_amendments(amendments)
        return totals


class InMemoryRepository(ContractRepository):
    """Dictionary-backed repository. Records are copied in and out under a lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._agencies: Dict[str, AgencyRecord] = {}
        self._suppliers: Dict[str, SupplierRecord] = {}
        self._contracts: Dict[str, ContractRecord] = {}
        self._amendments: Dict[str, Dict[int, AmendmentRecord]] = {}
        self._scores: Dict[str, AnomalyScore] = {}

    def upsert_agency(self, agency: AgencyRecord) -> bool:
        with self._lock:
            existing = self._agencies.get(agency.code)
            if existing is None:
                self._agencies[agency.code] = replace(agency)
                return True
            self._agencies[agency.code] = backfill(existing, agency)
            return False

    def upsert_supplier(self, supplier: SupplierRecord) -> bool:
        with self._lock:
            existing = self._suppliers.get(supplier.cnpj)
            if existing is None:
                self._suppliers[supplier.cnpj] = replace(supplier)
                return True
            self._suppliers[supplier.cnpj] = backfill(existing, supplier)
            return False

    def get_agency(self, code: str) -> Optional[AgencyRecord]:
        with self._lock:
            agency = self._agencies.get(code)
            return replace(agency) if agency else None

    def get_supplier(self, cnpj: str) -> Optional[SupplierRecord]:
        with self._lock:
            supplier = self._suppliers.get(cnpj)
            return replace(supplier) if supplier else None

    def upsert_contract(self, contract: ContractRecord) -> bool:
        with self._lock:
            existing = self._contracts.get(contract.external_id)
            if existing is None:
                self._contracts[contract.external_id] = replace(contract)
                return True
            self._contracts[contract.external_id] = merge_contract(existing, contract)
            return False

    def get_contract(self, contract_id: str) -> Optional[ContractRecord]:
        with self._lock:
            contract = self._contracts.get(contract_id)
            return replace(contract) if contract else None

    def list_contracts(self) -> List[ContractRecord]:
        with self._lock:
            return [replace(c) for c in self._contracts.values()]

    def save_classification(self, contract_id, category, source, manual, classified_at) -> bool:
        with self._lock:
            contract = self._contracts.get(contract_id)
            if contract is None:
                return False
            contract.category = category
            contract.classification_source = source
            contract.category_manual = manual
            contract.classified_at = classified_at
            return True

    def reset_classifications(self) -> int:
        with self._lock:
            count = 0
            for contract in self._contracts.values():
                if contract.category_manual:
                    continue
                if contract.category is not None or contract.classified_at is not None:
                    count += 1
                contract.category = None
                contract.classification_source = None
                contract.classified_at = None
            return count

    def get_last_fetched_at(self) -> Optional[datetime]:
        with self._lock:
            fetched = [c.last_fetched_at for c in self._contracts.values() if c.last_fetched_at]
            return max(fetched) if fetched else None

    def upsert_amendment(self, amendment: AmendmentRecord) -> bool:
        with self._lock:
            entries = self._amendments.setdefault(amendment.contract_id, {})
            if amendment.sequence in entries:
                return False
            entries[amendment.sequence] = replace(amendment)
            return True

    def list_amendments(self, contract_id: str) -> List[AmendmentRecord]:
        with self._lock:
            entries = self._amendments.get(contract_id, {})
            return [replace(entries[seq]) for seq in sorted(entries)]

    def get_anomaly_score(self, contract_id: str) -> Optional[AnomalyScore]:
        with self._lock:
            score = self._scores.get(contract_id)
            return _copy_score(score) if score else None

    def save_anomaly_score(self, score: AnomalyScore) -> None:
        with self._lock:
            self._scores[score.contract_id] = _copy_score(score)

    def delete_anomaly_score(self, contract_id: str) -> bool:
        with self._lock:
            return self._scores.pop(contract_id, None) is not None

    def list_anomaly_scores(self) -> List[AnomalyScore]:
        with self._lock:
            return [_copy_score(s) for s in self._scores.values()]


def _copy_score(score: AnomalyScore) -> AnomalyScore:
    return replace(score, breakdown=[replace(item) for item in score.breakdown])
