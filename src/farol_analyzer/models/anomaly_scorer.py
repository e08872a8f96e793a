"""
Anomaly scorer for classified contracts.
Four independent criteria (value, amendments, supplier concentration and
duration) each give a 0-25 sub-score against a peer population; the
consolidated total (0-100) is banded LOW / MEDIUM / HIGH.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from farol_analyzer.config import AnomalyConfig
from farol_analyzer.data.models import (
    CATCH_ALL_CATEGORY,
    CRITERIA_ORDER,
    MAX_CRITERION_SCORE,
    AnomalyScore,
    ContractRecord,
    Criterion,
    CriterionScore,
    ScoreCategory,
)
from farol_analyzer.data.repository import (
    AmendmentTotals,
    ContractRepository,
    is_scorable,
    summarize_amendments,
)
from farol_analyzer.features.statistics import (
    CategoryStatistics,
    compute_category_statistics,
    ladder_score,
    population_stats,
    supplier_shares,
)
from farol_analyzer.utils.parallel import run_isolated
from farol_analyzer.utils.result import AnomalyErrorCode, Result

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

NO_AMENDMENTS_REASON = "Sem aditivos"
RESET_SCOPES = ("value", "amendment", "concentration", "duration", "all")

_NO_AMENDMENTS = AmendmentTotals(0, 0.0, 0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def amendment_ratio(contract: ContractRecord, totals: Optional[AmendmentTotals]) -> float:
    """Amendment value change relative to the contract value (0.0 without amendments)."""
    if totals is None or contract.value <= 0:
        return 0.0
    return totals.value_change / contract.value


def insufficient_data_reason(scope: str, count: int, minimum: int) -> str:
    return (
        f"Dados insuficientes {scope} para análise estatística "
        f"({count} contratos, mínimo {minimum})"
    )


@dataclass
class ScoringStats:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    processed: int = 0
    calculated: int = 0
    errors: int = 0
    by_category: Dict[str, int] = field(
        default_factory=lambda: {c.value: 0 for c in ScoreCategory}
    )
    last_error: Optional[str] = None

    def merge(self, other: "ScoringStats") -> None:
        self.processed += other.processed
        self.calculated += other.calculated
        self.errors += other.errors
        for key, count in other.by_category.items():
            self.by_category[key] = self.by_category.get(key, 0) + count
        if other.last_error:
            self.last_error = other.last_error


class AnomalyScorer:
    """
    Scores contracts and keeps their AnomalyScore records up to date.

    Args:
        repository: Contract storage
        config: Population minimum, thresholds, ladders and pool size
        clock: Source of calculation timestamps
    """

    def __init__(
        self,
        repository: ContractRepository,
        config: Optional[AnomalyConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = config or AnomalyConfig()
        self.clock = clock
        self._calculators = {
            Criterion.VALUE: self.calculate_value_score,
            Criterion.AMENDMENT: self.calculate_amendment_score,
            Criterion.CONCENTRATION: self.calculate_concentration_score,
            Criterion.DURATION: self.calculate_duration_score,
        }

    # --- Criteria ---

    def _load_scorable(self, contract_id: str) -> Result[ContractRecord]:
        contract = self.repository.get_contract(contract_id)
        if contract is None:
            return Result.failure(
                AnomalyErrorCode.INVALID_CONTRACT, f"Contract not found: {contract_id}"
            )
        if contract.category is None or contract.category == CATCH_ALL_CATEGORY:
            return Result.failure(
                AnomalyErrorCode.NO_CATEGORY,
                f"Contract {contract_id} has no scorable category",
                details={"category": contract.category.value if contract.category else None},
            )
        return Result.success(contract)

    def _category_peers(self, contract: ContractRecord, year: Optional[int] = None) -> List[ContractRecord]:
        return [
            c
            for c in self.repository.list_contracts_in_category(contract.category, year)
            if c.external_id != contract.external_id
        ]

    def calculate_value_score(self, contract_id: str) -> Result[CriterionScore]:
        """
        Value against same-category peers of the same signature year.

        Falls back to peers of every year when the year population is below
        the minimum. Only values above the mean score.

        Args:
            contract_id: External id of the contract

        Returns:
            Result with the value CriterionScore
        """
        loaded = self._load_scorable(contract_id)
        if not loaded.ok:
            return Result.from_error(loaded.error)
        contract = loaded.value
        minimum = self.config.min_contracts_for_stats

        stats = None
        stats_year = contract.year
        if stats_year is not None:
            stats = population_stats(
                [c.value for c in self._category_peers(contract, stats_year)], minimum
            )
        if stats is None:
            stats_year = None
            peers = self._category_peers(contract)
            stats = population_stats([c.value for c in peers], minimum)
            if stats is None:
                return Result.success(
                    CriterionScore(
                        Criterion.VALUE,
                        0,
                        insufficient_data_reason(f"na categoria {contract.category.value}", len(peers), minimum),
                    )
                )

        deviation = stats.deviation(contract.value)
        score = ladder_score(max(deviation, 0.0), self.config.value_ladder)
        is_anomaly = deviation > self.config.stddev_threshold

        if is_anomaly:
            percent = round_half_up((contract.value - stats.mean) / stats.mean * 100) if stats.mean > 0 else 0
            year_info = f" em {stats_year}" if stats_year else ""
            reason = (
                f"Valor {percent}% acima da média de contratos similares{year_info} "
                f"({stats.count} contratos, {deviation:.1f} desvios padrão)"
            )
        elif deviation > 1:
            reason = f"Valor acima da média mas dentro da faixa normal ({deviation:.1f} desvios padrão)"
        else:
            reason = f"Valor dentro da faixa normal para contratos de {contract.category.value}"

        return Result.success(CriterionScore(Criterion.VALUE, min(score, MAX_CRITERION_SCORE), reason, is_anomaly))

    def calculate_amendment_score(self, contract_id: str) -> Result[CriterionScore]:
        """
        Amendment value change ratio against same-category peers.

        A contract without amendments scores 0. A ratio above the configured
        threshold is an anomaly on its own, scoring at least round(ratio * 10).
        """
        loaded = self._load_scorable(contract_id)
        if not loaded.ok:
            return Result.from_error(loaded.error)
        contract = loaded.value

        amendments = self.repository.list_amendments(contract_id)
        if not amendments:
            return Result.success(CriterionScore(Criterion.AMENDMENT, 0, NO_AMENDMENTS_REASON, False))

        own = summarize_amendments(amendments)
        ratio = amendment_ratio(contract, own)

        peers = self._category_peers(contract)
        totals = self.repository.amendment_totals(p.external_id for p in peers)
        ratios = [amendment_ratio(p, totals.get(p.external_id)) for p in peers]
        minimum = self.config.min_contracts_for_stats
        stats = population_stats(ratios, minimum)
        if stats is None:
            return Result.success(
                CriterionScore(
                    Criterion.AMENDMENT,
                    0,
                    insufficient_data_reason(f"na categoria {contract.category.value}", len(peers), minimum),
                )
            )

        deviation = stats.deviation(ratio)
        score = ladder_score(max(deviation, 0.0), self.config.amendment_ladder)
        is_deviation_anomaly = deviation > self.config.stddev_threshold
        is_value_anomaly = ratio > self.config.amendment_value_ratio_threshold
        if is_value_anomaly:
            score = max(score, min(MAX_CRITERION_SCORE, round_half_up(ratio * 10)))
        is_anomaly = is_deviation_anomaly or is_value_anomaly

        percent = round_half_up(ratio * 100)
        if is_anomaly:
            parts = []
            if is_deviation_anomaly:
                parts.append(
                    f"{own.count} aditivos com alteração acima da média da categoria "
                    f"({deviation:.1f} desvios padrão)"
                )
            if is_value_anomaly:
                parts.append(f"{percent}% de alteração de valor via aditivos")
            reason = "; ".join(parts)
        else:
            reason = (
                f"{own.count} aditivos dentro da faixa normal para {contract.category.value} "
                f"({percent}% de alteração, média: {stats.mean * 100:.1f}%)"
            )

        return Result.success(CriterionScore(Criterion.AMENDMENT, min(score, MAX_CRITERION_SCORE), reason, is_anomaly))

    def calculate_concentration_score(self, contract_id: str) -> Result[CriterionScore]:
        """
        Supplier share of the agency's scorable contracts (by count or value).

        Contracts without an agency are measured against their category.
        """
        loaded = self._load_scorable(contract_id)
        if not loaded.ok:
            return Result.from_error(loaded.error)
        contract = loaded.value

        if not contract.supplier_cnpj:
            return Result.success(
                CriterionScore(Criterion.CONCENTRATION, 0, "Fornecedor não identificado")
            )

        if contract.agency_code:
            scope = self.repository.list_contracts_for_agency(contract.agency_code)
            agency = self.repository.get_agency(contract.agency_code)
            scope_name = (agency.name if agency and agency.name else contract.agency_code)
            scope_label = "no órgão"
        else:
            scope = self.repository.list_contracts_in_category(contract.category)
            scope_name = f"contratos de {contract.category.value}"
            scope_label = f"na categoria {contract.category.value}"
        scope = [c for c in scope if is_scorable(c)]

        minimum = self.config.min_contracts_for_stats
        if len(scope) < minimum:
            return Result.success(
                CriterionScore(
                    Criterion.CONCENTRATION, 0, insufficient_data_reason(scope_label, len(scope), minimum)
                )
            )

        count_share, value_share = supplier_shares(scope, contract.supplier_cnpj)
        threshold = self.config.concentration_threshold
        is_count_anomaly = count_share > threshold
        is_value_anomaly = value_share > threshold
        is_anomaly = is_count_anomaly or is_value_anomaly

        score = 0
        if is_anomaly:
            excess = max(count_share, value_share) - threshold
            score = min(MAX_CRITERION_SCORE, round_half_up(5 + excess * 50))

        supplier = self.repository.get_supplier(contract.supplier_cnpj)
        supplier_name = supplier.name if supplier and supplier.name else contract.supplier_cnpj
        count_percent = round_half_up(count_share * 100)
        value_percent = round_half_up(value_share * 100)
        if is_count_anomaly:
            reason = f"Fornecedor {supplier_name} tem {count_percent}% dos contratos de {scope_name}"
            if is_value_anomaly:
                reason += f" ({value_percent}% do valor)"
        elif is_value_anomaly:
            reason = f"Fornecedor {supplier_name} tem {value_percent}% do valor de contratos de {scope_name}"
        else:
            reason = f"Fornecedor tem {count_percent}% dos contratos do órgão (dentro da faixa normal)"

        return Result.success(CriterionScore(Criterion.CONCENTRATION, score, reason, is_anomaly))

    def calculate_duration_score(self, contract_id: str) -> Result[CriterionScore]:
        """
        Duration including amendment prolongation against same-category peers.

        Both unusually long and unusually short contracts score.
        """
        loaded = self._load_scorable(contract_id)
        if not loaded.ok:
            return Result.from_error(loaded.error)
        contract = loaded.value

        if contract.duration_days is None:
            return Result.success(
                CriterionScore(
                    Criterion.DURATION, 0, "Datas de início ou término ausentes para cálculo de duração"
                )
            )

        own_totals = summarize_amendments(self.repository.list_amendments(contract_id))
        duration = contract.duration_days + own_totals.duration_change

        peers = [p for p in self._category_peers(contract) if p.duration_days is not None]
        totals = self.repository.amendment_totals(p.external_id for p in peers)
        durations = [
            p.duration_days + totals.get(p.external_id, _NO_AMENDMENTS).duration_change for p in peers
        ]
        minimum = self.config.min_contracts_for_stats
        stats = population_stats(durations, minimum)
        if stats is None:
            return Result.success(
                CriterionScore(
                    Criterion.DURATION,
                    0,
                    insufficient_data_reason(f"na categoria {contract.category.value}", len(durations), minimum),
                )
            )

        deviation = stats.deviation(duration)
        magnitude = abs(deviation)
        score = ladder_score(magnitude, self.config.duration_ladder)
        is_anomaly = magnitude > self.config.duration_stddev_threshold
        mean_days = round_half_up(stats.mean)
        category = contract.category.value

        if is_anomaly:
            direction = "abaixo" if deviation < 0 else "acima"
            reason = (
                f"Duração de {duration} dias para {category}, média é {mean_days} dias "
                f"({magnitude:.1f} desvios padrão {direction})"
            )
        elif magnitude > 1:
            reason = f"Duração acima/abaixo da média mas dentro da faixa normal ({magnitude:.1f} desvios padrão)"
        else:
            reason = (
                f"Duração dentro da faixa normal para contratos de {category} "
                f"({duration} dias, média: {mean_days} dias)"
            )

        return Result.success(CriterionScore(Criterion.DURATION, min(score, MAX_CRITERION_SCORE), reason, is_anomaly))

    # --- Records ---

    @staticmethod
    def _attach(record: Optional[AnomalyScore], item: CriterionScore) -> Result[AnomalyScore]:
        """Put a non-value criterion on a record that already carries its value score."""
        if record is None or record.get(Criterion.VALUE).reason is None:
            return Result.failure(
                AnomalyErrorCode.CALCULATION_FAILED,
                f"Value score must be calculated before the {item.criterion.value} score",
            )
        return Result.success(record.with_criterion(item, record.calculated_at))

    def _save(self, record: AnomalyScore) -> Result[AnomalyScore]:
        try:
            self.repository.save_anomaly_score(record)
        except Exception as e:
            return Result.failure(
                AnomalyErrorCode.CALCULATION_FAILED,
                f"Could not save score for {record.contract_id}: {e}",
            )
        return Result.success(record)

    def calculate_for_contract(self, contract_id: str) -> Result[AnomalyScore]:
        """
        Calculate or refresh every criterion of one contract and save the result.

        A contract without a score gets value first, then the other three
        attached to the same record. An existing score has each criterion
        recomputed independently.
        """
        existing = self.repository.get_anomaly_score(contract_id)
        if existing is None:
            return self._calculate_first(contract_id)
        return self._recalculate(existing)

    def preview(self, contract_id: str) -> Result[AnomalyScore]:
        """All four criteria consolidated into a record that is not saved."""
        record = AnomalyScore(contract_id)
        for criterion in CRITERIA_ORDER:
            result = self._calculators[criterion](contract_id)
            if not result.ok:
                return Result.from_error(result.error)
            record = record.with_criterion(result.value, record.calculated_at)
        return Result.success(record.consolidated(self.clock()))

    def _calculate_first(self, contract_id: str) -> Result[AnomalyScore]:
        value = self.calculate_value_score(contract_id)
        if not value.ok:
            return Result.from_error(value.error)

        now = self.clock()
        record = AnomalyScore(contract_id).with_criterion(value.value, now)
        for criterion in CRITERIA_ORDER[1:]:
            result = self._calculators[criterion](contract_id)
            if not result.ok:
                return Result.from_error(result.error)
            attached = self._attach(record, result.value)
            if not attached.ok:
                return attached
            record = attached.value

        saved = self._save(record.consolidated(now))
        if saved.ok:
            logger.debug(
                f"{contract_id}: Score {saved.value.total_score}/100 ({saved.value.category.value})"
            )
        return saved

    def _recalculate(self, existing: AnomalyScore) -> Result[AnomalyScore]:
        contract_id = existing.contract_id
        record = existing
        failures = []
        for criterion in CRITERIA_ORDER:
            result = self._calculators[criterion](contract_id)
            if result.ok:
                record = record.with_criterion(result.value, record.calculated_at)
            else:
                failures.append(result.error)

        if len(failures) == len(CRITERIA_ORDER):
            return Result.from_error(failures[0])

        if failures:
            # Keep the old timestamp so the contract stays eligible for another pass
            saved = self._save(record.consolidated())
            if not saved.ok:
                return saved
            return Result.failure(
                AnomalyErrorCode.CALCULATION_FAILED,
                f"{len(failures)} criteria failed for {contract_id}: {failures[0].message}",
                details={"errors": [str(f) for f in failures]},
            )

        return self._save(record.consolidated(self.clock()))

    def recalculate_criterion(self, contract_id: str, criterion) -> Result[AnomalyScore]:
        """
        Recompute a single criterion and consolidate.

        Args:
            contract_id: External id of the contract
            criterion: Criterion or its name ("value", "amendment", ...)

        Returns:
            Result with the updated score record
        """
        try:
            criterion = Criterion(criterion)
        except ValueError:
            return Result.failure(
                AnomalyErrorCode.INVALID_SCOPE,
                f"Invalid criterion: {criterion}. Valid: {', '.join(c.value for c in Criterion)}",
            )

        result = self._calculators[criterion](contract_id)
        if not result.ok:
            return Result.from_error(result.error)

        now = self.clock()
        existing = self.repository.get_anomaly_score(contract_id)
        if criterion == Criterion.VALUE:
            record = (existing or AnomalyScore(contract_id)).with_criterion(result.value, now)
        else:
            attached = self._attach(existing, result.value)
            if not attached.ok:
                return attached
            record = attached.value
        return self._save(record.consolidated(now))

    def consolidate(self, contract_id: str) -> Result[AnomalyScore]:
        """Total and band of a stored score recomputed from its breakdown, without saving."""
        existing = self.repository.get_anomaly_score(contract_id)
        if existing is None:
            return Result.failure(
                AnomalyErrorCode.CALCULATION_FAILED, f"No anomaly score for {contract_id}"
            )
        return Result.success(existing.consolidated())

    def consolidate_and_save(self, contract_id: str) -> Result[AnomalyScore]:
        """Consolidate a stored score and save it when the total or band changed. Idempotent."""
        existing = self.repository.get_anomaly_score(contract_id)
        result = self.consolidate(contract_id)
        if not result.ok:
            return result
        consolidated = result.value
        if (consolidated.total_score, consolidated.category) == (existing.total_score, existing.category):
            return Result.success(existing)
        return self._save(consolidated)

    def consolidate_all(self) -> Dict[str, int]:
        """Consolidate every stored score, saving only the ones that change."""
        processed = updated = 0
        for score in self.repository.list_anomaly_scores():
            processed += 1
            consolidated = score.consolidated()
            if (consolidated.total_score, consolidated.category) != (score.total_score, score.category):
                self.repository.save_anomaly_score(consolidated)
                updated += 1
        logger.info(f"Consolidated {processed} scores ({updated} updated)")
        return {"processed": processed, "updated": updated}

    # --- Batches ---

    def process_contracts(self, contracts: List[ContractRecord]) -> ScoringStats:
        """Score the given contracts on the worker pool; failures are counted, not raised."""
        stats = ScoringStats(started_at=self.clock())
        results = run_isolated(
            lambda c: self.calculate_for_contract(c.external_id),
            contracts,
            workers=self.config.workers,
            error_code=AnomalyErrorCode.CALCULATION_FAILED,
            desc="Scoring contracts",
            show_progress=self.config.show_progress,
        )
        for contract, result in zip(contracts, results):
            stats.processed += 1
            if not result.ok:
                stats.errors += 1
                stats.last_error = f"{contract.external_id}: {result.error.message}"
                logger.error(f"Score calculation failed for {contract.external_id}: {result.error.message}")
                continue
            stats.calculated += 1
            stats.by_category[result.value.category.value] += 1
        stats.finished_at = self.clock()
        return stats

    def process_batch(self, limit: Optional[int] = None) -> Result[ScoringStats]:
        """
        Score one batch of contracts that need a (re)calculation.

        Args:
            limit: Batch size, defaults to config.batch_size

        Returns:
            Result with the batch stats; fails only if the queue cannot be read
        """
        try:
            contracts = self.repository.list_contracts_needing_score_recalc(
                limit or self.config.batch_size
            )
        except Exception as e:
            return Result.failure(
                AnomalyErrorCode.CALCULATION_FAILED, f"Could not list contracts to score: {e}"
            )

        if not contracts:
            logger.info("No contracts need score calculation")
            return Result.success(ScoringStats(started_at=self.clock(), finished_at=self.clock()))

        logger.info(f"Found {len(contracts)} contracts to score")
        stats = self.process_contracts(contracts)
        logger.info(
            f"Batch complete: {stats.processed} processed, {stats.calculated} calculated, {stats.errors} errors"
        )
        return Result.success(stats)

    def process_all(self) -> Result[ScoringStats]:
        """Run batches until every eligible contract was tried once."""
        total = ScoringStats(started_at=self.clock())
        seen = set()
        while True:
            try:
                eligible = self.repository.list_contracts_needing_score_recalc()
            except Exception as e:
                return Result.failure(
                    AnomalyErrorCode.CALCULATION_FAILED, f"Could not list contracts to score: {e}"
                )
            contracts = [c for c in eligible if c.external_id not in seen][: self.config.batch_size]
            if not contracts:
                break
            seen.update(c.external_id for c in contracts)
            total.merge(self.process_contracts(contracts))
        total.finished_at = self.clock()
        logger.info(
            f"Scoring finished: {total.processed} processed, "
            f"{total.calculated} calculated, {total.errors} errors"
        )
        return Result.success(total)

    # --- Queries and maintenance ---

    def get_stats(self) -> Dict[str, Any]:
        scores = self.repository.list_anomaly_scores()
        by_category = {c.value: 0 for c in ScoreCategory}
        contributing = {c.value: 0 for c in CRITERIA_ORDER}
        for score in scores:
            by_category[score.category.value] += 1
            for item in score.breakdown:
                if item.is_contributing:
                    contributing[item.criterion.value] += 1
        average = sum(s.total_score for s in scores) / len(scores) if scores else 0.0
        return {
            "scored": len(scores),
            "pending": len(self.repository.list_contracts_needing_score_recalc()),
            "by_category": by_category,
            "contributing": contributing,
            "average_score": round(average, 1),
        }

    def reset_scores(self, scope: str = "all") -> Result[int]:
        """
        Clear stored scores so they are calculated again.

        Args:
            scope: "all" deletes the records; a criterion name zeroes that
                criterion and marks the record for recalculation

        Returns:
            Result with the number of records touched
        """
        if scope not in RESET_SCOPES:
            return Result.failure(
                AnomalyErrorCode.INVALID_SCOPE,
                f"Invalid scope: {scope}. Valid: {', '.join(RESET_SCOPES)}",
            )

        count = 0
        for score in self.repository.list_anomaly_scores():
            if scope == "all":
                if self.repository.delete_anomaly_score(score.contract_id):
                    count += 1
                continue
            criterion = Criterion(scope)
            cleared = score.with_criterion(CriterionScore(criterion), None).consolidated()
            self.repository.save_anomaly_score(cleared)
            count += 1

        logger.info(f"Reset {scope} scores for {count} contracts")
        return Result.success(count)

    def get_consolidated_score(self, contract_id: str) -> Result[Dict[str, Any]]:
        score = self.repository.get_anomaly_score(contract_id)
        if score is None:
            return Result.failure(
                AnomalyErrorCode.INVALID_CONTRACT, f"No anomaly score for {contract_id}"
            )
        payload = score.to_dict()
        payload["contractId"] = contract_id
        payload["contributingCriteria"] = [i.criterion.value for i in score.breakdown if i.is_contributing]
        return Result.success(payload)

    def list_by_score(
        self,
        page: int = 1,
        page_size: int = 20,
        category: Optional[str] = None,
        min_score: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Scored contracts ranked by total score, highest first.

        Args:
            page: 1-based page number
            page_size: Rows per page
            category: Only this band (LOW, MEDIUM, HIGH)
            min_score: Only totals at or above this value

        Returns:
            Dict with items, total, page, pageSize and totalPages
        """
        rows = []
        for score in self.repository.list_anomaly_scores():
            contract = self.repository.get_contract(score.contract_id)
            rows.append(
                {
                    "contractId": score.contract_id,
                    "totalScore": int(score.total_score),
                    "category": score.category.value,
                    "object": contract.object if contract else None,
                    "value": float(contract.value) if contract else None,
                }
            )
        df = pd.DataFrame(rows, columns=["contractId", "totalScore", "category", "object", "value"])
        if category:
            df = df[df["category"] == category.upper()]
        if min_score is not None:
            df = df[df["totalScore"] >= min_score]
        df = df.sort_values(["totalScore", "contractId"], ascending=[False, True])

        page = max(1, page)
        total = len(df)
        start = (page - 1) * page_size
        items = df.iloc[start:start + page_size].to_dict(orient="records")
        return {
            "items": items,
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(total / page_size) if page_size else 0,
        }

    def category_statistics(self, by_year: bool = False) -> List[CategoryStatistics]:
        contracts = [c for c in self.repository.list_contracts() if is_scorable(c)]
        return compute_category_statistics(contracts, by_year=by_year)
