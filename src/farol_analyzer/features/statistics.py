"""
Population statistics for anomaly scoring.
This module computes mean/standard deviation of peer populations, standardized
deviations and the deviation ladder that turns them into 0-25 scores.
"""

import numpy as np
import pandas as pd
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from farol_analyzer.data.models import ContractRecord

logger = logging.getLogger(__name__)


@dataclass
class PopulationStats:
    """Mean and population standard deviation (ddof=0) of a set of values."""

    count: int
    mean: float
    std: float

    @classmethod
    def from_values(cls, values: Iterable[float]) -> "PopulationStats":
        arr = np.asarray(list(values), dtype=float)
        if arr.size == 0:
            return cls(0, 0.0, 0.0)
        return cls(int(arr.size), float(arr.mean()), float(arr.std(ddof=0)))

    def deviation(self, value: float) -> float:
        """(value - mean) / std, 0.0 when the population has no spread."""
        if self.std == 0 or not np.isfinite(self.std):
            return 0.0
        return (value - self.mean) / self.std


@dataclass
class CategoryStatistics:
    category: str
    year: Optional[int]
    count: int
    mean: float
    std: float
    total: float


def population_stats(values: Sequence[float], min_count: int) -> Optional[PopulationStats]:
    """
    Statistics for a peer population, or None when it is smaller than min_count.

    Args:
        values: Peer values
        min_count: Minimum population size

    Returns:
        PopulationStats, or None for insufficient data
    """
    if len(values) < min_count:
        return None
    return PopulationStats.from_values(values)


def ladder_score(deviation: float, ladder: Sequence[Tuple[float, int]]) -> int:
    """
    Map a standardized deviation to a score.

    The score is that of the highest ladder step whose minimum deviation is
    not above the given deviation, 0 below the first step.

    Args:
        deviation: Standardized deviation (already made non-negative by the caller
            where only one direction counts)
        ladder: (min_deviation, score) steps

    Returns:
        Integer score
    """
    score = 0
    for min_deviation, step_score in sorted(ladder):
        if deviation >= min_deviation:
            score = step_score
        else:
            break
    return int(score)


def contracts_to_frame(contracts: List[ContractRecord]) -> pd.DataFrame:
    """Flat DataFrame (id, category, year, value, agency, supplier) for aggregation."""
    rows = [
        {
            "external_id": c.external_id,
            "category": c.category.value if c.category else None,
            "year": c.year,
            "value": float(c.value),
            "agency_code": c.agency_code,
            "supplier_cnpj": c.supplier_cnpj,
        }
        for c in contracts
    ]
    return pd.DataFrame(
        rows,
        columns=["external_id", "category", "year", "value", "agency_code", "supplier_cnpj"],
    )


def compute_category_statistics(
    contracts: List[ContractRecord], by_year: bool = False
) -> List[CategoryStatistics]:
    """
    Value statistics per category (optionally per category and year).

    Args:
        contracts: Contracts to aggregate; unclassified ones are ignored
        by_year: Also group by signature year

    Returns:
        List of CategoryStatistics sorted by category (and year)
    """
    df = contracts_to_frame(contracts)
    df = df[df["category"].notna()]
    if df.empty:
        return []

    keys = ["category", "year"] if by_year else ["category"]
    if by_year:
        df = df[df["year"].notna()]
        if df.empty:
            return []
    grouped = df.groupby(keys)["value"].agg(
        count="count",
        mean="mean",
        std=lambda s: float(np.std(s.to_numpy(dtype=float), ddof=0)),
        total="sum",
    )
    grouped = grouped.reset_index().sort_values(keys)

    result = []
    for _, row in grouped.iterrows():
        result.append(
            CategoryStatistics(
                category=row["category"],
                year=int(row["year"]) if by_year else None,
                count=int(row["count"]),
                mean=float(row["mean"]),
                std=float(row["std"]),
                total=float(row["total"]),
            )
        )
    logger.debug(f"Computed statistics for {len(result)} category groups")
    return result


def supplier_shares(contracts: List[ContractRecord], supplier_cnpj: str) -> Tuple[float, float]:
    """
    Share of a scope's contract count and value held by one supplier.

    Returns:
        (count share, value share); value share is 0.0 when the scope has no value
    """
    df = contracts_to_frame(contracts)
    if df.empty:
        return 0.0, 0.0
    mask = df["supplier_cnpj"] == supplier_cnpj
    count_share = float(mask.sum()) / len(df)
    total_value = float(df["value"].sum())
    value_share = float(df.loc[mask, "value"].sum()) / total_value if total_value > 0 else 0.0
    return count_share, value_share
