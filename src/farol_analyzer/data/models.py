"""
Canonical records handled by the pipeline.
Raw registry payloads are mapped into these by the normalizer and stored by
the repository; the classifier and the anomaly scorer read and update them.
"""

import copy
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ContractCategory(str, Enum):
    OBRAS = "OBRAS"
    SERVICOS = "SERVICOS"
    TI = "TI"
    SAUDE = "SAUDE"
    EDUCACAO = "EDUCACAO"
    OUTROS = "OUTROS"

    @classmethod
    def parse(cls, value: Any) -> Optional["ContractCategory"]:
        """Map a free-form value ("ti", " Obras ") to a category, or None."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


# Catch-all category, never scored
CATCH_ALL_CATEGORY = ContractCategory.OUTROS


class ClassificationSource(str, Enum):
    RULE = "rule"
    AI = "ai"
    MANUAL = "manual"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ScoreCategory(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Criterion(str, Enum):
    VALUE = "value"
    AMENDMENT = "amendment"
    CONCENTRATION = "concentration"
    DURATION = "duration"


# Persisted breakdown order
CRITERIA_ORDER = (
    Criterion.VALUE,
    Criterion.AMENDMENT,
    Criterion.CONCENTRATION,
    Criterion.DURATION,
)

MAX_CRITERION_SCORE = 25
MAX_TOTAL_SCORE = 100
LOW_SCORE_LIMIT = 34
MEDIUM_SCORE_LIMIT = 67


def score_category(total: int) -> ScoreCategory:
    """Band a total score: below 34 is LOW, below 67 MEDIUM, otherwise HIGH."""
    if total < LOW_SCORE_LIMIT:
        return ScoreCategory.LOW
    if total < MEDIUM_SCORE_LIMIT:
        return ScoreCategory.MEDIUM
    return ScoreCategory.HIGH


@dataclass
class AgencyRecord:
    code: str
    name: Optional[str] = None
    cnpj: Optional[str] = None
    municipality_code: Optional[str] = None


@dataclass
class SupplierRecord:
    cnpj: str
    name: Optional[str] = None


@dataclass
class AmendmentRecord:
    """
    One registry history entry for a contract.
    Increases and decreases are both stored as positive numbers.
    """

    contract_id: str
    sequence: int
    type_name: Optional[str] = None
    justification: Optional[str] = None
    value_increase: float = 0.0
    value_decrease: float = 0.0
    duration_increase_days: int = 0
    duration_decrease_days: int = 0
    signature_date: Optional[date] = None
    publication_date: Optional[date] = None

    @property
    def external_id(self) -> str:
        return f"{self.contract_id}#{self.sequence}"

    @property
    def net_value_change(self) -> float:
        return self.value_increase - self.value_decrease

    @property
    def net_duration_change(self) -> int:
        return self.duration_increase_days - self.duration_decrease_days


@dataclass
class ContractRecord:
    external_id: str
    number: Optional[str] = None
    object: str = ""
    value: float = 0.0
    agency_code: Optional[str] = None
    supplier_cnpj: Optional[str] = None
    modality: Optional[str] = None
    status: str = "ACTIVE"
    expense_code: Optional[str] = None
    signature_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    publication_date: Optional[date] = None
    pdf_url: Optional[str] = None
    category: Optional[ContractCategory] = None
    category_manual: bool = False
    classification_source: Optional[ClassificationSource] = None
    classified_at: Optional[datetime] = None
    last_fetched_at: Optional[datetime] = None
    raw_data: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        # The record owns its payload; callers may keep mutating theirs
        self.raw_data = copy.deepcopy(self.raw_data) if self.raw_data else {}

    @property
    def year(self) -> Optional[int]:
        reference = self.signature_date or self.start_date or self.publication_date
        return reference.year if reference else None

    @property
    def duration_days(self) -> Optional[int]:
        """Days from start (or signature) to end, None without both dates."""
        start = self.start_date or self.signature_date
        if start is None or self.end_date is None:
            return None
        return (self.end_date - start).days


@dataclass
class NormalizedContract:
    """Output of the normalizer: a contract plus the records it references."""

    contract: ContractRecord
    agency: Optional[AgencyRecord] = None
    supplier: Optional[SupplierRecord] = None
    amendments: List[AmendmentRecord] = field(default_factory=list)


@dataclass
class CriterionScore:
    criterion: Criterion
    score: int = 0
    reason: Optional[str] = None
    is_anomaly: bool = False

    @property
    def is_contributing(self) -> bool:
        return self.score > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "criterion": self.criterion.value,
            "score": int(self.score),
            "reason": self.reason,
            "isContributing": self.is_contributing,
        }


@dataclass
class AnomalyScore:
    """
    Consolidated score for one contract.

    The breakdown always holds one entry per criterion, in CRITERIA_ORDER.
    Criteria not calculated yet carry a zero score and no reason.
    """

    contract_id: str
    breakdown: List[CriterionScore] = field(
        default_factory=lambda: [CriterionScore(c) for c in CRITERIA_ORDER]
    )
    total_score: int = 0
    category: ScoreCategory = ScoreCategory.LOW
    calculated_at: Optional[datetime] = None

    def get(self, criterion: Criterion) -> CriterionScore:
        for item in self.breakdown:
            if item.criterion == criterion:
                return item
        raise KeyError(criterion)

    def with_criterion(self, item: CriterionScore, calculated_at: datetime) -> "AnomalyScore":
        """Copy of this score with one criterion replaced."""
        breakdown = [
            item if existing.criterion == item.criterion else replace(existing)
            for existing in self.breakdown
        ]
        return replace(self, breakdown=breakdown, calculated_at=calculated_at)

    def consolidated(self, calculated_at: Optional[datetime] = None) -> "AnomalyScore":
        """Copy with total and category recomputed from the breakdown."""
        total = sum(int(item.score) for item in self.breakdown)
        total = max(0, min(MAX_TOTAL_SCORE, total))
        return replace(
            self,
            breakdown=[replace(item) for item in self.breakdown],
            total_score=total,
            category=score_category(total),
            calculated_at=calculated_at or self.calculated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalScore": int(self.total_score),
            "category": self.category.value,
            "breakdown": [item.to_dict() for item in self.breakdown],
            "calculatedAt": self.calculated_at.isoformat() if self.calculated_at else None,
        }
