"""
Contract classifier.
Assigns a spending category with deterministic rules first (expense nature
code, then keywords) and falls back to an AI completion when the rules give
no answer or only a weak one.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from tqdm import tqdm

from farol_analyzer.classification.mappings import (
    get_category_from_expense_code,
    get_category_from_keywords,
)
from farol_analyzer.classification.prompts import (
    CLASSIFICATION_SYSTEM_PROMPT,
    build_classification_prompt,
    parse_classification_response,
)
from farol_analyzer.config import ClassificationConfig
from farol_analyzer.data.models import (
    CATCH_ALL_CATEGORY,
    ClassificationSource,
    Confidence,
    ContractCategory,
    ContractRecord,
)
from farol_analyzer.data.repository import ContractRepository
from farol_analyzer.utils.result import ClassificationErrorCode, Result

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MANUAL_REASON = "Categoria definida manualmente"


class ClassificationMethod:
    OFFICIAL_CODE = "official_code"
    KEYWORDS = "keywords"
    AI = "ai"
    MANUAL = "manual"


@dataclass
class ClassificationResult:
    category: ContractCategory
    source: ClassificationSource
    confidence: Confidence
    reason: str
    method: str = ClassificationMethod.KEYWORDS


@dataclass
class ClassificationStats:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    processed: int = 0
    classified: int = 0
    errors: int = 0
    by_source: Dict[str, int] = field(
        default_factory=lambda: {
            ClassificationMethod.OFFICIAL_CODE: 0,
            ClassificationMethod.KEYWORDS: 0,
            ClassificationMethod.AI: 0,
        }
    )
    by_category: Dict[str, int] = field(
        default_factory=lambda: {c.value: 0 for c in ContractCategory}
    )
    last_error: Optional[str] = None

    def merge(self, other: "ClassificationStats") -> None:
        self.processed += other.processed
        self.classified += other.classified
        self.errors += other.errors
        for key, count in other.by_source.items():
            self.by_source[key] = self.by_source.get(key, 0) + count
        for key, count in other.by_category.items():
            self.by_category[key] = self.by_category.get(key, 0) + count
        if other.last_error:
            self.last_error = other.last_error


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContractClassifier:
    """
    Classifier service over a repository.

    Args:
        repository: Contract storage
        ai_service: Anything with prompt(prompt, system_prompt, max_tokens,
            temperature) -> Result[str]; None disables the AI fallback
        config: Batch size, AI fallback switch, prompt limits
        clock: Source of classification timestamps
    """

    def __init__(
        self,
        repository: ContractRepository,
        ai_service=None,
        config: Optional[ClassificationConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.ai_service = ai_service
        self.config = config or ClassificationConfig()
        self.clock = clock

    def classify_with_ai(self, contract: ContractRecord) -> Result[ClassificationResult]:
        if self.ai_service is None:
            return Result.failure(ClassificationErrorCode.AI_FAILED, "AI service not configured")

        agency = self.repository.get_agency(contract.agency_code) if contract.agency_code else None
        prompt = build_classification_prompt(
            object_description=contract.object,
            value=contract.value,
            agency_name=agency.name if agency else None,
            max_text_length=self.config.max_text_length,
        )
        result = self.ai_service.prompt(
            prompt,
            system_prompt=CLASSIFICATION_SYSTEM_PROMPT,
            max_tokens=self.config.ai_max_tokens,
            temperature=self.config.ai_temperature,
        )
        if not result.ok:
            return Result.failure(ClassificationErrorCode.AI_FAILED, result.error.message)

        parsed = parse_classification_response(result.value)
        if parsed is None:
            return Result.failure(
                ClassificationErrorCode.AI_FAILED,
                "Failed to parse AI classification response",
                details={"raw_response": result.value[:500] if isinstance(result.value, str) else None},
            )

        return Result.success(
            ClassificationResult(
                category=parsed.category,
                source=ClassificationSource.AI,
                confidence=parsed.confidence,
                reason=parsed.reason,
                method=ClassificationMethod.AI,
            )
        )

    def classify(self, contract: ContractRecord) -> Result[ClassificationResult]:
        """
        Classify a contract without saving.

        Order: manual override, expense nature code, keywords (medium/high
        confidence), AI fallback, low-confidence keywords, catch-all.

        Args:
            contract: Contract to classify

        Returns:
            Result with the classification; fails only for an invalid contract
        """
        if contract is None or not contract.external_id:
            return Result.failure(ClassificationErrorCode.INVALID_CONTRACT, "Contract without identifier")

        if contract.category_manual and contract.category is not None:
            return Result.success(
                ClassificationResult(
                    category=contract.category,
                    source=ClassificationSource.MANUAL,
                    confidence=Confidence.HIGH,
                    reason=MANUAL_REASON,
                    method=ClassificationMethod.MANUAL,
                )
            )

        mapping = get_category_from_expense_code(contract.expense_code)
        if mapping is not None:
            return Result.success(
                ClassificationResult(
                    category=mapping.category,
                    source=ClassificationSource.RULE,
                    confidence=Confidence.HIGH,
                    reason=f"Código de natureza de despesa {mapping.code} ({mapping.description})",
                    method=ClassificationMethod.OFFICIAL_CODE,
                )
            )

        keyword_match = get_category_from_keywords(contract.object)
        if keyword_match is not None and keyword_match.confidence != Confidence.LOW:
            return Result.success(
                ClassificationResult(
                    category=keyword_match.category,
                    source=ClassificationSource.RULE,
                    confidence=keyword_match.confidence,
                    reason=f"Palavras-chave identificadas: {', '.join(keyword_match.matched_keywords)}",
                    method=ClassificationMethod.KEYWORDS,
                )
            )

        if self.config.use_ai_fallback and self.ai_service is not None and contract.object.strip():
            ai_result = self.classify_with_ai(contract)
            if ai_result.ok:
                return ai_result
            logger.warning(
                f"AI classification failed for {contract.external_id}: {ai_result.error.message}"
            )

        if keyword_match is not None:
            return Result.success(
                ClassificationResult(
                    category=keyword_match.category,
                    source=ClassificationSource.RULE,
                    confidence=Confidence.LOW,
                    reason=f"Palavras-chave identificadas (baixa confiança): {', '.join(keyword_match.matched_keywords)}",
                    method=ClassificationMethod.KEYWORDS,
                )
            )

        return Result.success(
            ClassificationResult(
                category=CATCH_ALL_CATEGORY,
                source=ClassificationSource.RULE,
                confidence=Confidence.LOW,
                reason="Nenhuma categoria específica identificada",
                method=ClassificationMethod.KEYWORDS,
            )
        )

    def classify_contract(self, contract_id: str) -> Result[ClassificationResult]:
        """Load a contract by id and classify it without saving."""
        contract = self.repository.get_contract(contract_id)
        if contract is None:
            return Result.failure(
                ClassificationErrorCode.INVALID_CONTRACT, f"Contract not found: {contract_id}"
            )
        return self.classify(contract)

    def classify_and_save(self, contract_id: str) -> Result[ClassificationResult]:
        result = self.classify_contract(contract_id)
        if not result.ok or result.value.source == ClassificationSource.MANUAL:
            return result

        try:
            self.repository.save_classification(
                contract_id,
                result.value.category,
                result.value.source,
                manual=False,
                classified_at=self.clock(),
            )
        except Exception as e:
            return Result.failure(ClassificationErrorCode.DATABASE_ERROR, f"Database error: {e}")

        logger.debug(
            f"{contract_id}: {result.value.category.value} "
            f"({result.value.method}, {result.value.confidence.value})"
        )
        return result

    def set_manual_category(self, contract_id: str, category) -> Result[ClassificationResult]:
        """Pin a category by hand. Manual categories survive batch runs and resets."""
        parsed = ContractCategory.parse(category)
        if parsed is None:
            return Result.failure(
                ClassificationErrorCode.INVALID_CATEGORY,
                f"Invalid category: {category}. Valid: {', '.join(c.value for c in ContractCategory)}",
            )
        if self.repository.get_contract(contract_id) is None:
            return Result.failure(
                ClassificationErrorCode.INVALID_CONTRACT, f"Contract not found: {contract_id}"
            )

        self.repository.save_classification(
            contract_id, parsed, ClassificationSource.MANUAL, manual=True, classified_at=self.clock()
        )
        logger.info(f"{contract_id}: Manually set to {parsed.value}")
        return Result.success(
            ClassificationResult(
                category=parsed,
                source=ClassificationSource.MANUAL,
                confidence=Confidence.HIGH,
                reason=MANUAL_REASON,
                method=ClassificationMethod.MANUAL,
            )
        )

    def reset_manual_category(self, contract_id: str) -> Result[bool]:
        """Drop a manual override and send the contract back to the queue."""
        contract = self.repository.get_contract(contract_id)
        if contract is None:
            return Result.failure(
                ClassificationErrorCode.INVALID_CONTRACT, f"Contract not found: {contract_id}"
            )
        self.repository.save_classification(contract_id, None, None, manual=False, classified_at=None)
        return Result.success(contract.category_manual)

    def process_contracts(self, contracts: List[ContractRecord]) -> ClassificationStats:
        """Classify and save the given contracts; failures are counted, not raised."""
        stats = ClassificationStats(started_at=self.clock())
        for contract in tqdm(
            contracts, desc="Classifying contracts", disable=not self.config.show_progress
        ):
            result = self.classify_and_save(contract.external_id)
            stats.processed += 1
            if not result.ok:
                stats.errors += 1
                stats.last_error = f"{contract.external_id}: {result.error.message}"
                logger.error(f"Classification failed for {contract.external_id}: {result.error.message}")
                continue
            stats.by_category[result.value.category.value] += 1
            if result.value.category != CATCH_ALL_CATEGORY:
                stats.classified += 1
                if result.value.method in stats.by_source:
                    stats.by_source[result.value.method] += 1
        stats.finished_at = self.clock()
        return stats

    def process_batch(self, limit: Optional[int] = None) -> Result[ClassificationStats]:
        """
        Classify and save one batch of pending contracts.

        Args:
            limit: Batch size, defaults to config.batch_size

        Returns:
            Result with the batch stats; fails only if the queue cannot be read
        """
        try:
            contracts = self.repository.list_contracts_pending_classification(
                limit or self.config.batch_size
            )
        except Exception as e:
            return Result.failure(
                ClassificationErrorCode.DATABASE_ERROR, f"Could not list pending contracts: {e}"
            )

        if not contracts:
            logger.info("No contracts pending classification")
            return Result.success(ClassificationStats(started_at=self.clock(), finished_at=self.clock()))

        logger.info(f"Found {len(contracts)} contracts to classify")
        stats = self.process_contracts(contracts)
        logger.info(
            f"Batch complete: {stats.processed} processed, {stats.classified} classified, {stats.errors} errors"
        )
        return Result.success(stats)

    def process_all(self) -> Result[ClassificationStats]:
        """
        Run batches until every pending contract was tried once.

        A contract that fails stays pending in storage but is not retried
        within the same call, so it cannot hold back the rest of the queue.
        """
        total = ClassificationStats(started_at=self.clock())
        seen: Set[str] = set()
        while True:
            try:
                pending = self.repository.list_contracts_pending_classification()
            except Exception as e:
                return Result.failure(
                    ClassificationErrorCode.DATABASE_ERROR, f"Could not list pending contracts: {e}"
                )
            contracts = [c for c in pending if c.external_id not in seen][: self.config.batch_size]
            if not contracts:
                break
            seen.update(c.external_id for c in contracts)
            total.merge(self.process_contracts(contracts))
        total.finished_at = self.clock()
        logger.info(
            f"Classification finished: {total.processed} processed, "
            f"{total.classified} classified, {total.errors} errors"
        )
        return Result.success(total)

    def get_stats(self) -> Dict[str, object]:
        contracts = self.repository.list_contracts()
        by_category = {c.value: 0 for c in ContractCategory}
        pending = manual = 0
        for contract in contracts:
            if contract.classified_at is None and not contract.category_manual:
                pending += 1
            elif contract.category is not None:
                by_category[contract.category.value] += 1
            if contract.category_manual:
                manual += 1
        return {
            "total": len(contracts),
            "pending": pending,
            "classified": len(contracts) - pending,
            "manual": manual,
            "by_category": by_category,
        }

    def reset_classifications(self) -> int:
        count = self.repository.reset_classifications()
        logger.info(f"Reset {count} classifications")
        return count

    def reclassify(self, contract_id: str) -> Result[ClassificationResult]:
        """Classify one contract again. Refuses manually classified contracts."""
        contract = self.repository.get_contract(contract_id)
        if contract is None:
            return Result.failure(
                ClassificationErrorCode.INVALID_CONTRACT, f"Contract not found: {contract_id}"
            )
        if contract.category_manual:
            return Result.failure(
                ClassificationErrorCode.MANUAL_OVERRIDE,
                "Cannot reclassify manually classified contract. Use set_manual_category to change it.",
            )
        return self.classify_and_save(contract_id)
