"""
Update orchestrator.
This module runs the periodic update job: fetch new contracts from the
registry, classify them, recalculate the scores they invalidated and
consolidate every stored score, tracking each step and emitting one alert
per run.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from farol_analyzer.config import AutoUpdateConfig
from farol_analyzer.data.repository import ContractRepository
from farol_analyzer.utils.alerts import AlertDispatcher, AlertPayload, AlertType
from farol_analyzer.utils.parallel import run_isolated
from farol_analyzer.utils.result import AutoUpdateErrorCode, Result

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Overlap with the previous window so late-published records are not missed
FETCH_OVERLAP = timedelta(days=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepName:
    FETCH_CONTRACTS = "fetch_contracts"
    CLASSIFY_CONTRACTS = "classify_contracts"
    RECALCULATE_SCORES = "recalculate_scores"
    CONSOLIDATE = "consolidate"


STEP_ORDER = (
    StepName.FETCH_CONTRACTS,
    StepName.CLASSIFY_CONTRACTS,
    StepName.RECALCULATE_SCORES,
    StepName.CONSOLIDATE,
)


class StepStatus:
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RunStatus:
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ExecutionStep:
    name: str
    status: str = StepStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


@dataclass
class ExecutionMetrics:
    """Counters of one run. Updated from worker threads, so every write takes the lock."""

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    new_contracts: int = 0
    updated_contracts: int = 0
    scores_recalculated: int = 0
    errors: int = 0
    last_error: Optional[str] = None
    _lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_error(self, message: str, count: int = 1) -> None:
        with self._lock:
            self.errors += count
            self.last_error = message

    def record_score(self) -> None:
        with self._lock:
            self.scores_recalculated += 1

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "startedAt": self.started_at.isoformat() if self.started_at else None,
                "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
                "durationMs": self.duration_ms,
                "newContracts": self.new_contracts,
                "updatedContracts": self.updated_contracts,
                "scoresRecalculated": self.scores_recalculated,
                "errors": self.errors,
                "lastError": self.last_error,
            }


@dataclass
class ExecutionLog:
    id: str
    status: str = RunStatus.RUNNING
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    steps: List[ExecutionStep] = field(
        default_factory=lambda: [ExecutionStep(name) for name in STEP_ORDER]
    )
    fatal: bool = False

    def step(self, name: str) -> ExecutionStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "metrics": self.metrics.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
        }


class UpdateOrchestrator:
    """
    Runs the four update steps in order.

    A fetch failure aborts the run. Classification, scoring and
    consolidation failures are recorded in the metrics and the run goes on;
    any recorded error makes the final status "failed".

    Args:
        repository: Contract storage
        ingest: Object with crawl_contracts(date_from, date_to) -> Result[CrawlerStats]
        classifier: Object with process_all() -> Result[ClassificationStats]
        scorer: Object with calculate_for_contract(id) -> Result and consolidate_all()
        config: Lookback, retry and alert settings
        alerts: Alert dispatcher; a logging-only one is used when omitted
        workers: Worker pool size for score recalculation
        clock: Source of timestamps
        sleep: Used between retry attempts
    """

    def __init__(
        self,
        repository: ContractRepository,
        ingest,
        classifier,
        scorer,
        config: Optional[AutoUpdateConfig] = None,
        alerts: Optional[AlertDispatcher] = None,
        workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.ingest = ingest
        self.classifier = classifier
        self.scorer = scorer
        self.config = config or AutoUpdateConfig()
        self.alerts = alerts or AlertDispatcher(enabled=self.config.alerts_enabled)
        self.workers = workers
        self.clock = clock
        self.sleep = sleep
        self._running = threading.Lock()
        self.last_log: Optional[ExecutionLog] = None

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def get_date_range(self) -> Tuple[date, date]:
        """
        Fetch window for the next run.

        Returns:
            (last fetch - 1 day, today) after a previous fetch, otherwise
            (today - lookback_days, today)
        """
        now = self.clock()
        last_fetched = self.repository.get_last_fetched_at()
        if last_fetched is not None:
            start = last_fetched - FETCH_OVERLAP
        else:
            start = now - timedelta(days=self.config.lookback_days)
        return start.date(), now.date()

    def _start_step(self, step: ExecutionStep) -> None:
        step.status = StepStatus.RUNNING
        step.started_at = self.clock()

    def _finish_step(self, step: ExecutionStep, error: Optional[str] = None) -> None:
        step.status = StepStatus.FAILED if error else StepStatus.SUCCESS
        step.error = error
        step.finished_at = self.clock()

    def _fetch(self, log: ExecutionLog) -> bool:
        step = log.step(StepName.FETCH_CONTRACTS)
        metrics = log.metrics
        self._start_step(step)
        logger.info("Step 1/4: Fetching new contracts...")

        date_from, date_to = self.get_date_range()
        logger.info(f"  Date range: {date_from} to {date_to}")
        result = self.ingest.crawl_contracts(date_from, date_to)

        if not result.ok:
            message = f"Crawler failed: {result.error.message}"
            self._finish_step(step, message)
            metrics.record_error(message)
            return False

        stats = result.value
        metrics.new_contracts = stats.new_contracts
        metrics.updated_contracts = stats.updated_contracts
        if stats.errors:
            metrics.record_error(stats.last_error or "Crawler record errors", count=stats.errors)
        self._finish_step(step)
        logger.info(f"  Completed: {stats.new_contracts} new, {stats.updated_contracts} updated")
        return True

    def _classify(self, log: ExecutionLog) -> None:
        step = log.step(StepName.CLASSIFY_CONTRACTS)
        self._start_step(step)
        logger.info("Step 2/4: Classifying contracts...")
        try:
            result = self.classifier.process_all()
        except Exception as e:
            result = Result.failure(AutoUpdateErrorCode.CLASSIFICATION_ERROR, f"Classification failed: {e}")

        if not result.ok:
            self._finish_step(step, result.error.message)
            log.metrics.record_error(result.error.message)
            logger.error(f"  Classification failed: {result.error.message}")
            return

        stats = result.value
        self._finish_step(step)
        logger.info(f"  Completed: {stats.classified} classified out of {stats.processed} processed")

    def _recalculate(self, log: ExecutionLog) -> None:
        step = log.step(StepName.RECALCULATE_SCORES)
        metrics = log.metrics
        self._start_step(step)
        logger.info("Step 3/4: Recalculating scores for affected contracts...")
        try:
            contract_ids = [c.external_id for c in self.repository.list_contracts_needing_score_recalc()]
        except Exception as e:
            message = f"Could not list contracts needing scores: {e}"
            self._finish_step(step, message)
            metrics.record_error(message)
            return
        logger.info(f"  Found {len(contract_ids)} contracts needing score recalculation")

        def score_one(contract_id: str) -> Result:
            try:
                result = self.scorer.calculate_for_contract(contract_id)
            except Exception as e:
                result = Result.failure(AutoUpdateErrorCode.SCORE_CALCULATION_ERROR, str(e))
            if result.ok:
                metrics.record_score()
            else:
                metrics.record_error(f"Score for {contract_id}: {result.error.message}")
                logger.error(f"Failed to recalculate score for {contract_id}: {result.error.message}")
            return result

        results = run_isolated(
            score_one,
            contract_ids,
            workers=self.workers,
            error_code=AutoUpdateErrorCode.SCORE_CALCULATION_ERROR,
        )
        failed = sum(1 for r in results if not r.ok)
        self._finish_step(step)
        logger.info(f"  Completed: {len(results) - failed} success, {failed} failed")

    def _consolidate(self, log: ExecutionLog) -> None:
        step = log.step(StepName.CONSOLIDATE)
        self._start_step(step)
        logger.info("Step 4/4: Consolidating scores...")
        try:
            summary = self.scorer.consolidate_all()
        except Exception as e:
            message = f"Consolidation failed: {e}"
            self._finish_step(step, message)
            log.metrics.record_error(message)
            logger.error(f"  {message}")
            return
        self._finish_step(step)
        logger.info(f"  Consolidated {summary['processed']} scores, updated {summary['updated']}")

    def _attempt(self) -> ExecutionLog:
        started = self.clock()
        log = ExecutionLog(id=started.isoformat(), metrics=ExecutionMetrics(started_at=started))
        self.last_log = log
        logger.info(f"Starting auto-update job (ID: {log.id})")

        try:
            if not self._fetch(log):
                log.fatal = True
            else:
                self._classify(log)
                self._recalculate(log)
                self._consolidate(log)
        except Exception as e:
            log.fatal = True
            log.metrics.record_error(f"Unexpected error: {e}")
            logger.exception("Auto-update job failed with an unexpected error")

        metrics = log.metrics
        metrics.finished_at = self.clock()
        metrics.duration_ms = int((metrics.finished_at - metrics.started_at).total_seconds() * 1000)
        log.status = RunStatus.FAILED if log.fatal or metrics.errors > 0 else RunStatus.SUCCESS

        logger.info("=" * 50)
        logger.info("Auto-update job completed")
        logger.info(f"  Status: {log.status}")
        logger.info(f"  Duration: {round(metrics.duration_ms / 1000)}s")
        logger.info(f"  New contracts: {metrics.new_contracts}")
        logger.info(f"  Updated contracts: {metrics.updated_contracts}")
        logger.info(f"  Scores recalculated: {metrics.scores_recalculated}")
        logger.info(f"  Errors: {metrics.errors}")
        logger.info("=" * 50)
        return log

    def _alert(self, log: ExecutionLog) -> None:
        metrics = log.metrics
        if log.fatal:
            alert_type = AlertType.JOB_FAILURE
            message = f"Auto-update job failed: {metrics.last_error}"
        elif metrics.errors > 0:
            alert_type = AlertType.PARTIAL_FAILURE
            message = f"Auto-update completed with {metrics.errors} errors"
        else:
            alert_type = AlertType.JOB_SUCCESS
            message = "Auto-update completed successfully"
        results = self.alerts.send(
            AlertPayload(
                type=alert_type,
                message=message,
                metrics=metrics.to_dict(),
                last_error=metrics.last_error,
                timestamp=self.clock(),
            )
        )
        for result in results:
            if not result.ok:
                metrics.record_error(f"Alert delivery failed: {result.error.message}")
                log.status = RunStatus.FAILED
                logger.error(f"  Alert delivery failed: {result.error.message}")

    @staticmethod
    def _to_result(log: ExecutionLog) -> Result[ExecutionLog]:
        if log.fatal:
            fetch = log.step(StepName.FETCH_CONTRACTS)
            code = (
                AutoUpdateErrorCode.CRAWLER_ERROR
                if fetch.status == StepStatus.FAILED
                else AutoUpdateErrorCode.UNKNOWN_ERROR
            )
            return Result.failure(code, log.metrics.last_error or "Auto-update job failed", details={"log": log})
        return Result.success(log)

    def run(self) -> Optional[Result[ExecutionLog]]:
        """
        Run the job once and send its alert.

        Returns:
            Result with the execution log (a partial failure is a successful
            Result whose log status is "failed"); a job-fatal failure is a
            failed Result carrying the log in details. None when another run
            is already in progress.
        """
        if not self._running.acquire(blocking=False):
            logger.warning("Auto-update already running, skipping this invocation")
            return None
        try:
            log = self._attempt()
            self._alert(log)
            return self._to_result(log)
        finally:
            self._running.release()

    def run_with_retry(self) -> Optional[Result[ExecutionLog]]:
        """
        Run the job, retrying job-fatal failures up to max_retries times.

        Only the final attempt is returned and alerted.
        """
        if not self._running.acquire(blocking=False):
            logger.warning("Auto-update already running, skipping this invocation")
            return None
        try:
            attempts = self.config.max_retries + 1
            for attempt in range(1, attempts + 1):
                logger.info(f"Attempt {attempt}/{attempts}")
                log = self._attempt()
                if not log.fatal or attempt == attempts:
                    break
                logger.info(f"Retrying in {self.config.retry_delay_seconds} seconds...")
                self.sleep(self.config.retry_delay_seconds)
            self._alert(log)
            return self._to_result(log)
        finally:
            self._running.release()

    def get_stats(self) -> Dict[str, Any]:
        last_fetched = self.repository.get_last_fetched_at()
        return {
            "last_fetched_at": last_fetched.isoformat() if last_fetched else None,
            "total_contracts": self.repository.count_contracts(),
            "contracts_with_scores": len(self.repository.list_anomaly_scores()),
            "contracts_pending_scores": len(self.repository.list_contracts_needing_score_recalc()),
        }
