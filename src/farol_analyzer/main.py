"""
Command line entry point for the contract analyzer.
Runs the update job once or on a daily schedule, and exposes the crawl,
classification and scoring operations individually.
"""

import argparse
import json
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, List, Optional

from farol_analyzer.ai.service import create_ai_service
from farol_analyzer.classification.classifier import ContractClassifier
from farol_analyzer.config import AppConfig, load_config
from farol_analyzer.data.repository import ContractRepository
from farol_analyzer.data.sqlite_store import SQLiteRepository
from farol_analyzer.download.downloader import RegistryClient
from farol_analyzer.download.orchestrator import ContractIngestService
from farol_analyzer.inference.pipeline import RunStatus, UpdateOrchestrator
from farol_analyzer.inference.scheduler import Scheduler
from farol_analyzer.models.anomaly_scorer import RESET_SCOPES, AnomalyScorer
from farol_analyzer.utils.alerts import AlertDispatcher, LoggingAlertSink, WebhookAlertSink

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    repository: ContractRepository
    ingest: ContractIngestService
    classifier: ContractClassifier
    scorer: AnomalyScorer
    orchestrator: UpdateOrchestrator


def build_services(config: AppConfig, repository: Optional[ContractRepository] = None) -> Services:
    """Wire every component from the configuration."""
    repository = repository or SQLiteRepository(config.db_path)
    client = RegistryClient(config.registry)
    ingest = ContractIngestService(client, repository, config.registry)

    ai_service = create_ai_service(config.ai) if config.classification.use_ai_fallback else None
    if ai_service is None and config.classification.use_ai_fallback:
        logger.warning("AI fallback disabled: no usable AI provider configured")
    elif ai_service is not None:
        provider = ai_service.get_provider()
        logger.info(f"AI fallback enabled: {provider['provider']}/{provider['model']}")
    classifier = ContractClassifier(repository, ai_service, config.classification)
    scorer = AnomalyScorer(repository, config.anomaly)

    sinks: List[Any] = [LoggingAlertSink()]
    if config.auto_update.alert_webhook_url:
        sinks.append(WebhookAlertSink(config.auto_update.alert_webhook_url))
    alerts = AlertDispatcher(sinks, enabled=config.auto_update.alerts_enabled)

    orchestrator = UpdateOrchestrator(
        repository,
        ingest,
        classifier,
        scorer,
        config=config.auto_update,
        alerts=alerts,
        workers=config.anomaly.workers,
    )
    return Services(config, repository, ingest, classifier, scorer, orchestrator)


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD")


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Public procurement contract ingestion, classification and anomaly scoring"
    )
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (overrides FAROL_DB_PATH)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run the update job once (with retries)")

    start = commands.add_parser("start", help="Start the daily scheduler")
    start.add_argument("--run-now", action="store_true", help="Run the job immediately before scheduling")

    commands.add_parser("stats", help="Show pipeline statistics")

    crawl = commands.add_parser("crawl", help="Ingest contracts published in a date window")
    crawl.add_argument("--from", dest="date_from", type=parse_date, required=True, help="First date (YYYY-MM-DD)")
    crawl.add_argument("--to", dest="date_to", type=parse_date, required=True, help="Last date (YYYY-MM-DD)")
    crawl.add_argument("--municipality", type=str, default=None, help="IBGE municipality code")

    classify = commands.add_parser("classify", help="Contract classification")
    classify_commands = classify.add_subparsers(dest="action", required=True)
    classify_commands.add_parser("all", help="Classify every pending contract")
    classify_batch = classify_commands.add_parser("batch", help="Classify one batch")
    classify_batch.add_argument("--limit", type=int, default=None)
    classify_commands.add_parser("stats", help="Classification statistics")
    classify_commands.add_parser("reset", help="Clear every non-manual classification")
    classify_set = classify_commands.add_parser("set", help="Set a manual category")
    classify_set.add_argument("contract_id")
    classify_set.add_argument("category")
    classify_again = classify_commands.add_parser("reclassify", help="Classify one contract again")
    classify_again.add_argument("contract_id")

    score = commands.add_parser("score", help="Anomaly scoring")
    score_commands = score.add_subparsers(dest="action", required=True)
    score_commands.add_parser("all", help="Score every eligible contract")
    score_batch = score_commands.add_parser("batch", help="Score one batch")
    score_batch.add_argument("--limit", type=int, default=None)
    score_commands.add_parser("stats", help="Scoring statistics")
    score_reset = score_commands.add_parser("reset", help="Reset stored scores")
    score_reset.add_argument("scope", nargs="?", default="all", choices=RESET_SCOPES)
    score_recalc = score_commands.add_parser("recalculate", help="Recalculate and save the score of a contract")
    score_recalc.add_argument("contract_id")
    score_recalc.add_argument("--criterion", type=str, default=None, help="Only this criterion")
    score_single = score_commands.add_parser("single", help="Calculate the score of a contract without saving")
    score_single.add_argument("contract_id")
    score_top = score_commands.add_parser("top", help="List contracts by score")
    score_top.add_argument("--page", type=int, default=1)
    score_top.add_argument("--page-size", type=int, default=20)
    score_top.add_argument("--category", type=str, default=None, choices=["LOW", "MEDIUM", "HIGH"])
    score_top.add_argument("--min-score", type=int, default=None)

    return parser.parse_args(argv)


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def report_failure(result) -> int:
    logger.error(f"{result.error.code}: {result.error.message}")
    return 1


def run_classify(services: Services, args) -> int:
    classifier = services.classifier
    if args.action == "all":
        result = classifier.process_all()
    elif args.action == "batch":
        result = classifier.process_batch(args.limit)
    elif args.action == "stats":
        print_json(classifier.get_stats())
        return 0
    elif args.action == "reset":
        count = classifier.reset_classifications()
        logger.info(f"Reset {count} classifications")
        return 0
    elif args.action == "set":
        result = classifier.set_manual_category(args.contract_id, args.category)
    else:
        result = classifier.reclassify(args.contract_id)

    if not result.ok:
        return report_failure(result)
    value = result.value
    if hasattr(value, "by_category"):
        if classifier.ai_service is not None:
            classifier.ai_service.log_stats()
        logger.info(
            f"Processed {value.processed}, classified {value.classified}, errors {value.errors}"
        )
        return 1 if value.errors else 0
    logger.info(f"{value.category.value} ({value.method}, {value.confidence.value}): {value.reason}")
    return 0


def run_score(services: Services, args) -> int:
    scorer = services.scorer
    if args.action in ("all", "batch"):
        result = scorer.process_all() if args.action == "all" else scorer.process_batch(args.limit)
        if not result.ok:
            return report_failure(result)
        stats = result.value
        logger.info(
            f"Processed {stats.processed}, calculated {stats.calculated}, errors {stats.errors}"
        )
        logger.info(f"By category: {stats.by_category}")
        return 1 if stats.errors else 0
    if args.action == "stats":
        print_json(scorer.get_stats())
        return 0
    if args.action == "reset":
        result = scorer.reset_scores(args.scope)
        if not result.ok:
            return report_failure(result)
        logger.info(f"Reset {args.scope} scores for {result.value} contracts")
        return 0
    if args.action == "top":
        print_json(scorer.list_by_score(args.page, args.page_size, args.category, args.min_score))
        return 0

    if args.action == "recalculate":
        if args.criterion:
            result = scorer.recalculate_criterion(args.contract_id, args.criterion)
        else:
            result = scorer.calculate_for_contract(args.contract_id)
    else:
        result = scorer.preview(args.contract_id)
    if not result.ok:
        return report_failure(result)
    print_json(result.value.to_dict())
    return 0


def run_job(services: Services) -> int:
    result = services.orchestrator.run_with_retry()
    if result is None:
        return 1
    if not result.ok:
        return report_failure(result)
    return 0 if result.value.status == RunStatus.SUCCESS else 1


def start_scheduler(services: Services, run_now: bool) -> int:
    auto_update = services.config.auto_update
    scheduler = Scheduler(services.orchestrator, auto_update.schedule_hour, auto_update.schedule_minute)

    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        scheduler.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    scheduler.start(run_immediately=run_now)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to run the CLI."""
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    if args.db:
        config.db_path = args.db
    if args.no_progress:
        config.classification.show_progress = False
        config.anomaly.show_progress = False

    services = build_services(config)
    try:
        if args.command == "run":
            return run_job(services)
        if args.command == "start":
            return start_scheduler(services, args.run_now)
        if args.command == "stats":
            print_json(
                {
                    "pipeline": services.orchestrator.get_stats(),
                    "classification": services.classifier.get_stats(),
                    "scores": services.scorer.get_stats(),
                }
            )
            return 0
        if args.command == "crawl":
            result = services.ingest.crawl_contracts(args.date_from, args.date_to, args.municipality)
            if not result.ok:
                return report_failure(result)
            print_json(result.value.to_dict())
            return 1 if result.value.errors else 0
        if args.command == "classify":
            return run_classify(services, args)
        return run_score(services, args)
    finally:
        close = getattr(services.repository, "close", None)
        if close is not None:
            close()


if __name__ == "__main__":
    sys.exit(main())
