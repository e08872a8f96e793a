"""
End-to-end update runs: registry pages through ingest, classification and
scoring, driven by the orchestrator against both repositories.
"""

import unittest

from contract_fixtures import FakeClock, FakeResponse, FakeSession, StepClock, raw_contract

from farol_analyzer.classification.classifier import ContractClassifier
from farol_analyzer.config import AnomalyConfig, ClassificationConfig, RegistryConfig
from farol_analyzer.data.models import ContractCategory, Criterion
from farol_analyzer.data.repository import InMemoryRepository
from farol_analyzer.data.sqlite_store import SQLiteRepository
from farol_analyzer.download.downloader import RateLimiter, RegistryClient
from farol_analyzer.download.orchestrator import ContractIngestService
from farol_analyzer.inference.pipeline import RunStatus, UpdateOrchestrator
from farol_analyzer.models.anomaly_scorer import AnomalyScorer
from farol_analyzer.utils.alerts import AlertDispatcher, AlertType, CallbackAlertSink

OUTLIER_ID = "46395000000139-2-000900/2024"
CATCH_ALL_ID = "46395000000139-2-000999/2024"

PAGE = [
    raw_contract(
        f"46395000000139-2-{100 + i:06d}/2024",
        valorGlobal=100000.0 + i * 10000,
        niFornecedor=f"11.111.111/0001-{i:02d}",
    )
    for i in range(11)
]
PAGE.append(raw_contract(OUTLIER_ID, valorGlobal=2000000.0, niFornecedor="22.222.222/0001-22"))
PAGE.append(
    raw_contract(
        CATCH_ALL_ID,
        objetoContrato="Aquisição de bandeiras comemorativas",
        naturezaDespesa=None,
        valorGlobal=5000.0,
        niFornecedor="33.333.333/0001-33",
    )
)
SCORABLE = len(PAGE) - 1


class UpdateFlowBehaviour:
    """Runs are: first sighting, a refetch of the same page, then an empty window."""

    def make_repository(self):
        raise NotImplementedError

    def setUp(self):
        self.repository = self.make_repository()
        self.clock = StepClock()
        self.alerts = []

        limiter_clock = FakeClock()
        self.session = FakeSession(
            [FakeResponse(200, PAGE), FakeResponse(200, PAGE), FakeResponse(200, [])]
        )
        client = RegistryClient(
            RegistryConfig(rate_limit_ms=0, max_retries=0),
            session=self.session,
            rate_limiter=RateLimiter(0, clock=limiter_clock, sleep=limiter_clock.sleep),
            sleep=limiter_clock.sleep,
        )
        ingest = ContractIngestService(client, self.repository, clock=self.clock)
        classifier = ContractClassifier(
            self.repository, None, ClassificationConfig(show_progress=False), clock=self.clock
        )
        scorer = AnomalyScorer(
            self.repository, AnomalyConfig(workers=4, show_progress=False), clock=self.clock
        )
        self.orchestrator = UpdateOrchestrator(
            self.repository,
            ingest,
            classifier,
            scorer,
            alerts=AlertDispatcher([CallbackAlertSink(self.alerts.append)]),
            workers=4,
            clock=self.clock,
        )

    def run_once(self):
        result = self.orchestrator.run()
        self.assertTrue(result.ok)
        return result.value

    def test_first_run_scores_every_categorized_contract(self):
        log = self.run_once()

        self.assertEqual(log.status, RunStatus.SUCCESS)
        self.assertEqual(log.metrics.new_contracts, len(PAGE))
        self.assertEqual(log.metrics.scores_recalculated, SCORABLE)
        self.assertEqual(log.metrics.errors, 0)
        self.assertEqual(self.alerts[0].type, AlertType.JOB_SUCCESS)

        self.assertEqual(self.repository.get_contract(OUTLIER_ID).category, ContractCategory.OBRAS)
        self.assertEqual(self.repository.get_contract(CATCH_ALL_ID).category, ContractCategory.OUTROS)
        self.assertIsNone(self.repository.get_anomaly_score(CATCH_ALL_ID))

        value = self.repository.get_anomaly_score(OUTLIER_ID).get(Criterion.VALUE)
        self.assertEqual(value.score, 25)
        self.assertTrue(value.is_anomaly)

    def test_refetch_rescores_and_quiet_run_does_not(self):
        self.run_once()
        first = self.repository.get_anomaly_score(OUTLIER_ID).calculated_at

        refetch = self.run_once()
        self.assertEqual(refetch.metrics.new_contracts, 0)
        self.assertEqual(refetch.metrics.updated_contracts, len(PAGE))
        self.assertEqual(refetch.metrics.scores_recalculated, SCORABLE)
        self.assertGreater(self.repository.get_anomaly_score(OUTLIER_ID).calculated_at, first)
        self.assertIsNone(self.repository.get_anomaly_score(CATCH_ALL_ID))

        quiet = self.run_once()
        self.assertEqual(quiet.status, RunStatus.SUCCESS)
        self.assertEqual(quiet.metrics.new_contracts, 0)
        self.assertEqual(quiet.metrics.scores_recalculated, 0)
        self.assertEqual(self.repository.list_contracts_needing_score_recalc(), [])
        self.assertEqual(len(self.session.calls), 3)
        self.assertEqual([a.type for a in self.alerts], [AlertType.JOB_SUCCESS] * 3)


class TestInMemoryUpdateFlow(UpdateFlowBehaviour, unittest.TestCase):
    def make_repository(self):
        return InMemoryRepository()


class TestSQLiteUpdateFlow(UpdateFlowBehaviour, unittest.TestCase):
    def make_repository(self):
        repository = SQLiteRepository(":memory:")
        self.addCleanup(repository.close)
        return repository


if __name__ == "__main__":
    unittest.main()
