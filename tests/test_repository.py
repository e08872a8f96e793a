"""
Tests shared by both repository implementations (in-memory and SQLite).
"""

import os
import tempfile
import unittest
from datetime import date, datetime, timezone

from contract_fixtures import make_contract

from farol_analyzer.data.models import (
    AgencyRecord,
    AmendmentRecord,
    AnomalyScore,
    ClassificationSource,
    ContractCategory,
    Criterion,
    CriterionScore,
    ScoreCategory,
    SupplierRecord,
)
from farol_analyzer.data.repository import InMemoryRepository, needs_score
from farol_analyzer.data.sqlite_store import SQLiteRepository

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 6, 2, 12, 0, tzinfo=timezone.utc)


class RepositoryBehaviour:
    """Mixin: subclasses provide make_repository()."""

    def setUp(self):
        self.repository = self.make_repository()

    def test_contract_upsert_by_natural_key(self):
        self.assertTrue(self.repository.upsert_contract(make_contract("C1", value=10.0)))
        self.assertFalse(self.repository.upsert_contract(make_contract("C1", value=20.0)))
        self.assertEqual(self.repository.count_contracts(), 1)
        self.assertEqual(self.repository.get_contract("C1").value, 20.0)
        self.assertIsNone(self.repository.get_contract("missing"))

    def test_contract_fields_survive_storage(self):
        self.repository.upsert_contract(
            make_contract(
                "C1",
                start_date=date(2024, 1, 1),
                end_date=date(2024, 12, 31),
                last_fetched_at=T0,
                raw_data={"numeroControlePNCP": "C1"},
            )
        )
        stored = self.repository.get_contract("C1")
        self.assertEqual(stored.category, ContractCategory.OBRAS)
        self.assertEqual(stored.signature_date, date(2024, 1, 10))
        self.assertEqual(stored.duration_days, 365)
        self.assertEqual(stored.last_fetched_at, T0)
        self.assertEqual(stored.raw_data, {"numeroControlePNCP": "C1"})

    def test_resighting_keeps_classification(self):
        self.repository.upsert_contract(make_contract("C1", category=None, object="Reforma"))
        self.repository.save_classification("C1", ContractCategory.OBRAS, ClassificationSource.RULE, False, T0)
        self.repository.upsert_contract(make_contract("C1", category=None, object="Reforma", value=5.0))
        stored = self.repository.get_contract("C1")
        self.assertEqual(stored.category, ContractCategory.OBRAS)
        self.assertEqual(stored.classified_at, T0)

    def test_changed_text_requeues_classification(self):
        self.repository.upsert_contract(make_contract("C1", category=None, object="Reforma"))
        self.repository.save_classification("C1", ContractCategory.OBRAS, ClassificationSource.RULE, False, T0)
        self.repository.upsert_contract(make_contract("C1", category=None, object="Software"))
        self.assertIsNone(self.repository.get_contract("C1").classified_at)
        self.assertEqual(len(self.repository.list_contracts_pending_classification()), 1)

    def test_manual_classification_is_kept(self):
        self.repository.upsert_contract(make_contract("C1", category=None, object="Reforma"))
        self.repository.save_classification("C1", ContractCategory.TI, ClassificationSource.MANUAL, True, T0)
        self.repository.upsert_contract(make_contract("C1", category=None, object="Software"))
        stored = self.repository.get_contract("C1")
        self.assertEqual(stored.category, ContractCategory.TI)
        self.assertTrue(stored.category_manual)
        self.assertEqual(self.repository.list_contracts_pending_classification(), [])
        self.assertEqual(self.repository.reset_classifications(), 0)

    def test_pending_classification_limit(self):
        for index in range(3):
            self.repository.upsert_contract(make_contract(f"C{index}", category=None))
        self.assertEqual(len(self.repository.list_contracts_pending_classification(2)), 2)

    def test_agency_and_supplier_backfill(self):
        self.assertTrue(self.repository.upsert_agency(AgencyRecord("A1")))
        self.assertFalse(self.repository.upsert_agency(AgencyRecord("A1", name="Secretaria", cnpj="1")))
        self.repository.upsert_agency(AgencyRecord("A1", name="Outra"))
        agency = self.repository.get_agency("A1")
        self.assertEqual(agency.name, "Secretaria")
        self.assertEqual(agency.cnpj, "1")

        self.assertTrue(self.repository.upsert_supplier(SupplierRecord("S1")))
        self.repository.upsert_supplier(SupplierRecord("S1", name="Alfa"))
        self.assertEqual(self.repository.get_supplier("S1").name, "Alfa")
        self.assertIsNone(self.repository.get_supplier("S2"))

    def test_amendments_are_idempotent(self):
        self.repository.upsert_contract(make_contract("C1"))
        self.assertTrue(self.repository.upsert_amendment(AmendmentRecord("C1", 2, value_increase=50.0)))
        self.assertTrue(self.repository.upsert_amendment(AmendmentRecord("C1", 1, value_decrease=20.0)))
        self.assertFalse(self.repository.upsert_amendment(AmendmentRecord("C1", 1, value_decrease=99.0)))

        amendments = self.repository.list_amendments("C1")
        self.assertEqual([a.sequence for a in amendments], [1, 2])
        self.assertEqual(amendments[0].value_decrease, 20.0)

        totals = self.repository.amendment_totals(["C1", "C2"])
        self.assertEqual(list(totals), ["C1"])
        self.assertEqual(totals["C1"].count, 2)
        self.assertEqual(totals["C1"].value_change, 70.0)

    def test_score_storage(self):
        score = AnomalyScore("C1", calculated_at=T0).with_criterion(
            CriterionScore(Criterion.VALUE, 18, "Valor alto", True), T0
        ).consolidated()
        self.repository.save_anomaly_score(score)

        stored = self.repository.get_anomaly_score("C1")
        self.assertEqual(stored.total_score, 18)
        self.assertEqual(stored.category, ScoreCategory.LOW)
        self.assertEqual(stored.calculated_at, T0)
        self.assertEqual(stored.get(Criterion.VALUE).reason, "Valor alto")
        self.assertTrue(stored.get(Criterion.VALUE).is_anomaly)
        self.assertEqual([i.criterion for i in stored.breakdown], list(Criterion))

        self.assertTrue(self.repository.delete_anomaly_score("C1"))
        self.assertFalse(self.repository.delete_anomaly_score("C1"))
        self.assertEqual(self.repository.list_anomaly_scores(), [])

    def test_score_eligibility(self):
        self.repository.upsert_contract(make_contract("NEW"))
        self.repository.upsert_contract(make_contract("FRESH", last_fetched_at=T0))
        self.repository.upsert_contract(make_contract("STALE", last_fetched_at=T1))
        self.repository.upsert_contract(make_contract("RESET"))
        self.repository.upsert_contract(make_contract("OTHER", category=ContractCategory.OUTROS))
        self.repository.upsert_contract(make_contract("UNCLASSIFIED", category=None))
        self.repository.save_anomaly_score(AnomalyScore("FRESH", calculated_at=T1))
        self.repository.save_anomaly_score(AnomalyScore("STALE", calculated_at=T0))
        self.repository.save_anomaly_score(AnomalyScore("RESET", calculated_at=None))

        eligible = sorted(c.external_id for c in self.repository.list_contracts_needing_score_recalc())
        self.assertEqual(eligible, ["NEW", "RESET", "STALE"])
        self.assertEqual(len(self.repository.list_contracts_needing_score_recalc(limit=1)), 1)

    def test_category_and_agency_queries(self):
        self.repository.upsert_contract(make_contract("A", agency_code="X"))
        self.repository.upsert_contract(make_contract("B", signature_date=date(2023, 1, 1)))
        self.repository.upsert_contract(make_contract("C", category=ContractCategory.TI, agency_code="X"))
        in_category = self.repository.list_contracts_in_category(ContractCategory.OBRAS)
        self.assertEqual(sorted(c.external_id for c in in_category), ["A", "B"])
        in_year = self.repository.list_contracts_in_category(ContractCategory.OBRAS, 2023)
        self.assertEqual([c.external_id for c in in_year], ["B"])
        for_agency = self.repository.list_contracts_for_agency("X")
        self.assertEqual(sorted(c.external_id for c in for_agency), ["A", "C"])

    def test_last_fetched_at(self):
        self.assertIsNone(self.repository.get_last_fetched_at())
        self.repository.upsert_contract(make_contract("A", last_fetched_at=T0))
        self.repository.upsert_contract(make_contract("B", last_fetched_at=T1))
        self.assertEqual(self.repository.get_last_fetched_at(), T1)


class TestInMemoryRepository(RepositoryBehaviour, unittest.TestCase):
    def make_repository(self):
        return InMemoryRepository()

    def test_returned_records_are_copies(self):
        self.repository.upsert_contract(make_contract("C1", value=10.0))
        contract = self.repository.get_contract("C1")
        contract.value = 999.0
        self.assertEqual(self.repository.get_contract("C1").value, 10.0)


class TestSQLiteRepository(RepositoryBehaviour, unittest.TestCase):
    def make_repository(self):
        return SQLiteRepository(":memory:")

    def tearDown(self):
        self.repository.close()

    def test_creates_database_directory(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "farol.db")
            repository = SQLiteRepository(path)
            repository.upsert_contract(make_contract("C1"))
            repository.close()

            reopened = SQLiteRepository(path)
            self.assertEqual(reopened.count_contracts(), 1)
            reopened.close()


class TestNeedsScore(unittest.TestCase):
    def test_rules(self):
        contract = make_contract("C1", last_fetched_at=T1)
        self.assertTrue(needs_score(contract, None))
        self.assertTrue(needs_score(contract, AnomalyScore("C1", calculated_at=T0)))
        self.assertFalse(needs_score(contract, AnomalyScore("C1", calculated_at=T1)))
        self.assertFalse(needs_score(make_contract("C2", category=None), None))


if __name__ == "__main__":
    unittest.main()
