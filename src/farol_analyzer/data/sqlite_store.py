"""
SQLite-backed repository used by the command line tools.
"""

import json
import logging
import os
import sqlite3
import threading
from datetime import date, datetime, timezone
from typing import List, Optional

from farol_analyzer.data.models import (
    CATCH_ALL_CATEGORY,
    AgencyRecord,
    AmendmentRecord,
    AnomalyScore,
    ClassificationSource,
    ContractCategory,
    ContractRecord,
    Criterion,
    CriterionScore,
    ScoreCategory,
    SupplierRecord,
)
from farol_analyzer.data.repository import ContractRepository, backfill, merge_contract

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agencies (
    code TEXT PRIMARY KEY,
    name TEXT,
    cnpj TEXT,
    municipality_code TEXT
);
CREATE TABLE IF NOT EXISTS suppliers (
    cnpj TEXT PRIMARY KEY,
    name TEXT
);
CREATE TABLE IF NOT EXISTS contracts (
    external_id TEXT PRIMARY KEY,
    number TEXT,
    object TEXT NOT NULL DEFAULT '',
    value REAL NOT NULL DEFAULT 0.0,
    agency_code TEXT,
    supplier_cnpj TEXT,
    modality TEXT,
    status TEXT,
    expense_code TEXT,
    signature_date TEXT,
    start_date TEXT,
    end_date TEXT,
    publication_date TEXT,
    pdf_url TEXT,
    category TEXT,
    category_manual INTEGER NOT NULL DEFAULT 0,
    classification_source TEXT,
    classified_at TEXT,
    last_fetched_at TEXT,
    raw_data TEXT
);
CREATE INDEX IF NOT EXISTS idx_contracts_category ON contracts (category);
CREATE INDEX IF NOT EXISTS idx_contracts_agency ON contracts (agency_code);
CREATE TABLE IF NOT EXISTS amendments (
    contract_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    type_name TEXT,
    justification TEXT,
    value_increase REAL NOT NULL DEFAULT 0.0,
    value_decrease REAL NOT NULL DEFAULT 0.0,
    duration_increase_days INTEGER NOT NULL DEFAULT 0,
    duration_decrease_days INTEGER NOT NULL DEFAULT 0,
    signature_date TEXT,
    publication_date TEXT,
    PRIMARY KEY (contract_id, sequence)
);
CREATE TABLE IF NOT EXISTS anomaly_scores (
    contract_id TEXT PRIMARY KEY,
    total_score INTEGER NOT NULL,
    category TEXT NOT NULL,
    breakdown TEXT NOT NULL,
    calculated_at TEXT
);
"""

CONTRACT_COLUMNS = (
    "external_id",
    "number",
    "object",
    "value",
    "agency_code",
    "supplier_cnpj",
    "modality",
    "status",
    "expense_code",
    "signature_date",
    "start_date",
    "end_date",
    "publication_date",
    "pdf_url",
    "category",
    "category_manual",
    "classification_source",
    "classified_at",
    "last_fetched_at",
    "raw_data",
)


def _ts_to_db(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so timestamps compare correctly as strings
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")


def _ts_from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f").replace(tzinfo=timezone.utc)


def _date_to_db(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _date_from_db(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class SQLiteRepository(ContractRepository):
    """
    Repository over a single SQLite file.

    One connection is shared by every thread of the process and guarded by a
    lock, which is enough for the orchestrator worker pool.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        directory = os.path.dirname(db_path)
        if directory and db_path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 60000")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.debug(f"Opened SQLite repository at {db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- Row mapping ---

    @staticmethod
    def _contract_to_row(contract: ContractRecord) -> tuple:
        return (
            contract.external_id,
            contract.number,
            contract.object,
            contract.value,
            contract.agency_code,
            contract.supplier_cnpj,
            contract.modality,
            contract.status,
            contract.expense_code,
            _date_to_db(contract.signature_date),
            _date_to_db(contract.start_date),
            _date_to_db(contract.end_date),
            _date_to_db(contract.publication_date),
            contract.pdf_url,
            contract.category.value if contract.category else None,
            1 if contract.category_manual else 0,
            contract.classification_source.value if contract.classification_source else None,
            _ts_to_db(contract.classified_at),
            _ts_to_db(contract.last_fetched_at),
            json.dumps(contract.raw_data, ensure_ascii=False, default=str),
        )

    @staticmethod
    def _row_to_contract(row: sqlite3.Row) -> ContractRecord:
        return ContractRecord(
            external_id=row["external_id"],
            number=row["number"],
            object=row["object"] or "",
            value=row["value"] or 0.0,
            agency_code=row["agency_code"],
            supplier_cnpj=row["supplier_cnpj"],
            modality=row["modality"],
            status=row["status"] or "ACTIVE",
            expense_code=row["expense_code"],
            signature_date=_date_from_db(row["signature_date"]),
            start_date=_date_from_db(row["start_date"]),
            end_date=_date_from_db(row["end_date"]),
            publication_date=_date_from_db(row["publication_date"]),
            pdf_url=row["pdf_url"],
            category=ContractCategory.parse(row["category"]),
            category_manual=bool(row["category_manual"]),
            classification_source=(
                ClassificationSource(row["classification_source"])
                if row["classification_source"]
                else None
            ),
            classified_at=_ts_from_db(row["classified_at"]),
            last_fetched_at=_ts_from_db(row["last_fetched_at"]),
            raw_data=json.loads(row["raw_data"]) if row["raw_data"] else {},
        )

    @staticmethod
    def _row_to_amendment(row: sqlite3.Row) -> AmendmentRecord:
        return AmendmentRecord(
            contract_id=row["contract_id"],
            sequence=row["sequence"],
            type_name=row["type_name"],
            justification=row["justification"],
            value_increase=row["value_increase"],
            value_decrease=row["value_decrease"],
            duration_increase_days=row["duration_increase_days"],
            duration_decrease_days=row["duration_decrease_days"],
            signature_date=_date_from_db(row["signature_date"]),
            publication_date=_date_from_db(row["publication_date"]),
        )

    @staticmethod
    def _row_to_score(row: sqlite3.Row) -> AnomalyScore:
        breakdown = [
            CriterionScore(
                criterion=Criterion(item["criterion"]),
                score=int(item["score"]),
                reason=item.get("reason"),
                is_anomaly=bool(item.get("isAnomaly", False)),
            )
            for item in json.loads(row["breakdown"])
        ]
        return AnomalyScore(
            contract_id=row["contract_id"],
            breakdown=breakdown,
            total_score=int(row["total_score"]),
            category=ScoreCategory(row["category"]),
            calculated_at=_ts_from_db(row["calculated_at"]),
        )

    def _query_contracts(
        self, where: str = "", params: tuple = (), limit: Optional[int] = None
    ) -> List[ContractRecord]:
        sql = f"SELECT * FROM contracts {where} ORDER BY external_id"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (limit,)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_contract(row) for row in rows]

    # --- Agencies and suppliers ---

    def upsert_agency(self, agency: AgencyRecord) -> bool:
        with self._lock:
            existing = self.get_agency(agency.code)
            merged = agency if existing is None else backfill(existing, agency)
            self._conn.execute(
                "INSERT OR REPLACE INTO agencies (code, name, cnpj, municipality_code) VALUES (?, ?, ?, ?)",
                (merged.code, merged.name, merged.cnpj, merged.municipality_code),
            )
            self._conn.commit()
            return existing is None

    def upsert_supplier(self, supplier: SupplierRecord) -> bool:
        with self._lock:
            existing = self.get_supplier(supplier.cnpj)
            merged = supplier if existing is None else backfill(existing, supplier)
            self._conn.execute(
                "INSERT OR REPLACE INTO suppliers (cnpj, name) VALUES (?, ?)",
                (merged.cnpj, merged.name),
            )
            self._conn.commit()
            return existing is None

    def get_agency(self, code: str) -> Optional[AgencyRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM agencies WHERE code = ?", (code,)).fetchone()
        if row is None:
            return None
        return AgencyRecord(
            code=row["code"],
            name=row["name"],
            cnpj=row["cnpj"],
            municipality_code=row["municipality_code"],
        )

    def get_supplier(self, cnpj: str) -> Optional[SupplierRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM suppliers WHERE cnpj = ?", (cnpj,)).fetchone()
        return SupplierRecord(cnpj=row["cnpj"], name=row["name"]) if row else None

    # --- Contracts ---

    def upsert_contract(self, contract: ContractRecord) -> bool:
        with self._lock:
            existing = self.get_contract(contract.external_id)
            stored = contract if existing is None else merge_contract(existing, contract)
            placeholders = ", ".join("?" for _ in CONTRACT_COLUMNS)
            self._conn.execute(
                f"INSERT OR REPLACE INTO contracts ({', '.join(CONTRACT_COLUMNS)}) VALUES ({placeholders})",
                self._contract_to_row(stored),
            )
            self._conn.commit()
            return existing is None

    def get_contract(self, contract_id: str) -> Optional[ContractRecord]:
        contracts = self._query_contracts("WHERE external_id = ?", (contract_id,))
        return contracts[0] if contracts else None

    def list_contracts(self) -> List[ContractRecord]:
        return self._query_contracts()

    def count_contracts(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM contracts").fetchone()[0]

    def save_classification(self, contract_id, category, source, manual, classified_at) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE contracts
                SET category = ?, classification_source = ?, category_manual = ?, classified_at = ?
                WHERE external_id = ?
                """,
                (
                    category.value if category else None,
                    source.value if source else None,
                    1 if manual else 0,
                    _ts_to_db(classified_at),
                    contract_id,
                ),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def reset_classifications(self) -> int:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE contracts
                SET category = NULL, classification_source = NULL, classified_at = NULL
                WHERE category_manual = 0
                  AND (category IS NOT NULL OR classified_at IS NOT NULL)
                """
            )
            self._conn.commit()
            return cursor.rowcount

    def get_last_fetched_at(self) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute("SELECT MAX(last_fetched_at) FROM contracts").fetchone()
        return _ts_from_db(row[0])

    def list_contracts_pending_classification(self, limit: Optional[int] = None) -> List[ContractRecord]:
        where = "WHERE classified_at IS NULL AND category_manual = 0"
        return self._query_contracts(where, limit=limit)

    def list_contracts_in_category(self, category: ContractCategory, year: Optional[int] = None) -> List[ContractRecord]:
        contracts = self._query_contracts("WHERE category = ?", (category.value,))
        if year is None:
            return contracts
        return [c for c in contracts if c.year == year]

    def list_contracts_for_agency(self, agency_code: str) -> List[ContractRecord]:
        return self._query_contracts("WHERE agency_code = ?", (agency_code,))

    def list_contracts_needing_score_recalc(self, limit: Optional[int] = None) -> List[ContractRecord]:
        where = """
            WHERE category IS NOT NULL AND category != ?
              AND external_id IN (
                SELECT c.external_id FROM contracts c
                LEFT JOIN anomaly_scores s ON s.contract_id = c.external_id
                WHERE s.contract_id IS NULL
                   OR s.calculated_at IS NULL
                   OR (c.last_fetched_at IS NOT NULL AND s.calculated_at < c.last_fetched_at)
              )
        """
        return self._query_contracts(where, (CATCH_ALL_CATEGORY.value,), limit=limit)

    # --- Amendments ---

    def upsert_amendment(self, amendment: AmendmentRecord) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO amendments (
                    contract_id, sequence, type_name, justification,
                    value_increase, value_decrease,
                    duration_increase_days, duration_decrease_days,
                    signature_date, publication_date
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    amendment.contract_id,
                    amendment.sequence,
                    amendment.type_name,
                    amendment.justification,
                    amendment.value_increase,
                    amendment.value_decrease,
                    amendment.duration_increase_days,
                    amendment.duration_decrease_days,
                    _date_to_db(amendment.signature_date),
                    _date_to_db(amendment.publication_date),
                ),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def list_amendments(self, contract_id: str) -> List[AmendmentRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM amendments WHERE contract_id = ? ORDER BY sequence",
                (contract_id,),
            ).fetchall()
        return [self._row_to_amendment(row) for row in rows]

    # --- Anomaly scores ---

    def get_anomaly_score(self, contract_id: str) -> Optional[AnomalyScore]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM anomaly_scores WHERE contract_id = ?", (contract_id,)
            ).fetchone()
        return self._row_to_score(row) if row else None

    def save_anomaly_score(self, score: AnomalyScore) -> None:
        breakdown = [dict(item.to_dict(), isAnomaly=item.is_anomaly) for item in score.breakdown]
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO anomaly_scores
                    (contract_id, total_score, category, breakdown, calculated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    score.contract_id,
                    int(score.total_score),
                    score.category.value,
                    json.dumps(breakdown, ensure_ascii=False),
                    _ts_to_db(score.calculated_at),
                ),
            )
            self._conn.commit()

    def delete_anomaly_score(self, contract_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM anomaly_scores WHERE contract_id = ?", (contract_id,)
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def list_anomaly_scores(self) -> List[AnomalyScore]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM anomaly_scores ORDER BY contract_id"
            ).fetchall()
        return [self._row_to_score(row) for row in rows]
