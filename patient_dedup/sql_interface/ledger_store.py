"""SQL Server backed Match Review Ledger."""

import json
import re
import threading
from typing import Any, Dict, Iterable, List, Optional

from ..config import DEFAULT_LEDGER_TABLE, RERUN_SKIP
from ..exceptions import (
    CandidateNotFoundError,
    ConfigurationError,
    InvalidTransitionError,
    LedgerWriteError,
)
from ..matching.ledger import MatchReviewLedger, UpsertOutcome, apply_transition, resolve_upsert
from ..matching.models import (
    ConfidenceLevel,
    FieldMatchResult,
    MatchCandidate,
    ReviewStatus,
    canonical_pair,
)
from ..secure_logging import get_secure_logger
from .db_interface import SQLInterface
from .exceptions import QueryExecutionError

logger = get_secure_logger(__name__)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_]\w*(\.[A-Za-z_]\w*)?$")

COLUMNS = (
    "CandidateID", "RecordIdA", "RecordIdB", "Revision", "CompositeScore", "ConfidenceLevel",
    "Status", "FieldResults", "MatchReasons", "Supersedes", "DecidedBy", "CreatedAt", "UpdatedAt",
)

CREATE_TABLE_TEMPLATE = """
IF OBJECT_ID(N'{table}', N'U') IS NULL
BEGIN
    CREATE TABLE {table} (
        CandidateID NVARCHAR(300) NOT NULL PRIMARY KEY,
        RecordIdA NVARCHAR(128) NOT NULL,
        RecordIdB NVARCHAR(128) NOT NULL,
        Revision INT NOT NULL,
        CompositeScore DECIMAL(5, 2) NOT NULL,
        ConfidenceLevel NVARCHAR(16) NOT NULL,
        Status NVARCHAR(32) NOT NULL,
        FieldResults NVARCHAR(MAX) NOT NULL,
        MatchReasons NVARCHAR(MAX) NULL,
        Supersedes NVARCHAR(300) NULL,
        DecidedBy NVARCHAR(128) NULL,
        CreatedAt DATETIME2 NOT NULL,
        UpdatedAt DATETIME2 NULL,
        CONSTRAINT UQ_{constraint}_Pair UNIQUE (RecordIdA, RecordIdB, Revision)
    )
END
"""


class SqlMatchLedger(MatchReviewLedger):
    """
    Match Review Ledger stored in a SQL Server table.

    Each commit_bucket() call is one transaction: every candidate of the
    bucket is written, or the transaction is rolled back and
    LedgerWriteError is raised. Inserts use INSERT ... WHERE NOT EXISTS
    under UPDLOCK/HOLDLOCK plus a unique constraint on
    (RecordIdA, RecordIdB, Revision), so two writers racing on a pair
    produce one row.

    A pyodbc connection must not be used from several threads at once;
    calls on one ledger instance are serialized by a lock.
    """

    def __init__(self, sql_interface: SQLInterface, table: str = DEFAULT_LEDGER_TABLE,
                 rerun_policy: str = RERUN_SKIP):
        super().__init__(rerun_policy)
        if not _TABLE_NAME_RE.match(table):
            raise ConfigurationError(f"Invalid ledger table name: '{table}'")
        self.sql = sql_interface
        self.table = table
        self._lock = threading.RLock()
        self._select = f"SELECT {', '.join(COLUMNS)} FROM {table}"

    # --- schema -------------------------------------------------------------

    def ensure_schema(self) -> None:
        ddl = CREATE_TABLE_TEMPLATE.format(table=self.table, constraint=self.table.replace(".", "_"))
        with self._lock:
            if not self.sql.execute_query(ddl) or not self.sql.commit():
                raise QueryExecutionError(f"Could not create ledger table {self.table}")

    # --- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_candidate(row: Dict[str, Any]) -> MatchCandidate:
        field_results = [FieldMatchResult.from_dict(item) for item in json.loads(row["FieldResults"] or "[]")]
        return MatchCandidate(
            record_id_a=row["RecordIdA"],
            record_id_b=row["RecordIdB"],
            field_results=field_results,
            composite_score=float(row["CompositeScore"]),
            confidence_level=ConfidenceLevel(row["ConfidenceLevel"]),
            status=ReviewStatus(row["Status"]),
            created_at=row["CreatedAt"],
            updated_at=row.get("UpdatedAt"),
            revision=int(row["Revision"]),
            supersedes=row.get("Supersedes"),
            decided_by=row.get("DecidedBy"),
            match_reasons=json.loads(row.get("MatchReasons") or "[]"),
        )

    @staticmethod
    def _candidate_params(candidate: MatchCandidate) -> tuple:
        return (
            candidate.candidate_id,
            candidate.record_id_a,
            candidate.record_id_b,
            candidate.revision,
            candidate.composite_score,
            candidate.confidence_level.value,
            candidate.status.value,
            json.dumps([r.to_dict() for r in candidate.field_results]),
            json.dumps(candidate.match_reasons),
            candidate.supersedes,
            candidate.decided_by,
            candidate.created_at,
            candidate.updated_at,
        )

    def _query(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        if not self.sql.execute_query(sql, params):
            raise QueryExecutionError("Ledger query failed")
        rows = self.sql.fetch_results()
        if rows is None:
            raise QueryExecutionError("Could not fetch ledger rows")
        return rows

    # --- writes ------------------------------------------------------------

    def _locked_head(self, pair) -> Optional[MatchCandidate]:
        sql = (
            f"SELECT TOP 1 {', '.join(COLUMNS)} FROM {self.table} WITH (UPDLOCK, HOLDLOCK) "
            f"WHERE RecordIdA = ? AND RecordIdB = ? ORDER BY Revision DESC"
        )
        rows = self._query(sql, pair)
        return self._row_to_candidate(rows[0]) if rows else None

    def _insert_if_absent(self, candidate: MatchCandidate) -> bool:
        placeholders = ", ".join("?" for _ in COLUMNS)
        sql = (
            f"INSERT INTO {self.table} ({', '.join(COLUMNS)}) SELECT {placeholders} "
            f"WHERE NOT EXISTS (SELECT 1 FROM {self.table} WITH (UPDLOCK, HOLDLOCK) "
            f"WHERE RecordIdA = ? AND RecordIdB = ? AND Revision = ?)"
        )
        params = self._candidate_params(candidate) + (
            candidate.record_id_a, candidate.record_id_b, candidate.revision,
        )
        if not self.sql.execute_query(sql, params):
            raise LedgerWriteError(f"Insert failed for {candidate.candidate_id}")
        return self.sql.rowcount > 0

    def _refresh_scores(self, candidate: MatchCandidate) -> None:
        sql = (
            f"UPDATE {self.table} SET CompositeScore = ?, ConfidenceLevel = ?, FieldResults = ?, "
            f"MatchReasons = ?, UpdatedAt = ? WHERE CandidateID = ? AND Status = ?"
        )
        params = (
            candidate.composite_score,
            candidate.confidence_level.value,
            json.dumps([r.to_dict() for r in candidate.field_results]),
            json.dumps(candidate.match_reasons),
            candidate.updated_at,
            candidate.candidate_id,
            ReviewStatus.PENDING_REVIEW.value,
        )
        if not self.sql.execute_query(sql, params):
            raise LedgerWriteError(f"Refresh failed for {candidate.candidate_id}")

    def commit_bucket(self, candidates: Iterable[MatchCandidate],
                      refresh_only: Iterable[MatchCandidate] = ()) -> List[UpsertOutcome]:
        work = [(c, False) for c in candidates] + [(c, True) for c in refresh_only]
        outcomes: List[UpsertOutcome] = []
        with self._lock:
            try:
                for candidate, stale in work:
                    head = self._locked_head(candidate.pair)
                    outcome, record = resolve_upsert(head, candidate, self.rerun_policy, refresh_only=stale)
                    if outcome in (UpsertOutcome.INSERTED, UpsertOutcome.SUPERSEDED):
                        if not self._insert_if_absent(record):
                            # Another writer created this revision first
                            outcome = UpsertOutcome.UNCHANGED
                    elif outcome == UpsertOutcome.REFRESHED:
                        self._refresh_scores(record)
                    outcomes.append(outcome)
                if not self.sql.commit():
                    raise LedgerWriteError("Commit of bucket failed")
            except QueryExecutionError as e:
                self.sql.rollback()
                raise LedgerWriteError(str(e)) from e
            except LedgerWriteError:
                self.sql.rollback()
                raise
        return outcomes

    def transition(self, record_id_a: str, record_id_b: str, new_status: ReviewStatus,
                   decided_by: Optional[str] = None) -> MatchCandidate:
        pair = canonical_pair(record_id_a, record_id_b)
        with self._lock:
            try:
                head = self._locked_head(pair)
                if head is None:
                    raise CandidateNotFoundError(f"No match candidate for pair {pair[0]}::{pair[1]}")
                updated = apply_transition(head, new_status, decided_by)
                sql = (
                    f"UPDATE {self.table} SET Status = ?, DecidedBy = ?, UpdatedAt = ? "
                    f"WHERE CandidateID = ? AND Status = ?"
                )
                params = (updated.status.value, updated.decided_by, updated.updated_at,
                          head.candidate_id, head.status.value)
                if not self.sql.execute_query(sql, params):
                    raise QueryExecutionError(f"Status update failed for {head.candidate_id}")
                if self.sql.rowcount == 0:
                    raise InvalidTransitionError(f"{head.candidate_id} changed status concurrently")
                if not self.sql.commit():
                    raise QueryExecutionError("Commit of status change failed")
            except Exception:
                self.sql.rollback()
                raise
        logger.log_ledger_transition(updated.candidate_id, head.status.value, new_status.value, decided_by)
        return updated

    # --- reads -------------------------------------------------------------

    def history(self, record_id_a: str, record_id_b: str) -> List[MatchCandidate]:
        pair = canonical_pair(record_id_a, record_id_b)
        with self._lock:
            rows = self._query(f"{self._select} WHERE RecordIdA = ? AND RecordIdB = ? ORDER BY Revision", pair)
        return [self._row_to_candidate(row) for row in rows]

    def candidates(self, status: Optional[ReviewStatus] = None) -> List[MatchCandidate]:
        sql = (
            f"{self._select} t WHERE t.Revision = (SELECT MAX(r.Revision) FROM {self.table} r "
            f"WHERE r.RecordIdA = t.RecordIdA AND r.RecordIdB = t.RecordIdB)"
        )
        params: tuple = ()
        if status is not None:
            sql += " AND t.Status = ?"
            params = (status.value,)
        sql += " ORDER BY t.RecordIdA, t.RecordIdB"
        with self._lock:
            rows = self._query(sql, params)
        return [self._row_to_candidate(row) for row in rows]
